from __future__ import annotations

import base64
import binascii
import os
from typing import Any, Dict, Iterable, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from common.remote import DEFAULT_BASE_URL


# Environment variable names, mapped onto SyncConfig fields
ENV_VARS: Dict[str, str] = {
    "SYNC_BASE_URL": "base_url",
    "SYNC_MAX_PAGES": "max_pages",
    "SYNC_MAX_RECORDS": "max_records",
    "SYNC_INTERVAL_MS": "sync_interval_ms",
    "SYNC_PAGE_TIMEOUT": "page_timeout",
    "SYNC_MAX_RETRIES": "max_retries",
    "SYNC_DB_PATH": "db_path",
    "SYNC_ENVELOPE_SCHEME": "envelope_scheme",
    "SYNC_LEGACY_KEY": "legacy_key",
}
ENV_PARAM_PREFIX = "SYNC_PARAM_PREFIX"


class ConfigError(ValueError):
    """Configuration is missing or out of bounds."""


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


class SyncConfig(BaseModel):
    """
    Tunables for the sync engine.

    Fields
    - base_url: remote API root (`/login`, `/users` hang off it).
    - max_pages: cap on pagination rounds per pass.
    - max_records: cap on accumulated records per pass; the page that crosses
      it is kept whole.
    - sync_interval_ms: period of the background re-trigger.
    - page_timeout: deadline in seconds for each remote request.
    - max_retries: retries for transient transport/5xx failures.
    - db_path: SQLite file backing the mirror (":memory:" for ephemeral).
    - envelope_scheme: "gcm" (authenticated, default) or "cbc" (legacy).
    - legacy_key: base64 16-byte shared key for the CBC scheme (optional).
    """

    base_url: str = DEFAULT_BASE_URL
    max_pages: int = Field(default=10, gt=0)
    max_records: int = Field(default=1000, gt=0)
    sync_interval_ms: int = Field(default=60000, gt=0)
    page_timeout: float = Field(default=15.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    db_path: str = ".cache/sync.db"
    envelope_scheme: Literal["gcm", "cbc"] = "gcm"
    legacy_key: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return v

    @field_validator("legacy_key")
    @classmethod
    def _check_legacy_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            raw = base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("legacy_key must be base64") from exc
        if len(raw) != 16:
            raise ValueError("legacy_key must decode to 16 bytes")
        return v

    @model_validator(mode="after")
    def _check_scheme_key(self) -> "SyncConfig":
        if self.legacy_key is not None and self.envelope_scheme != "cbc":
            raise ValueError("legacy_key is only used with envelope_scheme='cbc'")
        return self

    @property
    def sync_interval(self) -> float:
        """Interval in seconds."""
        return self.sync_interval_ms / 1000.0

    def legacy_key_bytes(self) -> Optional[bytes]:
        return base64.b64decode(self.legacy_key) if self.legacy_key else None

    # -------- Construction helpers --------
    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SyncConfig":
        """Validate `values`, raising ConfigError instead of a pydantic error."""
        try:
            return cls.model_validate(dict(values))
        except ValidationError as ve:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in ve.errors()
            )
            raise ConfigError(f"Invalid sync configuration: {problems}") from ve

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """
        Build configuration from `SYNC_*` environment variables.

        When `SYNC_PARAM_PREFIX` is set, the same settings are also looked up
        in SSM Parameter Store under `{prefix}{field_name}` and override the
        environment. Missing or denied parameters are ignored.
        """
        values: Dict[str, Any] = {}
        for env_name, field in ENV_VARS.items():
            v = _getenv(env_name)
            if v is not None:
                values[field] = v

        prefix = _getenv(ENV_PARAM_PREFIX)
        if prefix:
            params = _load_ssm_params(prefix, list(ENV_VARS.values()))
            values.update({k: v for k, v in params.items() if v is not None})

        return cls.from_mapping(values)


__all__ = ["ConfigError", "SyncConfig"]
