from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from state.models import Record, RemoteUser

from .connectivity import Connectivity
from .envelope import Envelope, EnvelopeCodec, EnvelopeError, GcmEnvelopeCodec


DEFAULT_BASE_URL = "https://calls.trolley.systems/api"

logger = logging.getLogger(__name__)


class RemoteError(RuntimeError):
    """Base error for the remote record API."""


class NetworkError(RemoteError):
    """Offline, transport failure, timeout, or retries exhausted on transport errors."""


class ProtocolError(RemoteError):
    """The response could not be decoded, decrypted, or validated."""


class ServerError(RemoteError):
    """The remote reported a failure (`success: false` or an error status)."""


class AuthError(RemoteError):
    """The remote rejected the credentials."""


class Credentials(BaseModel):
    username: str
    password: str


class RemoteClient:
    """
    Client for the remote user API.

    Wire contract
    - Every response is `{ success, data, message }`; data-bearing responses
      carry `data` as an encrypted envelope, opened with `codec`.
    - A body that is itself a bare envelope is accepted as the data.

    Notes
    - When a `Connectivity` is given and reports offline, calls fail fast
      with NetworkError without touching the network.
    - `timeout` applies to each request, so a stalled page fetch ends.
    - Transport errors, 429 and 5xx are retried with exponential backoff, at
      most `max_retries` times.
    - The client caches nothing; the orchestrator owns the mirror.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        codec: Optional[EnvelopeCodec] = None,
        connectivity: Optional[Connectivity] = None,
        timeout: float = 15.0,
        max_retries: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._base_url = base_url.rstrip("/")
        self._codec = codec or GcmEnvelopeCodec()
        self._connectivity = connectivity
        self._timeout = timeout
        self._max_retries = max_retries
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def fetch_page(self, resource: str, page: int) -> List[Record]:
        """
        Fetch one page of `resource` (e.g. "users") and return adapted records.

        An empty list means the remote has no more pages.
        """
        payload = self._request("GET", f"/{resource}", params={"page": page})
        data = self._open(payload, require_envelope=True)
        if not isinstance(data, list):
            raise ProtocolError(f"Expected a list of records, got {type(data).__name__}")
        try:
            return [Record.from_remote(RemoteUser.model_validate(item)) for item in data]
        except ValidationError as ve:
            raise ProtocolError(f"Failed to parse {resource} page {page}: {ve}") from ve

    def login(self, credentials: Credentials) -> Record:
        payload = self._request("POST", "/login", json_body=credentials.model_dump())
        data = self._open(payload, require_envelope=False, auth=True)
        try:
            return Record.from_remote(RemoteUser.model_validate(data))
        except ValidationError as ve:
            raise ProtocolError(f"Failed to parse login payload: {ve}") from ve

    def create_user(self, record: Record) -> None:
        payload = self._request("POST", "/users", json_body=record.to_remote().model_dump())
        self._open(payload, require_envelope=False)

    def update_user(self, record: Record) -> None:
        payload = self._request("PUT", f"/users/{record.id}", json_body=record.to_remote().model_dump())
        self._open(payload, require_envelope=False)

    def delete_user(self, record_id: int) -> None:
        payload = self._request("DELETE", f"/users/{record_id}")
        self._open(payload, require_envelope=False)

    # --------------- Internal ---------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._connectivity is not None and not self._connectivity.is_online():
            raise NetworkError("No internet connection")

        url = f"{self._base_url}{path}"
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while True:
            try:
                resp = self._client.request(method, url, params=params, json=json_body, timeout=self._timeout)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                logger.warning("%s %s failed (attempt %d): %s", method, path, attempt + 1, exc)
            else:
                if 200 <= resp.status_code < 300:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise ProtocolError(f"Response from {path} is not JSON") from exc
                if resp.status_code in (401, 403):
                    raise AuthError(self._message(resp) or f"HTTP {resp.status_code} from {path}")
                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = ServerError(f"HTTP {resp.status_code} from {path}")
                    logger.warning("%s %s returned HTTP %d (attempt %d)", method, path, resp.status_code, attempt + 1)
                else:
                    detail = self._message(resp) or resp.text[:200]
                    raise ServerError(f"HTTP {resp.status_code} from {path}: {detail}")

            if attempt >= self._max_retries:
                break
            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if isinstance(last_exc, ServerError):
            raise ServerError(f"{last_exc} after {attempt + 1} attempts") from last_exc
        raise NetworkError(f"{method} {path} failed after {attempt + 1} attempts") from last_exc

    @staticmethod
    def _message(resp: httpx.Response) -> Optional[str]:
        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            return body["message"]
        return None

    def _open(self, payload: Any, *, require_envelope: bool, auth: bool = False) -> Any:
        """Check the response status fields and decrypt `data` when it is an envelope."""
        if isinstance(payload, dict) and "success" in payload:
            if payload.get("success") is not True:
                msg = payload.get("message") or ("Login failed" if auth else "Request failed")
                raise (AuthError if auth else ServerError)(msg)
            data = payload.get("data")
        elif Envelope.looks_like(payload):
            data = payload
        else:
            raise ProtocolError("Malformed response: expected {success, data, message}")

        if Envelope.looks_like(data):
            try:
                return self._codec.decrypt(data)
            except EnvelopeError as exc:
                raise ProtocolError(f"Failed to decrypt response: {exc}") from exc
        if require_envelope:
            raise ProtocolError("Response data is not an encrypted envelope")
        return data


__all__ = [
    "AuthError",
    "Credentials",
    "NetworkError",
    "ProtocolError",
    "RemoteClient",
    "RemoteError",
    "ServerError",
]
