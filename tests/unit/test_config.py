from __future__ import annotations

import base64

import pytest

import sync.config as config_mod
from sync.config import ConfigError, SyncConfig


LEGACY_KEY = base64.b64encode(b"0123456789abcdef").decode("ascii")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(config_mod.ENV_VARS) + [config_mod.ENV_PARAM_PREFIX]:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = SyncConfig()
    assert cfg.max_pages == 10
    assert cfg.max_records == 1000
    assert cfg.sync_interval_ms == 60000
    assert cfg.sync_interval == 60.0
    assert cfg.envelope_scheme == "gcm"
    assert cfg.legacy_key_bytes() is None


@pytest.mark.parametrize(
    "values",
    [
        {"max_pages": 0},
        {"max_records": -1},
        {"sync_interval_ms": 0},
        {"page_timeout": 0},
        {"max_retries": -1},
        {"base_url": "ftp://example.test"},
        {"envelope_scheme": "rot13"},
    ],
)
def test_out_of_bounds_values_raise_config_error(values):
    with pytest.raises(ConfigError):
        SyncConfig.from_mapping(values)


def test_config_error_names_the_field():
    with pytest.raises(ConfigError, match="max_pages"):
        SyncConfig.from_mapping({"max_pages": 0})


def test_base_url_trailing_slash_is_stripped():
    cfg = SyncConfig.from_mapping({"base_url": " https://api.example.test/api/ "})
    assert cfg.base_url == "https://api.example.test/api"


def test_legacy_key_requires_cbc_scheme():
    with pytest.raises(ConfigError):
        SyncConfig.from_mapping({"legacy_key": LEGACY_KEY})

    cfg = SyncConfig.from_mapping({"envelope_scheme": "cbc", "legacy_key": LEGACY_KEY})
    assert cfg.legacy_key_bytes() == b"0123456789abcdef"


def test_legacy_key_must_be_16_bytes():
    short = base64.b64encode(b"short").decode("ascii")
    with pytest.raises(ConfigError):
        SyncConfig.from_mapping({"envelope_scheme": "cbc", "legacy_key": short})


def test_from_env_reads_sync_variables(monkeypatch):
    monkeypatch.setenv("SYNC_BASE_URL", "http://localhost:8080/api")
    monkeypatch.setenv("SYNC_MAX_PAGES", "3")
    monkeypatch.setenv("SYNC_MAX_RECORDS", "50")
    monkeypatch.setenv("SYNC_INTERVAL_MS", "1500")
    monkeypatch.setenv("SYNC_DB_PATH", ":memory:")
    monkeypatch.setenv("SYNC_MAX_RETRIES", "")  # empty means unset

    cfg = SyncConfig.from_env()

    assert cfg.base_url == "http://localhost:8080/api"
    assert (cfg.max_pages, cfg.max_records) == (3, 50)
    assert cfg.sync_interval == 1.5
    assert cfg.db_path == ":memory:"
    assert cfg.max_retries == 3


def test_from_env_rejects_bad_numbers(monkeypatch):
    monkeypatch.setenv("SYNC_MAX_PAGES", "many")
    with pytest.raises(ConfigError):
        SyncConfig.from_env()


def test_from_env_overlays_parameter_store(monkeypatch):
    seen = {}

    def fake_load(prefix, names):
        seen["prefix"] = prefix
        seen["names"] = list(names)
        return {name: ("7" if name == "max_pages" else None) for name in names}

    monkeypatch.setenv("SYNC_MAX_PAGES", "3")
    monkeypatch.setenv("SYNC_PARAM_PREFIX", "/mirror/")
    monkeypatch.setattr(config_mod, "_load_ssm_params", fake_load)

    cfg = SyncConfig.from_env()

    assert seen["prefix"] == "/mirror/"
    assert "max_pages" in seen["names"]
    assert cfg.max_pages == 7
