from __future__ import annotations

import pytest

from pathkv.protocol import CURRENT_SCHEMA_VERSION
from pathkv.providers import HttpProvider, JsonFileProvider, MemoryProvider, SQLiteProvider, build_provider
from pathkv.settings import get_settings


def test_defaults(sandbox_data_dir, monkeypatch):
    for name in ("PATHKV_PROVIDER", "PATHKV_SQLITE_WAL", "PATHKV_AUTO_MIGRATE", "PATHKV_DEBUG_LOG_PAYLOADS"):
        monkeypatch.delenv(name, raising=False)
    settings = get_settings()
    assert settings.data_dir == sandbox_data_dir
    assert settings.provider == "sqlite"
    assert settings.sqlite_wal is True
    assert settings.sqlite_persistent is True
    assert settings.auto_migrate is False
    assert settings.debug_log_payloads is False
    assert isinstance(build_provider(settings), SQLiteProvider)


def test_env_overrides(sandbox_data_dir, monkeypatch):
    monkeypatch.setenv("PATHKV_PROVIDER", " JSON ")
    monkeypatch.setenv("PATHKV_AUTO_MIGRATE", "yes")
    monkeypatch.setenv("PATHKV_SQLITE_WAL", "0")
    monkeypatch.setenv("PATHKV_DEBUG_LOG_PAYLOADS", "on")
    settings = get_settings()
    assert settings.provider == "json"
    assert settings.auto_migrate is True
    assert settings.sqlite_wal is False
    assert settings.debug_log_payloads is True
    assert isinstance(build_provider(settings), JsonFileProvider)

    monkeypatch.setenv("PATHKV_PROVIDER", "memory")
    assert isinstance(build_provider(get_settings()), MemoryProvider)


def test_unknown_provider_is_rejected(sandbox_data_dir, monkeypatch):
    monkeypatch.setenv("PATHKV_PROVIDER", "redis")
    with pytest.raises(ValueError):
        get_settings()


def test_bundled_providers_share_one_schema_version():
    for provider in (MemoryProvider, JsonFileProvider, SQLiteProvider, HttpProvider):
        assert provider.schema_version == CURRENT_SCHEMA_VERSION
