from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .paths import data_dir

PROVIDER_KINDS = ("sqlite", "json", "memory")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Storage
    data_dir: Path
    provider: str

    # SQLite
    sqlite_wal: bool
    sqlite_persistent: bool

    # Schema
    auto_migrate: bool

    # Debug
    debug_log_payloads: bool


def get_settings() -> Settings:
    provider = os.getenv("PATHKV_PROVIDER", "sqlite").strip().lower()
    if provider not in PROVIDER_KINDS:
        raise ValueError(f"PATHKV_PROVIDER must be one of {', '.join(PROVIDER_KINDS)}, got {provider!r}")

    sqlite_wal = _env_bool("PATHKV_SQLITE_WAL", True)
    # In-memory SQLite is handy for throwaway servers.
    sqlite_persistent = _env_bool("PATHKV_SQLITE_PERSISTENT", True)

    # Off by default: upgrading on-disk layout should be a deliberate step.
    auto_migrate = _env_bool("PATHKV_AUTO_MIGRATE", False)

    debug_log_payloads = _env_bool("PATHKV_DEBUG_LOG_PAYLOADS", False)

    return Settings(
        data_dir=data_dir(),
        provider=provider,
        sqlite_wal=sqlite_wal,
        sqlite_persistent=sqlite_persistent,
        auto_migrate=auto_migrate,
        debug_log_payloads=debug_log_payloads,
    )
