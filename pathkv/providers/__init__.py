from __future__ import annotations

from ..protocol import Provider
from ..settings import Settings
from .http import HttpProvider
from .json_file import JsonFileProvider
from .memory import MemoryProvider
from .sqlite import SQLiteProvider

__all__ = [
    "HttpProvider",
    "JsonFileProvider",
    "MemoryProvider",
    "SQLiteProvider",
    "build_provider",
]


def build_provider(settings: Settings) -> Provider:
    """Fresh provider for one store, as selected by ``PATHKV_PROVIDER``."""
    if settings.provider == "memory":
        return MemoryProvider()
    if settings.provider == "json":
        return JsonFileProvider(data_dir=settings.data_dir)
    return SQLiteProvider(
        data_dir=settings.data_dir,
        persistent=settings.sqlite_persistent,
        wal=settings.sqlite_wal,
    )
