from __future__ import annotations

from .engine import Store, StoreState
from .errors import (
    CodecError,
    LifecycleError,
    MethodNotImplementedError,
    MigrationError,
    MissingDataError,
    NeedsMigrationError,
    PathError,
    StorageError,
    StoreError,
    StoreTypeError,
)
from .keypath import ABSENT, Segment, format_path, parse_path
from .protocol import MathOperator, Method, Provider, handles

__all__ = [
    "ABSENT",
    "CodecError",
    "LifecycleError",
    "MathOperator",
    "Method",
    "MethodNotImplementedError",
    "MigrationError",
    "MissingDataError",
    "NeedsMigrationError",
    "PathError",
    "Provider",
    "Segment",
    "StorageError",
    "Store",
    "StoreError",
    "StoreState",
    "StoreTypeError",
    "format_path",
    "handles",
    "parse_path",
]
