from __future__ import annotations


class StoreError(Exception):
    """Base class for every failure raised by pathkv."""


class PathError(StoreError):
    """Malformed path syntax, or a path that cannot address anything."""


class CodecError(StoreError):
    """Unknown, corrupt, or unsupported envelope / value."""


class StoreTypeError(StoreError, TypeError):
    """The stored value has the wrong type for the requested operation."""


class MissingDataError(StoreError):
    """The operation needs an existing value and none is stored."""


class LifecycleError(StoreError):
    """Operation attempted before ``init()`` or after ``close()``."""


class NeedsMigrationError(StoreError):
    """The store's schema is behind and migration has not been requested."""


class MigrationError(StoreError):
    """A migration step failed; nothing from the attempt was committed."""


class MethodNotImplementedError(StoreError, NotImplementedError):
    """The provider lacks a Method and it cannot be synthesized."""


class StorageError(StoreError):
    """
    Opaque backend I/O failure.

    The original exception is kept on ``cause`` (and as ``__cause__`` when raised with ``from``).
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


ERROR_KINDS: dict[str, type[StoreError]] = {
    cls.__name__: cls
    for cls in (
        StoreError,
        PathError,
        CodecError,
        StoreTypeError,
        MissingDataError,
        LifecycleError,
        NeedsMigrationError,
        MigrationError,
        MethodNotImplementedError,
        StorageError,
    )
}


def error_from_kind(kind: str, message: str) -> StoreError:
    """Rebuild an error that crossed a process boundary by name."""
    cls = ERROR_KINDS.get(kind, StoreError)
    return cls(message)
