from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .errors import StorageError


def read_json(path: Path) -> Any | None:
    """
    Read JSON from disk.

    Returns None for missing or empty files. Unreadable or invalid JSON raises
    StorageError: a store file that cannot be parsed must not look empty.
    """
    try:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StorageError(f"Failed to read {path}", e) from e
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageError(f"Invalid JSON in {path}", e) from e


def atomic_write_json(path: Path, payload: Any, *, indent: int = 2, sort_keys: bool = True) -> None:
    """
    Atomically write JSON to disk by writing to a temp file then replacing.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=indent, sort_keys=sort_keys)
            f.write("\n")
        tmp_path.replace(path)
    except (OSError, TypeError, ValueError) as e:
        raise StorageError(f"Failed to write {path}", e) from e
