from __future__ import annotations

import os
from pathlib import Path


def project_root() -> Path:
    # pathkv/paths.py -> pathkv -> project root
    return Path(__file__).resolve().parents[1]


def data_dir() -> Path:
    override = os.getenv("PATHKV_DATA_DIR")
    if override:
        return ensure_dir(Path(override).expanduser())
    return ensure_dir(project_root() / "data")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def store_file(base: Path, name: str, suffix: str) -> Path:
    return ensure_dir(base) / f"{name}{suffix}"
