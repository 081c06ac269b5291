from __future__ import annotations

from pathlib import Path
import sys


import pytest


# Ensure the repository root (parent of ./tests) is importable during pytest collection.
# This avoids ModuleNotFoundError for imports like `import pathkv...` under pytest import modes
# that don't automatically prepend the cwd/rootdir to sys.path.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def sandbox_data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """
    Redirect store files to a temp directory so tests never touch real ./data.
    """
    import pathkv.paths as paths

    data = tmp_path / "data"
    data.mkdir(parents=True, exist_ok=True)

    def _project_root() -> Path:
        return tmp_path

    def _data_dir() -> Path:
        return data

    monkeypatch.setenv("PATHKV_DATA_DIR", str(data))
    monkeypatch.setattr(paths, "project_root", _project_root)
    monkeypatch.setattr(paths, "data_dir", _data_dir)
    return data
