"""Filesystem helpers: atomic writes and capped JSON logs."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

DEFAULT_FILE_MODE = 0o644


def write_bytes(path: Path, content: bytes, mode: int | None = None) -> None:
    """Write *content* to *path* atomically via a sibling temp file.

    The file keeps its current permissions unless *mode* is given; new
    files default to 0o644.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        mode = path.stat().st_mode & 0o7777 if path.is_file() else DEFAULT_FILE_MODE
    fd, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    finally:
        if os.path.exists(temp_name):
            os.unlink(temp_name)


def write_json(path: Path, data: Any) -> None:
    payload = json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    write_bytes(path, payload.encode("utf-8"))


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def append_capped(path: Path, entry: dict[str, Any], limit: int) -> list[dict[str, Any]]:
    """Append *entry* to the JSON array at *path*, dropping the oldest past *limit*."""
    history: list[dict[str, Any]] = []
    if path.is_file():
        loaded = read_json(path)
        if isinstance(loaded, list):
            history = loaded
    history.append(entry)
    if len(history) > limit:
        history = history[-limit:]
    write_json(path, history)
    return history


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def copy_path(src: Path, dst: Path) -> None:
    """Copy a file or directory tree to *dst*, creating parents."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        shutil.copy2(src, dst)


def tree_size(path: Path) -> int:
    """Total size in bytes of a file or every file under a directory."""
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
