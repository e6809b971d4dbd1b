"""File-based persistence helpers for plan state and device sync queues."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from ..config import settings


class FileStorage:
    """Thin wrapper around the data root for storing JSON documents."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = (root or settings.data_root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, *parts: str) -> Path:
        return self.root.joinpath(*parts)

    def read_json(self, path: Path, default: Any = None) -> Any:
        if not path.exists():
            return default
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def write_json(self, path: Path, data: Any, *, indent: int = 2) -> None:
        """Write via a temporary sibling and ``os.replace`` so readers never see half a file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=indent)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def delete(self, path: Path) -> None:
        if path.exists():
            path.unlink()
