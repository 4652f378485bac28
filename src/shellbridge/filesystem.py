"""File-system collaborator behind ``fileSystem`` and ``get_directory_structure`` requests.

The bridge itself only routes these requests. ``FileSystemProvider`` is the
capability it needs; ``LocalFileSystem`` serves it from the host, confined
to a root directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .errors import FileSystemError


@runtime_checkable
class FileSystemProvider(Protocol):
    def list_directory(self, path: str) -> List[Dict[str, Any]]: ...

    def read_file(self, path: str) -> str: ...

    def write_file(self, path: str, content: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def current_directory(self) -> str: ...

    def directory_structure(self, path: Optional[str] = None, depth: int = 2) -> Dict[str, Any]: ...


class LocalFileSystem:
    """Host file system rooted at ``root``; paths may not escape it."""

    def __init__(self, root: Optional[str] = None, max_entries: int = 500):
        self.root = Path(root or Path.home()).resolve()
        self.max_entries = max_entries

    def _resolve(self, path: Optional[str]) -> Path:
        target = (self.root / (path or ".")).resolve()
        if target != self.root and self.root not in target.parents:
            raise FileSystemError(f"path escapes root: {path}")
        return target

    def _item(self, entry: Path) -> Dict[str, Any]:
        return {
            "name": entry.name,
            "path": str(entry.relative_to(self.root)),
            "isDirectory": entry.is_dir(),
        }

    def list_directory(self, path: str) -> List[Dict[str, Any]]:
        target = self._resolve(path)
        if not target.is_dir():
            raise FileSystemError(f"not a directory: {path}")
        try:
            entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except OSError as e:
            raise FileSystemError(f"cannot list {path}: {e}") from e
        return [self._item(entry) for entry in entries[: self.max_entries]]

    def read_file(self, path: str) -> str:
        target = self._resolve(path)
        try:
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise FileSystemError(f"cannot read {path}: {e}") from e

    def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        try:
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise FileSystemError(f"cannot write {path}: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).exists()
        except FileSystemError:
            return False

    def current_directory(self) -> str:
        return str(self.root)

    def directory_structure(self, path: Optional[str] = None, depth: int = 2) -> Dict[str, Any]:
        """Nested listing of ``path`` down to ``depth`` levels."""
        target = self._resolve(path)
        if not target.is_dir():
            raise FileSystemError(f"not a directory: {path}")
        node = self._item(target) if target != self.root else {
            "name": target.name, "path": ".", "isDirectory": True,
        }
        node["children"] = self._children(target, depth)
        return node

    def _children(self, directory: Path, depth: int) -> List[Dict[str, Any]]:
        if depth <= 0:
            return []
        children = []
        for item in self.list_directory(str(directory.relative_to(self.root))):
            if item["isDirectory"]:
                try:
                    item["children"] = self._children(self._resolve(item["path"]), depth - 1)
                except FileSystemError:
                    item["children"] = []
            children.append(item)
        return children
