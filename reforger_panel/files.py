"""
Instance-scoped file access for the panel's file browser.

Every path is resolved through ``InstanceRegistry.resolve_path`` first, so
nothing outside the instance root is ever touched.
"""

from __future__ import annotations
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List
from .errors import InvalidPath, IOFailure, NotFound, ValidationFailed
from .logging_setup import get_logger
from .models import FileContent, FileEntry
from .registry import InstanceRegistry

log = get_logger("reforger.panel.files")

MAX_READ_BYTES = 5_000_000


def _mtime(p: Path) -> datetime:
    return datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc)


class InstanceFiles:
    def __init__(self, registry: InstanceRegistry):
        self.registry = registry

    def _rel(self, server_id: str, p: Path) -> str:
        root = self.registry.layout(server_id).root.resolve()
        return p.relative_to(root).as_posix() if p != root else ""

    def _entry(self, server_id: str, p: Path) -> FileEntry:
        is_dir = p.is_dir()
        return FileEntry(
            name=p.name,
            path=self._rel(server_id, p),
            isDirectory=is_dir,
            size=0 if is_dir else p.stat().st_size,
            modified=_mtime(p),
            extension=None if is_dir else (p.suffix[1:] or None),
        )

    def list_dir(self, server_id: str, rel: str = "") -> List[FileEntry]:
        target = self.registry.resolve_path(server_id, rel)
        if not target.exists():
            raise NotFound(f"Path {rel} does not exist", server_id=server_id)
        if not target.is_dir():
            raise ValidationFailed(f"Path {rel} is not a directory", server_id=server_id)
        try:
            entries = [self._entry(server_id, p) for p in target.iterdir()]
        except OSError as e:
            raise IOFailure.wrap(e, operation="list directory", path=rel, server_id=server_id)
        # directories first, then by name
        entries.sort(key=lambda e: (not e.isDirectory, e.name.lower()))
        return entries

    def read_file(self, server_id: str, rel: str) -> FileContent:
        target = self.registry.resolve_path(server_id, rel)
        if not target.exists():
            raise NotFound(f"File {rel} does not exist", server_id=server_id)
        if target.is_dir():
            raise ValidationFailed("Cannot read directory content", server_id=server_id)
        try:
            size = target.stat().st_size
            if size > MAX_READ_BYTES:
                raise ValidationFailed(f"File {rel} is too large to edit ({size} bytes)", server_id=server_id)
            content = target.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            raise IOFailure.wrap(e, operation="read file", path=rel, server_id=server_id)
        log.debug("Read %s of %s (%d bytes)", rel, server_id, size)
        return FileContent(name=target.name, path=self._rel(server_id, target), size=size,
                           modified=_mtime(target), content=content)

    def write_file(self, server_id: str, rel: str, content: str) -> FileEntry:
        target = self.registry.resolve_path(server_id, rel)
        if target == self.registry.layout(server_id).root.resolve() or target.is_dir():
            raise ValidationFailed(f"Path {rel} is a directory", server_id=server_id)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise IOFailure.wrap(e, operation="write file", path=rel, server_id=server_id)
        log.info("Wrote %s of %s", rel, server_id)
        return self._entry(server_id, target)

    def make_dir(self, server_id: str, rel: str) -> FileEntry:
        target = self.registry.resolve_path(server_id, rel)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure.wrap(e, operation="create directory", path=rel, server_id=server_id)
        return self._entry(server_id, target)

    def delete(self, server_id: str, rel: str) -> None:
        target = self.registry.resolve_path(server_id, rel)
        if target == self.registry.layout(server_id).root.resolve():
            raise InvalidPath("Cannot delete the server root directory", server_id=server_id)
        if not target.exists() and not target.is_symlink():
            raise NotFound(f"Path {rel} does not exist", server_id=server_id)
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            raise IOFailure.wrap(e, operation="delete", path=rel, server_id=server_id)
        log.info("Deleted %s of %s", rel, server_id)
