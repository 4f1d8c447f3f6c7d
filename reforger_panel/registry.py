"""
Instance registry.

The directory tree under ``instances_root`` is the only durable state: one
subdirectory per instance, named by its id, holding ``config.json``. The
in-memory id set is rebuilt from disk by ``reconcile`` and re-checked on
every read. ``isInstalled``/``isRunning``/``isInstalling`` are computed at
read time, never stored.
"""

from __future__ import annotations
import shutil
import threading
from pathlib import Path
from typing import Callable, List, Optional, Set
from pydantic import ValidationError
from .config_loader import load_config, save_config
from .errors import Conflict, InvalidPath, IOFailure, NotFound, ValidationFailed
from .fs_layout import Layout, build_layout, ensure_dirs
from .logging_setup import get_logger
from .models import ConfigUpdate, ServerConfig, ServerInstance, is_valid_instance_id
from .settings import Settings

log = get_logger("reforger.panel.registry")

StateCheck = Callable[[str], bool]

def _never(_server_id: str) -> bool:
    return False


class InstanceRegistry:
    def __init__(self, settings: Settings, *, is_running: StateCheck = _never, is_installing: StateCheck = _never):
        self.settings = settings
        self.root = settings.instances_root
        self.is_running = is_running
        self.is_installing = is_installing
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def layout(self, server_id: str) -> Layout:
        return build_layout(self.settings, server_id)

    # ------------------------------------------------------------------ #
    def reconcile(self) -> List[str]:
        """Rebuild the known id set from the instance directories on disk."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            found = {
                p.name for p in self.root.iterdir()
                if p.is_dir() and is_valid_instance_id(p.name)
            }
        except OSError as e:
            raise IOFailure.wrap(e, operation="scan instances", path=self.root)
        with self._lock:
            added = found - self._ids
            removed = self._ids - found
            self._ids = found
        if added or removed:
            log.info("Reconciled instances: %d known (+%d/-%d)", len(found), len(added), len(removed))
        return sorted(found)

    def exists(self, server_id: str) -> bool:
        if not is_valid_instance_id(server_id):
            return False
        with self._lock:
            known = server_id in self._ids
        if known and not self.layout(server_id).root.is_dir():
            # removed behind our back
            with self._lock:
                self._ids.discard(server_id)
            return False
        if not known and self.layout(server_id).root.is_dir():
            with self._lock:
                self._ids.add(server_id)
            return True
        return known

    def require(self, server_id: str) -> Layout:
        if not self.exists(server_id):
            raise NotFound(f"Server {server_id} not found", server_id=server_id)
        return self.layout(server_id)

    def is_installed(self, server_id: str) -> bool:
        return self.layout(server_id).installed_marker.is_file()

    # ------------------------------------------------------------------ #
    def create(self, server_id: str, config: ServerConfig) -> ServerInstance:
        if not is_valid_instance_id(server_id):
            raise ValidationFailed(f"Invalid server id {server_id!r}", server_id=server_id)
        layout = self.layout(server_id)
        with self._lock:
            if server_id in self._ids or layout.root.exists():
                raise Conflict(f"Server with ID '{server_id}' already exists", server_id=server_id)
            try:
                ensure_dirs(layout)
                save_config(layout.config_json, config)
            except OSError as e:
                shutil.rmtree(layout.root, ignore_errors=True)
                raise IOFailure.wrap(e, operation="create instance", path=layout.root, server_id=server_id)
            self._ids.add(server_id)
        log.info("Created server %s (%s)", server_id, config.name)
        return self.get(server_id)

    def get(self, server_id: str) -> ServerInstance:
        layout = self.require(server_id)
        cfg = self._read_config(server_id, layout)
        return self._instance(server_id, cfg.model_dump(exclude_none=True))

    def get_config(self, server_id: str) -> ServerConfig:
        return self._read_config(server_id, self.require(server_id))

    def list(self) -> List[ServerInstance]:
        out: List[ServerInstance] = []
        for server_id in self.reconcile():
            layout = self.layout(server_id)
            try:
                cfg = self._read_config(server_id, layout)
                out.append(self._instance(server_id, cfg.model_dump(exclude_none=True)))
            except (IOFailure, ValidationFailed) as e:
                log.warning("Error loading server %s: %s", server_id, e.detail)
                out.append(self._instance(server_id, {"name": server_id}, error=e.detail))
        return out

    def update_config(self, server_id: str, update: ConfigUpdate) -> ServerConfig:
        layout = self.require(server_id)
        with self._lock:
            current = self._read_config(server_id, layout)
            merged = current.model_dump()
            merged.update(update.model_dump(exclude_unset=True))
            try:
                cfg = ServerConfig.model_validate(merged)
            except ValidationError as e:
                raise ValidationFailed(f"Invalid config for {server_id}: {e}", server_id=server_id)
            try:
                save_config(layout.config_json, cfg)
            except OSError as e:
                raise IOFailure.wrap(e, operation="write config", path=layout.config_json, server_id=server_id)
        log.info("Updated config of server %s", server_id)
        return cfg

    def delete(self, server_id: str) -> None:
        """Remove the instance tree. Stopping the process is the caller's job."""
        layout = self.require(server_id)
        with self._lock:
            try:
                shutil.rmtree(layout.root)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise IOFailure.wrap(e, operation="remove instance", path=layout.root, server_id=server_id)
            self._ids.discard(server_id)
        log.info("Deleted server %s", server_id)

    def mark_installed(self, server_id: str) -> None:
        marker = self.layout(server_id).installed_marker
        try:
            marker.write_text("ok\n", encoding="utf-8")
        except OSError as e:
            raise IOFailure.wrap(e, operation="write install marker", path=marker, server_id=server_id)

    def clear_installed(self, server_id: str) -> None:
        marker = self.layout(server_id).installed_marker
        try:
            marker.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise IOFailure.wrap(e, operation="remove install marker", path=marker, server_id=server_id)

    def resolve_path(self, server_id: str, relative: Optional[str]) -> Path:
        """Resolve ``relative`` under the instance root; anything outside is rejected."""
        root = self.require(server_id).root.resolve()
        rel = (relative or "").replace("\\", "/").lstrip("/")
        target = (root / rel).resolve()
        if target != root and root not in target.parents:
            log.warning("Rejected path %r for server %s", relative, server_id)
            raise InvalidPath(f"Invalid path: {relative}", server_id=server_id)
        return target

    # ------------------------------------------------------------------ #
    def _read_config(self, server_id: str, layout: Layout) -> ServerConfig:
        try:
            return load_config(layout.config_json)
        except OSError as e:
            raise IOFailure.wrap(e, operation="read config", path=layout.config_json, server_id=server_id)
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            raise ValidationFailed(f"Unreadable config for {server_id}: {e}", server_id=server_id)

    def _instance(self, server_id: str, config: dict, error: Optional[str] = None) -> ServerInstance:
        return ServerInstance(
            id=server_id,
            config=config,
            isInstalled=self.is_installed(server_id),
            isRunning=self.is_running(server_id),
            isInstalling=self.is_installing(server_id),
            error=error,
        )
