from __future__ import annotations
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from .cfg_generator import build_launch_args, generate_runtime_config
from .errors import (
    Conflict, ExecutableMissing, IOFailure, NotInstalled, NotRunning, PanelError, ValidationFailed,
)
from .events import CONSOLE_OUTPUT, INSTALL_PROGRESS, EventBroadcaster
from .files import InstanceFiles
from .log_reader import LogChunk, list_logs, log_path, read_from_cursor, read_tail
from .logging_setup import get_logger
from .models import ConfigUpdate, RuntimeStats, ServerConfig, ServerInstance
from .process_runner import KILL_GRACE, ProcessRunner
from .registry import InstanceRegistry
from .settings import Settings
from .steamcmd import SteamCMD, publish_to

log = get_logger("reforger.panel.orch")

CONSOLE_LOG = "console.log"


@dataclass
class InstallJob:
    server_id: str
    app_id: int
    future: Optional[Future] = None


class Orchestrator:
    """
    Entry point for every lifecycle operation.

    Transitions for one server id are serialized by a per-id lock; different
    ids never wait on each other. Long-running installs are handed to a
    worker pool and reported through the event broadcaster.
    """

    def __init__(self, settings: Settings, broadcaster: Optional[EventBroadcaster] = None):
        self.settings = settings
        self.events = broadcaster or EventBroadcaster(queue_size=settings.event_queue_size)
        self.runner = ProcessRunner(self.events, stop_timeout=settings.stop_timeout)
        self.steamcmd = SteamCMD(settings)
        self.registry = InstanceRegistry(settings, is_running=self.runner.is_running,
                                         is_installing=self.is_installing)
        self.files = InstanceFiles(self.registry)
        self._pool = ThreadPoolExecutor(max_workers=settings.install_workers, thread_name_prefix="install")
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._jobs_lock = threading.Lock()
        self._jobs: Dict[str, InstallJob] = {}

    def _lock_for(self, server_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(server_id)
            if lock is None:
                lock = self._locks[server_id] = threading.RLock()
            return lock

    def prepare_environment(self) -> None:
        self.settings.instances_root.mkdir(parents=True, exist_ok=True)
        ids = self.registry.reconcile()
        log.info("Loaded %d servers from %s", len(ids), self.settings.instances_root)
        if not self.steamcmd.is_installed():
            log.warning("SteamCMD not found at %s (will be installed on first install).", self.steamcmd.bin)

    def shutdown(self) -> None:
        log.info("Shutting down: stopping %d running server(s)", len(self.runner.running_ids()))
        self.runner.stop_all()
        self._pool.shutdown(wait=False)

    # ------------------------------------------------------------------ #
    def list_instances(self) -> List[ServerInstance]:
        return self.registry.list()

    def get_instance(self, server_id: str) -> ServerInstance:
        return self.registry.get(server_id)

    def create_instance(self, server_id: str, config: ServerConfig) -> ServerInstance:
        with self._lock_for(server_id):
            return self.registry.create(server_id, config)

    def update_config(self, server_id: str, update: ConfigUpdate) -> ServerConfig:
        with self._lock_for(server_id):
            return self.registry.update_config(server_id, update)

    def delete_instance(self, server_id: str) -> None:
        with self._lock_for(server_id):
            self.registry.require(server_id)
            self.runner.stop(server_id)
            job = self._job(server_id)
            if job is not None:
                self._abort_install(job)
            self.registry.delete(server_id)

    # ------------------------------------------------------------------ #
    def _job(self, server_id: str) -> Optional[InstallJob]:
        with self._jobs_lock:
            return self._jobs.get(server_id)

    def is_installing(self, server_id: str) -> bool:
        return self._job(server_id) is not None

    def install(self, server_id: str) -> InstallJob:
        """Accept an install/update job and return immediately; results arrive as events."""
        with self._lock_for(server_id):
            cfg = self.registry.get_config(server_id)
            if self.runner.is_running(server_id):
                raise Conflict(f"Server {server_id} is running; stop it before updating", server_id=server_id)
            job = InstallJob(server_id=server_id, app_id=cfg.steamAppId or self.settings.default_app_id)
            with self._jobs_lock:
                if server_id in self._jobs:
                    raise Conflict(f"Installation already in progress for {server_id}", server_id=server_id)
                self._jobs[server_id] = job
            try:
                self.registry.clear_installed(server_id)
                job.future = self._pool.submit(self._run_install, job)
            except (PanelError, RuntimeError):
                with self._jobs_lock:
                    self._jobs.pop(server_id, None)
                raise
        log.info("Accepted install of app %s for %s", job.app_id, server_id)
        return job

    def _run_install(self, job: InstallJob) -> bool:
        server_id = job.server_id

        def finish(success: bool) -> None:
            # job stays registered until the marker is written
            try:
                if success:
                    self.registry.mark_installed(server_id)
            finally:
                with self._jobs_lock:
                    self._jobs.pop(server_id, None)

        try:
            return self.steamcmd.install(
                server_id, job.app_id, self.registry.layout(server_id).root,
                publish_to(self.events), on_finish=finish,
            )
        except Exception:
            log.exception("Install job for %s crashed", server_id)
            with self._jobs_lock:
                self._jobs.pop(server_id, None)
            raise

    def _abort_install(self, job: InstallJob) -> None:
        server_id = job.server_id
        if job.future is not None and job.future.cancel():
            # never started
            with self._jobs_lock:
                self._jobs.pop(server_id, None)
            return
        self.steamcmd.abort(server_id)
        if job.future is None:
            return
        try:
            job.future.result(timeout=self.settings.stop_timeout + KILL_GRACE)
        except FuturesTimeout:
            raise Conflict(f"Installer for {server_id} did not stop; retry the delete", server_id=server_id)
        except Exception as e:
            log.debug("Aborted install of %s ended with %r", server_id, e)
        finally:
            self.steamcmd.clear_abort(server_id)

    def install_blocking(self, server_id: str, timeout: Optional[float] = None) -> bool:
        job = self.install(server_id)
        return bool(job.future.result(timeout=timeout))

    # ------------------------------------------------------------------ #
    def start(self, server_id: str) -> str:
        with self._lock_for(server_id):
            cfg = self.registry.get_config(server_id)
            if self.runner.is_running(server_id):
                return "already running"
            layout = self.registry.layout(server_id)
            if not self.registry.is_installed(server_id) or self.is_installing(server_id):
                raise NotInstalled(f"Server {server_id} is not installed. Please install it first.",
                                   server_id=server_id)
            if not layout.executable.is_file():
                raise ExecutableMissing(f"Server executable not found at {layout.executable}. "
                                        "Please check installation.", server_id=server_id)
            try:
                layout.profile.mkdir(parents=True, exist_ok=True)
                generate_runtime_config(cfg, layout.runtime_config)
            except OSError as e:
                raise IOFailure.wrap(e, operation="write runtime config", path=layout.runtime_config,
                                     server_id=server_id)
            except ValueError as e:
                raise ValidationFailed(f"Runtime config for {server_id} is invalid: {e}", server_id=server_id)
            cmd = [str(layout.executable)] + build_launch_args(cfg, layout)
            return self.runner.start(server_id, cmd, cwd=layout.root, log_file=layout.logs / CONSOLE_LOG)

    def stop(self, server_id: str) -> str:
        with self._lock_for(server_id):
            self.registry.require(server_id)
            return self.runner.stop(server_id)

    def stats(self, server_id: str) -> RuntimeStats:
        self.registry.require(server_id)
        stats = self.runner.get_stats(server_id)
        if not stats.running:
            raise NotRunning(f"Server {server_id} is not running", server_id=server_id)
        return stats

    # ------------------------------------------------------------------ #
    def subscribe_console(self, server_id: str, handler: Callable[[dict], None]) -> Callable[[], None]:
        return self.runner.subscribe_console(server_id, handler)

    def subscribe_install_progress(self, server_id: Optional[str],
                                   handler: Callable[[dict], None]) -> Callable[[], None]:
        return self.events.subscribe(INSTALL_PROGRESS, server_id, handler)

    def subscribe(self, server_id: str, handler: Callable[[str, dict], None]) -> Callable[[], None]:
        """Both channels for one id; ``handler`` gets (event name, payload)."""
        unsubs = [
            self.events.subscribe(INSTALL_PROGRESS, server_id, lambda p: handler(INSTALL_PROGRESS, p)),
            self.events.subscribe(CONSOLE_OUTPUT, server_id, lambda p: handler(CONSOLE_OUTPUT, p)),
        ]

        def unsubscribe() -> None:
            for u in unsubs:
                u()

        return unsubscribe

    # ------------------------------------------------------------------ #
    def steamcmd_status(self) -> dict:
        return {"installed": self.steamcmd.is_installed(), "path": str(self.steamcmd.bin)}

    def install_steamcmd(self) -> str:
        already = self.steamcmd.is_installed()
        self.steamcmd.ensure_installed()
        return "already installed" if already else "installed"

    def list_logs(self, server_id: str) -> List[dict]:
        return list_logs(self.registry.require(server_id).logs)

    def read_log(self, server_id: str, log_id: str, *, tail: int = 200,
                 cursor: Optional[str] = None, max_lines: int = 200) -> Optional[LogChunk]:
        path = log_path(self.registry.require(server_id).logs, log_id)
        if path is None:
            return None
        try:
            if cursor:
                return read_from_cursor(path, cursor=cursor, max_lines=max_lines)
            return read_tail(path, tail_lines=tail)
        except OSError as e:
            raise IOFailure.wrap(e, operation="read log", path=path, server_id=server_id)
