from __future__ import annotations
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
import psutil
from .errors import SubprocessFailure
from .events import CONSOLE_OUTPUT, EventBroadcaster
from .logging_setup import get_logger
from .models import RuntimeStats

log = get_logger("reforger.panel.proc")

READER_JOIN_TIMEOUT = 2.0
KILL_GRACE = 5.0

@dataclass
class ProcessHandle:
    server_id: str
    proc: subprocess.Popen
    started_at: float
    exited: threading.Event = field(default_factory=threading.Event)
    readers: List[threading.Thread] = field(default_factory=list)
    stopping: bool = False

    @property
    def pid(self) -> int:
        return self.proc.pid

def _open_log_file(path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "a", encoding="utf-8", buffering=1)


class ProcessRunner:
    """
    Live-handle table for game-server processes, at most one per server id.

    Lifecycle serialization per id is the caller's job; this class only
    guards its own table.
    """

    def __init__(self, broadcaster: EventBroadcaster, stop_timeout: float = 5.0):
        self.broadcaster = broadcaster
        self.stop_timeout = stop_timeout
        self._lock = threading.Lock()
        self._handles: Dict[str, ProcessHandle] = {}

    def _get(self, server_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(server_id)

    def _live(self, server_id: str) -> Optional[ProcessHandle]:
        """The handle of a process that has not exited yet; a dead one awaiting cleanup counts as gone."""
        h = self._get(server_id)
        if h is None or h.proc.poll() is not None:
            return None
        return h

    def is_running(self, server_id: str) -> bool:
        return self._live(server_id) is not None

    def running_ids(self) -> List[str]:
        with self._lock:
            handles = list(self._handles.values())
        return sorted(h.server_id for h in handles if h.proc.poll() is None)

    def _await_cleanup(self, server_id: str, h: ProcessHandle) -> None:
        # the watcher joins both readers before it drops the handle
        if not h.exited.wait(2 * READER_JOIN_TIMEOUT + 1.0):
            log.warning("Watcher of %s did not finish cleanup in time; dropping handle", server_id)
        self._drop(server_id, h)

    def _console(self, server_id: str, text: str) -> None:
        self.broadcaster.publish(CONSOLE_OUTPUT, server_id, {"serverId": server_id, "data": text})

    def subscribe_console(self, server_id: str, handler: Callable[[dict], None]) -> Callable[[], None]:
        return self.broadcaster.subscribe(CONSOLE_OUTPUT, server_id, handler)

    # ------------------------------------------------------------------ #
    def start(self, server_id: str, cmd: List[str], *, cwd: Optional[Path] = None,
              log_file: Optional[Path] = None) -> str:
        existing = self._get(server_id)
        if existing is not None:
            if existing.proc.poll() is None:
                return "already running"
            self._await_cleanup(server_id, existing)

        log.info("Starting %s: %s", server_id, " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd, cwd=str(cwd) if cwd else None,
                stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                text=True, bufsize=1, errors="replace",
            )
        except OSError as e:
            log.error("Failed to start %s: %s", server_id, e)
            raise SubprocessFailure(f"Failed to start server {server_id}: {e}", server_id=server_id)

        h = ProcessHandle(server_id=server_id, proc=proc, started_at=time.time())
        with self._lock:
            self._handles[server_id] = h

        fh = None
        if log_file:
            try:
                fh = _open_log_file(log_file)
            except OSError:
                log.exception("Cannot open console log %s for appending", log_file)
        write_lock = threading.Lock()

        h.readers = [
            threading.Thread(target=self._stream_reader, args=(h, proc.stdout, False, fh, write_lock),
                             name=f"{server_id}-stdout", daemon=True),
            threading.Thread(target=self._stream_reader, args=(h, proc.stderr, True, fh, write_lock),
                             name=f"{server_id}-stderr", daemon=True),
        ]
        for t in h.readers:
            t.start()
        threading.Thread(target=self._watch, args=(h, fh), name=f"{server_id}-watch", daemon=True).start()
        log.info("Server %s started (pid=%s)", server_id, proc.pid)
        return "started"

    def _stream_reader(self, h: ProcessHandle, pipe, is_stderr: bool, fh, write_lock: threading.Lock) -> None:
        """Reads one pipe of the server process and routes lines to log, file and subscribers."""
        try:
            for line in iter(pipe.readline, ""):
                line = line.rstrip("\r\n")
                if is_stderr:
                    log.warning("[Server %s] %s", h.server_id, line, extra={"server_id": h.server_id})
                    out_line = f"[stderr] {line}"
                else:
                    log.info("[Server %s] %s", h.server_id, line, extra={"server_id": h.server_id})
                    out_line = line
                if fh:
                    with write_lock:
                        fh.write(out_line + "\n")
                self._console(h.server_id, out_line)
        except (OSError, ValueError):
            log.exception("Error while reading output of %s", h.server_id)
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _watch(self, h: ProcessHandle, fh) -> None:
        rc = h.proc.wait()
        for t in h.readers:
            t.join(timeout=READER_JOIN_TIMEOUT)
        if h.stopping:
            log.info("Server %s exited with code %s", h.server_id, rc)
        else:
            log.warning("Server %s exited unexpectedly with code %s", h.server_id, rc)
        final = f"Server process exited with code {rc}"
        if fh:
            try:
                fh.write(final + "\n")
                fh.close()
            except (OSError, ValueError):
                pass
        self._console(h.server_id, final)
        self._drop(h.server_id, h)
        h.exited.set()

    def _drop(self, server_id: str, h: ProcessHandle) -> None:
        with self._lock:
            if self._handles.get(server_id) is h:
                del self._handles[server_id]

    # ------------------------------------------------------------------ #
    def stop(self, server_id: str, timeout: Optional[float] = None) -> str:
        """SIGTERM, wait up to ``timeout``, then SIGKILL. Always clears the handle."""
        h = self._get(server_id)
        if h is None:
            return "not running"
        if h.proc.poll() is not None:
            self._await_cleanup(server_id, h)
            return "not running"
        timeout = self.stop_timeout if timeout is None else timeout
        h.stopping = True
        self._console(server_id, "Stopping server...")
        log.info("Stopping %s (pid=%s)", server_id, h.pid)
        try:
            h.proc.terminate()
        except OSError as e:
            log.debug("terminate(%s) failed: %s", server_id, e)

        try:
            h.proc.wait(timeout)
        except subprocess.TimeoutExpired:
            log.warning("Killing %s (pid=%s) after %.1fs", server_id, h.pid, timeout)
            try:
                h.proc.kill()
            except OSError as e:
                log.error("Error force killing server %s: %s", server_id, e)
            try:
                h.proc.wait(KILL_GRACE)
            except subprocess.TimeoutExpired:
                log.error("Server %s did not exit after kill", server_id)
        self._await_cleanup(server_id, h)
        return "stopped"

    def stop_all(self, timeout: Optional[float] = None) -> None:
        threads = [
            threading.Thread(target=self.stop, args=(sid, timeout), daemon=True)
            for sid in self.running_ids()
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    # ------------------------------------------------------------------ #
    def get_stats(self, server_id: str) -> RuntimeStats:
        h = self._live(server_id)
        if h is None:
            return RuntimeStats(running=False)
        try:
            p = psutil.Process(h.pid)
            with p.oneshot():
                mem = p.memory_info().rss
                created = p.create_time()
                children = p.children(recursive=True)
            cpu = p.cpu_percent(interval=0.1)
            for c in children:
                try:
                    mem += c.memory_info().rss
                except psutil.Error:
                    pass
            return RuntimeStats(
                running=True,
                pid=h.pid,
                uptime=round(max(0.0, time.time() - created), 1),
                cpu=round(cpu, 1),
                memory=round(mem / (1024 * 1024), 1),
                players=[],
            )
        except psutil.Error as e:
            log.error("Error getting stats for server %s: %s", server_id, e)
            return RuntimeStats(running=True, pid=h.pid, error=str(e))
