"""
steamcmd.py: SteamCMD bootstrap and per-instance server installs
--------------------------------------------------------------
Runs ``app_update`` for one instance at a time per id, turns the text
output into coarse progress events and reports a single terminal event.
"""

from __future__ import annotations
import os
import re
import shutil
import subprocess
import tarfile
import threading
import urllib.error
import urllib.request
import zipfile
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple
from .errors import PanelError, SubprocessFailure
from .events import INSTALL_PROGRESS
from .logging_setup import get_logger
from .models import InstallProgressEvent
from .settings import Settings

log = get_logger("reforger.panel.steamcmd")

EmitFn = Callable[[InstallProgressEvent], None]
FinishFn = Callable[[bool], None]

NOISE = [
    "Redirecting stderr to",
    "ILocalize::AddFile()",
    "WARNING: setlocale(",
    "Logging directory:",
    "UpdateUI: ",
    "Restarting steamcmd by",
    "Steam Console Client ",
    "type 'quit'",
    "Loading Steam API",
    "Waiting for client config",
    "aiting for user info",
]

_PROGRESS_RE = re.compile(r"progress:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)

OUTPUT_TAIL_LINES = 50


class ProgressTracker:
    """
    Maps SteamCMD output lines to a percentage that never goes down.

    Non-terminal progress is capped at 99; only a verified exit code 0
    produces 100.
    """

    def __init__(self):
        self.progress = 0
        self.task = "Starting installation..."

    def _raise_to(self, value: float) -> None:
        self.progress = max(self.progress, min(int(value), 99))

    def feed(self, line: str) -> bool:
        """Returns True when progress or task changed."""
        before = (self.progress, self.task)
        low = line.lower()

        if "logging in" in low or "connecting anonymously" in low or "authenticating" in low:
            self._raise_to(5)
            self.task = "Logging in to Steam..."

        m = _PROGRESS_RE.search(line)
        if "update state" in low:
            if m:
                self._raise_to(min(10 + float(m.group(1)) * 0.8, 90))
            else:
                self._raise_to(min(self.progress + 5, 90))
            self.task = "Downloading server files..."
        elif "downloading" in low:
            self._raise_to(min(self.progress + 1, 80))
            self.task = "Downloading server files..."

        if "validating" in low or "verifying" in low:
            self.task = "Validating installation..."

        if "success!" in low:
            self._raise_to(99)
            self.task = "Finalizing installation..."

        return (self.progress, self.task) != before


class SteamCMD:
    _bootstrap_lock = threading.Lock()

    def __init__(self, settings: Settings):
        self.settings = settings
        self.root = settings.steamcmd_root
        self._lock = threading.Lock()
        self._procs: Dict[str, subprocess.Popen] = {}
        self._aborted: set = set()

    @property
    def bin(self) -> Path:
        return self.root / ("steamcmd.exe" if os.name == "nt" else "steamcmd.sh")

    def is_installed(self) -> bool:
        return self.bin.is_file()

    # ------------------------------------------------------------------ #
    def ensure_installed(self) -> Path:
        """Download and unpack SteamCMD once; later calls are no-ops."""
        with self._bootstrap_lock:
            if self.is_installed():
                return self.bin
            log.info("SteamCMD not found at %s, installing...", self.bin)
            url = self.settings.steamcmd_url_windows if os.name == "nt" else self.settings.steamcmd_url_linux
            archive = self.root / url.rsplit("/", 1)[-1]
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                self._download(url, archive)
                self._extract(archive, self.root)
                if os.name != "nt":
                    self.bin.chmod(0o755)
            except (OSError, urllib.error.URLError, tarfile.TarError, zipfile.BadZipFile, ValueError) as e:
                log.error("SteamCMD bootstrap failed: %s", e)
                raise SubprocessFailure(f"SteamCMD bootstrap failed: {e}")
            finally:
                try:
                    archive.unlink()
                except OSError:
                    pass
            if not self.is_installed():
                raise SubprocessFailure(f"SteamCMD bootstrap failed: {self.bin} missing after extraction")
            log.info("SteamCMD installed successfully")
            return self.bin

    def _download(self, url: str, dest: Path) -> None:
        log.info("Downloading SteamCMD from %s", url)
        req = urllib.request.Request(url, headers={"User-Agent": "reforger-panel"})
        with urllib.request.urlopen(req, timeout=60) as response, open(dest, "wb") as fh:
            shutil.copyfileobj(response, fh)

    def _extract(self, archive: Path, dest: Path) -> None:
        root = dest.resolve()

        def _inside(name: str) -> bool:
            target = (root / name).resolve()
            return target == root or root in target.parents

        if archive.suffix == ".zip":
            with zipfile.ZipFile(archive) as zf:
                bad = [n for n in zf.namelist() if not _inside(n)]
                if bad:
                    raise ValueError(f"archive member escapes target directory: {bad[0]}")
                zf.extractall(dest)
            return

        with tarfile.open(archive, "r:gz") as tf:
            members = tf.getmembers()
            bad = [m.name for m in members if not _inside(m.name)]
            if bad:
                raise ValueError(f"archive member escapes target directory: {bad[0]}")
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, members=members, filter="data")
            else:
                tf.extractall(dest, members=members)

    # ------------------------------------------------------------------ #
    def build_command(self, app_id: int, install_dir: Path) -> List[str]:
        return [
            str(self.bin),
            "+force_install_dir", str(install_dir),
            "+login", "anonymous",
            "+app_update", str(app_id), "validate",
            "+quit",
        ]

    def is_busy(self, server_id: str) -> bool:
        with self._lock:
            return server_id in self._procs

    def abort(self, server_id: str) -> bool:
        """
        Kill the installer of ``server_id``; used when the instance is deleted.

        A job that has not spawned SteamCMD yet fails before spawning.
        Returns True if a running process was killed.
        """
        with self._lock:
            self._aborted.add(server_id)
            proc = self._procs.get(server_id)
        if proc is None:
            return False
        log.warning("Aborting SteamCMD for %s (pid=%s)", server_id, proc.pid)
        try:
            proc.kill()
        except OSError:
            pass
        return True

    def clear_abort(self, server_id: str) -> None:
        with self._lock:
            self._aborted.discard(server_id)

    def install(self, server_id: str, app_id: int, install_dir: Path, emit: EmitFn,
                on_finish: Optional[FinishFn] = None) -> bool:
        """
        Install or update ``app_id`` into ``install_dir``, blocking until SteamCMD exits.

        Progress events go to ``emit``. ``on_finish(success)`` runs before the
        terminal event is emitted, so observers of that event see the final
        instance state; if it raises, the job is reported as failed.
        Returns True on success.
        """
        tracker = ProgressTracker()
        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        emit(InstallProgressEvent(serverId=server_id, progress=tracker.progress, task=tracker.task))

        try:
            self.ensure_installed()
            rc, timed_out = self._run(server_id, app_id, install_dir, tracker, tail, emit)
        except PanelError as e:
            self.clear_abort(server_id)
            return self._finish_error(server_id, tracker, e.detail, None, tail, emit, on_finish)
        except OSError as e:
            self.clear_abort(server_id)
            log.error("Failed to start SteamCMD for %s: %s", server_id, e)
            return self._finish_error(server_id, tracker, f"Failed to start SteamCMD: {e}", None, tail, emit, on_finish)

        with self._lock:
            aborted = server_id in self._aborted
            self._aborted.discard(server_id)

        if aborted:
            return self._finish_error(server_id, tracker, "Installation aborted", rc, tail, emit, on_finish)
        if timed_out:
            return self._finish_error(
                server_id, tracker, f"Installation timed out after {self.settings.install_timeout:.0f}s",
                rc, tail, emit, on_finish)
        if rc != 0:
            log.error("SteamCMD exited with code %s for %s", rc, server_id)
            return self._finish_error(server_id, tracker, f"Installation failed with code {rc}", rc, tail, emit, on_finish)

        if on_finish is not None:
            try:
                on_finish(True)
            except PanelError as e:
                return self._finish_error(server_id, tracker, e.detail, rc, tail, emit, None)
        log.info("Server installation/update completed for %s", server_id)
        emit(InstallProgressEvent(serverId=server_id, progress=100,
                                  task="Installation completed successfully", error=None, exitCode=0))
        return True

    def _run(self, server_id: str, app_id: int, install_dir: Path, tracker: ProgressTracker,
             tail: Deque[str], emit: EmitFn) -> Tuple[int, bool]:
        install_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(app_id, install_dir)
        log.info("SteamCMD [%s]: %s", server_id, " ".join(cmd))

        with self._lock:
            # registered under the lock so abort() cannot slip in between
            if server_id in self._aborted:
                raise SubprocessFailure("Installation aborted", server_id=server_id)
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                    text=True, bufsize=1, errors="replace")
            self._procs[server_id] = proc

        timed_out = threading.Event()

        def _expire() -> None:
            if proc.poll() is None:
                log.error("SteamCMD for %s exceeded %ss, killing", server_id, self.settings.install_timeout)
                timed_out.set()
                proc.kill()

        watchdog = None
        if self.settings.install_timeout > 0:
            watchdog = threading.Timer(self.settings.install_timeout, _expire)
            watchdog.daemon = True
            watchdog.start()

        try:
            for line in proc.stdout:
                output = line.rstrip("\r\n")
                if not output:
                    continue
                tail.append(output)
                if any(m in output for m in NOISE):
                    continue
                if "Update state" in output or "Success" in output or "ERROR" in output:
                    log.info("[SteamCMD][%s] %s", server_id, output, extra={"server_id": server_id})
                else:
                    log.debug("[SteamCMD][%s] %s", server_id, output, extra={"server_id": server_id})
                if tracker.feed(output):
                    emit(InstallProgressEvent(serverId=server_id, progress=tracker.progress, task=tracker.task))
            rc = proc.wait()
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            with self._lock:
                self._procs.pop(server_id, None)
        return rc, timed_out.is_set()

    def _finish_error(self, server_id: str, tracker: ProgressTracker, task: str, rc: Optional[int],
                      tail: Deque[str], emit: EmitFn, on_finish: Optional[FinishFn]) -> bool:
        if on_finish is not None:
            try:
                on_finish(False)
            except PanelError as e:
                log.error("Cleanup after failed install of %s failed: %s", server_id, e.detail)
        emit(InstallProgressEvent(
            serverId=server_id, progress=tracker.progress, task=task, error=True,
            exitCode=rc, output="\n".join(tail),
        ))
        return False


def publish_to(broadcaster) -> EmitFn:
    def _emit(event: InstallProgressEvent) -> None:
        payload = event.model_dump(mode="json")
        # error stays in the payload even when null
        for key in ("exitCode", "output"):
            if payload.get(key) is None:
                payload.pop(key, None)
        broadcaster.publish(INSTALL_PROGRESS, event.serverId, payload)
    return _emit
