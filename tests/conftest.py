"""
Shared fixtures: temp settings, fake SteamCMD and fake server executables.

The fakes are small /bin/sh scripts, so these tests only run on POSIX.
"""

import logging
import os
import stat
import time
from pathlib import Path

import pytest

from reforger_panel.events import EventBroadcaster
from reforger_panel.fs_layout import build_layout
from reforger_panel.models import ServerConfig
from reforger_panel.orchestrator import Orchestrator
from reforger_panel.settings import Settings

if os.name == "nt":
    collect_ignore_glob = ["test_*.py"]


SERVER_OK = """#!/bin/sh
echo "Server ready on port $3"
echo "warming up" >&2
exec sleep 30
"""

SERVER_IGNORES_TERM = """#!/bin/sh
trap '' TERM
echo "ignoring TERM"
while true; do sleep 0.1; done
"""

SERVER_CRASHES = """#!/bin/sh
echo "boom" >&2
exit 3
"""

# exits at once but a background child keeps stdout/stderr open for a while
SERVER_LEAVES_CHILD = """#!/bin/sh
sleep 3 &
echo "boom"
exit 3
"""

STEAMCMD_OK = """#!/bin/sh
dir="$2"
echo "Redirecting stderr to '/tmp/stderr.txt'"
echo "Connecting anonymously to Steam Public...OK"
echo "Logging in user 'anonymous' to Steam Public...OK"
echo " Update state (0x61) downloading, progress: 25.00 (100 / 400)"
echo " Update state (0x61) downloading, progress: 75.00 (300 / 400)"
echo " Update state (0x81) verifying update, progress: 90.00 (360 / 400)"
echo "Success! App '$6' fully installed."
cat > "$dir/ArmaReforgerServer" <<'EOS'
#!/bin/sh
echo "Server ready"
exec sleep 30
EOS
chmod +x "$dir/ArmaReforgerServer"
exit 0
"""

STEAMCMD_FAILS = """#!/bin/sh
echo "Connecting anonymously to Steam Public...OK"
echo " Update state (0x61) downloading, progress: 10.00 (40 / 400)"
echo "ERROR! Failed to install app '$6' (No subscription)"
exit 8
"""

STEAMCMD_HANGS = """#!/bin/sh
echo "Connecting anonymously to Steam Public...OK"
exec sleep 30
"""


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


ALPHA = ServerConfig(name="Alpha", port=2302, maxPlayers=16, steamAppId=1874880)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        instances_root=tmp_path / "servers",
        steamcmd_root=tmp_path / "steamcmd",
        logs_dir=tmp_path / "logs",
        stop_timeout=1.0,
        install_timeout=30,
        steamcmd_url_linux="http://127.0.0.1:9/steamcmd_linux.tar.gz",
    )


@pytest.fixture
def broadcaster():
    return EventBroadcaster(queue_size=100)


@pytest.fixture
def orch(settings):
    o = Orchestrator(settings)
    o.prepare_environment()
    yield o
    o.shutdown()


@pytest.fixture
def fake_steamcmd(settings):
    """Install a fake steamcmd.sh; call with a script body, defaults to a successful install."""
    def _install(body: str = STEAMCMD_OK) -> Path:
        return write_script(settings.steamcmd_root / "steamcmd.sh", body)
    return _install


@pytest.fixture
def installed(orch, settings):
    """Create an instance that looks installed, with a fake server binary of choice."""
    def _make(server_id: str = "alpha", body: str = SERVER_OK, config: ServerConfig = ALPHA):
        orch.create_instance(server_id, config)
        layout = build_layout(settings, server_id)
        write_script(layout.executable, body)
        orch.registry.mark_installed(server_id)
        return layout
    return _make


@pytest.fixture
def restore_logging():
    """Undo setup_logging() side effects on the global logger tree."""
    names = ("", "reforger.panel", "uvicorn", "uvicorn.error", "uvicorn.access")
    saved = {n: (list(logging.getLogger(n).handlers), logging.getLogger(n).level,
                 logging.getLogger(n).propagate) for n in names}
    yield
    for n, (handlers, level, propagate) in saved.items():
        logger = logging.getLogger(n)
        for h in list(logger.handlers):
            if h not in handlers:
                logger.removeHandler(h)
                h.close()
        for h in handlers:
            if h not in logger.handlers:
                logger.addHandler(h)
        logger.setLevel(level)
        logger.propagate = propagate
