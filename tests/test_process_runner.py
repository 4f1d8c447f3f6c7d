"""
Tests for ProcessRunner: spawn, console fan-out, stop escalation, stats.
"""

import time

import pytest

from reforger_panel.errors import SubprocessFailure
from reforger_panel.process_runner import KILL_GRACE, ProcessRunner

from conftest import (
    SERVER_CRASHES, SERVER_IGNORES_TERM, SERVER_LEAVES_CHILD, SERVER_OK, wait_for, write_script,
)


@pytest.fixture
def runner(broadcaster):
    r = ProcessRunner(broadcaster, stop_timeout=1.0)
    yield r
    r.stop_all(timeout=0.5)


def _lines(events):
    return [e["data"] for e in events]


class TestStart:
    def test_start_streams_console_output(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_OK)
        log_file = tmp_path / "logs" / "console.log"
        got = []
        runner.subscribe_console("alpha", got.append)

        assert runner.start("alpha", [str(exe), "-a", "-b", "-port=2302"], log_file=log_file) == "started"
        assert runner.is_running("alpha")
        assert wait_for(lambda: len(got) >= 2)

        lines = _lines(got)
        assert "Server ready on port -port=2302" in lines
        assert "[stderr] warming up" in lines
        assert all(e["serverId"] == "alpha" for e in got)
        assert wait_for(lambda: "warming up" in log_file.read_text(encoding="utf-8"))

    def test_second_start_is_noop(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_OK)
        assert runner.start("alpha", [str(exe)]) == "started"
        pid = runner._get("alpha").pid
        assert runner.start("alpha", [str(exe)]) == "already running"
        assert runner._get("alpha").pid == pid
        assert runner.running_ids() == ["alpha"]

    def test_missing_executable_raises(self, runner, tmp_path):
        with pytest.raises(SubprocessFailure):
            runner.start("alpha", [str(tmp_path / "nope")])
        assert not runner.is_running("alpha")

    def test_crash_clears_handle_and_reports_exit_code(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_CRASHES)
        got = []
        runner.subscribe_console("alpha", got.append)

        runner.start("alpha", [str(exe)])

        assert wait_for(lambda: not runner.is_running("alpha"))
        assert wait_for(lambda: "Server process exited with code 3" in _lines(got))
        lines = _lines(got)
        # exit line comes after all output
        assert lines.index("[stderr] boom") < lines.index("Server process exited with code 3")

    def test_restart_after_crash(self, runner, tmp_path):
        crash = write_script(tmp_path / "crash", SERVER_CRASHES)
        ok = write_script(tmp_path / "ok", SERVER_OK)
        runner.start("alpha", [str(crash)])
        assert wait_for(lambda: not runner.is_running("alpha"))
        assert runner.start("alpha", [str(ok)]) == "started"

    def test_exited_process_is_not_running_while_pipes_linger(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_LEAVES_CHILD)
        ok = write_script(tmp_path / "ok", SERVER_OK)
        runner.start("alpha", [str(exe)])

        assert wait_for(lambda: not runner.is_running("alpha"), timeout=1.5)
        # readers still hold the pipes, so the handle has not been dropped yet
        assert runner._get("alpha") is not None
        assert runner.running_ids() == []
        assert runner.get_stats("alpha").running is False

        assert runner.start("alpha", [str(ok)]) == "started"
        assert runner.is_running("alpha")

    def test_stop_of_exited_process_is_not_running(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_LEAVES_CHILD)
        runner.start("alpha", [str(exe)])
        assert wait_for(lambda: not runner.is_running("alpha"), timeout=1.5)

        assert runner.stop("alpha") == "not running"
        assert runner._get("alpha") is None


class TestStop:
    def test_stop_graceful(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_OK)
        got = []
        runner.subscribe_console("alpha", got.append)
        runner.start("alpha", [str(exe)])

        assert runner.stop("alpha") == "stopped"

        assert not runner.is_running("alpha")
        assert wait_for(lambda: "Server process exited with code -15" in _lines(got))
        lines = _lines(got)
        assert lines.index("Stopping server...") < lines.index("Server process exited with code -15")

    def test_stop_is_idempotent(self, runner, tmp_path):
        assert runner.stop("alpha") == "not running"
        exe = write_script(tmp_path / "server", SERVER_OK)
        runner.start("alpha", [str(exe)])
        assert runner.stop("alpha") == "stopped"
        assert runner.stop("alpha") == "not running"

    def test_stop_escalates_to_kill(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_IGNORES_TERM)
        got = []
        runner.subscribe_console("alpha", got.append)
        runner.start("alpha", [str(exe)])
        assert wait_for(lambda: "ignoring TERM" in _lines(got))

        started = time.monotonic()
        assert runner.stop("alpha", timeout=0.5) == "stopped"
        elapsed = time.monotonic() - started

        assert elapsed < 0.5 + KILL_GRACE
        assert not runner.is_running("alpha")
        assert wait_for(lambda: "Server process exited with code -9" in _lines(got))

    def test_stop_all(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_OK)
        runner.start("alpha", [str(exe)])
        runner.start("bravo", [str(exe)])
        runner.stop_all()
        assert runner.running_ids() == []


class TestStats:
    def test_stats_of_running_process(self, runner, tmp_path):
        exe = write_script(tmp_path / "server", SERVER_OK)
        runner.start("alpha", [str(exe)])

        stats = runner.get_stats("alpha")

        assert stats.running is True
        assert stats.pid == runner._get("alpha").pid
        assert stats.uptime >= 0
        assert stats.cpu >= 0
        assert stats.memory > 0
        assert stats.players == []
        assert stats.error is None

    def test_stats_when_not_running(self, runner):
        stats = runner.get_stats("alpha")
        assert stats.running is False
        assert stats.pid is None
