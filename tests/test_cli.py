"""
Tests for the command line entry point.
"""

import json

import pytest

from reforger_panel.cli import main
from reforger_panel.registry import InstanceRegistry

from conftest import ALPHA, STEAMCMD_FAILS, STEAMCMD_OK


@pytest.fixture
def panel_env(settings, monkeypatch, restore_logging):
    monkeypatch.setenv("INSTANCES_ROOT", str(settings.instances_root))
    monkeypatch.setenv("STEAMCMD_ROOT", str(settings.steamcmd_root))
    monkeypatch.setenv("PANEL_LOGS_DIR", str(settings.logs_dir))
    monkeypatch.setenv("INSTALL_TIMEOUT", "30")
    InstanceRegistry(settings).create("alpha", ALPHA)
    return settings


def test_list_prints_instances(panel_env, capsys):
    assert main(["list"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert [i["id"] for i in data] == ["alpha"]


def test_install_prints_progress_until_completed(panel_env, fake_steamcmd, capsys):
    fake_steamcmd(STEAMCMD_OK)
    assert main(["install", "alpha"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[-1] == "[100%] Installation completed successfully"
    assert InstanceRegistry(panel_env).is_installed("alpha")


def test_install_failure_exit_code(panel_env, fake_steamcmd, capsys):
    fake_steamcmd(STEAMCMD_FAILS)
    assert main(["install", "alpha"]) == 1
    assert "Installation failed with code" in capsys.readouterr().out.splitlines()[-1]


def test_install_unknown_instance(panel_env, capsys):
    assert main(["install", "ghost"]) == 1
    assert "NotFound: " in capsys.readouterr().err
