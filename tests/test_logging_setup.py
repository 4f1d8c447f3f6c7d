import json
import logging

from reforger_panel.logging_setup import PANEL_LOG_FILE, get_logger, setup_logging


def test_json_records_go_to_panel_log(settings, restore_logging):
    settings.log_json = True
    setup_logging(settings)

    get_logger("reforger.panel.test").info("hello %s", "world", extra={"server_id": "alpha"})
    for h in logging.getLogger("reforger.panel").handlers:
        h.flush()

    lines = (settings.logs_dir / PANEL_LOG_FILE).read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["msg"] == "hello world"
    assert record["level"] == "INFO"
    assert record["logger"] == "reforger.panel.test"
    assert record["serverId"] == "alpha"


def test_setup_twice_does_not_duplicate_handlers(settings, restore_logging):
    setup_logging(settings)
    setup_logging(settings)
    assert len(logging.getLogger("reforger.panel").handlers) == 1
    assert len(logging.getLogger().handlers) == 1
