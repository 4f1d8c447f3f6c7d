from __future__ import annotations
import json
import logging
from logging.handlers import RotatingFileHandler
from .settings import Settings

PANEL_LOGGER = "reforger.panel"
PANEL_LOG_FILE = "panel.log"

# uvicorn installs its own handlers; we want its records in panel.log too
_FOREIGN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        server_id = getattr(record, "server_id", None)
        if server_id:
            payload["serverId"] = server_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _formatter(settings: Settings) -> logging.Formatter:
    if settings.log_json:
        return _JsonFormatter()
    return logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(settings: Settings) -> None:
    """Console on the root logger, rotating panel.log for our own and uvicorn's records.

    Safe to call more than once; handlers from a previous call are closed.
    """
    level = settings.log_level.upper()
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    fmt = _formatter(settings)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.setLevel(level)
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    file_handler = RotatingFileHandler(settings.logs_dir / PANEL_LOG_FILE, maxBytes=5_000_000,
                                       backupCount=3, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(level)

    for name in (PANEL_LOGGER,) + _FOREIGN_LOGGERS:
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        logger.propagate = True
    logging.getLogger(PANEL_LOGGER).addHandler(file_handler)
    for name in _FOREIGN_LOGGERS[1:]:
        logging.getLogger(name).addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
