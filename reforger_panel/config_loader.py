from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict
from .models import ServerConfig
from .logging_setup import get_logger

log = get_logger("reforger.panel.config")

def load_json(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Config root must be an object")
    return data

def save_json(path: Path, data: Dict[str, Any]) -> None:
    """Write via a temp file and rename so readers never see a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)

def load_config(config_path: Path) -> ServerConfig:
    log.debug("Loading config: %s", config_path)
    return ServerConfig.model_validate(load_json(config_path))

def save_config(config_path: Path, cfg: ServerConfig) -> None:
    save_json(config_path, cfg.model_dump(mode="json", exclude_none=True))
    log.info("Saved config: %s", config_path)
