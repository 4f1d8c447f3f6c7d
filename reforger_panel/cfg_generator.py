from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from jsonschema import validate, ValidationError
from .fs_layout import Layout
from .models import ServerConfig
from .logging_setup import get_logger

log = get_logger("reforger.panel.cfg")

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "server_config.schema.json"
_schema_cache: Optional[Dict[str, Any]] = None

def _schema() -> Dict[str, Any]:
    global _schema_cache
    if _schema_cache is None:
        _schema_cache = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    return _schema_cache

def validate_runtime_config(data: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    try:
        validate(instance=data, schema=_schema())
        return True, None
    except ValidationError as e:
        location = "/".join(str(p) for p in getattr(e, "path", []))
        return False, f"JSON Schema Validation Error: {e.message} (at {location or '<root>'})"

def build_runtime_config(cfg: ServerConfig) -> Dict[str, Any]:
    return {
        "bindAddress": "",
        "bindPort": cfg.port,
        "publicAddress": "",
        "publicPort": cfg.port,
        "game": {
            "name": cfg.name,
            "password": cfg.password or "",
            "passwordAdmin": cfg.adminPassword or "",
            "maxPlayers": cfg.maxPlayers,
            "visible": True,
        },
    }

def generate_runtime_config(cfg: ServerConfig, out_path: Path) -> Path:
    """Render and write serverConfig.json; raises ValueError if it fails the schema."""
    data = build_runtime_config(cfg)
    ok, error = validate_runtime_config(data)
    if not ok:
        raise ValueError(error)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    log.info("Generated runtime config: %s", out_path)
    return out_path

def build_launch_args(cfg: ServerConfig, layout: Layout) -> List[str]:
    args = [
        f"-config={layout.runtime_config}",
        f"-profile={layout.profile}",
        f"-port={cfg.port}",
        f"-maxPlayers={cfg.maxPlayers}",
    ]
    if cfg.password:
        args.append(f"-password={cfg.password}")
    if cfg.adminPassword:
        args.append(f"-adminPassword={cfg.adminPassword}")
    return args
