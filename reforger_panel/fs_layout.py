from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from .settings import Settings

INSTALLED_MARKER = ".installed"
CONFIG_FILE = "config.json"
RUNTIME_CONFIG_FILE = "serverConfig.json"

@dataclass(frozen=True)
class Layout:
    root: Path
    config_json: Path
    config_dir: Path
    mods: Path
    logs: Path
    profile: Path
    runtime_config: Path
    installed_marker: Path
    executable: Path

def default_executable_name() -> str:
    return "ArmaReforgerServer.exe" if os.name == "nt" else "ArmaReforgerServer"

def build_layout(settings: Settings, server_id: str, executable: Optional[str] = None) -> Layout:
    root = settings.instances_root / server_id
    exe = executable or settings.server_executable or default_executable_name()
    return Layout(
        root=root,
        config_json=root / CONFIG_FILE,
        config_dir=root / "config",
        mods=root / "mods",
        logs=root / "logs",
        profile=root / "profile",
        runtime_config=root / RUNTIME_CONFIG_FILE,
        installed_marker=root / INSTALLED_MARKER,
        executable=root / exe,
    )

def ensure_dirs(layout: Layout) -> None:
    for p in [layout.root, layout.config_dir, layout.mods, layout.logs]:
        p.mkdir(parents=True, exist_ok=True)
