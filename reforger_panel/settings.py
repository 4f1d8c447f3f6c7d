from __future__ import annotations
from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    instances_root: Path = Field(default=Path("data/servers"), alias="INSTANCES_ROOT")
    steamcmd_root: Path = Field(default=Path("data/steamcmd"), alias="STEAMCMD_ROOT")
    logs_dir: Path = Field(default=Path("data/logs"), alias="PANEL_LOGS_DIR")

    steamcmd_url_linux: str = Field(
        default="https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz",
        alias="STEAMCMD_URL_LINUX",
    )
    steamcmd_url_windows: str = Field(
        default="https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip",
        alias="STEAMCMD_URL_WINDOWS",
    )

    default_app_id: int = Field(default=1874880, alias="DEFAULT_APP_ID")
    server_executable: Optional[str] = Field(default=None, alias="SERVER_EXECUTABLE")

    stop_timeout: float = Field(default=5.0, gt=0, alias="STOP_TIMEOUT")
    # 0 disables the installer watchdog
    install_timeout: float = Field(default=7200.0, ge=0, alias="INSTALL_TIMEOUT")
    install_workers: int = Field(default=4, ge=1, alias="INSTALL_WORKERS")
    event_queue_size: int = Field(default=1000, ge=1, alias="EVENT_QUEUE_SIZE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=5000, alias="API_PORT")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)
