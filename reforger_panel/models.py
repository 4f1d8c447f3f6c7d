from __future__ import annotations
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

def is_valid_instance_id(value: str) -> bool:
    return bool(INSTANCE_ID_RE.match(value or ""))


class ServerConfig(BaseModel):
    """Declared configuration of one instance, stored as config.json."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    port: int = Field(default=2302, ge=1, le=65535)
    maxPlayers: int = Field(default=32, ge=1, le=256)
    steamAppId: int = Field(default=1874880, gt=0)
    password: Optional[str] = None
    adminPassword: Optional[str] = None


class ConfigUpdate(BaseModel):
    """Partial update; only fields that were sent are merged."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    maxPlayers: Optional[int] = Field(default=None, ge=1, le=256)
    steamAppId: Optional[int] = Field(default=None, gt=0)
    password: Optional[str] = None
    adminPassword: Optional[str] = None


class CreateInstanceRequest(BaseModel):
    id: str
    config: ServerConfig

    @field_validator("id")
    @classmethod
    def _check_id(cls, v: str) -> str:
        if not is_valid_instance_id(v):
            raise ValueError("id may only contain letters, digits, '-' and '_' (max 64 chars)")
        return v


class ServerInstance(BaseModel):
    id: str
    config: Dict[str, Any]
    isInstalled: bool = False
    isRunning: bool = False
    isInstalling: bool = False
    error: Optional[str] = None


class InstallProgressEvent(BaseModel):
    serverId: str
    progress: int = Field(..., ge=0, le=100)
    task: str
    error: Optional[bool] = None
    exitCode: Optional[int] = None
    output: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.error is True or self.progress == 100


class RuntimeStats(BaseModel):
    running: bool
    pid: Optional[int] = None
    uptime: Optional[float] = None
    cpu: Optional[float] = None
    memory: Optional[float] = None
    players: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class FileEntry(BaseModel):
    name: str
    path: str
    isDirectory: bool
    size: int = 0
    modified: datetime
    extension: Optional[str] = None


class FileContent(BaseModel):
    name: str
    path: str
    size: int
    modified: datetime
    content: str


class FileWriteRequest(BaseModel):
    path: str
    content: str = ""


class DirRequest(BaseModel):
    path: str


class ActionResult(BaseModel):
    ok: bool
    detail: str | None = None
    data: dict | None = None
