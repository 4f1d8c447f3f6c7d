"""
Error taxonomy shared by every component.

Components catch filesystem and subprocess failures at their boundary and
re-raise them as one of these kinds, tagged with the instance id and the
operation. The API layer turns them into ``{ok, kind, detail}`` bodies.
"""

from __future__ import annotations
from typing import Optional


class PanelError(Exception):
    kind = "PanelError"
    status_code = 500

    def __init__(self, detail: str, *, server_id: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.server_id = server_id

    def to_dict(self) -> dict:
        return {"ok": False, "kind": self.kind, "detail": self.detail}


class NotFound(PanelError):
    kind = "NotFound"
    status_code = 404


class Conflict(PanelError):
    kind = "Conflict"
    status_code = 409


class NotInstalled(PanelError):
    kind = "NotInstalled"
    status_code = 400


class ExecutableMissing(PanelError):
    kind = "ExecutableMissing"
    status_code = 400


class NotRunning(PanelError):
    kind = "NotRunning"
    status_code = 400


class InvalidPath(PanelError):
    kind = "InvalidPath"
    status_code = 403


class ValidationFailed(PanelError):
    kind = "ValidationFailed"
    status_code = 400


class SubprocessFailure(PanelError):
    kind = "SubprocessFailure"
    status_code = 500

    def __init__(self, detail: str, *, server_id: Optional[str] = None,
                 exit_code: Optional[int] = None, output: str = ""):
        super().__init__(detail, server_id=server_id)
        self.exit_code = exit_code
        self.output = output


class IOFailure(PanelError):
    kind = "IOFailure"
    status_code = 500

    @classmethod
    def wrap(cls, exc: OSError, *, operation: str, path=None, server_id: Optional[str] = None) -> "IOFailure":
        where = f" {path}" if path is not None else ""
        who = f" [{server_id}]" if server_id else ""
        return cls(f"{operation} failed{who}{where}: {exc}", server_id=server_id)
