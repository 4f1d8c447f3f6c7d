from __future__ import annotations
import asyncio
import json
from contextlib import asynccontextmanager, suppress
from typing import Any, Callable, Dict, Optional
from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from . import __version__
from .errors import NotFound, PanelError
from .events import INSTALL_PROGRESS
from .logging_setup import get_logger
from .models import (
    ActionResult, ConfigUpdate, CreateInstanceRequest, DirRequest, FileWriteRequest, ServerInstance,
    is_valid_instance_id,
)
from .orchestrator import Orchestrator
from .settings import Settings

log = get_logger("reforger.panel.api")


class EventOutbox:
    """Bounded per-connection queue fed from broadcaster threads; a lagging client loses events."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.loop = loop
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, msg: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(msg)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                log.warning("WebSocket client is lagging, dropped %d event(s)", self.dropped)

    def offer_threadsafe(self, msg: Dict[str, Any]) -> None:
        try:
            self.loop.call_soon_threadsafe(self._offer, msg)
        except RuntimeError:
            log.debug("Dropped %s event for closed connection", msg.get("event"))


async def stop_sender(task: "asyncio.Task[None]") -> Optional[BaseException]:
    """Cancel the sender task and collect its outcome; returns the error it died with, if any."""
    task.cancel()
    with suppress(asyncio.CancelledError):
        try:
            await task
        except Exception as e:
            log.debug("Event sender ended with %r", e)
            return e
    return None


def create_app(settings: Settings, orch: Optional[Orchestrator] = None) -> FastAPI:
    orch = orch or Orchestrator(settings)
    orch.prepare_environment()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        orch.shutdown()

    app = FastAPI(title="Reforger Panel API", version=__version__, lifespan=lifespan)
    app.state.orch = orch

    @app.exception_handler(PanelError)
    async def panel_error(_request: Request, exc: PanelError):
        if exc.status_code >= 500:
            log.error("%s: %s", exc.kind, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors
        ) or "invalid request"
        return JSONResponse(status_code=400, content={"ok": False, "kind": "ValidationFailed", "detail": detail})

    api = APIRouter(prefix="/api")

    @api.get("/health")
    def health():
        return {"ok": True}

    # --- instances -------------------------------------------------------
    @api.get("/instances", response_model=list[ServerInstance])
    def list_instances():
        return orch.list_instances()

    @api.post("/instances", response_model=ServerInstance, status_code=201)
    def create_instance(req: CreateInstanceRequest):
        return orch.create_instance(req.id, req.config)

    @api.get("/instances/{server_id}", response_model=ServerInstance)
    def get_instance(server_id: str):
        return orch.get_instance(server_id)

    @api.put("/instances/{server_id}")
    def update_instance(server_id: str, update: ConfigUpdate):
        return orch.update_config(server_id, update).model_dump(exclude_none=True)

    @api.delete("/instances/{server_id}", response_model=ActionResult)
    def delete_instance(server_id: str):
        orch.delete_instance(server_id)
        return ActionResult(ok=True, detail="deleted")

    # --- lifecycle -------------------------------------------------------
    @api.post("/instances/{server_id}/install", response_model=ActionResult)
    def install(server_id: str):
        job = orch.install(server_id)
        return ActionResult(ok=True, detail="started", data={"serverId": server_id, "appId": job.app_id})

    @api.post("/instances/{server_id}/start", response_model=ActionResult)
    def start(server_id: str):
        detail = orch.start(server_id)
        return ActionResult(ok=True, detail=detail, data=orch.get_instance(server_id).model_dump())

    @api.post("/instances/{server_id}/stop", response_model=ActionResult)
    def stop(server_id: str):
        detail = orch.stop(server_id)
        return ActionResult(ok=True, detail=detail, data=orch.get_instance(server_id).model_dump())

    @api.get("/instances/{server_id}/stats")
    def stats(server_id: str):
        return orch.stats(server_id).model_dump(exclude_none=True)

    # --- steamcmd --------------------------------------------------------
    @api.get("/steamcmd/status")
    def steamcmd_status():
        return orch.steamcmd_status()

    @api.post("/steamcmd/install", response_model=ActionResult)
    def steamcmd_install():
        return ActionResult(ok=True, detail=orch.install_steamcmd(), data=orch.steamcmd_status())

    # --- files -----------------------------------------------------------
    @api.get("/instances/{server_id}/files")
    def list_files(server_id: str, path: str = Query(default="")):
        return [e.model_dump(mode="json") for e in orch.files.list_dir(server_id, path)]

    @api.get("/instances/{server_id}/files/content")
    def read_file(server_id: str, path: str = Query(...)):
        return orch.files.read_file(server_id, path).model_dump(mode="json")

    @api.put("/instances/{server_id}/files/content")
    def write_file(server_id: str, req: FileWriteRequest):
        return orch.files.write_file(server_id, req.path, req.content).model_dump(mode="json")

    @api.post("/instances/{server_id}/files/dir")
    def make_dir(server_id: str, req: DirRequest):
        return orch.files.make_dir(server_id, req.path).model_dump(mode="json")

    @api.delete("/instances/{server_id}/files", response_model=ActionResult)
    def delete_path(server_id: str, path: str = Query(...)):
        orch.files.delete(server_id, path)
        return ActionResult(ok=True, detail="deleted")

    # --- logs ------------------------------------------------------------
    @api.get("/instances/{server_id}/logs")
    def logs(server_id: str):
        return {"ok": True, "logs": orch.list_logs(server_id)}

    @api.get("/instances/{server_id}/logs/{log_id}")
    def get_log(
        server_id: str,
        log_id: str,
        tail: int = Query(default=200, ge=0, le=5000),
        cursor: str | None = None,
        max_lines: int = Query(default=200, ge=1, le=5000),
    ):
        chunk = orch.read_log(server_id, log_id, tail=tail, cursor=cursor, max_lines=max_lines)
        if chunk is None:
            raise NotFound("log_not_found", server_id=server_id)
        return {
            "ok": True,
            "id": log_id,
            "cursor": chunk.cursor,
            "entries": [{"n": i + 1, "line": line} for i, line in enumerate(chunk.entries)],
            "truncated": chunk.truncated,
        }

    # --- realtime --------------------------------------------------------
    @api.websocket("/events")
    async def events(ws: WebSocket):
        await ws.accept()
        outbox = EventOutbox(asyncio.get_running_loop(), orch.settings.event_queue_size)
        subs: Dict[str, Callable[[], None]] = {}

        def forward(event: str, payload: Dict[str, Any]) -> None:
            outbox.offer_threadsafe({"event": event, **payload})

        async def sender() -> None:
            while True:
                msg = await outbox.queue.get()
                await ws.send_json(msg)

        send_task = asyncio.create_task(sender())
        log.info("Client connected")
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    msg = json.loads(raw)
                except ValueError:
                    msg = None
                if not isinstance(msg, dict):
                    await outbox.queue.put({"event": "error", "detail": "expected a JSON object"})
                    continue
                action = msg.get("action")
                server_id = str(msg.get("serverId") or "")
                if server_id != "*" and not is_valid_instance_id(server_id):
                    await outbox.queue.put({"event": "error", "detail": f"invalid serverId {server_id!r}"})
                    continue
                if action in ("subscribe", "subscribe-console"):
                    if server_id not in subs:
                        if server_id == "*":
                            subs[server_id] = orch.subscribe_install_progress(
                                None, lambda p: forward(INSTALL_PROGRESS, p))
                        else:
                            subs[server_id] = orch.subscribe(server_id, forward)
                    await outbox.queue.put({"event": "subscribed", "serverId": server_id})
                elif action == "unsubscribe":
                    unsub = subs.pop(server_id, None)
                    if unsub is not None:
                        unsub()
                    await outbox.queue.put({"event": "unsubscribed", "serverId": server_id})
                else:
                    await outbox.queue.put({"event": "error", "detail": f"unknown action {action!r}"})
        except WebSocketDisconnect:
            log.info("Client disconnected")
        finally:
            for unsub in subs.values():
                unsub()
            await stop_sender(send_task)

    app.include_router(api)
    return app
