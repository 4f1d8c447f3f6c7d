from __future__ import annotations
import argparse
import json
import sys
import threading
import uvicorn
from .settings import Settings
from .logging_setup import setup_logging
from .errors import PanelError
from .models import InstallProgressEvent
from .orchestrator import Orchestrator
from .api import create_app

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="reforger-panel")
    sub = parser.add_subparsers(dest="cmd", required=True)

    api_p = sub.add_parser("api", help="Run REST + WebSocket API (FastAPI)")
    api_p.add_argument("--host", default=None)
    api_p.add_argument("--port", type=int, default=None)

    sub.add_parser("list", help="Print all server instances as JSON and exit")
    sub.add_parser("steamcmd", help="Download SteamCMD if it is not installed yet")

    inst_p = sub.add_parser("install", help="Install/update one server and wait for the result")
    inst_p.add_argument("server_id")

    args = parser.parse_args(argv)
    settings = Settings()
    setup_logging(settings)

    if args.cmd == "api":
        app = create_app(settings)
        uvicorn.run(app, host=args.host or settings.api_host, port=args.port or settings.api_port,
                    log_config=None)
        return 0

    orch = Orchestrator(settings)
    orch.prepare_environment()
    try:
        if args.cmd == "list":
            data = [s.model_dump() for s in orch.list_instances()]
            print(json.dumps(data, indent=2, ensure_ascii=False))
            return 0

        if args.cmd == "steamcmd":
            print(orch.install_steamcmd())
            return 0

        if args.cmd == "install":
            done = threading.Event()

            def show(payload: dict) -> None:
                event = InstallProgressEvent.model_validate(payload)
                print(f"[{event.progress:3d}%] {event.task}", flush=True)
                if event.terminal:
                    done.set()

            unsubscribe = orch.subscribe_install_progress(args.server_id, show)
            try:
                ok = orch.install_blocking(args.server_id)
                # let the delivery thread print the terminal event
                done.wait(5.0)
            finally:
                unsubscribe()
            return 0 if ok else 1
    except PanelError as e:
        print(f"{e.kind}: {e.detail}", file=sys.stderr)
        return 1
    finally:
        orch.shutdown()

    return 2
