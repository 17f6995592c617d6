import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from contextlib import contextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Response
from ocpp.v16.enums import AuthorizationStatus
from pydantic import BaseModel

from .config import CPID, CSMS_URL, DB_PATH, HTTP_PORT, VERSION, Settings
from .runtime import ChargePointRuntime
from .security import SecurityProfileError
from .state_machine import NoTransactionError
from .store import Store

MAX_VALUE_LENGTH = 150


class StoreEntry(BaseModel):
    key: str
    value: str


def create_app(runtime: ChargePointRuntime) -> FastAPI:
    app = FastAPI(title="Charge Point Simulator Control", version=VERSION)

    def require_connection():
        if not runtime.connected:
            raise HTTPException(status_code=400, detail="Charge Point not connected")

    @app.get("/health")
    async def health():
        return {"ok": True, "connected": runtime.connected}

    @app.get("/list-db", response_model=list[StoreEntry])
    async def list_db():
        entries = []
        for key, value in runtime.store.items():
            if len(value) > MAX_VALUE_LENGTH:
                value = f"{value[:MAX_VALUE_LENGTH]}..."
            entries.append(StoreEntry(key=key, value=value))
        return entries

    @app.post("/preparing", status_code=204)
    async def preparing(connectorId: int = 0):
        require_connection()
        await runtime.transactions.simulate_preparing(connectorId)
        return Response(status_code=204)

    @app.post("/ev-stop", status_code=204)
    async def ev_stop():
        require_connection()
        try:
            status = await runtime.transactions.stop_local()
        except NoTransactionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        if status != AuthorizationStatus.accepted:
            raise HTTPException(status_code=409, detail=f"Transaction will not stop: {status}")
        return Response(status_code=204)

    @app.post("/start", status_code=204)
    async def start():
        try:
            await runtime.boot()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return Response(status_code=204)

    @app.post("/stop", status_code=204)
    async def stop():
        try:
            await runtime.stop()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return Response(status_code=204)

    @app.post("/reboot", status_code=204)
    async def reboot():
        try:
            await runtime.reboot()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return Response(status_code=204)

    @app.post("/security-profile", status_code=204)
    async def security_profile(profile: int):
        try:
            runtime.security.override(profile)
        except SecurityProfileError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return Response(status_code=204)

    @app.get("/list")
    async def list_endpoints():
        paths = sorted({route.path for route in app.routes if not route.path.startswith(("/docs", "/openapi", "/redoc"))})
        return Response("Available endpoints:\n" + "".join(f"\t{p}\n" for p in paths), media_type="text/plain")

    return app


class ControlServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the simulator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self):
        yield


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulated OCPP 1.6 charge point")
    parser.add_argument("--cp", default=CPID, help="charge point id")
    parser.add_argument("--cs", default=CSMS_URL, help="central system url")
    parser.add_argument("--control-port", type=int, default=HTTP_PORT, help="control server port (default: random)")
    parser.add_argument("--db", default=DB_PATH, help="db path")
    parser.add_argument("--version", action="store_true", help="show version")
    return parser.parse_args(argv)


async def serve(settings: Settings) -> int:
    try:
        store = Store.open(settings.db_path, settings.charge_point_id)
    except Exception as e:
        logging.error(f"Cannot open store: {e}")
        return 1
    runtime = ChargePointRuntime(settings, store)
    runtime.record_start()

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((settings.http_host, settings.http_port))
    server = ControlServer(uvicorn.Config(create_app(runtime), log_level="warning"))
    api_task = asyncio.create_task(server.serve(sockets=[sock]))
    logging.info(f"Control Server started on port {sock.getsockname()[1]}")

    try:
        await runtime.boot()
    except Exception as e:
        logging.error(f"startChargePoint: {e}")
        server.should_exit = True
        await api_task
        store.close()
        return 1

    loop = asyncio.get_running_loop()
    signals = asyncio.Queue()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signals.put_nowait, sig)

    await signals.get()
    logging.info("Gracefully shutting down...")
    shutdown = asyncio.create_task(runtime.shutdown())
    second = asyncio.create_task(signals.get())
    done, _ = await asyncio.wait({shutdown, second}, return_when=asyncio.FIRST_COMPLETED)
    if second in done:
        logging.warning("Forcefully shutting down...")
        try:
            runtime.record_stop()
        finally:
            os._exit(2)
    second.cancel()
    shutdown.result()

    server.should_exit = True
    await api_task
    store.close()
    return 0


def main(argv=None) -> None:
    args = parse_args(argv)
    if args.version:
        print("Current App Version:", VERSION)
        sys.exit(0)
    if not args.cp:
        print("missing charge point id", file=sys.stderr)
        sys.exit(1)
    if not args.cs:
        print("missing central system url", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format=f"%(asctime)s | %(levelname)s | {args.cp} | %(message)s")
    settings = Settings(charge_point_id=args.cp, csms_url=args.cs, db_path=args.db, http_port=args.control_port)
    sys.exit(asyncio.run(serve(settings)))


if __name__ == "__main__":
    main()
