"""
Connection lifecycle and background loops for one charge point.

Each successful boot opens an :class:`Epoch`: the heartbeat and diagnostics
loops run inside it and are cancelled together when the connection is
stopped or lost.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Optional

import websockets
from ocpp.v16.enums import DiagnosticsStatus

from .config import (
    CHARGE_POINT_ID,
    CP_VERSION,
    CS_URL,
    DIAGNOSTICS_PERIOD_SEC,
    STARTED_AT,
    STOPPED_AT,
    STORE_PATH,
    VERSION,
    Settings,
)
from .configuration import ConfigurationRegistry, seed_defaults
from .context import RuntimeContext
from .ocpp_handlers import EVSEChargePoint
from .security import SecurityProfileManager
from .state_machine import TransactionManager
from .store import Store
from .telemetry import Telemetry

OCPP_SUBPROTOCOL = "ocpp1.6"


class ConnectionStateError(RuntimeError):
    pass


class Epoch:
    """Cancellation scope for the loops of one connection."""

    def __init__(self):
        self.stopped = asyncio.Event()
        self.tasks: set = set()

    @property
    def cancelled(self) -> bool:
        return self.stopped.is_set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def close(self) -> None:
        # closing twice is allowed
        if self.stopped.is_set():
            return
        self.stopped.set()
        for task in list(self.tasks):
            task.cancel()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChargePointRuntime:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        connect=websockets.connect,
        charge_point_factory=EVSEChargePoint,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.ctx = RuntimeContext(settings=settings, store=store, sleep=sleep)
        self.security = SecurityProfileManager(self.ctx)
        self.configuration = ConfigurationRegistry(self.ctx, self.security, reconnect=self.reboot)
        self.telemetry = Telemetry(self.ctx, self.configuration, rng=rng)
        self.transactions = TransactionManager(self.ctx, self.telemetry)
        self._connect = connect
        self._factory = charge_point_factory
        self._connection = None
        self._listener: Optional[asyncio.Task] = None
        self._epoch: Optional[Epoch] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ctx.charger is not None

    @property
    def store(self) -> Store:
        return self.ctx.store

    def record_start(self) -> None:
        settings = self.ctx.settings
        with self.store.update() as txn:
            txn.set(STARTED_AT, utc_now())
            txn.set(CHARGE_POINT_ID, settings.charge_point_id)
            txn.set(CS_URL, settings.csms_url)
            txn.set(CP_VERSION, VERSION)
            txn.set(STORE_PATH, self.store.path)
            seed_defaults(txn)

    def record_stop(self) -> None:
        self.store.set(STOPPED_AT, utc_now())

    async def boot(self) -> None:
        async with self._lock:
            await self._boot()

    async def stop(self) -> None:
        async with self._lock:
            if not self.connected:
                raise ConnectionStateError("charge point not connected")
            await self._stop()

    async def reboot(self) -> None:
        async with self._lock:
            if self.connected:
                await self._stop()
            logging.info("Charge Point stopped")
            await self._boot()

    async def shutdown(self) -> None:
        """Orderly process exit; a running transaction stays in the store."""
        self.record_stop()
        async with self._lock:
            if self.connected:
                await self._stop()
        await self.telemetry.stop()

    async def _boot(self) -> None:
        if self.connected:
            raise ConnectionStateError("charge point already connected")
        options = self.security.connect_options()
        url = self.ctx.settings.url
        logging.info(f"Connecting to CSMS: {url}")
        connection = await self._connect(url, subprotocols=[OCPP_SUBPROTOCOL], **options)
        cp = self._factory(self.ctx.settings.charge_point_id, connection, self)
        listener = asyncio.create_task(cp.start())

        try:
            interval = await cp.boot_notification()
        except BaseException:
            listener.cancel()
            await connection.close()
            raise

        if interval:
            self.store.set("HeartbeatInterval", interval)
        self._connection = connection
        self._listener = listener
        self.ctx.charger = cp
        self._epoch = epoch = Epoch()
        listener.add_done_callback(lambda task: self._on_listener_done(task, epoch))
        epoch.spawn(self._heartbeat_loop(epoch))
        epoch.spawn(self._diagnostics_loop(epoch))
        logging.info(f"Charge Point connected, heartbeat every {self.configuration.heartbeat_interval()}s")

        tx = self.transactions.current()
        if tx is not None and not self.telemetry.running:
            self.telemetry.start(tx)

    async def _stop(self) -> None:
        epoch, self._epoch = self._epoch, None
        if epoch is not None:
            epoch.close()
        listener, self._listener = self._listener, None
        connection, self._connection = self._connection, None
        self.ctx.charger = None
        if listener is not None:
            listener.cancel()
        if connection is not None:
            await connection.close()
        logging.info("Charge Point disconnected")

    def _on_listener_done(self, task: asyncio.Task, epoch: Epoch) -> None:
        if task is not self._listener:
            return
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"OCPP connection error: {task.exception()}")
        else:
            logging.warning("OCPP connection closed")
        epoch.close()
        self._epoch = None
        self._listener = None
        self._connection = None
        self.ctx.charger = None

    async def _heartbeat_loop(self, epoch: Epoch) -> None:
        while True:
            await self.ctx.sleep(self.configuration.heartbeat_interval())
            if epoch.cancelled:
                logging.debug("stop signal received in heartbeat")
                return
            try:
                await self.ctx.require_charger().heartbeat()
            except Exception as e:
                logging.debug(f"Heartbeat error: {e}")
                continue
            logging.info("Heartbeat sent to central system")

    async def _diagnostics_loop(self, epoch: Epoch) -> None:
        while True:
            await self.ctx.sleep(DIAGNOSTICS_PERIOD_SEC)
            if epoch.cancelled:
                logging.debug("stop signal received in diagnostics")
                return
            try:
                await self.ctx.require_charger().diagnostics_status_notification(DiagnosticsStatus.idle)
            except Exception as e:
                logging.debug(f"DiagnosticsStatusNotification error: {e}")
                continue
            logging.debug(f"DiagnosticsStatusNotification {DiagnosticsStatus.idle}")
