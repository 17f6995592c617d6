import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ocpp.v16.enums import (
    AuthorizationStatus,
    ChargePointStatus,
    Reason,
    RemoteStartStopStatus,
    UnlockStatus,
)

from .config import (
    CURRENT_TX_CONNECTOR_ID,
    CURRENT_TX_ID,
    CURRENT_TX_ID_TAG,
    ENERGY_KEY,
    METER_KEYS,
    STATUS_HOLD_SEC,
    TRANSACTION_KEYS,
    UNLOCK_TIMEOUT_SEC,
    UNLOCKED_CONNECTOR_ID,
)
from .context import RuntimeContext
from .telemetry import Telemetry


class TxPhase:
    IDLE = "Idle"
    REQUESTED = "Requested"
    ACTIVE = "Active"
    STOPPING = "Stopping"


class NoTransactionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Transaction:
    id: int
    connector_id: int
    id_tag: str


class TransactionManager:
    """Single active transaction, persisted in the store.

    Requested and Stopping only exist while an authorization answer from the
    central system is outstanding; Idle and Active are read from the store,
    so a restarted process resumes in the right phase.
    """

    def __init__(self, ctx: RuntimeContext, telemetry: Telemetry):
        self.ctx = ctx
        self.telemetry = telemetry
        self._pending: Optional[str] = None
        self._tasks: set = set()

    @property
    def phase(self) -> str:
        if self._pending is not None:
            return self._pending
        return TxPhase.ACTIVE if self.is_running() else TxPhase.IDLE

    def is_running(self) -> bool:
        return self.ctx.store.exists(CURRENT_TX_ID)

    def current(self) -> Optional[Transaction]:
        with self.ctx.store.view() as txn:
            tx_id = txn.get(CURRENT_TX_ID)
            if tx_id is None:
                return None
            return Transaction(
                id=tx_id,
                connector_id=txn.get(CURRENT_TX_CONNECTOR_ID, 0),
                id_tag=txn.get(CURRENT_TX_ID_TAG, ""),
            )

    def energy(self) -> int:
        return self.ctx.store.get(ENERGY_KEY, 0)

    # ====== CSMS -> charge point ======

    def remote_start(self, connector_id: Optional[int], id_tag: str) -> RemoteStartStopStatus:
        """Acknowledge a remote start; authorization completes in the background."""
        if connector_id is None:
            logging.info(f"RemoteStart without connector rejected (idTag={id_tag})")
            return RemoteStartStopStatus.rejected
        if self.phase != TxPhase.IDLE:
            logging.info(f"Transaction already running, rejecting idTag={id_tag} connectorId={connector_id}")
            return RemoteStartStopStatus.rejected

        logging.info(f"Starting Transaction idTag={id_tag} connectorId={connector_id}")
        meter_start = self.energy()
        self._pending = TxPhase.REQUESTED
        self._spawn(self._authorize_start(int(connector_id), id_tag, meter_start))
        return RemoteStartStopStatus.accepted

    def remote_stop(self, transaction_id: Optional[int]) -> RemoteStartStopStatus:
        logging.info(f"RemoteStopTransaction {transaction_id}")
        tx = self.current()
        if tx is None or self._pending is not None:
            logging.info("No transaction running")
            return RemoteStartStopStatus.rejected
        if transaction_id is not None and int(transaction_id) != tx.id:
            logging.info(f"RemoteStop for {transaction_id} rejected, running transaction is {tx.id}")
            return RemoteStartStopStatus.rejected

        meter_stop = self.energy()
        self._pending = TxPhase.STOPPING
        self._spawn(self._authorize_stop(tx, meter_stop, Reason.remote))
        return RemoteStartStopStatus.accepted

    def unlock_connector(self, connector_id: int) -> UnlockStatus:
        logging.info(f"UnlockConnector {connector_id}")
        self.ctx.store.set(UNLOCKED_CONNECTOR_ID, connector_id)
        self._spawn(self.notify_status(ChargePointStatus.preparing, connector_id))
        self._spawn(self._unlock_timeout(connector_id))
        return UnlockStatus.unlocked

    # ====== local triggers ======

    async def stop_local(self, reason: Reason = Reason.ev_disconnected) -> AuthorizationStatus:
        """Stop the running transaction from the charge point side.

        Waits for the central system's answer; transport errors propagate.
        """
        tx = self.current()
        if tx is None or self._pending is not None:
            raise NoTransactionError("No transaction running")
        meter_stop = self.energy()
        self._pending = TxPhase.STOPPING
        return await self._authorize_stop(tx, meter_stop, reason, raise_errors=True)

    async def simulate_preparing(self, connector_id: int = 0) -> None:
        await self.notify_status(ChargePointStatus.available, connector_id)
        await self.ctx.sleep(STATUS_HOLD_SEC)
        await self.notify_status(ChargePointStatus.preparing, connector_id)
        logging.info(f"Status changed to {ChargePointStatus.preparing} for connector {connector_id or self._status_connector()}")

    async def notify_status(self, status: ChargePointStatus, connector_id: int = 0) -> None:
        if not connector_id:
            connector_id = self._status_connector()
        try:
            await self.ctx.require_charger().status_notification(connector_id, status)
        except Exception as e:
            logging.error(f"StatusNotification {status} for connector {connector_id} failed: {e}")

    async def join(self) -> None:
        """Wait for outstanding authorization and timer tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ====== internals ======

    async def _authorize_start(self, connector_id: int, id_tag: str, meter_start: int) -> None:
        try:
            transaction_id, status = await self.ctx.require_charger().start_transaction(
                connector_id, id_tag, meter_start
            )
        except Exception as e:
            self._pending = None
            logging.error(f"StartTransaction failed: {e}")
            return

        if status != AuthorizationStatus.accepted:
            self._pending = None
            logging.info(f"Transaction won't start: {status}")
            return

        try:
            with self.ctx.store.update() as txn:
                txn.set(CURRENT_TX_ID, transaction_id)
                txn.set(CURRENT_TX_CONNECTOR_ID, connector_id)
                txn.set(CURRENT_TX_ID_TAG, id_tag)
                txn.delete(UNLOCKED_CONNECTOR_ID)
        except Exception as e:
            logging.error(f"Error saving transaction {transaction_id}: {e}")
            return
        finally:
            self._pending = None
        logging.info(f"Transaction started {status} {transaction_id}")
        self.telemetry.start(Transaction(transaction_id, connector_id, id_tag))

    async def _authorize_stop(
        self, tx: Transaction, meter_stop: int, reason: Reason, raise_errors: bool = False
    ) -> Optional[AuthorizationStatus]:
        try:
            status = await self.ctx.require_charger().stop_transaction(
                tx.id, tx.id_tag, meter_stop, reason
            )
        except Exception as e:
            self._pending = None
            logging.error(f"StopTransaction for {tx.id} failed: {e}")
            if raise_errors:
                raise
            return None

        if status != AuthorizationStatus.accepted:
            self._pending = None
            logging.info(f"Transaction won't stop {tx.id}: {status}")
            return status

        try:
            await self.telemetry.stop()
            with self.ctx.store.update() as txn:
                for key in TRANSACTION_KEYS + METER_KEYS + (UNLOCKED_CONNECTOR_ID,):
                    txn.delete(key)
        except Exception as e:
            logging.error(f"Error clearing transaction {tx.id}: {e}")
            # still running as far as the store is concerned
            self.telemetry.start(tx)
            if raise_errors:
                raise
            return None
        finally:
            self._pending = None
        logging.info(f"Transaction stopped {status} {tx.id}")
        self._spawn(self._finish(tx.connector_id))
        return status

    async def _finish(self, connector_id: int) -> None:
        await self.notify_status(ChargePointStatus.finishing, connector_id)
        await self.ctx.sleep(STATUS_HOLD_SEC)
        await self.notify_status(ChargePointStatus.available, connector_id)

    async def _unlock_timeout(self, connector_id: int) -> None:
        await self.ctx.sleep(UNLOCK_TIMEOUT_SEC)
        self.ctx.store.delete(UNLOCKED_CONNECTOR_ID)
        # re-checked at fire time; a transaction started meanwhile keeps the connector
        if self.is_running():
            return
        await self.notify_status(ChargePointStatus.available, connector_id)

    def _status_connector(self) -> int:
        with self.ctx.store.view() as txn:
            return txn.get(CURRENT_TX_CONNECTOR_ID) or txn.get(UNLOCKED_CONNECTOR_ID) or 0

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
