"""
Simulated metering for the active transaction.

Every sample interval the accumulators in the store are bumped by random
deltas and a MeterValues report is sent. Each configured measurand is
included with probability one half, so reports vary from tick to tick.
"""

import asyncio
import logging
import random
import time
from typing import Dict, List, Optional, Tuple

from ocpp.v16.enums import (
    ChargePointStatus,
    Location,
    Measurand,
    Phase,
    ReadingContext,
    UnitOfMeasure,
    ValueFormat,
)

from .config import (
    BATTERY_PERCENTAGE_KEY,
    CURRENT_TX_ID,
    ENERGY_KEY,
    INSTANTANEOUS_CURRENT_KEY,
    INSTANTANEOUS_POWER_KEY,
    INSTANTANEOUS_TEMPERATURE_KEY,
    INSTANTANEOUS_VOLTAGE_KEY,
)
from .configuration import ConfigurationRegistry
from .context import RuntimeContext

# measurand -> (accumulator key, unit)
MEASURANDS: Dict[str, Tuple[str, UnitOfMeasure]] = {
    Measurand.energy_active_import_register.value: (ENERGY_KEY, UnitOfMeasure.wh),
    Measurand.power_active_import.value: (INSTANTANEOUS_POWER_KEY, UnitOfMeasure.w),
    Measurand.current_import.value: (INSTANTANEOUS_CURRENT_KEY, UnitOfMeasure.a),
    Measurand.voltage.value: (INSTANTANEOUS_VOLTAGE_KEY, UnitOfMeasure.v),
    Measurand.temperature.value: (INSTANTANEOUS_TEMPERATURE_KEY, UnitOfMeasure.celsius),
    Measurand.soc.value: (BATTERY_PERCENTAGE_KEY, UnitOfMeasure.percent),
}

LOW_POWER_LIMIT_W = 3_300
MEDIUM_POWER_LIMIT_W = 19_200


def generate_power_voltage_current(rng: random.Random) -> Tuple[int, int, int]:
    """Draw a power value and a voltage/current pair plausible for it."""
    power = rng.randint(1_000, 360_000)
    if power < LOW_POWER_LIMIT_W:
        voltage = 120
        current = rng.randint(1, 12)
    elif power < MEDIUM_POWER_LIMIT_W:
        voltage = rng.randint(208, 240)
        current = rng.randint(16, 80)
    else:
        voltage = rng.randint(380, 800)
        current = rng.randint(80, 500)
    return power, voltage, current


class Telemetry:
    def __init__(
        self,
        ctx: RuntimeContext,
        configuration: ConfigurationRegistry,
        rng: Optional[random.Random] = None,
    ):
        self.ctx = ctx
        self.configuration = configuration
        self.rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, tx) -> asyncio.Task:
        if self.running:
            self._task.cancel()
        self._task = asyncio.create_task(self._run(tx))
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self, tx) -> None:
        logging.info(f"Starting/Resuming charging scenario for transaction {tx.id}")
        await self._notify_charging(tx)
        while True:
            interval = self.configuration.sample_interval()
            await self.ctx.sleep(interval)
            if not await self.tick(tx):
                logging.info(f"Transaction {tx.id} ended, meter values stopped")
                return

    async def tick(self, tx) -> bool:
        """One sampling step. Returns False once ``tx`` is no longer running."""
        if not self.accumulate(tx):
            return False
        sampled_values = self.build_sampled_values()
        if not sampled_values:
            return True
        charger = self.ctx.charger
        if charger is None:
            logging.warning(f"Meter values for transaction {tx.id} skipped: not connected")
            return True
        try:
            await charger.meter_values(tx.connector_id, tx.id, sampled_values)
        except Exception as e:
            logging.error(f"Error sending meter values for transaction {tx.id}: {e}")
        else:
            logging.info(f"Meter values sent: transaction={tx.id} connector={tx.connector_id} {self.readings()}")
        return True

    def accumulate(self, tx) -> bool:
        rng = self.rng
        power, voltage, current = generate_power_voltage_current(rng)
        with self.ctx.store.update() as txn:
            if txn.get(CURRENT_TX_ID) != tx.id:
                return False
            txn.increment(ENERGY_KEY, rng.randint(200, 1000))
            txn.increment(INSTANTANEOUS_TEMPERATURE_KEY, rng.randint(20, 50))
            txn.increment(BATTERY_PERCENTAGE_KEY, rng.randint(0, int(time.time()) % 100))
            txn.increment(INSTANTANEOUS_POWER_KEY, power)
            txn.increment(INSTANTANEOUS_VOLTAGE_KEY, voltage)
            txn.increment(INSTANTANEOUS_CURRENT_KEY, current)
        return True

    def build_sampled_values(self) -> List[dict]:
        sampled_values = []
        measurands = self.configuration.sampled_measurands()
        with self.ctx.store.view() as txn:
            for measurand in measurands:
                if measurand not in MEASURANDS:
                    continue
                if self.rng.random() >= 0.5:
                    continue
                key, unit = MEASURANDS[measurand]
                sampled_values.append({
                    "value": str(txn.get(key, 0)),
                    "context": ReadingContext.sample_periodic,
                    "format": ValueFormat.raw,
                    "measurand": measurand,
                    "phase": Phase.l1,
                    "location": Location.outlet,
                    "unit": unit,
                })
        return sampled_values

    def readings(self) -> Dict[str, int]:
        with self.ctx.store.view() as txn:
            return {key: txn.get(key, 0) for key, _ in MEASURANDS.values()}

    async def _notify_charging(self, tx) -> None:
        charger = self.ctx.charger
        if charger is None:
            return
        try:
            await charger.status_notification(tx.connector_id, ChargePointStatus.charging)
        except Exception as e:
            logging.error(f"StatusNotification {ChargePointStatus.charging} failed: {e}")
