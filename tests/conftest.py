import asyncio
import random

import pytest
import pytest_asyncio
from ocpp.v16.enums import AuthorizationStatus

from cpsim.config import Settings
from cpsim.runtime import ChargePointRuntime
from cpsim.store import Store


async def scaled_sleep(seconds):
    # one simulated second is one real millisecond
    await asyncio.sleep(seconds / 1000)


async def eventually(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeConnection:
    def __init__(self, url, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.closed = asyncio.Event()

    async def close(self):
        self.closed.set()


class FakeCharger:
    """Stands in for EVSEChargePoint: records every outbound request."""

    def __init__(self, id="CP_TEST", connection=None, runtime=None):
        self.id = id
        self.connection = connection
        self.runtime = runtime
        self.boot_interval = 300
        self.next_transaction_id = 1
        self.start_status = AuthorizationStatus.accepted
        self.stop_status = AuthorizationStatus.accepted
        self.fail = set()
        # when set, meter_values blocks on it before recording
        self.meter_gate = None
        self.meter_calls = 0
        self.boots = 0
        self.statuses = []
        self.starts = []
        self.stops = []
        self.meter_reports = []
        self.heartbeats = 0
        self.diagnostics = 0

    def _maybe_fail(self, name):
        if name in self.fail:
            raise ConnectionError(f"{name} failed")

    async def start(self):
        await self.connection.closed.wait()

    async def boot_notification(self):
        self._maybe_fail("boot")
        self.boots += 1
        return self.boot_interval

    async def status_notification(self, connector_id, status):
        self._maybe_fail("status")
        self.statuses.append((connector_id, status))

    async def start_transaction(self, connector_id, id_tag, meter_start):
        self._maybe_fail("start")
        self.starts.append({"connector_id": connector_id, "id_tag": id_tag, "meter_start": meter_start})
        tx_id = self.next_transaction_id
        self.next_transaction_id += 1
        return tx_id, self.start_status

    async def stop_transaction(self, transaction_id, id_tag, meter_stop, reason):
        self._maybe_fail("stop")
        self.stops.append({
            "transaction_id": transaction_id,
            "id_tag": id_tag,
            "meter_stop": meter_stop,
            "reason": reason,
        })
        return self.stop_status

    async def meter_values(self, connector_id, transaction_id, sampled_values):
        self._maybe_fail("meter")
        self.meter_calls += 1
        if self.meter_gate is not None:
            await self.meter_gate.wait()
        self.meter_reports.append({
            "connector_id": connector_id,
            "transaction_id": transaction_id,
            "sampled_value": sampled_values,
        })

    async def heartbeat(self):
        self._maybe_fail("heartbeat")
        self.heartbeats += 1

    async def diagnostics_status_notification(self, status):
        self._maybe_fail("diagnostics")
        self.diagnostics += 1


@pytest.fixture
def settings(tmp_path):
    return Settings(charge_point_id="CP_TEST", csms_url="ws://127.0.0.1:9000/ocpp", db_path=str(tmp_path))


@pytest.fixture
def store(settings):
    s = Store.open(settings.db_path, settings.charge_point_id)
    yield s
    s.close()


@pytest_asyncio.fixture
async def runtime(settings, store):
    """Runtime wired to a fake transport; booting creates a FakeCharger."""
    chargers = []

    async def connect(url, **kwargs):
        return FakeConnection(url, **kwargs)

    def factory(id, connection, rt):
        charger = FakeCharger(id, connection, rt)
        chargers.append(charger)
        return charger

    rt = ChargePointRuntime(
        settings,
        store,
        connect=connect,
        charge_point_factory=factory,
        sleep=scaled_sleep,
        rng=random.Random(7),
    )
    rt.chargers = chargers
    rt.record_start()
    yield rt
    await rt.shutdown()
    await rt.transactions.join()
    for task in list(rt.ctx.tasks):
        task.cancel()


@pytest_asyncio.fixture
async def connected(runtime):
    await runtime.boot()
    return runtime
