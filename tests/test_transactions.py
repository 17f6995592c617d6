import asyncio

import pytest
from ocpp.v16.enums import (
    AuthorizationStatus,
    ChargePointStatus,
    Reason,
    RemoteStartStopStatus,
    UnlockStatus,
)

from cpsim.config import (
    CURRENT_TX_CONNECTOR_ID,
    CURRENT_TX_ID,
    CURRENT_TX_ID_TAG,
    ENERGY_KEY,
    METER_KEYS,
    UNLOCKED_CONNECTOR_ID,
)
from cpsim.state_machine import NoTransactionError, Transaction, TxPhase
from cpsim.store import StoreError

from conftest import eventually


async def start_transaction(runtime, connector_id=1, id_tag="X"):
    status = runtime.transactions.remote_start(connector_id, id_tag)
    await eventually(lambda: runtime.transactions.is_running())
    return status


@pytest.mark.asyncio
async def test_remote_start_persists_transaction(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    assert not store.exists(ENERGY_KEY)

    status = runtime.transactions.remote_start(1, "X")
    assert status == RemoteStartStopStatus.accepted
    await runtime.transactions.join()

    assert charger.starts == [{"connector_id": 1, "id_tag": "X", "meter_start": 0}]
    assert store.get(CURRENT_TX_ID) == 1
    assert store.get(CURRENT_TX_CONNECTOR_ID) == 1
    assert store.get(CURRENT_TX_ID_TAG) == "X"
    assert runtime.transactions.phase == TxPhase.ACTIVE
    assert runtime.telemetry.running
    await eventually(lambda: (1, ChargePointStatus.charging) in charger.statuses)


@pytest.mark.asyncio
async def test_remote_start_without_connector_is_rejected(connected):
    runtime = connected
    assert runtime.transactions.remote_start(None, "X") == RemoteStartStopStatus.rejected
    await runtime.transactions.join()
    assert runtime.chargers[0].starts == []


@pytest.mark.asyncio
async def test_second_start_is_rejected(connected, store):
    runtime = connected
    await start_transaction(runtime)

    assert runtime.transactions.remote_start(2, "Y") == RemoteStartStopStatus.rejected
    await runtime.transactions.join()
    assert store.get(CURRENT_TX_ID) == 1
    assert len(runtime.chargers[0].starts) == 1


@pytest.mark.asyncio
async def test_start_rejected_while_authorization_pending(connected):
    runtime = connected
    assert runtime.transactions.remote_start(1, "X") == RemoteStartStopStatus.accepted
    assert runtime.transactions.phase == TxPhase.REQUESTED
    assert runtime.transactions.remote_start(1, "Y") == RemoteStartStopStatus.rejected
    await runtime.transactions.join()
    assert [s["id_tag"] for s in runtime.chargers[0].starts] == ["X"]


@pytest.mark.asyncio
async def test_unauthorized_start_leaves_state_untouched(connected, store):
    runtime = connected
    runtime.chargers[0].start_status = AuthorizationStatus.invalid

    assert runtime.transactions.remote_start(1, "BAD") == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert not store.exists(CURRENT_TX_ID)
    assert runtime.transactions.phase == TxPhase.IDLE
    assert not runtime.telemetry.running


@pytest.mark.asyncio
async def test_start_transport_failure_returns_to_idle(connected, store):
    runtime = connected
    runtime.chargers[0].fail.add("start")
    assert runtime.transactions.remote_start(1, "X") == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert runtime.transactions.phase == TxPhase.IDLE


@pytest.mark.asyncio
async def test_remote_stop_clears_transaction_and_meters(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    await start_transaction(runtime)
    tx = runtime.transactions.current()
    await runtime.telemetry.tick(tx)
    assert store.get(ENERGY_KEY) > 0
    energy = store.get(ENERGY_KEY)

    assert runtime.transactions.remote_stop(1) == RemoteStartStopStatus.accepted
    await runtime.transactions.join()

    assert charger.stops == [{"transaction_id": 1, "id_tag": "X", "meter_stop": energy, "reason": Reason.remote}]
    for key in (CURRENT_TX_ID, CURRENT_TX_CONNECTOR_ID, CURRENT_TX_ID_TAG) + METER_KEYS:
        assert not store.exists(key)
    assert not runtime.telemetry.running
    assert charger.statuses[-2:] == [(1, ChargePointStatus.finishing), (1, ChargePointStatus.available)]


@pytest.mark.asyncio
async def test_remote_stop_without_transaction_is_rejected(connected):
    assert connected.transactions.remote_stop(1) == RemoteStartStopStatus.rejected
    assert connected.chargers[0].stops == []


@pytest.mark.asyncio
async def test_remote_stop_for_other_transaction_is_rejected(connected, store):
    runtime = connected
    await start_transaction(runtime)
    assert runtime.transactions.remote_stop(99) == RemoteStartStopStatus.rejected
    assert store.get(CURRENT_TX_ID) == 1


@pytest.mark.asyncio
async def test_rejected_stop_keeps_transaction(connected, store):
    runtime = connected
    await start_transaction(runtime)
    runtime.chargers[0].stop_status = AuthorizationStatus.blocked

    assert runtime.transactions.remote_stop(1) == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert store.get(CURRENT_TX_ID) == 1
    assert runtime.transactions.phase == TxPhase.ACTIVE
    assert runtime.telemetry.running


@pytest.mark.asyncio
async def test_stop_then_start_gets_new_transaction(connected, store):
    runtime = connected
    await start_transaction(runtime)
    await runtime.telemetry.tick(runtime.transactions.current())
    runtime.transactions.remote_stop(1)
    await runtime.transactions.join()
    assert not store.exists(ENERGY_KEY)

    await start_transaction(runtime, id_tag="Z")
    assert store.get(CURRENT_TX_ID) == 2
    assert runtime.chargers[0].starts[-1]["meter_start"] == 0


@pytest.mark.asyncio
async def test_stop_local_uses_ev_disconnected(connected, store):
    runtime = connected
    await start_transaction(runtime)

    status = await runtime.transactions.stop_local()
    assert status == AuthorizationStatus.accepted
    assert runtime.chargers[0].stops[0]["reason"] == Reason.ev_disconnected
    assert not store.exists(CURRENT_TX_ID)
    await runtime.transactions.join()
    assert runtime.chargers[0].statuses[-2:] == [(1, ChargePointStatus.finishing), (1, ChargePointStatus.available)]


@pytest.mark.asyncio
async def test_stop_local_without_transaction(connected):
    with pytest.raises(NoTransactionError):
        await connected.transactions.stop_local()


@pytest.mark.asyncio
async def test_stop_local_propagates_transport_errors(connected, store):
    runtime = connected
    await start_transaction(runtime)
    runtime.chargers[0].fail.add("stop")
    with pytest.raises(ConnectionError):
        await runtime.transactions.stop_local()
    assert store.get(CURRENT_TX_ID) == 1
    assert runtime.transactions.phase == TxPhase.ACTIVE


@pytest.mark.asyncio
async def test_unlock_connector_reverts_when_idle(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    assert runtime.transactions.unlock_connector(2) == UnlockStatus.unlocked
    assert store.get(UNLOCKED_CONNECTOR_ID) == 2

    await runtime.transactions.join()
    assert charger.statuses == [(2, ChargePointStatus.preparing), (2, ChargePointStatus.available)]
    assert not store.exists(UNLOCKED_CONNECTOR_ID)


@pytest.mark.asyncio
async def test_unlock_timer_keeps_started_transaction(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    runtime.transactions.unlock_connector(1)
    await start_transaction(runtime)
    assert not store.exists(UNLOCKED_CONNECTOR_ID)

    await runtime.transactions.join()
    assert (1, ChargePointStatus.available) not in charger.statuses
    assert store.get(CURRENT_TX_ID) == 1


@pytest.mark.asyncio
async def test_simulate_preparing(connected):
    runtime = connected
    await runtime.transactions.simulate_preparing(3)
    assert runtime.chargers[0].statuses == [(3, ChargePointStatus.available), (3, ChargePointStatus.preparing)]


@pytest.mark.asyncio
async def test_transaction_survives_restart(settings, store, runtime):
    with store.update() as txn:
        txn.set(CURRENT_TX_ID, 5)
        txn.set(CURRENT_TX_CONNECTOR_ID, 2)
        txn.set(CURRENT_TX_ID_TAG, "TAG")

    assert runtime.transactions.phase == TxPhase.ACTIVE
    assert runtime.transactions.current() == Transaction(5, 2, "TAG")

    await runtime.boot()
    assert runtime.telemetry.running
    await eventually(lambda: (2, ChargePointStatus.charging) in runtime.chargers[0].statuses)


@pytest.mark.asyncio
async def test_concurrent_starts_admit_one(connected, store):
    runtime = connected
    results = [runtime.transactions.remote_start(c, f"T{c}") for c in (1, 2, 3)]
    await asyncio.sleep(0)
    await runtime.transactions.join()
    assert results.count(RemoteStartStopStatus.accepted) == 1
    assert store.get(CURRENT_TX_ID) == 1


def failing_update():
    raise StoreError("disk full")


@pytest.mark.asyncio
async def test_failed_start_persist_returns_to_idle(connected, store, monkeypatch):
    runtime = connected
    monkeypatch.setattr(store, "update", failing_update)
    assert runtime.transactions.remote_start(1, "X") == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert runtime.transactions.phase == TxPhase.IDLE
    assert not runtime.telemetry.running

    monkeypatch.undo()
    await start_transaction(runtime, id_tag="Y")
    assert store.get(CURRENT_TX_ID_TAG) == "Y"


@pytest.mark.asyncio
async def test_failed_stop_clear_keeps_transaction(connected, store, monkeypatch):
    runtime = connected
    await start_transaction(runtime)
    monkeypatch.setattr(store, "update", failing_update)

    assert runtime.transactions.remote_stop(1) == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert runtime.transactions.phase == TxPhase.ACTIVE

    monkeypatch.undo()
    assert runtime.transactions.remote_stop(1) == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert runtime.transactions.phase == TxPhase.IDLE


@pytest.mark.asyncio
async def test_failed_local_stop_clear_raises(connected, store, monkeypatch):
    runtime = connected
    await start_transaction(runtime)
    monkeypatch.setattr(store, "update", failing_update)
    with pytest.raises(StoreError):
        await runtime.transactions.stop_local()
    monkeypatch.undo()
    assert runtime.transactions.phase == TxPhase.ACTIVE


@pytest.mark.asyncio
async def test_stop_during_meter_send_discards_report(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    charger.meter_gate = asyncio.Event()
    store.set("MeterValueSampleInterval", 5)
    await start_transaction(runtime)
    await eventually(lambda: charger.meter_calls >= 1)

    assert runtime.transactions.remote_stop(1) == RemoteStartStopStatus.accepted
    await runtime.transactions.join()
    assert not store.exists(CURRENT_TX_ID)

    charger.meter_gate.set()
    await runtime.ctx.sleep(20)
    assert charger.meter_reports == []
    for key in METER_KEYS:
        assert not store.exists(key)


@pytest.mark.asyncio
async def test_unlock_during_transaction_leaves_no_binding(connected, store):
    runtime = connected
    charger = runtime.chargers[0]
    await start_transaction(runtime)

    runtime.transactions.unlock_connector(2)
    await runtime.transactions.join()
    assert not store.exists(UNLOCKED_CONNECTOR_ID)
    assert (2, ChargePointStatus.available) not in charger.statuses

    runtime.transactions.remote_stop(1)
    await runtime.transactions.join()
    assert not store.exists(UNLOCKED_CONNECTOR_ID)


@pytest.mark.asyncio
async def test_stop_clears_unlock_binding(connected, store):
    runtime = connected
    await start_transaction(runtime)
    store.set(UNLOCKED_CONNECTOR_ID, 1)
    runtime.transactions.remote_stop(1)
    await runtime.transactions.join()
    assert not store.exists(UNLOCKED_CONNECTOR_ID)


@pytest.mark.asyncio
async def test_transitions_log_through_root_logger(connected, caplog):
    caplog.set_level("INFO")
    connected.transactions.remote_start(1, "LOGGED")
    await connected.transactions.join()
    records = [r for r in caplog.records if "idTag=LOGGED" in r.getMessage()]
    assert records
    assert all(r.name == "root" for r in records)
