from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from pygp51._constants import USERS_TABLE, VEHICLES_TABLE
from pygp51.exceptions import Gp51PersistenceError, Gp51SagaError
from pygp51.models.device import Device
from pygp51.saga import Saga, SagaContext, SagaRunner, SagaStep, StepStatus, import_user_with_vehicles
from pygp51.store.memory import MemoryStore


class _Journal:
    """Records actions and compensations in call order."""

    def __init__(self) -> None:
        self.entries: list[str] = []

    def step(self, name: str, *, fail_times: int = 0, result: Any = None) -> SagaStep:
        remaining = {"failures": fail_times}

        async def action(ctx: SagaContext) -> Any:
            self.entries.append(f"do:{name}")
            if remaining["failures"] != 0:
                remaining["failures"] -= 1
                raise RuntimeError(f"{name} failed")
            return result if result is not None else name

        async def compensate(ctx: SagaContext, value: Any) -> None:
            self.entries.append(f"undo:{name}:{value}")

        return SagaStep(name, action, compensate)


@pytest.mark.asyncio
async def test_successful_saga_collects_results() -> None:
    journal = _Journal()
    saga = Saga([journal.step("a"), journal.step("b", result=42)], retry_delay=0)

    result = await saga.run()

    assert result.success
    assert result.results == {"a": "a", "b": 42}
    assert result.completed == ("a", "b")
    assert result.compensated == ()
    assert journal.entries == ["do:a", "do:b"]
    result.raise_for_error()


@pytest.mark.asyncio
async def test_critical_failure_compensates_in_reverse_order() -> None:
    journal = _Journal()
    saga = Saga(
        [journal.step("a"), journal.step("b"), journal.step("c", fail_times=-1)],
        retry_attempts=2,
        retry_delay=0,
    )

    result = await saga.run()

    assert not result.success
    assert isinstance(result.error, RuntimeError)
    assert result.failed == ("c",)
    assert result.compensated == ("b", "a")
    assert result.completed == ()
    assert journal.entries == ["do:a", "do:b", "do:c", "do:c", "undo:b:b", "undo:a:a"]
    with pytest.raises(Gp51SagaError) as excinfo:
        result.raise_for_error()
    assert excinfo.value.result is result


@pytest.mark.asyncio
async def test_step_is_retried_until_it_succeeds() -> None:
    journal = _Journal()
    saga = Saga([journal.step("flaky", fail_times=2)], retry_attempts=3, retry_delay=0)

    result = await saga.run()

    assert result.success
    assert journal.entries == ["do:flaky"] * 3
    assert saga.ledger[0].attempts == 3
    assert saga.ledger[0].status is StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_non_critical_failure_is_skipped() -> None:
    journal = _Journal()
    optional = journal.step("optional", fail_times=-1)
    saga = Saga(
        [journal.step("a"), SagaStep(optional.name, optional.action, optional.compensate, critical=False)],
        retry_attempts=1,
        retry_delay=0,
    )
    saga.add_step(journal.step("b"))

    result = await saga.run()

    assert result.success
    assert result.completed == ("a", "b")
    assert result.failed == ("optional",)
    assert "optional" not in result.results


@pytest.mark.asyncio
async def test_failed_compensation_is_recorded_and_others_still_run() -> None:
    journal = _Journal()

    async def action(ctx: SagaContext) -> str:
        return "x"

    async def broken_undo(ctx: SagaContext, value: Any) -> None:
        raise RuntimeError("cannot undo")

    saga = Saga(
        [journal.step("a"), SagaStep("x", action, broken_undo), journal.step("boom", fail_times=-1)],
        retry_attempts=1,
        retry_delay=0,
    )

    result = await saga.run()

    assert result.compensated == ("a",)
    statuses = {r.name: r.status for r in result.ledger}
    assert statuses == {
        "a": StepStatus.COMPENSATED,
        "x": StepStatus.COMPENSATION_FAILED,
        "boom": StepStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_timeout_compensates_completed_steps() -> None:
    journal = _Journal()

    async def hang(ctx: SagaContext) -> None:
        await asyncio.sleep(10)

    saga = Saga([journal.step("a"), SagaStep("hang", hang)], retry_delay=0, timeout=0.05)

    result = await saga.run()

    assert not result.success
    assert isinstance(result.error, TimeoutError)
    assert result.failed == ("hang",)
    assert result.compensated == ("a",)


def test_duplicate_step_names_are_rejected() -> None:
    journal = _Journal()
    with pytest.raises(ValueError, match="Duplicate"):
        Saga([journal.step("a"), journal.step("a")])


@pytest.mark.asyncio
async def test_runner_tracks_active_sagas_and_metrics() -> None:
    runner = SagaRunner()
    gate = asyncio.Event()

    async def wait(ctx: SagaContext) -> None:
        await gate.wait()

    saga = Saga([SagaStep("wait", wait)], saga_id="saga_test")
    task = asyncio.create_task(runner.run(saga))
    await asyncio.sleep(0)

    active = runner.active()
    assert [a.saga_id for a in active] == ["saga_test"]
    assert active[0].operations == ("wait",)
    assert runner.metrics().active_count == 1

    gate.set()
    await task

    metrics = runner.metrics()
    assert metrics.active_count == 0
    assert metrics.longest_running is None
    assert metrics.succeeded == 1


class _VehicleFailingStore(MemoryStore):
    def __init__(self, failing_device_ids: Sequence[str] = (), fail_users: bool = False) -> None:
        super().__init__()
        self.failing_device_ids = set(failing_device_ids)
        self.fail_users = fail_users

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        if table == USERS_TABLE and self.fail_users:
            raise Gp51PersistenceError("duplicate email", status_code=409, table=table)
        if table == VEHICLES_TABLE and any(r.get("device_id") in self.failing_device_ids for r in rows):
            raise Gp51PersistenceError("constraint violation", status_code=409, table=table)
        return await super().insert(table, rows)


@pytest.mark.asyncio
async def test_import_user_with_vehicles_skips_failing_vehicle() -> None:
    store = _VehicleFailingStore(failing_device_ids=["d2"])
    devices = [
        Device.model_validate({"deviceid": "d1", "devicename": "Truck 1", "devicetype": 5}),
        Device.model_validate({"deviceid": "d2", "devicename": "Truck 2"}),
    ]

    result = await import_user_with_vehicles(store, "octopus", {"name": "Octo"}, devices, retry_delay=0)

    assert result.success
    assert result.failed == ("create_vehicle:d2",)
    user = result.results["create_user"]
    assert user["email"] == "octopus@example.com"
    vehicles = store.rows(VEHICLES_TABLE)
    assert [(v["device_id"], v["envio_user_id"], v["device_type"]) for v in vehicles] == [("d1", user["id"], "5")]


@pytest.mark.asyncio
async def test_import_user_failure_leaves_nothing_behind() -> None:
    store = _VehicleFailingStore(fail_users=True)
    runner = SagaRunner()

    result = await import_user_with_vehicles(
        store,
        "octopus",
        {},
        [Device(device_id="d1")],
        runner=runner,
        retry_attempts=2,
        retry_delay=0,
    )

    assert not result.success
    assert isinstance(result.error, Gp51PersistenceError)
    assert store.rows(USERS_TABLE) == []
    assert store.rows(VEHICLES_TABLE) == []
    assert runner.metrics().failed == 1
