"""Multi-step writes as compensating-action sagas.

Supabase calls made through PostgREST are independent, individually
committed requests. A :class:`Saga` therefore does not pretend to be a
transaction: it runs typed steps in order, retries each one, and when a
critical step fails it runs the compensations of the steps that already
completed, newest first. What was undone (and what could not be) is
reported in the :class:`SagaResult`.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pygp51._constants import USERS_TABLE, VEHICLES_TABLE
from pygp51.exceptions import Gp51PersistenceError, Gp51SagaError
from pygp51.models.device import Device
from pygp51.store.base import Eq, Store

_logger = logging.getLogger(__name__)

StepAction = Callable[["SagaContext"], Awaitable[Any]]
Compensation = Callable[["SagaContext", Any], Awaitable[None]]


class StepStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


@dataclass(frozen=True)
class SagaStep:
    """One unit of work.

    Parameters
    ----------
    name : str
        Unique within the saga; also the key of the step's result.
    action : callable
        ``async (ctx) -> result``.
    compensate : callable or None
        ``async (ctx, result) -> None`` undoing *action*. Steps without
        one are left as they are when the saga unwinds.
    critical : bool
        A failing critical step aborts the saga and triggers compensation.
        A failing non-critical step is recorded and skipped.
    """

    name: str
    action: StepAction
    compensate: Compensation | None = None
    critical: bool = True


@dataclass
class StepRecord:
    name: str
    started_at: float
    status: StepStatus = StepStatus.RUNNING
    attempts: int = 0
    error: BaseException | None = None


@dataclass
class SagaContext:
    """Shared state handed to every action and compensation."""

    saga_id: str
    results: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SagaResult:
    saga_id: str
    success: bool
    results: Mapping[str, Any]
    completed: tuple[str, ...]
    failed: tuple[str, ...]
    compensated: tuple[str, ...]
    error: BaseException | None
    duration: float
    ledger: tuple[StepRecord, ...] = ()

    def raise_for_error(self) -> None:
        """Raise :class:`Gp51SagaError` when the saga did not succeed."""
        if not self.success:
            raise Gp51SagaError(f"Saga {self.saga_id} failed: {self.error!r}", result=self)


class _CriticalStepFailed(Exception):
    def __init__(self, step: str, error: BaseException) -> None:
        self.step = step
        self.error = error
        super().__init__(f"{step}: {error!r}")


def _new_saga_id() -> str:
    return f"saga_{uuid.uuid4().hex[:12]}"


class Saga:
    """Ordered steps with per-step retry and reverse-order compensation.

    Usage::

        saga = Saga([SagaStep("create_user", create_user, delete_user)])
        result = await saga.run()
        result.raise_for_error()
    """

    def __init__(
        self,
        steps: Sequence[SagaStep] = (),
        *,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        timeout: float | None = None,
        saga_id: str | None = None,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        self.saga_id = saga_id or _new_saga_id()
        self._steps: list[SagaStep] = []
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._ledger: list[StepRecord] = []
        self._started_at: float | None = None
        for step in steps:
            self.add_step(step)

    def add_step(self, step: SagaStep) -> Saga:
        if any(s.name == step.name for s in self._steps):
            raise ValueError(f"Duplicate saga step name: {step.name}")
        self._steps.append(step)
        return self

    @property
    def steps(self) -> tuple[SagaStep, ...]:
        return tuple(self._steps)

    @property
    def ledger(self) -> tuple[StepRecord, ...]:
        return tuple(self._ledger)

    @property
    def started_at(self) -> float | None:
        return self._started_at

    async def run(self) -> SagaResult:
        """Run every step; never raises for step failures."""
        self._started_at = time.monotonic()
        self._ledger = []
        ctx = SagaContext(saga_id=self.saga_id)
        completed: list[SagaStep] = []
        failed: list[str] = []
        error: BaseException | None = None

        try:
            if self._timeout is not None:
                await asyncio.wait_for(self._run_steps(ctx, completed, failed), timeout=self._timeout)
            else:
                await self._run_steps(ctx, completed, failed)
        except _CriticalStepFailed as exc:
            error = exc.error
            _logger.warning("Saga %s aborted at step %s", self.saga_id, exc.step)
        except TimeoutError as exc:
            error = exc
            for record in self._ledger:
                if record.status == StepStatus.RUNNING:
                    record.status = StepStatus.FAILED
                    record.error = exc
                    failed.append(record.name)
            _logger.warning("Saga %s timed out after %.1fs", self.saga_id, self._timeout)

        compensated: list[str] = []
        if error is not None:
            compensated = await self._compensate(ctx, completed)

        duration = time.monotonic() - self._started_at
        result = SagaResult(
            saga_id=self.saga_id,
            success=error is None,
            results=dict(ctx.results),
            completed=tuple(s.name for s in completed if s.name not in compensated),
            failed=tuple(failed),
            compensated=tuple(compensated),
            error=error,
            duration=duration,
            ledger=tuple(self._ledger),
        )
        _logger.info(
            "Saga %s finished success=%s completed=%d failed=%d compensated=%d in %.2fs",
            self.saga_id,
            result.success,
            len(result.completed),
            len(result.failed),
            len(result.compensated),
            duration,
        )
        return result

    async def _run_steps(self, ctx: SagaContext, completed: list[SagaStep], failed: list[str]) -> None:
        for step in self._steps:
            record = StepRecord(name=step.name, started_at=time.monotonic())
            self._ledger.append(record)
            try:
                ctx.results[step.name] = await self._run_with_retry(step, ctx, record)
            except Exception as exc:
                record.status = StepStatus.FAILED
                record.error = exc
                failed.append(step.name)
                if step.critical:
                    raise _CriticalStepFailed(step.name, exc) from exc
                _logger.warning("Saga %s: non-critical step %s failed: %r", self.saga_id, step.name, exc)
                continue
            record.status = StepStatus.COMPLETED
            completed.append(step)

    async def _run_with_retry(self, step: SagaStep, ctx: SagaContext, record: StepRecord) -> Any:
        last_exc: Exception | None = None
        for attempt in range(1, self._retry_attempts + 1):
            record.attempts = attempt
            try:
                return await step.action(ctx)
            except Exception as exc:
                last_exc = exc
                _logger.debug(
                    "Saga %s step %s attempt %d/%d failed: %r",
                    self.saga_id,
                    step.name,
                    attempt,
                    self._retry_attempts,
                    exc,
                )
                if attempt < self._retry_attempts:
                    await asyncio.sleep(self._retry_delay * 2 ** (attempt - 1))
        assert last_exc is not None  # noqa: S101
        raise last_exc

    async def _compensate(self, ctx: SagaContext, completed: list[SagaStep]) -> list[str]:
        compensated: list[str] = []
        records = {r.name: r for r in self._ledger}
        for step in reversed(completed):
            if step.compensate is None:
                continue
            record = records[step.name]
            try:
                await step.compensate(ctx, ctx.results.get(step.name))
            except Exception:
                record.status = StepStatus.COMPENSATION_FAILED
                _logger.error("Saga %s: compensation of %s failed", self.saga_id, step.name, exc_info=True)
                continue
            record.status = StepStatus.COMPENSATED
            compensated.append(step.name)
        return compensated


@dataclass(frozen=True)
class ActiveSaga:
    saga_id: str
    duration: float
    steps_started: int
    operations: tuple[str, ...]


@dataclass(frozen=True)
class SagaMetrics:
    active_count: int
    average_duration: float
    longest_running: ActiveSaga | None
    succeeded: int
    failed: int


class SagaRunner:
    """Runs sagas and keeps track of the ones in flight."""

    def __init__(self) -> None:
        self._active: dict[str, Saga] = {}
        self._succeeded = 0
        self._failed = 0

    async def run(self, saga: Saga) -> SagaResult:
        self._active[saga.saga_id] = saga
        try:
            result = await saga.run()
        finally:
            self._active.pop(saga.saga_id, None)
        if result.success:
            self._succeeded += 1
        else:
            self._failed += 1
        return result

    def active(self) -> list[ActiveSaga]:
        now = time.monotonic()
        return [
            ActiveSaga(
                saga_id=saga_id,
                duration=now - (saga.started_at if saga.started_at is not None else now),
                steps_started=len(saga.ledger),
                operations=tuple(r.name for r in saga.ledger),
            )
            for saga_id, saga in self._active.items()
        ]

    def metrics(self) -> SagaMetrics:
        active = self.active()
        average = sum(a.duration for a in active) / len(active) if active else 0.0
        longest = max(active, key=lambda a: a.duration) if active else None
        return SagaMetrics(
            active_count=len(active),
            average_duration=average,
            longest_running=longest,
            succeeded=self._succeeded,
            failed=self._failed,
        )


def _single_row(rows: list[dict[str, Any]], table: str) -> dict[str, Any]:
    if not rows:
        raise Gp51PersistenceError(f"insert into {table} returned no row", table=table)
    return rows[0]


async def import_user_with_vehicles(
    store: Store,
    username: str,
    user_data: Mapping[str, Any],
    devices: Sequence[Device],
    *,
    runner: SagaRunner | None = None,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
    timeout: float | None = 60.0,
) -> SagaResult:
    """Create an ``envio_users`` row for a GP51 account plus one ``vehicles`` row per device.

    The user step is critical. Each vehicle step is not: a vehicle that
    cannot be created is reported in ``result.failed`` and the import goes
    on. If the saga aborts, created vehicles and the user are deleted
    again. The user row is ``result.results["create_user"]``.
    """

    async def create_user(ctx: SagaContext) -> dict[str, Any]:
        rows = await store.insert(
            USERS_TABLE,
            [
                {
                    "name": user_data.get("name") or username,
                    "email": user_data.get("email") or f"{username}@example.com",
                    "gp51_username": username,
                    "is_gp51_imported": True,
                    "import_source": "gp51_api",
                    "registration_status": "active",
                }
            ],
        )
        return _single_row(rows, USERS_TABLE)

    async def delete_user(ctx: SagaContext, row: Any) -> None:
        await store.delete(USERS_TABLE, filters=[Eq("id", row["id"])])

    async def delete_vehicle(ctx: SagaContext, row: Any) -> None:
        await store.delete(VEHICLES_TABLE, filters=[Eq("id", row["id"])])

    def vehicle_step(device: Device) -> SagaStep:
        async def create_vehicle(ctx: SagaContext) -> dict[str, Any]:
            user = ctx.results["create_user"]
            rows = await store.insert(
                VEHICLES_TABLE,
                [
                    {
                        "device_id": device.device_id,
                        "device_name": device.device_name,
                        "device_type": str(device.device_type) if device.device_type is not None else None,
                        "gp51_username": username,
                        "envio_user_id": user["id"],
                        "is_active": True,
                        "gp51_metadata": device.raw,
                    }
                ],
            )
            return _single_row(rows, VEHICLES_TABLE)

        return SagaStep(f"create_vehicle:{device.device_id}", create_vehicle, delete_vehicle, critical=False)

    saga = Saga(
        [SagaStep("create_user", create_user, delete_user)],
        retry_attempts=retry_attempts,
        retry_delay=retry_delay,
        timeout=timeout,
    )
    for device in {d.device_id: d for d in devices}.values():
        saga.add_step(vehicle_step(device))

    if runner is not None:
        return await runner.run(saga)
    return await saga.run()
