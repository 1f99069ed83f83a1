from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import allure
import pytest

from agent_dispatch.dispatch.checkpoints import CheckpointStore
from agent_dispatch.dispatch.coordinator import ConsumerGroupCoordinator
from agent_dispatch.dispatch.dispatcher import Dispatcher
from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.executor import ExecutionRequest, ExecutionResult
from agent_dispatch.dispatch.heartbeats import HeartbeatStore
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import (
    NormalizedTask,
    OutcomeStatus,
    Subscription,
    TaskCheckpoint,
)
from agent_dispatch.dispatch.outcomes import SqlOutcomeStore
from agent_dispatch.dispatch.registry import TaskTypeRegistry, TaskTypeSpec
from agent_dispatch.dispatch.worker import WorkerRuntime
from agent_dispatch.errors import UnknownTaskType
from tests.conftest import REPO_SCHEMA, FakeClock

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Claim, Execute, Acknowledge"),
]

Handler = Callable[[ExecutionRequest], Awaitable[ExecutionResult]]


class ScriptedExecutor:
    """Executor driven by a per-test coroutine; records every request."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[ExecutionRequest] = []
        self.running = 0
        self.peak = 0

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            return await self.handler(request)
        finally:
            self.running -= 1


def _always(result: ExecutionResult) -> Handler:
    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        return result

    return _handler


def _runtime(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    executor: ScriptedExecutor,
    **overrides: Any,
) -> WorkerRuntime:
    options: dict[str, Any] = {
        "consumer_id": "w1",
        "subscriptions": [Subscription(task_type="drift-scan", group_name="workers")],
        "max_concurrency": 1,
        "block_ms": 20,
        "heartbeat_interval_seconds": 0.05,
        "cancel_grace_seconds": 0.05,
    }
    options.update(overrides)
    events = LifecycleEventEmitter(message_log.engine, clock=message_log.clock)
    return WorkerRuntime(
        log=message_log,
        coordinator=ConsumerGroupCoordinator(log=message_log, events=events),
        registry=registry,
        executor=executor,
        outcomes=SqlOutcomeStore(message_log.engine, clock=message_log.clock),
        heartbeats=HeartbeatStore(message_log.engine, clock=message_log.clock),
        events=events,
        checkpoints=CheckpointStore(message_log.engine, clock=message_log.clock),
        **options,
    )


def _append(message_log: MessageLog, repo: str = "infra-core") -> str:
    return str(message_log.append("drift-scan", json.dumps({"repo": repo}).encode("utf-8")))


def _outcomes(message_log: MessageLog) -> SqlOutcomeStore:
    return SqlOutcomeStore(message_log.engine)


def _event_types(message_log: MessageLog, record_id: str) -> list[str]:
    events = LifecycleEventEmitter(message_log.engine).list_events(record_id=record_id)
    return [event.event_type for event in events]


async def test_success_records_outcome_and_acks(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    record_id = _append(message_log)
    executor = ScriptedExecutor(_always(ExecutionResult.success({"drift": False})))
    runtime = _runtime(message_log, registry, executor)

    summary = await runtime.run(idle_exit_polls=1)

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert json.loads(executor.requests[0].payload) == {"repo": "infra-core"}
    assert executor.requests[0].delivery_count == 1
    [outcome] = _outcomes(message_log).list_outcomes()
    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.detail["data"] == {"drift": False}
    assert message_log.list_pending("drift-scan", "workers", 0) == []
    assert _event_types(message_log, record_id) == ["claimed", "started", "acked"]


async def test_terminal_failure_is_acked_with_failed_outcome(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    record_id = _append(message_log)
    executor = ScriptedExecutor(_always(ExecutionResult.terminal("plan rejected")))
    runtime = _runtime(message_log, registry, executor)

    summary = await runtime.run(idle_exit_polls=1)

    assert (summary.failed, summary.retried) == (1, 0)
    [outcome] = _outcomes(message_log).list_outcomes()
    assert outcome.record_id == record_id
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.detail["last_error"] == "plan rejected"
    assert message_log.list_pending("drift-scan", "workers", 0) == []
    assert "failed_terminal" in _event_types(message_log, record_id)


async def test_terminal_failure_after_takeover_is_not_recorded(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    record_id = _append(message_log)

    async def _handler(request: ExecutionRequest) -> ExecutionResult:
        taken = message_log.claim("drift-scan", "workers", "other", request.record_id, 0)
        assert taken is not None
        return ExecutionResult.terminal("plan rejected")

    runtime = _runtime(message_log, registry, ScriptedExecutor(_handler))

    summary = await runtime.run(idle_exit_polls=1)

    assert summary.failed == 0
    assert _outcomes(message_log).list_outcomes() == []
    pending = message_log.pending_entry("drift-scan", "workers", record_id)
    assert pending is not None
    assert pending.consumer_id == "other"
    event_types = _event_types(message_log, record_id)
    assert "redundant_ack" in event_types
    assert "failed_terminal" not in event_types


async def test_generated_correlation_id_follows_the_record_through_execution(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    events = LifecycleEventEmitter(message_log.engine, clock=message_log.clock)
    dispatcher = Dispatcher(log=message_log, registry=registry, events=events)
    record_id = str(
        dispatcher.dispatch(NormalizedTask(type="drift-scan", payload={"repo": "infra-core"})),
    )
    executor = ScriptedExecutor(_always(ExecutionResult.success()))

    await _runtime(message_log, registry, executor).run(idle_exit_polls=1)

    record = message_log.get_record("drift-scan", record_id)
    assert record is not None
    assert record.correlation_id
    assert executor.requests[0].correlation_id == record.correlation_id
    record_events = events.list_events(record_id=record_id)
    assert [event.event_type for event in record_events] == [
        "dispatched",
        "claimed",
        "started",
        "acked",
    ]
    assert {event.correlation_id for event in record_events} == {record.correlation_id}
    [outcome] = _outcomes(message_log).list_outcomes()
    assert outcome.detail["correlation_id"] == record.correlation_id


async def test_retryable_failure_stays_pending_and_is_redelivered(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    _append(message_log)
    results = [ExecutionResult.retryable("runner busy"), ExecutionResult.success()]

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        return results.pop(0)

    executor = ScriptedExecutor(_handler)
    runtime = _runtime(
        message_log,
        registry,
        executor,
        min_idle_ms=0,
        reclaim_interval_seconds=0,
    )

    summary = await runtime.run(idle_exit_polls=2)

    assert (summary.retried, summary.succeeded, summary.recovered) == (1, 1, 1)
    assert [request.delivery_count for request in executor.requests] == [1, 2]
    [outcome] = _outcomes(message_log).list_outcomes()
    assert outcome.detail["delivery_count"] == 2


async def test_always_failing_record_is_terminal_after_max_deliveries(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    _append(message_log)
    executor = ScriptedExecutor(_always(ExecutionResult.retryable("still broken")))
    runtime = _runtime(
        message_log,
        registry,
        executor,
        min_idle_ms=0,
        max_deliveries=10,
        reclaim_interval_seconds=0,
    )

    summary = await runtime.run(idle_exit_polls=2)

    assert len(executor.requests) == 11
    assert executor.requests[-1].delivery_count == 11
    assert (summary.retried, summary.failed) == (10, 1)
    [outcome] = _outcomes(message_log).list_outcomes()
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.detail["failure_class"] == "deliveries_exhausted"
    assert outcome.detail["delivery_count"] == 11
    assert outcome.detail["last_error"] == "still broken"
    assert message_log.list_pending("drift-scan", "workers", 0) == []


async def test_per_type_max_deliveries_overrides_worker_default(
    message_log: MessageLog,
) -> None:
    registry = TaskTypeRegistry(
        [TaskTypeSpec(task_type="drift-scan", payload_schema=REPO_SCHEMA, max_deliveries=1)],
    )
    _append(message_log)
    executor = ScriptedExecutor(_always(ExecutionResult.retryable("flaky")))
    runtime = _runtime(
        message_log,
        registry,
        executor,
        min_idle_ms=0,
        reclaim_interval_seconds=0,
    )

    summary = await runtime.run(idle_exit_polls=2)

    assert len(executor.requests) == 2
    assert summary.failed == 1


async def test_deadline_cancels_cooperative_executor(message_log: MessageLog) -> None:
    registry = TaskTypeRegistry([TaskTypeSpec(task_type="drift-scan", default_timeout_ms=50)])
    record_id = _append(message_log)
    reasons: list[str | None] = []

    async def _handler(request: ExecutionRequest) -> ExecutionResult:
        reasons.append(await request.cancellation.wait())
        return ExecutionResult.retryable("stopped on request")

    runtime = _runtime(message_log, registry, ScriptedExecutor(_handler))

    summary = await runtime.run(max_tasks=1)

    assert reasons == ["deadline exceeded"]
    assert (summary.timeouts, summary.retried) == (1, 1)
    entry = message_log.pending_entry("drift-scan", "workers", record_id)
    assert entry is not None
    assert entry.consumer_id == "w1"
    assert "timeout" in _event_types(message_log, record_id)


async def test_executor_ignoring_cancellation_is_force_cancelled(
    message_log: MessageLog,
) -> None:
    registry = TaskTypeRegistry([TaskTypeSpec(task_type="drift-scan", default_timeout_ms=50)])
    _append(message_log)
    force_cancelled: list[bool] = []

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            force_cancelled.append(True)
            raise
        return ExecutionResult.success()

    runtime = _runtime(message_log, registry, ScriptedExecutor(_handler))

    summary = await runtime.run(max_tasks=1)

    assert force_cancelled == [True]
    assert summary.timeouts == 1
    assert summary.succeeded == 0


async def test_startup_recovers_abandoned_work_before_new_records(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    clock: FakeClock,
) -> None:
    message_log.create_group("drift-scan", "workers", "0")
    abandoned = _append(message_log, "abandoned")
    message_log.read_new("drift-scan", "workers", "dead-worker", 1, 0)
    clock.advance(seconds=16 * 60)
    fresh = _append(message_log, "fresh")
    executor = ScriptedExecutor(_always(ExecutionResult.success()))
    runtime = _runtime(message_log, registry, executor)

    summary = await runtime.run(idle_exit_polls=1)

    assert [request.record_id for request in executor.requests] == [abandoned, fresh]
    assert [request.delivery_count for request in executor.requests] == [2, 1]
    assert summary.recovered == 1
    assert "reclaimed" in _event_types(message_log, abandoned)


async def test_recently_claimed_work_is_not_stolen(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    clock: FakeClock,
) -> None:
    message_log.create_group("drift-scan", "workers", "0")
    busy = _append(message_log)
    message_log.read_new("drift-scan", "workers", "busy-worker", 1, 0)
    clock.advance(seconds=60)
    executor = ScriptedExecutor(_always(ExecutionResult.success()))
    runtime = _runtime(message_log, registry, executor)

    summary = await runtime.run(idle_exit_polls=1)

    assert executor.requests == []
    assert summary.recovered == 0
    entry = message_log.pending_entry("drift-scan", "workers", busy)
    assert entry is not None
    assert entry.consumer_id == "busy-worker"


async def test_concurrency_never_exceeds_limit(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    for index in range(10):
        _append(message_log, f"repo-{index}")

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        await asyncio.sleep(0.02)
        return ExecutionResult.success()

    executor = ScriptedExecutor(_handler)
    runtime = _runtime(message_log, registry, executor, max_concurrency=3)

    summary = await runtime.run(idle_exit_polls=1)

    assert summary.succeeded == 10
    assert executor.peak <= 3
    assert runtime.executing == 0
    assert message_log.partition_stats("drift-scan").groups[0].acked == 10


async def test_request_stop_drains_in_flight_and_claims_nothing_new(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    first = _append(message_log, "a")
    _append(message_log, "b")
    _append(message_log, "c")
    runtime: WorkerRuntime | None = None

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        assert runtime is not None
        runtime.request_stop(reason="test")
        await asyncio.sleep(0.05)
        return ExecutionResult.success()

    executor = ScriptedExecutor(_handler)
    runtime = _runtime(message_log, registry, executor)

    summary = await runtime.run()

    assert [request.record_id for request in executor.requests] == [first]
    assert summary.succeeded == 1
    stats = message_log.partition_stats("drift-scan")
    assert stats.groups[0].acked == 1
    assert stats.groups[0].pending == 0
    assert stats.groups[0].undelivered == 2


async def test_heartbeat_is_refreshed_while_running_and_removed_on_exit(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    clock: FakeClock,
) -> None:
    heartbeats = HeartbeatStore(message_log.engine, clock=message_log.clock)
    _append(message_log)
    seen: list[tuple[bool, bool]] = []

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        startup_beat = heartbeats.get("w1")
        assert startup_beat is not None
        clock.advance(seconds=91)
        expired = startup_beat.is_alive(clock())
        await asyncio.sleep(0.2)
        refreshed = heartbeats.get("w1")
        assert refreshed is not None
        assert refreshed.last_seen_at > startup_beat.last_seen_at
        seen.append((startup_beat.is_alive(clock()), heartbeats.is_alive("w1")))
        return ExecutionResult.success()

    runtime = _runtime(message_log, registry, ScriptedExecutor(_handler), heartbeat_ttl_seconds=90)

    await runtime.run(idle_exit_polls=1)

    assert seen == [(False, True)]
    assert heartbeats.get("w1") is None


async def test_checkpoint_is_resumed_on_redelivery_then_deleted(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    record_id = _append(message_log)
    checkpoint = TaskCheckpoint(state={"applied": ["vpc"]}, workdir_ref="/tmp/run-1")
    received: list[TaskCheckpoint | None] = []

    async def _handler(request: ExecutionRequest) -> ExecutionResult:
        received.append(request.checkpoint)
        if request.checkpoint is None:
            return ExecutionResult.retryable("suspended", checkpoint=checkpoint)
        return ExecutionResult.success()

    runtime = _runtime(
        message_log,
        registry,
        ScriptedExecutor(_handler),
        min_idle_ms=0,
        reclaim_interval_seconds=0,
    )

    summary = await runtime.run(idle_exit_polls=2)

    assert received == [None, checkpoint]
    assert summary.succeeded == 1
    assert CheckpointStore(message_log.engine).load("drift-scan", record_id) is None


@pytest.mark.parametrize(
    ("error", "retried", "failed"),
    [
        (ConnectionError("connection reset by peer"), 1, 0),
        (ValueError("malformed plan"), 0, 1),
    ],
)
async def test_executor_exceptions_are_classified(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    error: Exception,
    retried: int,
    failed: int,
) -> None:
    record_id = _append(message_log)

    async def _handler(_: ExecutionRequest) -> ExecutionResult:
        raise error

    runtime = _runtime(message_log, registry, ScriptedExecutor(_handler))

    summary = await runtime.run(max_tasks=1)

    assert (summary.retried, summary.failed) == (retried, failed)
    pending = message_log.pending_entry("drift-scan", "workers", record_id)
    assert (pending is not None) == bool(retried)


async def test_multiple_subscriptions_are_all_consumed(message_log: MessageLog) -> None:
    registry = TaskTypeRegistry(
        [TaskTypeSpec(task_type="drift-scan"), TaskTypeSpec(task_type="plan")],
    )
    drift = _append(message_log)
    plan = str(message_log.append("plan", b"{}"))
    executor = ScriptedExecutor(_always(ExecutionResult.success()))
    runtime = _runtime(
        message_log,
        registry,
        executor,
        subscriptions=[
            Subscription(task_type="drift-scan", group_name="workers"),
            Subscription(task_type="plan", group_name="workers"),
        ],
        max_concurrency=2,
    )

    summary = await runtime.run(idle_exit_polls=1)

    assert summary.succeeded == 2
    assert sorted(request.record_id for request in executor.requests) == sorted([drift, plan])


def test_runtime_rejects_unknown_subscription(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    with pytest.raises(UnknownTaskType):
        _runtime(
            message_log,
            registry,
            ScriptedExecutor(_always(ExecutionResult.success())),
            subscriptions=[Subscription(task_type="apply", group_name="workers")],
        )
