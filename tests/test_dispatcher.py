from __future__ import annotations

import json

import allure
import pytest

from agent_dispatch.dispatch.dispatcher import Dispatcher
from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import NormalizedTask
from agent_dispatch.dispatch.registry import TaskTypeRegistry
from agent_dispatch.errors import PayloadValidationError, UnknownTaskType
from tests.conftest import FakeClock

pytestmark = [
    allure.epic("Dispatcher"),
    allure.feature("Validated Dispatch"),
]


@pytest.fixture()
def dispatcher(message_log: MessageLog, registry: TaskTypeRegistry) -> Dispatcher:
    return Dispatcher(
        log=message_log,
        registry=registry,
        events=LifecycleEventEmitter(message_log.engine, clock=message_log.clock),
    )


def test_dispatch_read_ack_round_trip(dispatcher: Dispatcher, message_log: MessageLog) -> None:
    record_id = dispatcher.dispatch(
        NormalizedTask(type="drift-scan", payload={"repo": "infra-core"}),
    )
    assert str(record_id) == "1-0"

    assert message_log.create_group("drift-scan", "workers", "0") is True
    [record] = message_log.read_new("drift-scan", "workers", "w1", 1, 0)
    assert json.loads(record.payload) == {"repo": "infra-core"}
    assert message_log.ack("drift-scan", "workers", record.id) is True
    assert message_log.list_pending("drift-scan", "workers", 0) == []


def test_dispatch_carries_priority_and_correlation_id(
    dispatcher: Dispatcher,
    message_log: MessageLog,
) -> None:
    record_id = dispatcher.dispatch(
        NormalizedTask(
            type="plan",
            payload={"stack": "prod"},
            priority=5,
            correlation_id="slack-thread-42",
        ),
    )

    record = message_log.get_record("plan", record_id)
    assert record is not None
    assert (record.priority, record.correlation_id) == (5, "slack-thread-42")
    [event] = LifecycleEventEmitter(message_log.engine).list_events(event_type="dispatched")
    assert event.record_id == str(record_id)
    assert event.correlation_id == "slack-thread-42"
    assert event.details["partition_key"] == "dispatch:plan"


def test_invalid_payload_is_rejected_before_append(
    dispatcher: Dispatcher,
    message_log: MessageLog,
) -> None:
    with pytest.raises(PayloadValidationError) as caught:
        dispatcher.dispatch(NormalizedTask(type="drift-scan", payload={"repo": 7}))

    assert caught.value.task_type == "drift-scan"
    assert caught.value.violations
    assert message_log.list_partitions() == []


def test_unknown_task_type_is_rejected(dispatcher: Dispatcher, message_log: MessageLog) -> None:
    with pytest.raises(UnknownTaskType):
        dispatcher.dispatch(NormalizedTask(type="destroy-everything", payload={}))

    assert message_log.list_partitions() == []


def test_batch_with_one_bad_task_appends_nothing(
    dispatcher: Dispatcher,
    message_log: MessageLog,
) -> None:
    tasks = [
        NormalizedTask(type="drift-scan", payload={"repo": "a"}),
        NormalizedTask(type="drift-scan", payload={}),
    ]

    with pytest.raises(PayloadValidationError):
        dispatcher.dispatch_batch(tasks, stagger_ms=0)

    assert message_log.partition_stats("drift-scan").appended == 0


def test_staggered_batch_spaces_appends(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
    clock: FakeClock,
) -> None:
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds=seconds)

    dispatcher = Dispatcher(log=message_log, registry=registry, sleep=_sleep)
    tasks = [NormalizedTask(type="drift-scan", payload={"repo": f"r{n}"}) for n in range(100)]

    record_ids = dispatcher.dispatch_batch(tasks, stagger_ms=5_000)

    assert len(record_ids) == 100
    assert sleeps == [5.0] * 99
    records = message_log.list_records("drift-scan", limit=1_000)
    elapsed = records[-1].dispatched_at - records[0].dispatched_at
    assert elapsed.total_seconds() * 1000 >= 495_000
    assert [r.id for r in records] == record_ids


def test_batch_without_stagger_does_not_sleep(
    message_log: MessageLog,
    registry: TaskTypeRegistry,
) -> None:
    def _sleep(_: float) -> None:
        raise AssertionError("unexpected sleep")

    dispatcher = Dispatcher(log=message_log, registry=registry, sleep=_sleep)

    ids = dispatcher.dispatch_batch(
        [NormalizedTask(type="plan", payload={}), NormalizedTask(type="plan", payload={})],
    )

    assert [str(i) for i in ids] == ["1-0", "1-1"]


def test_negative_stagger_is_rejected(dispatcher: Dispatcher) -> None:
    with pytest.raises(ValueError, match="stagger_ms"):
        dispatcher.dispatch_batch([], stagger_ms=-1)
