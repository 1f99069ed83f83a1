"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_dispatch.config import Settings
from agent_dispatch.dispatch.checkpoints import CheckpointStore
from agent_dispatch.dispatch.coordinator import ConsumerGroupCoordinator
from agent_dispatch.dispatch.dispatcher import Dispatcher
from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.executor import CommandExecutor
from agent_dispatch.dispatch.heartbeats import HeartbeatStore
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import NormalizedTask, OutcomeStatus, Subscription
from agent_dispatch.dispatch.outcomes import SqlOutcomeStore
from agent_dispatch.dispatch.registry import TaskTypeRegistry, load_registry
from agent_dispatch.dispatch.watchdog import Watchdog
from agent_dispatch.dispatch.worker import WorkerRuntime


@dataclass(slots=True)
class DispatchSubmitCommand:
    """CLI input for a single dispatch."""

    db_path: Path | None
    registry_path: Path | None
    task_type: str
    payload_json: str
    priority: int
    correlation_id: str | None


@dataclass(slots=True)
class DispatchBatchCommand:
    """CLI input for staggered batch dispatch from a JSON-lines file."""

    db_path: Path | None
    registry_path: Path | None
    tasks_file: Path
    stagger_ms: int | None


@dataclass(slots=True)
class GroupEnsureCommand:
    """CLI input for consumer group creation."""

    db_path: Path | None
    task_type: str
    group_name: str
    start_id: str


@dataclass(slots=True)
class GroupListCommand:
    """CLI input for consumer group listing."""

    db_path: Path | None
    task_type: str | None


@dataclass(slots=True)
class PendingListCommand:
    """CLI input for pending entry listing."""

    db_path: Path | None
    task_type: str
    group_name: str
    min_idle_ms: int
    limit: int


@dataclass(slots=True)
class PendingClaimCommand:
    """CLI input for manual reclaim of one pending entry."""

    db_path: Path | None
    task_type: str
    group_name: str
    consumer_id: str
    record_id: str
    min_idle_ms: int


@dataclass(slots=True)
class AckCommand:
    """CLI input for manual acknowledgement."""

    db_path: Path | None
    task_type: str
    group_name: str
    record_id: str
    consumer_id: str | None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for partition accounting."""

    db_path: Path | None
    task_type: str | None


@dataclass(slots=True)
class EventsCommand:
    """CLI input for lifecycle event listing."""

    db_path: Path | None
    record_id: str | None
    event_type: str | None
    limit: int


@dataclass(slots=True)
class OutcomesCommand:
    """CLI input for outcome listing."""

    db_path: Path | None
    task_type: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    registry_path: Path | None
    task_types: tuple[str, ...]
    group_name: str | None
    consumer_id: str | None
    max_concurrency: int | None
    max_tasks: int | None
    idle_exit_polls: int | None


@dataclass(slots=True)
class WatchdogRunCommand:
    """CLI input for watchdog cycles."""

    db_path: Path | None
    task_types: tuple[str, ...]
    group_name: str | None
    once: bool
    max_cycles: int | None


class DispatchCliController:
    """Runs CLI commands against the dispatch log; returns output lines."""

    def submit(self, command: DispatchSubmitCommand) -> list[str]:
        settings = _settings(command.db_path, command.registry_path)
        registry = load_registry(settings.registry_path)
        payload = _parse_payload(command.payload_json, source="--payload")
        with _message_log(settings) as log:
            dispatcher = Dispatcher(
                log=log,
                registry=registry,
                events=LifecycleEventEmitter(log.engine, clock=log.clock),
            )
            record_id = dispatcher.dispatch(
                NormalizedTask(
                    type=command.task_type,
                    payload=payload,
                    priority=command.priority,
                    correlation_id=command.correlation_id,
                ),
            )
        return [f"Dispatched: record_id={record_id} task_type={command.task_type}"]

    def submit_batch(self, command: DispatchBatchCommand) -> list[str]:
        settings = _settings(command.db_path, command.registry_path)
        registry = load_registry(settings.registry_path)
        tasks = _read_tasks_file(command.tasks_file)
        stagger_ms = (
            command.stagger_ms if command.stagger_ms is not None else settings.dispatch.stagger_ms
        )
        with _message_log(settings) as log:
            dispatcher = Dispatcher(
                log=log,
                registry=registry,
                events=LifecycleEventEmitter(log.engine, clock=log.clock),
            )
            record_ids = dispatcher.dispatch_batch(tasks, stagger_ms=stagger_ms)
        lines = [f"Dispatched batch: count={len(record_ids)} stagger_ms={stagger_ms}"]
        lines.extend(
            f"- {task.type} {record_id}" for task, record_id in zip(tasks, record_ids, strict=True)
        )
        return lines

    def ensure_group(self, command: GroupEnsureCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _message_log(settings) as log:
            created = ConsumerGroupCoordinator(log=log).ensure_group(
                command.task_type,
                command.group_name,
                command.start_id,
            )
        verdict = "created" if created else "already exists (no-op)"
        return [f"Consumer group {command.group_name} on {command.task_type}: {verdict}"]

    def list_groups(self, command: GroupListCommand) -> list[str]:
        settings = _settings(command.db_path)
        lines: list[str] = []
        with _message_log(settings) as log:
            task_types = (
                [command.task_type]
                if command.task_type
                else [partition.task_type for partition in log.list_partitions()]
            )
            for task_type in task_types:
                lines.extend(
                    f"{group.task_type} {group.group_name} "
                    f"last_delivered={group.last_delivered_id} acked={group.acked_count}"
                    for group in log.list_groups(task_type)
                )
        return lines or ["No consumer groups."]

    def list_pending(self, command: PendingListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _message_log(settings) as log:
            entries = log.list_pending(
                command.task_type,
                command.group_name,
                command.min_idle_ms,
                limit=command.limit,
            )
        if not entries:
            return ["No pending entries."]
        return [
            f"{entry.record_id} consumer={entry.consumer_id} idle_ms={entry.idle_ms} "
            f"deliveries={entry.delivery_count} claimed_at={entry.claimed_at.isoformat()}"
            for entry in entries
        ]

    def claim(self, command: PendingClaimCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _message_log(settings) as log:
            record = log.claim(
                command.task_type,
                command.group_name,
                command.consumer_id,
                command.record_id,
                command.min_idle_ms,
            )
            entry = (
                log.pending_entry(command.task_type, command.group_name, command.record_id)
                if record is not None
                else None
            )
        if record is None or entry is None:
            return [f"Not claimed: {command.record_id} (no idle pending entry)"]
        return [
            f"Claimed {record.id} for {entry.consumer_id} deliveries={entry.delivery_count}",
        ]

    def ack(self, command: AckCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _message_log(settings) as log:
            acked = log.ack(
                command.task_type,
                command.group_name,
                command.record_id,
                consumer_id=command.consumer_id,
            )
        if acked:
            return [f"Acked {command.record_id}"]
        return [f"No-op: {command.record_id} has no pending entry owned by this consumer"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        lines: list[str] = []
        with _message_log(settings) as log:
            task_types = (
                [command.task_type]
                if command.task_type
                else [partition.task_type for partition in log.list_partitions()]
            )
            for task_type in task_types:
                stats = log.partition_stats(task_type)
                lines.append(f"{stats.partition_key} appended={stats.appended}")
                lines.extend(
                    f"  group={group.group_name} acked={group.acked} pending={group.pending} "
                    f"undelivered={group.undelivered} total={group.total}"
                    for group in stats.groups
                )
        return lines or ["No partitions."]

    def events(self, command: EventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _message_log(settings) as log:
            events = LifecycleEventEmitter(log.engine, clock=log.clock).list_events(
                record_id=command.record_id,
                event_type=command.event_type,
                limit=command.limit,
            )
        if not events:
            return ["No events."]
        return [
            f"{event.created_at.isoformat()} {event.event_type} record={event.record_id} "
            f"type={event.task_type} consumer={event.consumer_id} "
            f"details={json.dumps(event.details, sort_keys=True)}"
            for event in events
        ]

    def outcomes(self, command: OutcomesCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = OutcomeStatus(command.status) if command.status else None
        with _message_log(settings) as log:
            outcomes = SqlOutcomeStore(log.engine, clock=log.clock).list_outcomes(
                task_type=command.task_type,
                status=status,
                limit=command.limit,
            )
        if not outcomes:
            return ["No outcomes."]
        return [
            f"{outcome.created_at.isoformat()} {outcome.task_type} {outcome.record_id} "
            f"{outcome.status.value} detail={json.dumps(outcome.detail, sort_keys=True)}"
            for outcome in outcomes
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path, command.registry_path)
        worker_settings = settings.worker
        if command.group_name:
            worker_settings.group_name = command.group_name
        if command.consumer_id:
            worker_settings.consumer_id = command.consumer_id
        if command.max_concurrency is not None:
            worker_settings.max_concurrency = command.max_concurrency
        settings.validate_for_worker()

        registry = load_registry(settings.registry_path)
        task_types = command.task_types or worker_settings.task_types or tuple(
            registry.task_types(),
        )
        subscriptions = [
            Subscription(task_type=task_type, group_name=worker_settings.group_name)
            for task_type in task_types
        ]
        with _message_log(settings) as log:
            runtime = _build_runtime(
                settings=settings,
                log=log,
                registry=registry,
                subscriptions=subscriptions,
            )
            summary = runtime.run_blocking(
                max_tasks=command.max_tasks,
                idle_exit_polls=command.idle_exit_polls,
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_watchdog(self, command: WatchdogRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        group_name = command.group_name or settings.worker.group_name
        with _message_log(settings) as log:
            task_types = command.task_types or settings.worker.task_types
            if task_types:
                subscriptions = [
                    Subscription(task_type=task_type, group_name=group_name)
                    for task_type in task_types
                ]
            else:
                subscriptions = [
                    Subscription(task_type=group.task_type, group_name=group.group_name)
                    for partition in log.list_partitions()
                    for group in log.list_groups(partition.task_type)
                ]
            watchdog = Watchdog(
                log=log,
                heartbeats=HeartbeatStore(log.engine, clock=log.clock),
                subscriptions=subscriptions,
                stale_after_ms=settings.watchdog.stale_after_ms,
                events=LifecycleEventEmitter(log.engine, clock=log.clock),
            )
            if command.once:
                reports = watchdog.run_cycle()
                return [f"Watchdog cycle: reports={len(reports)}"] + [
                    f"- {report.kind.value} {report.task_type}/{report.group_name} "
                    f"{report.record_id} consumer={report.consumer_id} idle_ms={report.idle_ms}"
                    for report in reports
                ]
            total = watchdog.run(
                interval_seconds=settings.watchdog.interval_seconds,
                stop_event=threading.Event(),
                max_cycles=command.max_cycles,
            )
        return [f"Watchdog finished: reports={total}"]


def _build_runtime(
    *,
    settings: Settings,
    log: MessageLog,
    registry: TaskTypeRegistry,
    subscriptions: list[Subscription],
) -> WorkerRuntime:
    worker = settings.worker
    events = LifecycleEventEmitter(log.engine, clock=log.clock)
    return WorkerRuntime(
        log=log,
        coordinator=ConsumerGroupCoordinator(log=log, events=events),
        registry=registry,
        executor=CommandExecutor(registry),
        outcomes=SqlOutcomeStore(log.engine, clock=log.clock),
        heartbeats=HeartbeatStore(log.engine, clock=log.clock),
        subscriptions=subscriptions,
        consumer_id=worker.consumer_id,
        events=events,
        checkpoints=CheckpointStore(log.engine, clock=log.clock),
        max_concurrency=worker.max_concurrency,
        block_ms=worker.block_ms,
        min_idle_ms=worker.min_idle_ms,
        max_deliveries=worker.max_deliveries,
        heartbeat_interval_seconds=worker.heartbeat_interval_seconds,
        heartbeat_ttl_seconds=worker.heartbeat_ttl_seconds,
        reclaim_interval_seconds=worker.reclaim_interval_seconds,
        cancel_grace_seconds=worker.cancel_grace_seconds,
    )


def _settings(db_path: Path | None, registry_path: Path | None = None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if registry_path is not None:
        settings.registry_path = registry_path
    return settings


def _parse_payload(raw: str, *, source: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{source} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"{source} must be a JSON object")
    return payload


def _read_tasks_file(path: Path) -> list[NormalizedTask]:
    """One JSON object per line: ``{"type": ..., "payload": {...}, "priority": ...}``."""

    tasks: list[NormalizedTask] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        item = _parse_payload(line, source=f"{path}:{line_no}")
        task_type = item.get("type")
        payload = item.get("payload", {})
        if not isinstance(task_type, str) or not isinstance(payload, dict):
            raise ValueError(f"{path}:{line_no}: expected 'type' string and 'payload' object")
        tasks.append(
            NormalizedTask(
                type=task_type,
                payload=payload,
                priority=int(item.get("priority", 100)),
                correlation_id=item.get("correlation_id"),
            ),
        )
    return tasks


@contextmanager
def _message_log(settings: Settings) -> Iterator[MessageLog]:
    log = MessageLog(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
        poll_interval_ms=settings.storage.poll_interval_ms,
    )
    log.init_schema()
    try:
        yield log
    finally:
        log.close()
