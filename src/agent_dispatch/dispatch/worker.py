"""Async worker runtime: recover abandoned work, then consume and execute task records."""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from collections import deque
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from agent_dispatch.dispatch.checkpoints import CheckpointStore
from agent_dispatch.dispatch.coordinator import ConsumerGroupCoordinator
from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.executor.base import (
    CancellationToken,
    ExecutionRequest,
    ExecutionResult,
    Executor,
)
from agent_dispatch.dispatch.failure_classifier import classify_exception
from agent_dispatch.dispatch.heartbeats import HeartbeatStore
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import (
    AttemptState,
    ExecutionStatus,
    FailureClass,
    OutcomeStatus,
    Subscription,
    TaskRecord,
)
from agent_dispatch.dispatch.outcomes import OutcomeStore
from agent_dispatch.dispatch.registry import TaskTypeRegistry
from agent_dispatch.errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MIN_IDLE_MS = 15 * 60 * 1000
DEFAULT_MAX_DELIVERIES = 10


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    recovered: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class _Attempt:
    subscription: Subscription
    record: TaskRecord
    state: AttemptState = AttemptState.CLAIMED
    delivery_count: int = 1


class WorkerRuntime:
    """Consumes one or more (task type, group) subscriptions with bounded concurrency.

    Startup registers a heartbeat, ensures every group exists and recovers idle
    pending entries before the first ``read_new``; recovered records run first.
    Retryable failures and timeouts stay pending and come back through the
    idle-gated reclaim sweep until the delivery count exceeds the bound.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        log: MessageLog,
        coordinator: ConsumerGroupCoordinator,
        registry: TaskTypeRegistry,
        executor: Executor,
        outcomes: OutcomeStore,
        heartbeats: HeartbeatStore,
        subscriptions: Sequence[Subscription],
        consumer_id: str,
        events: LifecycleEventEmitter | None = None,
        checkpoints: CheckpointStore | None = None,
        max_concurrency: int = 4,
        block_ms: int = 5_000,
        min_idle_ms: int = DEFAULT_MIN_IDLE_MS,
        max_deliveries: int = DEFAULT_MAX_DELIVERIES,
        heartbeat_interval_seconds: float = 30.0,
        heartbeat_ttl_seconds: int = 90,
        reclaim_interval_seconds: float = 60.0,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        if not subscriptions:
            raise ValueError("WorkerRuntime needs at least one subscription")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        for subscription in subscriptions:
            registry.resolve(subscription.task_type)

        self.log = log
        self.coordinator = coordinator
        self.registry = registry
        self.executor = executor
        self.outcomes = outcomes
        self.heartbeats = heartbeats
        self.subscriptions = list(subscriptions)
        self.consumer_id = consumer_id
        self.events = events
        self.checkpoints = checkpoints
        self.max_concurrency = max_concurrency
        self.block_ms = block_ms
        self.min_idle_ms = min_idle_ms
        self.max_deliveries = max_deliveries
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds
        self.reclaim_interval_seconds = reclaim_interval_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self._stop_flag = threading.Event()
        self._stop_reason: str | None = None
        self._read_cursor = 0
        self._executing = 0
        self._active: set[tuple[str, str, str]] = set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_flag.is_set()

    @property
    def executing(self) -> int:
        """Attempts currently in ``EXECUTING``."""

        return self._executing

    def request_stop(self, *, reason: str = "requested") -> None:
        """Stop claiming new work and drain in-flight attempts.

        Safe to call from signal handlers and other threads.
        """

        if self._stop_flag.is_set():
            return
        self._stop_reason = reason
        self._stop_flag.set()
        logger.info("Stop requested for %s (%s); draining", self.consumer_id, reason)
        self.log.wake_readers()

    def run_blocking(
        self,
        *,
        max_tasks: int | None = None,
        idle_exit_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run the event loop with SIGINT/SIGTERM bound to a graceful drain."""

        with self._signal_handlers():
            return asyncio.run(self.run(max_tasks=max_tasks, idle_exit_polls=idle_exit_polls))

    async def run(
        self,
        *,
        max_tasks: int | None = None,
        idle_exit_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` attempts started, or enough idle polls.

        Args:
            max_tasks: Stop claiming after starting this many attempts (None = unlimited).
            idle_exit_polls: Exit after this many consecutive empty polls with
                nothing in flight (None = never).
        """

        summary = WorkerRunSummary()
        loop = asyncio.get_running_loop()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        in_flight: set[asyncio.Task[None]] = set()
        backlog: deque[_Attempt] = deque()
        started = 0
        idle_streak = 0

        await asyncio.to_thread(self.heartbeats.beat, self.consumer_id, self.heartbeat_ttl_seconds)
        heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(),
            name=f"heartbeat:{self.consumer_id}",
        )
        try:
            await self._startup(backlog=backlog, summary=summary)
            last_sweep = loop.time()

            while not self.stop_requested:
                if max_tasks is not None and started >= max_tasks:
                    break
                free = self.max_concurrency - len(in_flight)
                if free <= 0:
                    await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue

                if not backlog and loop.time() - last_sweep >= self.reclaim_interval_seconds:
                    await self._sweep(backlog=backlog, limit=free, summary=summary)
                    last_sweep = loop.time()

                if not backlog:
                    budget = free if max_tasks is None else min(free, max_tasks - started)
                    backlog.extend(await self._read_new(budget))

                if not backlog:
                    summary.idle_polls += 1
                    idle_streak = idle_streak + 1 if not in_flight else 0
                    if idle_exit_polls is not None and idle_streak >= idle_exit_polls:
                        break
                    continue

                idle_streak = 0
                while backlog and len(in_flight) < self.max_concurrency:
                    if max_tasks is not None and started >= max_tasks:
                        break
                    attempt = backlog.popleft()
                    started += 1
                    task = asyncio.create_task(
                        self._run_attempt(attempt, semaphore=semaphore, summary=summary),
                        name=f"attempt:{attempt.record.task_type}:{attempt.record.id}",
                    )
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
                    task.add_done_callback(_log_attempt_crash)
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            raise
        finally:
            if in_flight:
                logger.info("Draining %d in-flight attempt(s)", len(in_flight))
                await asyncio.gather(*in_flight, return_exceptions=True)
            if backlog:
                logger.info(
                    "Leaving %d claimed record(s) pending for reclaim: %s",
                    len(backlog),
                    ", ".join(str(attempt.record.id) for attempt in backlog),
                )
            heartbeat_task.cancel()
            await asyncio.gather(heartbeat_task, return_exceptions=True)
            try:
                await asyncio.to_thread(self.heartbeats.remove, self.consumer_id)
            except StorageUnavailable as error:
                logger.warning("Could not remove heartbeat for %s: %s", self.consumer_id, error)

        logger.info(
            "Worker %s finished: processed=%d succeeded=%d retried=%d failed=%d "
            "timeouts=%d recovered=%d idle_polls=%d",
            self.consumer_id,
            summary.processed,
            summary.succeeded,
            summary.retried,
            summary.failed,
            summary.timeouts,
            summary.recovered,
            summary.idle_polls,
        )
        return summary

    async def _startup(self, *, backlog: deque[_Attempt], summary: WorkerRunSummary) -> None:
        for subscription in self.subscriptions:
            await asyncio.to_thread(
                self.coordinator.ensure_group,
                subscription.task_type,
                subscription.group_name,
            )
        for subscription in self.subscriptions:
            recovered = await asyncio.to_thread(
                self.coordinator.recover_abandoned,
                subscription.task_type,
                subscription.group_name,
                self.consumer_id,
                self.min_idle_ms,
            )
            summary.recovered += len(recovered)
            backlog.extend(_Attempt(subscription=subscription, record=rec) for rec in recovered)
        if backlog:
            logger.info("Recovered %d record(s) at startup for %s", len(backlog), self.consumer_id)

    async def _sweep(
        self,
        *,
        backlog: deque[_Attempt],
        limit: int,
        summary: WorkerRunSummary,
    ) -> None:
        for subscription in self.subscriptions:
            remaining = limit - len(backlog)
            if remaining <= 0:
                return
            recovered = await asyncio.to_thread(
                self.coordinator.recover_abandoned,
                subscription.task_type,
                subscription.group_name,
                self.consumer_id,
                self.min_idle_ms,
                limit=remaining,
            )
            summary.recovered += len(recovered)
            backlog.extend(_Attempt(subscription=subscription, record=rec) for rec in recovered)

    async def _read_new(self, budget: int) -> list[_Attempt]:
        """Non-blocking pass over every subscription, then one blocking read."""

        if budget <= 0:
            return []
        count = len(self.subscriptions)
        ordered = [
            self.subscriptions[(self._read_cursor + offset) % count] for offset in range(count)
        ]
        self._read_cursor = (self._read_cursor + 1) % count

        attempts: list[_Attempt] = []
        for subscription in ordered:
            if len(attempts) >= budget:
                break
            records = await asyncio.to_thread(
                self.log.read_new,
                subscription.task_type,
                subscription.group_name,
                self.consumer_id,
                budget - len(attempts),
                0,
            )
            attempts.extend(_Attempt(subscription=subscription, record=rec) for rec in records)
        if attempts or self.stop_requested:
            return attempts

        subscription = ordered[0]
        records = await asyncio.to_thread(
            self.log.read_new,
            subscription.task_type,
            subscription.group_name,
            self.consumer_id,
            budget,
            self.block_ms,
            stop_requested=self._stop_flag.is_set,
        )
        return [_Attempt(subscription=subscription, record=rec) for rec in records]

    async def _run_attempt(
        self,
        attempt: _Attempt,
        *,
        semaphore: asyncio.Semaphore,
        summary: WorkerRunSummary,
    ) -> None:
        key = (
            attempt.subscription.task_type,
            attempt.subscription.group_name,
            str(attempt.record.id),
        )
        if key in self._active:
            # Reclaimed from ourselves while still executing; the running attempt acks it.
            logger.info("Record %s is already executing here; skipping duplicate", key[2])
            return
        self._active.add(key)
        try:
            async with semaphore:
                await self._process(attempt, summary=summary)
        except StorageUnavailable as error:
            logger.warning(
                "Storage unavailable while processing %s %s; leaving it pending: %s",
                attempt.record.task_type,
                attempt.record.id,
                error,
            )
        finally:
            self._active.discard(key)

    async def _process(  # noqa: C901
        self,
        attempt: _Attempt,
        *,
        summary: WorkerRunSummary,
    ) -> None:
        record = attempt.record
        subscription = attempt.subscription
        record_id = str(record.id)
        spec = self.registry.resolve(record.task_type)
        max_deliveries = spec.max_deliveries or self.max_deliveries

        entry = await asyncio.to_thread(
            self.log.pending_entry,
            subscription.task_type,
            subscription.group_name,
            record.id,
        )
        if entry is None or entry.consumer_id != self.consumer_id:
            logger.info(
                "Skipping %s %s: no longer owned by %s",
                record.task_type,
                record_id,
                self.consumer_id,
            )
            return
        attempt.delivery_count = entry.delivery_count
        summary.processed += 1
        await self._emit(
            "claimed",
            record,
            details={"group": subscription.group_name, "delivery_count": entry.delivery_count},
        )

        checkpoint = None
        if self.checkpoints is not None:
            checkpoint = await asyncio.to_thread(
                self.checkpoints.load,
                record.task_type,
                record_id,
            )

        token = CancellationToken()
        timeout_seconds = spec.default_timeout_ms / 1000.0
        request = ExecutionRequest(
            task_type=record.task_type,
            payload=record.payload,
            cancellation=token,
            deadline=self.log.now() + timedelta(milliseconds=spec.default_timeout_ms),
            record_id=record_id,
            delivery_count=entry.delivery_count,
            consumer_id=self.consumer_id,
            correlation_id=record.correlation_id,
            checkpoint=checkpoint,
        )

        attempt.state = AttemptState.EXECUTING
        self._executing += 1
        await self._emit(
            "started",
            record,
            details={
                "delivery_count": entry.delivery_count,
                "timeout_ms": spec.default_timeout_ms,
                "resumed_from_checkpoint": checkpoint is not None,
            },
        )
        try:
            result = await self._execute_with_deadline(request, timeout_seconds=timeout_seconds)
        finally:
            self._executing -= 1

        if result is None:
            summary.timeouts += 1
            await self._emit(
                "timeout",
                record,
                details={
                    "timeout_ms": spec.default_timeout_ms,
                    "delivery_count": entry.delivery_count,
                },
            )
            result = ExecutionResult.retryable(
                f"Deadline of {spec.default_timeout_ms} ms exceeded",
                failure_details={"failure_class": FailureClass.TIMEOUT.value},
            )

        if result.status == ExecutionStatus.SUCCESS:
            await self._finish_success(attempt, result=result, summary=summary)
            return

        exhausted = entry.delivery_count > max_deliveries
        if result.status == ExecutionStatus.RETRYABLE_FAILURE and not exhausted:
            attempt.state = AttemptState.FAILED_RETRYABLE
            summary.retried += 1
            if result.checkpoint is not None and self.checkpoints is not None:
                await asyncio.to_thread(
                    self.checkpoints.save,
                    record.task_type,
                    record_id,
                    result.checkpoint,
                    saved_by=self.consumer_id,
                )
            await self._emit(
                "failed_retryable",
                record,
                details={
                    "delivery_count": entry.delivery_count,
                    "max_deliveries": max_deliveries,
                    "error": result.error,
                    "checkpoint_saved": result.checkpoint is not None,
                    **(result.failure_details or {}),
                },
            )
            return

        failure_class = (
            FailureClass.DELIVERIES_EXHAUSTED
            if result.status == ExecutionStatus.RETRYABLE_FAILURE
            else None
        )
        await self._finish_terminal(
            attempt,
            result=result,
            max_deliveries=max_deliveries,
            failure_class=failure_class,
            summary=summary,
        )

    async def _execute_with_deadline(
        self,
        request: ExecutionRequest,
        *,
        timeout_seconds: float,
    ) -> ExecutionResult | None:
        """Executor result, or ``None`` when the deadline passed."""

        task = asyncio.create_task(self.executor.execute(request))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
            if task in done:
                return _result_or_classified(task)

            request.cancellation.cancel("deadline exceeded")
            done, _ = await asyncio.wait({task}, timeout=self.cancel_grace_seconds)
            if task not in done:
                logger.warning(
                    "Executor ignored cancellation for %s %s; cancelling it",
                    request.task_type,
                    request.record_id,
                )
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            elif not task.cancelled() and task.exception() is not None:
                logger.debug(
                    "Executor for %s raised after cancellation: %r",
                    request.record_id,
                    task.exception(),
                )
            return None
        except asyncio.CancelledError:
            request.cancellation.cancel("worker cancelled")
            task.cancel()
            raise

    async def _finish_success(
        self,
        attempt: _Attempt,
        *,
        result: ExecutionResult,
        summary: WorkerRunSummary,
    ) -> None:
        record = attempt.record
        acked = await self._ack(attempt)
        if not acked:
            return
        attempt.state = AttemptState.ACKED
        summary.succeeded += 1
        await asyncio.to_thread(
            self.outcomes.record_outcome,
            str(record.id),
            record.task_type,
            OutcomeStatus.SUCCEEDED,
            {
                "delivery_count": attempt.delivery_count,
                "consumer_id": self.consumer_id,
                "correlation_id": record.correlation_id,
                "data": result.data,
            },
        )
        if self.checkpoints is not None:
            await asyncio.to_thread(self.checkpoints.delete, record.task_type, str(record.id))
        await self._emit("acked", record, details={"delivery_count": attempt.delivery_count})

    async def _finish_terminal(  # noqa: PLR0913
        self,
        attempt: _Attempt,
        *,
        result: ExecutionResult,
        max_deliveries: int,
        failure_class: FailureClass | None,
        summary: WorkerRunSummary,
    ) -> None:
        record = attempt.record
        attempt.state = AttemptState.FAILED_TERMINAL
        # Redundant ack: another consumer owns the record now.
        if not await self._ack(attempt):
            return
        attempt.state = AttemptState.ACKED
        summary.failed += 1
        detail: dict[str, Any] = {
            "delivery_count": attempt.delivery_count,
            "max_deliveries": max_deliveries,
            "last_error": result.error,
            "consumer_id": self.consumer_id,
            "correlation_id": record.correlation_id,
            **(result.failure_details or {}),
        }
        if failure_class is not None:
            detail["failure_class"] = failure_class.value
        await asyncio.to_thread(
            self.outcomes.record_outcome,
            str(record.id),
            record.task_type,
            OutcomeStatus.FAILED,
            detail,
        )
        await self._emit("failed_terminal", record, details=detail)
        if self.checkpoints is not None:
            await asyncio.to_thread(self.checkpoints.delete, record.task_type, str(record.id))

    async def _ack(self, attempt: _Attempt) -> bool:
        record = attempt.record
        acked = await asyncio.to_thread(
            self.log.ack,
            attempt.subscription.task_type,
            attempt.subscription.group_name,
            record.id,
            consumer_id=self.consumer_id,
        )
        if not acked:
            await self._emit(
                "redundant_ack",
                record,
                details={"group": attempt.subscription.group_name, "state": attempt.state.value},
            )
        return acked

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                await asyncio.to_thread(
                    self.heartbeats.beat,
                    self.consumer_id,
                    self.heartbeat_ttl_seconds,
                )
            except StorageUnavailable as error:
                logger.warning("Heartbeat for %s failed: %s", self.consumer_id, error)
                continue
            if self.events is not None:
                self.events.emit(
                    "heartbeat",
                    consumer_id=self.consumer_id,
                    details={
                        "executing": self._executing,
                        "ttl_seconds": self.heartbeat_ttl_seconds,
                    },
                )

    async def _emit(self, event_type: str, record: TaskRecord, *, details: dict[str, Any]) -> None:
        if self.events is None:
            return
        await asyncio.to_thread(
            self.events.emit,
            event_type,
            record_id=str(record.id),
            task_type=record.task_type,
            consumer_id=self.consumer_id,
            correlation_id=record.correlation_id,
            details=details,
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _result_or_classified(task: asyncio.Task[ExecutionResult]) -> ExecutionResult:
    if task.cancelled():
        return ExecutionResult.retryable("Executor cancelled itself")
    error = task.exception()
    if error is None:
        return task.result()
    classification = classify_exception(error)
    logger.info(
        "Executor raised %s: classified as %s",
        type(error).__name__,
        classification.failure_class.value,
    )
    message = f"{type(error).__name__}: {error}"
    if classification.retryable:
        return ExecutionResult.retryable(
            message,
            failure_details=classification.to_event_details(),
        )
    return ExecutionResult.terminal(message, failure_details=classification.to_event_details())


def _log_attempt_crash(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "Attempt task %s crashed",
            task.get_name(),
            exc_info=(type(error), error, error.__traceback__),
        )
