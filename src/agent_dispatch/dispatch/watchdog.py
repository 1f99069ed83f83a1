"""Advisory watchdog: reports stale pending entries and dead consumers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.heartbeats import HeartbeatStore
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import RecordId, Subscription

logger = logging.getLogger(__name__)


class StaleKind(str, Enum):
    """Why a pending entry was reported."""

    STALE_PENDING = "stale_pending"
    CONSUMER_DEAD = "consumer_dead"


@dataclass(frozen=True, slots=True)
class StaleReport:
    """One pending entry idle past the threshold."""

    kind: StaleKind
    task_type: str
    group_name: str
    record_id: RecordId
    consumer_id: str
    idle_ms: int
    delivery_count: int


class Notifier(Protocol):
    """Human notification channel."""

    def notify(self, report: StaleReport) -> None: ...


class LoggingNotifier:
    """Default notifier: one warning log line per report."""

    def notify(self, report: StaleReport) -> None:
        logger.warning(
            "%s: %s/%s record %s owned by %s idle %d ms (delivery %d)",
            report.kind.value,
            report.task_type,
            report.group_name,
            report.record_id,
            report.consumer_id,
            report.idle_ms,
            report.delivery_count,
        )


class Watchdog:
    """Scans pending entries and reports them; reclaim stays with the worker runtime.

    An entry is reported once it has been idle at least ``stale_after_ms``:
    as ``consumer_dead`` when its owner has no live heartbeat, otherwise as
    ``stale_pending``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        log: MessageLog,
        heartbeats: HeartbeatStore,
        subscriptions: Sequence[Subscription],
        stale_after_ms: int,
        notifier: Notifier | None = None,
        events: LifecycleEventEmitter | None = None,
    ) -> None:
        self.log = log
        self.heartbeats = heartbeats
        self.subscriptions = list(subscriptions)
        self.stale_after_ms = stale_after_ms
        self.notifier = notifier or LoggingNotifier()
        self.events = events

    def run_cycle(self) -> list[StaleReport]:
        reports: list[StaleReport] = []
        liveness: dict[str, bool] = {}
        for subscription in self.subscriptions:
            entries = self.log.list_pending(
                subscription.task_type,
                subscription.group_name,
                self.stale_after_ms,
            )
            for entry in entries:
                if entry.consumer_id not in liveness:
                    liveness[entry.consumer_id] = self.heartbeats.is_alive(entry.consumer_id)
                kind = (
                    StaleKind.STALE_PENDING
                    if liveness[entry.consumer_id]
                    else StaleKind.CONSUMER_DEAD
                )
                reports.append(
                    StaleReport(
                        kind=kind,
                        task_type=subscription.task_type,
                        group_name=subscription.group_name,
                        record_id=entry.record_id,
                        consumer_id=entry.consumer_id,
                        idle_ms=entry.idle_ms,
                        delivery_count=entry.delivery_count,
                    ),
                )

        for report in reports:
            self.notifier.notify(report)
            if self.events is not None:
                self.events.emit(
                    report.kind.value,
                    record_id=str(report.record_id),
                    task_type=report.task_type,
                    consumer_id=report.consumer_id,
                    details={
                        "group": report.group_name,
                        "idle_ms": report.idle_ms,
                        "delivery_count": report.delivery_count,
                    },
                )
        return reports

    def run(
        self,
        *,
        interval_seconds: float,
        stop_event: threading.Event,
        max_cycles: int | None = None,
    ) -> int:
        """Run cycles until ``stop_event`` is set; returns the number of reports."""

        total = 0
        cycles = 0
        while not stop_event.is_set():
            total += len(self.run_cycle())
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop_event.wait(interval_seconds)
        logger.info("Watchdog stopped after %d cycle(s), %d report(s)", cycles, total)
        return total
