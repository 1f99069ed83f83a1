"""CLI entrypoint for agent-dispatch."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.controllers import (
    AckCommand,
    DispatchBatchCommand,
    DispatchCliController,
    DispatchSubmitCommand,
    EventsCommand,
    GroupEnsureCommand,
    GroupListCommand,
    OutcomesCommand,
    PendingClaimCommand,
    PendingListCommand,
    StatsCommand,
    WatchdogRunCommand,
    WorkerRunCommand,
)
from agent_dispatch.errors import DispatchError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Root log level (default: AGENT_DISPATCH_LOG_LEVEL or INFO).",
)
def agent_dispatch(log_level: str | None) -> None:
    """Partitioned task dispatch with consumer groups and crash recovery."""

    level = (log_level or os.getenv("AGENT_DISPATCH_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.group()
def dispatch() -> None:
    """Producer commands."""


@dispatch.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task type registry YAML.",
)
@click.option("--type", "task_type", required=True, help="Registered task type.")
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON object.")
@click.option("--priority", type=int, default=100, show_default=True, help="Lower is more urgent.")
@click.option("--correlation-id", default=None, help="Trace id carried through execution.")
def dispatch_submit(  # noqa: PLR0913
    db_path: Path | None,
    registry_path: Path | None,
    task_type: str,
    payload_json: str,
    priority: int,
    correlation_id: str | None,
) -> None:
    """Validate and dispatch one task."""

    _emit_lines(
        _invoke(
            CONTROLLER.submit,
            DispatchSubmitCommand(
                db_path=db_path,
                registry_path=registry_path,
                task_type=task_type,
                payload_json=payload_json,
                priority=priority,
                correlation_id=correlation_id,
            ),
        ),
    )


@dispatch.command("batch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task type registry YAML.",
)
@click.option(
    "--file",
    "tasks_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON-lines file, one task object per line.",
)
@click.option(
    "--stagger-ms",
    type=click.IntRange(min=0),
    default=None,
    help="Delay between appends (default: AGENT_DISPATCH_STAGGER_MS).",
)
def dispatch_batch(
    db_path: Path | None,
    registry_path: Path | None,
    tasks_file: Path,
    stagger_ms: int | None,
) -> None:
    """Validate a whole batch, then dispatch it with staggered appends."""

    _emit_lines(
        _invoke(
            CONTROLLER.submit_batch,
            DispatchBatchCommand(
                db_path=db_path,
                registry_path=registry_path,
                tasks_file=tasks_file,
                stagger_ms=stagger_ms,
            ),
        ),
    )


@agent_dispatch.group()
def groups() -> None:
    """Consumer group commands."""


@groups.command("ensure")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--group", "group_name", required=True, help="Consumer group name.")
@click.option(
    "--start-id",
    default="0",
    show_default=True,
    help="'0' replays everything, '$' starts after the current last record.",
)
def groups_ensure(db_path: Path | None, task_type: str, group_name: str, start_id: str) -> None:
    """Create a consumer group if it does not exist."""

    _emit_lines(
        _invoke(
            CONTROLLER.ensure_group,
            GroupEnsureCommand(
                db_path=db_path,
                task_type=task_type,
                group_name=group_name,
                start_id=start_id,
            ),
        ),
    )


@groups.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", default=None, help="Only this task type.")
def groups_list(db_path: Path | None, task_type: str | None) -> None:
    """List consumer groups and their cursors."""

    _emit_lines(
        _invoke(CONTROLLER.list_groups, GroupListCommand(db_path=db_path, task_type=task_type)),
    )


@agent_dispatch.group()
def pending() -> None:
    """Pending entry commands."""


@pending.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--group", "group_name", required=True, help="Consumer group name.")
@click.option(
    "--min-idle-ms",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only entries idle at least this long.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=100,
    show_default=True,
    help="Max entries to print.",
)
def pending_list(
    db_path: Path | None,
    task_type: str,
    group_name: str,
    min_idle_ms: int,
    limit: int,
) -> None:
    """List in-flight deliveries, oldest claim first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_pending,
            PendingListCommand(
                db_path=db_path,
                task_type=task_type,
                group_name=group_name,
                min_idle_ms=min_idle_ms,
                limit=limit,
            ),
        ),
    )


@pending.command("claim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--group", "group_name", required=True, help="Consumer group name.")
@click.option("--consumer", "consumer_id", required=True, help="New owner.")
@click.option("--record-id", required=True, help="Record id, e.g. 1700000000000-0.")
@click.option(
    "--min-idle-ms",
    type=click.IntRange(min=0),
    default=900_000,
    show_default=True,
    help="Refuse to claim entries idle for less than this.",
)
def pending_claim(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    group_name: str,
    consumer_id: str,
    record_id: str,
    min_idle_ms: int,
) -> None:
    """Reassign one idle pending entry."""

    _emit_lines(
        _invoke(
            CONTROLLER.claim,
            PendingClaimCommand(
                db_path=db_path,
                task_type=task_type,
                group_name=group_name,
                consumer_id=consumer_id,
                record_id=record_id,
                min_idle_ms=min_idle_ms,
            ),
        ),
    )


@agent_dispatch.command("ack")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--group", "group_name", required=True, help="Consumer group name.")
@click.option("--record-id", required=True, help="Record id.")
@click.option(
    "--consumer",
    "consumer_id",
    default=None,
    help="Only ack if owned by this consumer.",
)
def ack(
    db_path: Path | None,
    task_type: str,
    group_name: str,
    record_id: str,
    consumer_id: str | None,
) -> None:
    """Acknowledge a pending entry."""

    _emit_lines(
        _invoke(
            CONTROLLER.ack,
            AckCommand(
                db_path=db_path,
                task_type=task_type,
                group_name=group_name,
                record_id=record_id,
                consumer_id=consumer_id,
            ),
        ),
    )


@agent_dispatch.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", default=None, help="Only this task type.")
def stats(db_path: Path | None, task_type: str | None) -> None:
    """Show appended / acked / pending / undelivered accounting per group."""

    _emit_lines(_invoke(CONTROLLER.stats, StatsCommand(db_path=db_path, task_type=task_type)))


@agent_dispatch.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--record-id", default=None, help="Only events of this record.")
@click.option("--event-type", default=None, help="Only this event type.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=100,
    show_default=True,
    help="Max events to print.",
)
def events(
    db_path: Path | None,
    record_id: str | None,
    event_type: str | None,
    limit: int,
) -> None:
    """Show the lifecycle audit trail."""

    _emit_lines(
        _invoke(
            CONTROLLER.events,
            EventsCommand(
                db_path=db_path,
                record_id=record_id,
                event_type=event_type,
                limit=limit,
            ),
        ),
    )


@agent_dispatch.command("outcomes")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", default=None, help="Only this task type.")
@click.option(
    "--status",
    type=click.Choice(["succeeded", "failed"]),
    default=None,
    help="Only this outcome status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=50,
    show_default=True,
    help="Max outcomes to print.",
)
def outcomes(
    db_path: Path | None,
    task_type: str | None,
    status: str | None,
    limit: int,
) -> None:
    """Show recorded task outcomes, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.outcomes,
            OutcomesCommand(db_path=db_path, task_type=task_type, status=status, limit=limit),
        ),
    )


@agent_dispatch.group()
def worker() -> None:
    """Worker runtime commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task type registry YAML.",
)
@click.option(
    "--type",
    "task_types",
    multiple=True,
    help="Task type to serve. Can be repeated (default: every registered type).",
)
@click.option("--group", "group_name", default=None, help="Consumer group name.")
@click.option("--consumer", "consumer_id", default=None, help="Consumer id (default: host-pid).")
@click.option(
    "--concurrency",
    "max_concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max concurrently executing attempts.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after starting this many attempts.",
)
@click.option(
    "--idle-exit-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    registry_path: Path | None,
    task_types: tuple[str, ...],
    group_name: str | None,
    consumer_id: str | None,
    max_concurrency: int | None,
    max_tasks: int | None,
    idle_exit_polls: int | None,
) -> None:
    """Recover abandoned work, then consume and execute tasks until stopped."""

    _emit_lines(
        _invoke(
            CONTROLLER.run_worker,
            WorkerRunCommand(
                db_path=db_path,
                registry_path=registry_path,
                task_types=task_types,
                group_name=group_name,
                consumer_id=consumer_id,
                max_concurrency=max_concurrency,
                max_tasks=max_tasks,
                idle_exit_polls=idle_exit_polls,
            ),
        ),
    )


@agent_dispatch.group()
def watchdog() -> None:
    """Watchdog commands."""


@watchdog.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "task_types",
    multiple=True,
    help="Task type to scan. Can be repeated (default: every group).",
)
@click.option("--group", "group_name", default=None, help="Consumer group name.")
@click.option("--once", is_flag=True, default=False, help="Run a single cycle and print reports.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles.",
)
def watchdog_run(
    db_path: Path | None,
    task_types: tuple[str, ...],
    group_name: str | None,
    once: bool,
    max_cycles: int | None,
) -> None:
    """Report stale pending entries and dead consumers."""

    _emit_lines(
        _invoke(
            CONTROLLER.run_watchdog,
            WatchdogRunCommand(
                db_path=db_path,
                task_types=task_types,
                group_name=group_name,
                once=once,
                max_cycles=max_cycles,
            ),
        ),
    )


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (DispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
