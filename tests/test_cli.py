from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest
import yaml
from click.testing import CliRunner

from agent_dispatch.main import agent_dispatch
from tests.conftest import REPO_SCHEMA

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

_RUNNER_SCRIPT = "import json, sys; print(json.dumps({'scanned': json.load(sys.stdin)['repo']}))"


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    db_path = tmp_path / "cli.db"
    registry_path = tmp_path / "task_types.yaml"
    registry_path.write_text(
        yaml.safe_dump(
            {
                "task_types": {
                    "drift-scan": {
                        "payload_schema": REPO_SCHEMA,
                        "default_timeout_ms": 30_000,
                        "command": [sys.executable, "-c", _RUNNER_SCRIPT],
                    },
                },
            },
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("AGENT_DISPATCH_BLOCK_MS", "50")
    monkeypatch.setenv("AGENT_DISPATCH_CONSUMER_ID", "cli-worker")
    monkeypatch.delenv("AGENT_DISPATCH_TASK_TYPES", raising=False)
    return db_path, registry_path


def test_submit_then_worker_processes_record(cli_env: tuple[Path, Path]) -> None:
    db_path, registry_path = cli_env
    runner = CliRunner()

    submitted = runner.invoke(
        agent_dispatch,
        [
            "dispatch",
            "submit",
            "--db-path",
            str(db_path),
            "--registry",
            str(registry_path),
            "--type",
            "drift-scan",
            "--payload",
            '{"repo": "infra-core"}',
            "--correlation-id",
            "slack-1",
        ],
    )
    assert submitted.exit_code == 0, submitted.output
    assert "Dispatched: record_id=" in submitted.output

    worked = runner.invoke(
        agent_dispatch,
        [
            "worker",
            "run",
            "--db-path",
            str(db_path),
            "--registry",
            str(registry_path),
            "--idle-exit-polls",
            "1",
        ],
    )
    assert worked.exit_code == 0, worked.output
    assert "processed=1 succeeded=1 failed=0" in worked.output

    outcomes = runner.invoke(agent_dispatch, ["outcomes", "--db-path", str(db_path)])
    assert outcomes.exit_code == 0, outcomes.output
    assert "drift-scan" in outcomes.output
    assert '"scanned": "infra-core"' in outcomes.output

    stats = runner.invoke(agent_dispatch, ["stats", "--db-path", str(db_path)])
    assert "dispatch:drift-scan appended=1" in stats.output
    assert "group=workers acked=1 pending=0 undelivered=0 total=1" in stats.output


def test_submit_rejects_invalid_payload(cli_env: tuple[Path, Path]) -> None:
    db_path, registry_path = cli_env

    result = CliRunner().invoke(
        agent_dispatch,
        [
            "dispatch",
            "submit",
            "--db-path",
            str(db_path),
            "--registry",
            str(registry_path),
            "--type",
            "drift-scan",
            "--payload",
            '{"repo": ""}',
        ],
    )

    assert result.exit_code != 0
    assert "Payload rejected" in result.output


def test_batch_file_is_dispatched_in_order(cli_env: tuple[Path, Path], tmp_path: Path) -> None:
    db_path, registry_path = cli_env
    tasks_file = tmp_path / "tasks.jsonl"
    tasks_file.write_text(
        "\n".join(
            json.dumps({"type": "drift-scan", "payload": {"repo": repo}})
            for repo in ("a", "b", "c")
        ),
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        agent_dispatch,
        [
            "dispatch",
            "batch",
            "--db-path",
            str(db_path),
            "--registry",
            str(registry_path),
            "--file",
            str(tasks_file),
            "--stagger-ms",
            "0",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Dispatched batch: count=3 stagger_ms=0" in result.output


def test_group_pending_and_ack_commands(cli_env: tuple[Path, Path]) -> None:
    db_path, registry_path = cli_env
    runner = CliRunner()
    db = ["--db-path", str(db_path)]
    target = ["--type", "drift-scan", "--group", "ops"]

    created = runner.invoke(agent_dispatch, ["groups", "ensure", *db, *target])
    again = runner.invoke(agent_dispatch, ["groups", "ensure", *db, *target])
    assert "Consumer group ops on drift-scan: created" in created.output
    assert "already exists (no-op)" in again.output

    runner.invoke(
        agent_dispatch,
        [
            "dispatch",
            "submit",
            *db,
            "--registry",
            str(registry_path),
            "--type",
            "drift-scan",
            "--payload",
            '{"repo": "x"}',
        ],
    )
    empty = runner.invoke(agent_dispatch, ["pending", "list", *db, *target])
    assert "No pending entries." in empty.output

    listed = runner.invoke(agent_dispatch, ["groups", "list", *db])
    assert "drift-scan ops last_delivered=0-0 acked=0" in listed.output

    missing_ack = runner.invoke(agent_dispatch, ["ack", *db, *target, "--record-id", "1-0"])
    assert missing_ack.exit_code == 0
    assert "No-op: 1-0" in missing_ack.output

    claim = runner.invoke(
        agent_dispatch,
        ["pending", "claim", *db, *target, "--consumer", "me", "--record-id", "1-0"],
    )
    assert "Not claimed: 1-0" in claim.output


def test_malformed_record_id_is_a_cli_error(cli_env: tuple[Path, Path]) -> None:
    db_path, _ = cli_env

    result = CliRunner().invoke(
        agent_dispatch,
        [
            "ack",
            "--db-path",
            str(db_path),
            "--type",
            "drift-scan",
            "--group",
            "ops",
            "--record-id",
            "not-an-id",
        ],
    )

    assert result.exit_code != 0
    assert "not-an-id" in result.output


def test_watchdog_once_on_empty_log(cli_env: tuple[Path, Path]) -> None:
    db_path, _ = cli_env

    result = CliRunner().invoke(
        agent_dispatch,
        ["watchdog", "run", "--db-path", str(db_path), "--once"],
    )

    assert result.exit_code == 0, result.output
    assert "Watchdog cycle: reports=0" in result.output
