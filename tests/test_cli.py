from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from agent_tasks.main import agent_tasks

pytestmark = [
    allure.epic("Controller Runtime"),
    allure.feature("CLI Ops"),
]

MANIFESTS = """\
kind: Context
metadata:
  name: style
spec:
  inline: Keep answers short.
---
kind: Task
metadata:
  name: fix-bug
spec:
  description: Fix the flaky test.
  contexts:
    - name: style
---
kind: BatchRun
metadata:
  name: review
  namespace: team
spec:
  variableContexts:
    - - inline: file a
"""


def _write(tmp_path: Path, text: str, name: str = "manifests.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_apply_run_and_inspect_task(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    manifest = _write(tmp_path, MANIFESTS)
    runner = CliRunner()

    applied = runner.invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(manifest)])
    assert applied.exit_code == 0, applied.output
    assert "task/fix-bug (default) created" in applied.output
    assert "batchrun/review (team) created" in applied.output

    reapplied = runner.invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(manifest)])
    assert "task/fix-bug (default) unchanged" in reapplied.output

    run = runner.invoke(agent_tasks, ["controller", "run", "--db-path", db_path, "--once"])
    assert run.exit_code == 0, run.output
    assert "Controller summary: reconciled=2" in run.output

    listed = runner.invoke(agent_tasks, ["get", "--db-path", db_path, "tasks", "-n", "default"])
    assert "default/fix-bug phase=Running job=fix-bug-job" in listed.output

    reported = runner.invoke(
        agent_tasks,
        ["job", "report", "--db-path", db_path, "--succeeded", "1", "fix-bug-job"],
    )
    assert reported.exit_code == 0, reported.output
    runner.invoke(agent_tasks, ["controller", "run", "--db-path", db_path, "--once"])

    described = runner.invoke(agent_tasks, ["describe", "--db-path", db_path, "task", "fix-bug"])
    assert described.exit_code == 0, described.output
    assert "phase: Completed" in described.output
    assert "reason: JobSucceeded" in described.output


def test_apply_updates_changed_spec(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    first = _write(tmp_path, "kind: Task\nmetadata:\n  name: a\nspec:\n  description: one\n")
    runner.invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(first)])

    second = _write(
        tmp_path,
        "kind: Task\nmetadata:\n  name: a\nspec:\n  description: two\n",
        name="second.yaml",
    )
    result = runner.invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(second)])

    assert "task/a (default) configured" in result.output
    described = runner.invoke(agent_tasks, ["describe", "--db-path", db_path, "task", "a"])
    assert "description: two" in described.output


def test_apply_rejects_invalid_manifest(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    manifest = _write(
        tmp_path,
        "kind: CronTask\nmetadata:\n  name: c\nspec:\n  schedule: sometimes\n",
    )

    result = CliRunner().invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(manifest)])

    assert result.exit_code != 0
    assert "not a valid cron expression" in result.output


def test_batch_pause_resume_and_delete(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    manifest = _write(tmp_path, MANIFESTS)
    runner = CliRunner()
    runner.invoke(agent_tasks, ["apply", "--db-path", db_path, "-f", str(manifest)])

    paused = runner.invoke(
        agent_tasks,
        ["batch", "pause", "--db-path", db_path, "-n", "team", "review"],
    )
    assert "BatchRun team/review paused" in paused.output
    described = runner.invoke(
        agent_tasks,
        ["describe", "--db-path", db_path, "-n", "team", "batchrun", "review"],
    )
    assert "agent-tasks.io/pause: 'true'" in described.output

    resumed = runner.invoke(
        agent_tasks,
        ["batch", "resume", "--db-path", db_path, "-n", "team", "review"],
    )
    assert "BatchRun team/review resumed" in resumed.output

    deleted = runner.invoke(
        agent_tasks,
        ["delete", "--db-path", db_path, "-n", "team", "batchrun", "review"],
    )
    assert "batchrun/review (team) deleted" in deleted.output
    missing = runner.invoke(
        agent_tasks,
        ["describe", "--db-path", db_path, "-n", "team", "batchrun", "review"],
    )
    assert "BatchRun not found: team/review" in missing.output


def test_unknown_kind_is_reported(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        agent_tasks,
        ["get", "--db-path", str(tmp_path / "cli.db"), "widgets"],
    )

    assert result.exit_code != 0
    assert "Unknown resource kind" in result.output
