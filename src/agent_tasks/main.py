"""CLI entrypoint for agent-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_tasks import __version__
from agent_tasks.controllers import (
    AgentTasksCliController,
    ApplyCommand,
    BatchPauseCommand,
    ControllerRunCommand,
    GetCommand,
    JobReportCommand,
    ResourceCommand,
)
from agent_tasks.errors import StoreError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentTasksCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="agent-tasks")
def agent_tasks() -> None:
    """Declarative AI agent task controller."""


@agent_tasks.command("apply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "-f",
    "--filename",
    "files",
    multiple=True,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML manifest file. Repeat for several files.",
)
def apply(db_path: Path | None, files: tuple[Path, ...]) -> None:
    """Create or update resources from YAML manifests."""

    _run(CONTROLLER.apply, ApplyCommand(db_path=db_path, files=files))


@agent_tasks.command("get")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "-n",
    "--namespace",
    default=None,
    help="Namespace filter; all namespaces when omitted.",
)
@click.argument("kind")
@click.argument("name", required=False)
def get(db_path: Path | None, namespace: str | None, kind: str, name: str | None) -> None:
    """List resources of one kind with a status summary."""

    _run(
        CONTROLLER.get,
        GetCommand(db_path=db_path, kind=kind, namespace=namespace, name=name),
    )


@agent_tasks.command("describe")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("-n", "--namespace", default="default", show_default=True, help="Namespace.")
@click.argument("kind")
@click.argument("name")
def describe(db_path: Path | None, namespace: str, kind: str, name: str) -> None:
    """Print one resource, status included, as YAML."""

    _run(
        CONTROLLER.describe,
        ResourceCommand(db_path=db_path, kind=kind, namespace=namespace, name=name),
    )


@agent_tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("-n", "--namespace", default="default", show_default=True, help="Namespace.")
@click.argument("kind")
@click.argument("name")
def delete(db_path: Path | None, namespace: str, kind: str, name: str) -> None:
    """Delete a resource and everything it owns."""

    _run(
        CONTROLLER.delete,
        ResourceCommand(db_path=db_path, kind=kind, namespace=namespace, name=name),
    )


@agent_tasks.group()
def job() -> None:
    """Execution backend commands."""


@job.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("-n", "--namespace", default="default", show_default=True, help="Namespace.")
@click.option("--succeeded", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--failed", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--active", type=click.IntRange(min=0), default=0, show_default=True)
@click.argument("name")
def job_report(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str,
    succeeded: int,
    failed: int,
    active: int,
    name: str,
) -> None:
    """Record Job counters as an execution backend would."""

    _run(
        CONTROLLER.report_job,
        JobReportCommand(
            db_path=db_path,
            namespace=namespace,
            name=name,
            succeeded=succeeded,
            failed=failed,
            active=active,
        ),
    )


@agent_tasks.group()
def batch() -> None:
    """BatchRun commands."""


@batch.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("-n", "--namespace", default="default", show_default=True, help="Namespace.")
@click.argument("name")
def batch_pause(db_path: Path | None, namespace: str, name: str) -> None:
    """Stop creating new tasks for a BatchRun; running ones finish."""

    _run(
        CONTROLLER.set_batch_paused,
        BatchPauseCommand(db_path=db_path, namespace=namespace, name=name, paused=True),
    )


@batch.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("-n", "--namespace", default="default", show_default=True, help="Namespace.")
@click.argument("name")
def batch_resume(db_path: Path | None, namespace: str, name: str) -> None:
    """Resume task creation for a paused BatchRun."""

    _run(
        CONTROLLER.set_batch_paused,
        BatchPauseCommand(db_path=db_path, namespace=namespace, name=name, paused=False),
    )


@agent_tasks.group()
def controller() -> None:
    """Reconcile loop commands."""


@controller.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single reconcile pass or loop until stopped.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for passes in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many consecutive idle passes.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for controller output.",
)
def controller_run(
    db_path: Path | None,
    once: bool,
    max_passes: int | None,
    max_idle_polls: int | None,
    log_level: str,
) -> None:
    """Run Task, BatchRun and CronTask reconcilers against the store."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _run(
        CONTROLLER.run_controller,
        ControllerRunCommand(
            db_path=db_path,
            once=once,
            max_passes=max_passes,
            max_idle_polls=max_idle_polls,
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (StoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_tasks()
