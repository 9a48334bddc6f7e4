"""CLI entrypoint for task-engine."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from task_engine import __version__
from task_engine.engine.controllers import (
    ListTasksCommand,
    OperationCommand,
    StatsCommand,
    SubmitCommand,
    TaskCommand,
    TaskEngineCliController,
    WorkerCommand,
)
from task_engine.engine.errors import TaskEngineError
from task_engine.engine.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskEngineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
def task_engine() -> None:
    """Background task engine: submit batches, run workers, inspect state."""


@task_engine.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--idempotency-key",
    default=None,
    help="Deduplication key; overrides `idempotency_key` from the batch file.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
def submit(
    db_path: Path | None,
    batch_file: Path,
    idempotency_key: str | None,
    output_format: str,
) -> None:
    """Submit a JSON batch of tasks.

    The file holds `{"tasks": [{"ref": "a", "type": "echo", "payload": {...},
    "depends_on": ["b"], "on_success": {"type": "noop"}}]}`.
    """

    with _engine_errors():
        _emit_lines(
            CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    batch_file=batch_file,
                    idempotency_key=idempotency_key,
                    output_format=output_format.lower(),
                ),
            ),
        )


@task_engine.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks per worker in loop mode.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads in loop mode (default: TASK_ENGINE_WORKERS).",
)
@click.option(
    "--idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting; 0 keeps polling until stopped.",
)
@click.option(
    "--handlers",
    default=None,
    help="Handler registry factory as `module:factory` (default: builtin echo/noop/sleep).",
)
@click.option(
    "--worker-id",
    default=None,
    help="Worker id (prefix for pools). Defaults to a unique `worker-<hex>` per process.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    workers: int | None,
    idle_polls: int,
    handlers: str | None,
    worker_id: str | None,
    log_level: str,
) -> None:
    """Run task workers."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    with _engine_errors():
        _emit_lines(
            CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_tasks=max_tasks,
                    workers=workers,
                    handlers=handlers,
                    max_idle_polls=idle_polls or None,
                    worker_id=worker_id,
                ),
            ),
        )


@task_engine.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--operation-id", required=True, help="Operation id.")
def status(db_path: Path | None, operation_id: str) -> None:
    """Show aggregate status of an operation and its tasks."""

    with _engine_errors():
        _emit_lines(
            CONTROLLER.operation_status(
                OperationCommand(db_path=db_path, operation_id=operation_id),
            ),
        )


@task_engine.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    with _engine_errors():
        _emit_lines(CONTROLLER.inspect_task(TaskCommand(db_path=db_path, task_id=task_id)))


@task_engine.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status_value",
    type=click.Choice([item.value for item in TaskStatus], case_sensitive=False),
    default=TaskStatus.READY.value,
    show_default=True,
    help="Status to list.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(db_path: Path | None, status_value: str, limit: int) -> None:
    """List tasks in one status."""

    with _engine_errors():
        _emit_lines(
            CONTROLLER.list_tasks(
                ListTasksCommand(db_path=db_path, status=status_value, limit=limit),
            ),
        )


@task_engine.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--operation-id", required=True, help="Operation id.")
def cancel(db_path: Path | None, operation_id: str) -> None:
    """Cancel an operation; its undispatched tasks are skipped."""

    with _engine_errors():
        _emit_lines(
            CONTROLLER.cancel_operation(
                OperationCommand(db_path=db_path, operation_id=operation_id),
            ),
        )


@task_engine.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def retry(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a dead or failed task with a fresh attempt budget."""

    with _engine_errors():
        _emit_lines(CONTROLLER.retry_task(TaskCommand(db_path=db_path, task_id=task_id)))


@task_engine.command("dead-letter")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def dead_letter(db_path: Path | None, limit: int) -> None:
    """List tasks that exhausted their attempts."""

    with _engine_errors():
        _emit_lines(
            CONTROLLER.dead_letter(
                ListTasksCommand(db_path=db_path, status=TaskStatus.DEAD.value, limit=limit),
            ),
        )


@task_engine.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Run a maintenance pass and show queue counts."""

    with _engine_errors():
        _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path)))


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except (TaskEngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
