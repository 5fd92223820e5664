import importlib
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ._version import __version__
from .config import QuickforkConfig
from .exception import ParallelRunError
from .log import configure_logging
from .pool import Quickfork
from .task import Task
from .transport import TaskResult

__all__ = ("cli",)

console = Console()

cli = typer.Typer(
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
    no_args_is_help=True,
)


def _resolve_target(target: str) -> Callable[..., Any]:
    """Import a callable from ``module:attr`` or ``module.attr``."""

    module_name, sep, attr = target.partition(":")
    if not sep:
        module_name, _, attr = target.rpartition(".")

    if not module_name or not attr:
        raise typer.BadParameter(f"'{target}' is not a 'module:function' or 'module.function' path")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import module '{module_name}': {e}") from e

    func = getattr(module, attr, None)
    if not callable(func):
        raise typer.BadParameter(f"'{attr}' in module '{module_name}' is not callable")

    return func


def _render(tasks: list[Task], results: dict[str, TaskResult]) -> Table:
    table = Table(title="Task results")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Args")
    table.add_column("Result")
    table.add_column("Output")
    table.add_column("Error", style="red")

    for task in tasks:
        outcome = results[task.id]
        cells = (
            task.id,
            ", ".join(map(repr, task.args)),
            "" if outcome.has_error() else repr(outcome.result),
            outcome.output.rstrip(),
            str(outcome.error) if outcome.error else "",
        )
        table.add_row(*map(escape, cells))

    return table


@cli.command("run")
def run_tasks(
    target: Annotated[str, typer.Argument(help="Callable to run, as 'module:function' or 'module.function'.")],
    args: Annotated[list[str] | None, typer.Argument(help="One task is run per argument.")] = None,
    workers: Annotated[int | None, typer.Option("--workers", "-w", help="Number of worker processes.")] = None,
    repeat: Annotated[int, typer.Option("--repeat", "-r", min=1, help="Tasks to run when no argument is given.")] = 1,
    critical: Annotated[bool, typer.Option("--critical", help="Abort the run when any task fails.")] = False,
    config_file: Annotated[Path | None, typer.Option("--config", "-c", help="YAML or TOML configuration file.")] = None,
) -> None:
    """Run a callable in parallel worker processes."""

    config = QuickforkConfig.from_file(config_file) if config_file else QuickforkConfig.get_config()
    configure_logging(config.log)

    func = _resolve_target(target)

    if args:
        tasks = [Task(func, args=(arg,), critical=critical) for arg in args]
    else:
        tasks = [Task(func, critical=critical) for _ in range(repeat)]

    try:
        results = Quickfork(config).submit(tasks, max_concurrent=workers)
    except ParallelRunError as e:
        console.print(f"[red]Run failed:[/red] {escape(str(e))}")
        if e.__cause__ is not None:
            console.print(f"[red]Cause:[/red] {type(e.__cause__).__name__}: {escape(str(e.__cause__))}")
        raise typer.Exit(code=1) from e

    console.print(_render(tasks, results))


@cli.command("version")
def show_version() -> None:
    """Show quickfork version."""

    console.print(f"quickfork [cyan]{__version__}[/cyan]")
