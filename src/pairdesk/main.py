"""CLI entrypoint for pairdesk."""

import logging
from pathlib import Path

import rich_click as click

from pairdesk import __version__
from pairdesk.orchestrator.controllers import (
    HistoryAddCommand,
    HistoryShowCommand,
    PairdeskCliController,
    SettingsShowCommand,
    SmokeCommand,
    WorkerArgsCommand,
    WorkerCleanupCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PairdeskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="pairdesk")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def pairdesk(verbose: bool) -> None:
    """Pair-programming worker orchestrator CLI."""

    if verbose:
        logging.basicConfig(level=logging.DEBUG)


@pairdesk.group()
def worker() -> None:
    """Worker process commands."""


@worker.command("args")
@click.argument("base_dir")
@click.option(
    "--store-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Settings store JSON path.",
)
def worker_args(base_dir: str, store_path: Path | None) -> None:
    """Show how the worker for BASE_DIR would be launched."""

    _emit_lines(
        CONTROLLER.worker_args(WorkerArgsCommand(base_dir=base_dir, store_path=store_path)),
    )


@worker.command("cleanup")
@click.argument("base_dir")
def worker_cleanup(base_dir: str) -> None:
    """Kill an orphaned worker recorded for BASE_DIR and remove its marker."""

    _emit_lines(CONTROLLER.worker_cleanup(WorkerCleanupCommand(base_dir=base_dir)))


@pairdesk.group()
def history() -> None:
    """Input history commands."""


@history.command("show")
@click.argument("base_dir")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many entries to display.",
)
@click.option("--file", "file_name", default=None, help="History file name or absolute path.")
def history_show(base_dir: str, limit: int, file_name: str | None) -> None:
    """Print input history of BASE_DIR, most recent first."""

    _emit_lines(
        CONTROLLER.history_show(
            HistoryShowCommand(base_dir=base_dir, limit=limit, file_name=file_name),
        ),
    )


@history.command("add")
@click.argument("base_dir")
@click.argument("message")
@click.option("--file", "file_name", default=None, help="History file name or absolute path.")
def history_add(base_dir: str, message: str, file_name: str | None) -> None:
    """Append MESSAGE to the input history of BASE_DIR."""

    _emit_lines(
        CONTROLLER.history_add(
            HistoryAddCommand(base_dir=base_dir, message=message, file_name=file_name),
        ),
    )


@pairdesk.group()
def settings() -> None:
    """Settings store commands."""


@settings.command("show")
@click.argument("base_dir", required=False)
@click.option(
    "--store-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Settings store JSON path.",
)
def settings_show(base_dir: str | None, store_path: Path | None) -> None:
    """Print merged app settings, plus project settings when BASE_DIR is given."""

    _emit_lines(
        CONTROLLER.settings_show(SettingsShowCommand(base_dir=base_dir, store_path=store_path)),
    )


@pairdesk.command("smoke")
@click.argument("base_dir", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--prompt",
    default="hello worker",
    show_default=True,
    help="Prompt sent through the loopback connector.",
)
def smoke(base_dir: str, prompt: str) -> None:
    """Run one prompt end to end against the local echo worker."""

    lines = CONTROLLER.smoke(SmokeCommand(base_dir=base_dir, prompt=prompt))
    _emit_lines(lines)
    if not any(line.startswith("Response: ") for line in lines):
        raise click.ClickException("Smoke run produced no response.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pairdesk()
