"""CLI entrypoint for ralph."""

import logging
from pathlib import Path

import rich_click as click

from ralph_runner import __version__
from ralph_runner.loop.controllers import (
    BlockersCommand,
    NextTaskCommand,
    RalphCliController,
    RunCommand,
    RunReport,
)

click.rich_click.USE_MARKDOWN = True
RALPH_CONTROLLER = RalphCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ralph")
def ralph() -> None:
    """Run a coding agent unattended against a **bd** backlog."""


@ralph.command("run")
@click.argument("iterations", type=click.IntRange(min=1), default=10)
@click.option("--ticket", "ticket_id", default=None, help="Work on the children of this ticket.")
@click.option(
    "--all",
    "all_tickets",
    is_flag=True,
    default=False,
    help="Work on every open ticket; the agent discovers work via `bd ready`.",
)
@click.option(
    "--prd",
    "prd_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Legacy mode: drive the run from a prd.json backlog document.",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Append raw agent output to this file. Defaults to RALPH_LOG_FILE.",
)
@click.option(
    "--no-auto-close",
    is_flag=True,
    default=False,
    help="Do not close the ticket when all of its tasks are closed or blocked.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def run(  # noqa: PLR0913
    iterations: int,
    ticket_id: str | None,
    all_tickets: bool,
    prd_path: Path | None,
    log_file: Path | None,
    no_auto_close: bool,
    verbose: bool,
) -> None:
    """Run up to ITERATIONS agent invocations.

    Press Ctrl+C once to stop after the current iteration, twice to stop now.
    """

    selected = [bool(ticket_id), all_tickets, prd_path is not None]
    if sum(selected) != 1:
        raise click.UsageError("Specify exactly one of --ticket, --all or --prd.")

    _configure_logging(verbose)
    report = RunReport()
    try:
        _emit_lines(
            RALPH_CONTROLLER.run(
                RunCommand(
                    iterations=iterations,
                    ticket_id=ticket_id,
                    all_tickets=all_tickets,
                    prd_path=prd_path,
                    log_file=log_file,
                    auto_close=not no_auto_close,
                ),
                report,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    if report.failed:
        raise click.ClickException("Run stopped due to error.")


@ralph.command("next")
@click.option("--ticket", "ticket_id", default=None, help="Limit selection to this ticket.")
def next_task(ticket_id: str | None) -> None:
    """Show the task the next iteration would pick."""

    _emit_lines(_guarded(lambda: RALPH_CONTROLLER.next_task(NextTaskCommand(ticket_id=ticket_id))))


@ralph.command("tickets")
def tickets() -> None:
    """List open tickets with progress (held tickets excluded)."""

    _emit_lines(_guarded(RALPH_CONTROLLER.list_tickets))


@ralph.command("blockers")
@click.option("--ticket", "ticket_id", required=True, help="Ticket id.")
def blockers(ticket_id: str) -> None:
    """List tasks outside the ticket that block its tasks."""

    _emit_lines(
        _guarded(lambda: RALPH_CONTROLLER.list_blockers(BlockersCommand(ticket_id=ticket_id))),
    )


def _guarded(action):
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph()
