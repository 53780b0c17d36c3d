"""CLI entrypoint for agent-relay."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.hooks import HookEvent
from agent_relay.orchestrator.controllers import (
    CommandOutcome,
    HooksListCommand,
    LoopCancelCommand,
    LoopStartCommand,
    RelayCliController,
    RunWorkflowCommand,
)
from agent_relay.orchestrator.models import IntentType
from agent_relay.orchestrator.routing import SUPPORTED_EXPERTS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()

_HOOKS_CONFIG_OPTION = click.option(
    "--hooks-config",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="YAML file with extra hook registrations.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def agent_relay(verbose: bool) -> None:
    """Run requests through expert backends with recovery, retry loops and hooks.

    Experts are invoked as CLI commands; set `AGENT_RELAY_COMMAND_TEMPLATE`
    or `AGENT_RELAY_<EXPERT>_COMMAND` to choose them.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.command("run")
@click.argument("request")
@click.option(
    "--intent-hint",
    type=click.Choice([intent.value for intent in IntentType]),
    default=None,
    help="Skip intent classification and use this intent.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=5),
    default=None,
    help="Implementation attempts before escalation (default from settings: 3).",
)
@click.option(
    "--timeout-minutes",
    type=click.IntRange(min=1, max=30),
    default=None,
    help="Overall wall-clock budget (default from settings: 10).",
)
@click.option("--skip-exploration", is_flag=True, help="Never run the exploration phase.")
@click.option(
    "--skip-verification",
    is_flag=True,
    help="Accept the implementation reply without a reviewer pass.",
)
@click.option("--loop", "loop_mode", is_flag=True, help="Use the retry loop for implementation.")
@click.option(
    "--loop-max-iterations",
    type=click.IntRange(min=1, max=50),
    default=None,
    help="Iteration cap in loop mode.",
)
@click.option(
    "--completion-promise",
    default=None,
    help="Marker text the expert prints inside <promise> tags when done.",
)
@_HOOKS_CONFIG_OPTION
def run(  # noqa: PLR0913
    request: str,
    intent_hint: str | None,
    max_attempts: int | None,
    timeout_minutes: int | None,
    skip_exploration: bool,
    skip_verification: bool,
    loop_mode: bool,
    loop_max_iterations: int | None,
    completion_promise: str | None,
    hooks_config: Path | None,
) -> None:
    """Orchestrate one request: classify, delegate, recover, complete."""

    with _config_errors():
        outcome = CONTROLLER.run_workflow(
            RunWorkflowCommand(
                request=request,
                intent_hint=intent_hint,
                max_attempts=max_attempts,
                timeout_minutes=timeout_minutes,
                skip_exploration=skip_exploration,
                skip_verification=skip_verification,
                loop=loop_mode,
                loop_max_iterations=loop_max_iterations,
                completion_promise=completion_promise,
                hooks_config=hooks_config,
            ),
        )
    _emit_outcome(outcome, "Workflow did not complete successfully.")


@agent_relay.group()
def loop() -> None:
    """Retry loop commands."""


@loop.command("start")
@click.argument("prompt")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1, max=50),
    default=None,
    help="Iteration cap (default from settings: 10).",
)
@click.option("--completion-promise", default=None, help="Completion marker text.")
@click.option(
    "--expert",
    type=click.Choice(SUPPORTED_EXPERTS),
    default=None,
    help="Expert to re-invoke (default from settings: strategist).",
)
@click.option("--context", default=None, help="Extra context added to the first prompt.")
@_HOOKS_CONFIG_OPTION
def loop_start(  # noqa: PLR0913
    prompt: str,
    max_iterations: int | None,
    completion_promise: str | None,
    expert: str | None,
    context: str | None,
    hooks_config: Path | None,
) -> None:
    """Re-invoke one expert until it prints the completion marker."""

    with _config_errors():
        outcome = CONTROLLER.start_loop(
            LoopStartCommand(
                prompt=prompt,
                max_iterations=max_iterations,
                completion_promise=completion_promise,
                expert=expert,
                context=context,
                hooks_config=hooks_config,
            ),
        )
    _emit_outcome(outcome, "Retry loop ended without completion.")


@loop.command("status")
def loop_status() -> None:
    """Show the active retry loop, if any."""

    with _config_errors():
        lines = CONTROLLER.loop_status()
    _emit_lines(lines)


@loop.command("cancel")
@click.option(
    "--force",
    is_flag=True,
    help="Also clear persisted state, for a loop whose process has exited.",
)
def loop_cancel(force: bool) -> None:
    """Ask the active retry loop to stop before its next iteration."""

    with _config_errors():
        lines = CONTROLLER.cancel_loop(LoopCancelCommand(force=force))
    _emit_lines(lines)


@agent_relay.group()
def hooks() -> None:
    """Hook registry commands."""


@hooks.command("list")
@click.option(
    "--event",
    type=click.Choice([event.value for event in HookEvent]),
    default=None,
    help="Only show hooks for this event.",
)
@_HOOKS_CONFIG_OPTION
def hooks_list(event: str | None, hooks_config: Path | None) -> None:
    """List registered hooks in dispatch order."""

    with _config_errors():
        lines = CONTROLLER.list_hooks(HooksListCommand(hooks_config=hooks_config, event=event))
    _emit_lines(lines)


@contextmanager
def _config_errors() -> Iterator[None]:
    try:
        yield
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_outcome(outcome: CommandOutcome, failure_message: str) -> None:
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
