"""Controllers for workflow, retry loop, and hook CLI commands."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from agent_relay.config import Settings
from agent_relay.hooks import HookEvent
from agent_relay.orchestrator.loop import LoopOptions, LoopResult
from agent_relay.orchestrator.models import IntentType
from agent_relay.orchestrator.reporting import render_workflow_lines
from agent_relay.orchestrator.workflow import WorkflowOptions
from agent_relay.runtime import RelayRuntime


@dataclass(slots=True)
class RunWorkflowCommand:
    """CLI input for one orchestrated request."""

    request: str
    intent_hint: str | None = None
    max_attempts: int | None = None
    timeout_minutes: int | None = None
    skip_exploration: bool = False
    skip_verification: bool = False
    loop: bool = False
    loop_max_iterations: int | None = None
    completion_promise: str | None = None
    hooks_config: Path | None = None


@dataclass(slots=True)
class LoopStartCommand:
    """CLI input for a standalone retry loop."""

    prompt: str
    max_iterations: int | None = None
    completion_promise: str | None = None
    expert: str | None = None
    context: str | None = None
    hooks_config: Path | None = None


@dataclass(slots=True)
class LoopCancelCommand:
    force: bool = False


@dataclass(slots=True)
class HooksListCommand:
    hooks_config: Path | None = None
    event: str | None = None


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print plus whether the command should exit successfully."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class RelayCliController:
    """Builds a runtime per invocation and renders results as text lines."""

    def run_workflow(self, command: RunWorkflowCommand) -> CommandOutcome:
        runtime = _runtime(command.hooks_config)
        options = WorkflowOptions(
            intent_hint=IntentType(command.intent_hint) if command.intent_hint else None,
            max_attempts=command.max_attempts,
            timeout_seconds=(
                command.timeout_minutes * 60 if command.timeout_minutes is not None else None
            ),
            skip_exploration=True if command.skip_exploration else None,
            skip_verification=True if command.skip_verification else None,
            loop_mode=command.loop,
            loop_options=LoopOptions(
                max_iterations=command.loop_max_iterations,
                completion_promise=command.completion_promise,
            ),
            session_id=uuid.uuid4().hex,
        )
        result = asyncio.run(runtime.workflow.run(command.request, options))
        return CommandOutcome(lines=render_workflow_lines(result), success=result.success)

    def start_loop(self, command: LoopStartCommand) -> CommandOutcome:
        runtime = _runtime(command.hooks_config)
        task_id = f"loop-{uuid.uuid4().hex[:12]}"
        result = asyncio.run(
            runtime.loop_controller.execute(
                task_id,
                command.prompt,
                LoopOptions(
                    max_iterations=command.max_iterations,
                    completion_promise=command.completion_promise,
                    expert_id=command.expert,
                    context=command.context,
                ),
            ),
        )
        return CommandOutcome(lines=_render_loop_lines(result), success=result.completed)

    def loop_status(self) -> list[str]:
        runtime = _runtime(None)
        snapshot = runtime.loop_controller.status()
        if snapshot is None:
            return ["No active retry loop."]
        lines = [
            f"Retry loop {snapshot.task_id}: status={snapshot.status.value} "
            f"iteration={snapshot.iteration}/{snapshot.max_iterations} "
            f"expert={snapshot.expert_id}",
            f"elapsed_seconds={snapshot.elapsed_seconds:.1f} "
            f"failed_iterations={snapshot.failed_iterations} "
            f"cancel_requested={'yes' if snapshot.cancel_requested else 'no'}",
        ]
        if snapshot.last_output_excerpt:
            lines.append(f"Last output: {snapshot.last_output_excerpt}")
        return lines

    def cancel_loop(self, command: LoopCancelCommand) -> list[str]:
        runtime = _runtime(None)
        state = runtime.loop_controller.get_state()
        if not runtime.loop_controller.cancel(force=command.force):
            return ["No active retry loop to cancel."]
        task_id = state.task_id if state is not None else "unknown"
        if command.force:
            return [f"Loop state cleared: task_id={task_id}"]
        return [
            f"Cancellation requested: task_id={task_id}",
            "The loop stops before its next iteration.",
        ]

    def list_hooks(self, command: HooksListCommand) -> list[str]:
        runtime = _runtime(command.hooks_config)
        event = HookEvent(command.event) if command.event else None
        hooks = runtime.dispatcher.list_hooks(event)
        stats = runtime.dispatcher.system_stats()
        lines = [
            f"Hooks: total={stats.total_hooks} enabled={stats.enabled_hooks} "
            f"system={'enabled' if stats.enabled else 'disabled'}",
        ]
        if not hooks:
            lines.append("No hooks registered.")
            return lines
        for hook in hooks:
            state = "on" if hook.enabled else "off"
            line = f"{hook.event.value} [{hook.priority.value}] {state} {hook.id}"
            if hook.description:
                line += f" - {hook.description}"
            lines.append(line)
        return lines


def _runtime(hooks_config: Path | None) -> RelayRuntime:
    return RelayRuntime.from_settings(Settings.from_env(hooks_config=hooks_config))


def _render_loop_lines(result: LoopResult) -> list[str]:
    lines = [
        f"Retry loop {result.status.value}: task_id={result.task_id} "
        f"iterations={result.iterations} failed_iterations={result.failed_iterations} "
        f"elapsed_ms={result.total_time_ms:.0f}",
    ]
    if result.reason:
        lines.append(f"Reason: {result.reason}")
    if result.last_error:
        lines.append(f"Last error: {result.last_error}")
    lines.extend(f"Note: {message}" for message in result.messages)
    lines.append("")
    lines.append(result.output)
    return lines
