"""Reference observers shipped with the dispatcher."""

from __future__ import annotations

import logging

from agent_relay.common import truncate
from agent_relay.hooks.dispatcher import HookDispatcher
from agent_relay.hooks.models import (
    ErrorContext,
    ExpertCallContext,
    ExpertResultContext,
    HookDefinition,
    HookEvent,
    HookPriority,
    HookResult,
    LoopEndContext,
    LoopIterationContext,
    RateLimitContext,
    WorkflowPhaseContext,
)

logger = logging.getLogger(__name__)


def log_expert_call(context: ExpertCallContext) -> None:
    logger.info(
        "Calling expert %s (attempt %d, %d prompt chars)",
        context.expert_id,
        context.attempt,
        len(context.prompt),
    )


def log_expert_result(context: ExpertResultContext) -> None:
    logger.info(
        "Expert %s %s in %.0fms",
        context.expert_id,
        "answered" if context.success else "failed",
        context.duration_ms,
    )


def log_workflow_phase(context: WorkflowPhaseContext) -> None:
    logger.debug("Phase %s %s", context.phase, context.stage)


def log_error(context: ErrorContext) -> None:
    logger.warning(
        "Error from %s (%s, recoverable=%s): %s",
        context.source,
        context.failure_type or "unclassified",
        context.recoverable,
        truncate(context.error_message, 200),
    )


def log_loop_iteration(context: LoopIterationContext) -> None:
    logger.info(
        "Loop %s iteration %d/%d%s",
        context.task_id,
        context.iteration,
        context.max_iterations,
        " (completed)" if context.completed else "",
    )


def log_loop_end(context: LoopEndContext) -> None:
    logger.info(
        "Loop %s finished as %s after %d iterations",
        context.task_id,
        context.status,
        context.iterations,
    )


def announce_rate_limit(context: RateLimitContext) -> HookResult:
    """Tell the user why the request is taking longer than usual."""

    if context.fallback_expert:
        message = (
            f"Expert {context.expert_id} is rate limited; "
            f"retrying with {context.fallback_expert}..."
        )
    else:
        message = f"Expert {context.expert_id} is rate limited; retrying..."
    return HookResult(inject_message=message)


def builtin_hooks() -> list[HookDefinition]:
    """Fresh definitions, so toggling one dispatcher's copy never leaks into another."""

    return [
        HookDefinition(
            id="builtin.log_expert_call",
            name="Log expert call",
            event=HookEvent.EXPERT_CALL,
            handler=log_expert_call,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.log_expert_result",
            name="Log expert result",
            event=HookEvent.EXPERT_RESULT,
            handler=log_expert_result,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.log_workflow_phase",
            name="Log workflow phase",
            event=HookEvent.WORKFLOW_PHASE,
            handler=log_workflow_phase,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.log_error",
            name="Log error",
            event=HookEvent.ERROR,
            handler=log_error,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.log_loop_iteration",
            name="Log loop iteration",
            event=HookEvent.LOOP_ITERATION,
            handler=log_loop_iteration,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.log_loop_end",
            name="Log loop end",
            event=HookEvent.LOOP_END,
            handler=log_loop_end,
            priority=HookPriority.LOW,
        ),
        HookDefinition(
            id="builtin.announce_rate_limit",
            name="Announce rate limit",
            event=HookEvent.RATE_LIMIT,
            handler=announce_rate_limit,
            description="Injects a retrying notice when an expert is rate limited.",
        ),
    ]


def register_builtin_hooks(dispatcher: HookDispatcher) -> int:
    hooks = builtin_hooks()
    for hook in hooks:
        dispatcher.register(hook)
    return len(hooks)
