"""Hook registry, dispatcher, and event contract."""

from agent_relay.hooks.dispatcher import (
    DispatcherStats,
    DispatchResult,
    HookDispatcher,
    HookStats,
)
from agent_relay.hooks.models import (
    HOOK_CONTINUE,
    ErrorContext,
    ExpertCallContext,
    ExpertResultContext,
    HookContext,
    HookDecision,
    HookDefinition,
    HookEvent,
    HookHandler,
    HookPriority,
    HookResult,
    LoopEndContext,
    LoopIterationContext,
    LoopStartContext,
    RateLimitContext,
    ServerStartContext,
    ServerStopContext,
    SessionIdleContext,
    ToolCallContext,
    ToolResultContext,
    WorkflowEndContext,
    WorkflowPhaseContext,
    WorkflowStartContext,
)

__all__ = [
    "HOOK_CONTINUE",
    "DispatchResult",
    "DispatcherStats",
    "ErrorContext",
    "ExpertCallContext",
    "ExpertResultContext",
    "HookContext",
    "HookDecision",
    "HookDefinition",
    "HookDispatcher",
    "HookEvent",
    "HookHandler",
    "HookPriority",
    "HookResult",
    "HookStats",
    "LoopEndContext",
    "LoopIterationContext",
    "LoopStartContext",
    "RateLimitContext",
    "ServerStartContext",
    "ServerStopContext",
    "SessionIdleContext",
    "ToolCallContext",
    "ToolResultContext",
    "WorkflowEndContext",
    "WorkflowPhaseContext",
    "WorkflowStartContext",
]
