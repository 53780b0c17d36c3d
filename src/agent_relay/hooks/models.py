"""Hook contract: lifecycle events, per-event contexts, and hook decisions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from agent_relay.common import utc_now


class HookEvent(str, Enum):
    """Lifecycle events observable through the hook dispatcher."""

    TOOL_CALL = "onToolCall"
    TOOL_RESULT = "onToolResult"
    EXPERT_CALL = "onExpertCall"
    EXPERT_RESULT = "onExpertResult"
    WORKFLOW_START = "onWorkflowStart"
    WORKFLOW_PHASE = "onWorkflowPhase"
    WORKFLOW_END = "onWorkflowEnd"
    SESSION_IDLE = "onSessionIdle"
    ERROR = "onError"
    RATE_LIMIT = "onRateLimit"
    SERVER_START = "onServerStart"
    SERVER_STOP = "onServerStop"
    LOOP_START = "onRalphLoopStart"
    LOOP_ITERATION = "onRalphLoopIteration"
    LOOP_END = "onRalphLoopEnd"


class HookPriority(str, Enum):
    """Execution order inside one event chain, critical first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    HookPriority.CRITICAL: 0,
    HookPriority.HIGH: 1,
    HookPriority.NORMAL: 2,
    HookPriority.LOW: 3,
}


class HookDecision(str, Enum):
    """Outcome of one hook invocation."""

    CONTINUE = "continue"
    MODIFY = "modify"
    BLOCK = "block"


@dataclass(frozen=True, slots=True, kw_only=True)
class HookContext:
    """Fields shared by every event payload.

    Contexts are immutable. Hooks that want to change a payload return a
    ``modify`` result and the dispatcher builds a replacement copy.
    """

    event: ClassVar[HookEvent]

    session_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolCallContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.TOOL_CALL

    tool_name: str
    tool_input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolResultContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.TOOL_RESULT

    tool_name: str
    output: str
    success: bool = True
    duration_ms: float = 0.0
    tool_input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True, kw_only=True)
class ExpertCallContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.EXPERT_CALL

    expert_id: str
    prompt: str
    model: str | None = None
    attempt: int = 1


@dataclass(frozen=True, slots=True, kw_only=True)
class ExpertResultContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.EXPERT_RESULT

    expert_id: str
    response: str
    success: bool
    duration_ms: float = 0.0
    model: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkflowStartContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_START

    request: str
    intent_hint: str | None = None
    loop_mode: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkflowPhaseContext(HookContext):
    """Emitted on entering (``stage="enter"``) and leaving (``stage="exit"``) a phase."""

    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_PHASE

    phase: str
    stage: str
    request: str
    success: bool | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkflowEndContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_END

    request: str
    success: bool
    escalated: bool = False
    blocked: bool = False
    cancelled: bool = False
    total_time_ms: float = 0.0
    phases: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionIdleContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.SESSION_IDLE

    idle_seconds: float


@dataclass(frozen=True, slots=True, kw_only=True)
class ErrorContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.ERROR

    error_message: str
    source: str
    recoverable: bool = True
    failure_type: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RateLimitContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.RATE_LIMIT

    expert_id: str
    error_message: str
    fallback_expert: str | None = None
    retry_delay_seconds: float | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ServerStartContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.SERVER_START

    version: str


@dataclass(frozen=True, slots=True, kw_only=True)
class ServerStopContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.SERVER_STOP

    reason: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class LoopStartContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.LOOP_START

    task_id: str
    prompt: str
    max_iterations: int
    completion_promise: str
    expert_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class LoopIterationContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.LOOP_ITERATION

    task_id: str
    iteration: int
    max_iterations: int
    output: str
    completed: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class LoopEndContext(HookContext):
    event: ClassVar[HookEvent] = HookEvent.LOOP_END

    task_id: str
    status: str
    iterations: int
    completed: bool
    cancelled: bool
    max_iterations_reached: bool
    total_duration_ms: float


@dataclass(frozen=True, slots=True)
class HookResult:
    """Decision returned by a hook handler.

    ``continue`` may carry a message to inject and a metadata bag, ``modify``
    carries partial replacement fields for the event payload, and ``block``
    carries the reason surfaced to the caller.
    """

    decision: HookDecision = HookDecision.CONTINUE
    inject_message: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    modified_data: Mapping[str, Any] = field(default_factory=dict)
    reason: str | None = None

    @classmethod
    def modify(
        cls,
        data: Mapping[str, Any],
        *,
        inject_message: str | None = None,
    ) -> HookResult:
        return cls(
            decision=HookDecision.MODIFY,
            modified_data=dict(data),
            inject_message=inject_message,
        )

    @classmethod
    def block(cls, reason: str) -> HookResult:
        return cls(decision=HookDecision.BLOCK, reason=reason)


HOOK_CONTINUE = HookResult()

HookHandler = Callable[[HookContext], "HookResult | None | Awaitable[HookResult | None]"]


@dataclass(slots=True)
class HookDefinition:
    """Registered observer for exactly one event type."""

    id: str
    name: str
    event: HookEvent
    handler: HookHandler
    priority: HookPriority = HookPriority.NORMAL
    enabled: bool = True
    description: str = ""
