"""Domain models for workflow orchestration, failure recovery, and the retry loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_relay.common import utc_now


class FailureType(str, Enum):
    """Closed taxonomy of backend failures."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    MODEL_ERROR = "model_error"
    CONTENT_FILTER = "content_filter"
    INVALID_RESPONSE = "invalid_response"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    """What the failure engine suggests doing next."""

    RETRY = "retry"
    RETRY_MODIFIED = "retry_modified"
    SWITCH_EXPERT = "switch_expert"
    ESCALATE = "escalate"
    ABORT = "abort"


class IntentType(str, Enum):
    CONCEPTUAL = "conceptual"
    IMPLEMENTATION = "implementation"
    DEBUGGING = "debugging"
    REFACTORING = "refactoring"
    RESEARCH = "research"
    REVIEW = "review"
    DOCUMENTATION = "documentation"


class ComplexityLevel(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EPIC = "epic"


class PhaseId(str, Enum):
    """Workflow phases in execution order."""

    INTENT = "intent"
    ASSESSMENT = "assessment"
    EXPLORATION = "exploration"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    RECOVERY = "recovery"
    COMPLETION = "completion"
    LOOP = "loop"


class LoopStatus(str, Enum):
    """Retry loop lifecycle: idle -> running -> completed | cancelled | exhausted."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in {LoopStatus.COMPLETED, LoopStatus.CANCELLED, LoopStatus.EXHAUSTED}


@dataclass(slots=True)
class FailureRecord:
    """One failed attempt in a request's history."""

    expert_id: str
    attempt_number: int
    failure_type: FailureType
    error_message: str
    action_taken: RecoveryAction
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "expert_id": self.expert_id,
            "attempt_number": self.attempt_number,
            "failure_type": self.failure_type.value,
            "error_message": self.error_message,
            "action_taken": self.action_taken.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class FailureContext:
    """Per-request recovery state; never shared between unrelated requests."""

    original_request: str
    current_expert: str
    max_attempts: int = 3
    attempt_count: int = 0
    failure_history: list[FailureRecord] = field(default_factory=list)
    last_error: str | None = None

    @property
    def experts_tried(self) -> list[str]:
        seen: list[str] = []
        for record in self.failure_history:
            if record.expert_id not in seen:
                seen.append(record.expert_id)
        return seen


@dataclass(slots=True)
class FailureAnalysis:
    """Classifier verdict for one error, derived fresh on every failure."""

    failure_type: FailureType
    recoverable: bool
    suggested_action: RecoveryAction
    matched_pattern: str | None = None
    retry_delay_seconds: float | None = None
    alternate_expert: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "failure_type": self.failure_type.value,
            "recoverable": self.recoverable,
            "suggested_action": self.suggested_action.value,
            "matched_pattern": self.matched_pattern,
            "retry_delay_seconds": self.retry_delay_seconds,
            "alternate_expert": self.alternate_expert,
        }


@dataclass(slots=True)
class EscalationReport:
    """Terminal artifact produced when automatic recovery is exhausted."""

    original_request: str
    experts_tried: list[str]
    failure_history: list[FailureRecord]
    recommendations: list[str]
    generated_at: datetime = field(default_factory=utc_now)
    can_continue: bool = False


@dataclass(slots=True)
class PhaseResult:
    """Outcome of running one workflow phase."""

    phase: PhaseId
    success: bool
    next_phase: PhaseId | None = None
    output: str | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PhaseHistoryEntry:
    phase: PhaseId
    started_at: datetime
    duration_ms: float
    success: bool
    error: str | None = None


@dataclass(slots=True)
class WorkflowResult:
    """Final report of one orchestrated request."""

    success: bool
    output: str
    intent: IntentType | None
    complexity: ComplexityLevel | None
    phases_executed: list[PhaseId]
    total_time_ms: float
    attempts_made: int
    escalated: bool = False
    blocked: bool = False
    cancelled: bool = False
    messages: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    escalation_report: EscalationReport | None = None
