"""Static expert routing tables: fallback chains and intent/complexity selection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from agent_relay.orchestrator.models import ComplexityLevel, IntentType

SUPPORTED_EXPERTS = ("strategist", "researcher", "reviewer", "frontend", "writer", "explorer")
DEFAULT_EXPERT = "strategist"
ASSESSMENT_EXPERT = "explorer"
VERIFICATION_EXPERT = "reviewer"

FALLBACK_CHAIN: Mapping[str, tuple[str, ...]] = {
    "strategist": ("researcher", "reviewer"),
    "researcher": ("reviewer", "explorer"),
    "reviewer": ("explorer",),
    "frontend": ("writer", "explorer"),
    "writer": ("explorer",),
    "explorer": (),
}

INTENT_TO_EXPERT: Mapping[IntentType, str] = {
    IntentType.CONCEPTUAL: "strategist",
    IntentType.IMPLEMENTATION: "strategist",
    IntentType.DEBUGGING: "strategist",
    IntentType.REFACTORING: "reviewer",
    IntentType.RESEARCH: "researcher",
    IntentType.REVIEW: "reviewer",
    IntentType.DOCUMENTATION: "writer",
}

_T = ComplexityLevel
EXPERT_SELECTION_MATRIX: Mapping[IntentType, Mapping[ComplexityLevel, tuple[str, ...]]] = {
    IntentType.CONCEPTUAL: {
        _T.TRIVIAL: ("explorer",),
        _T.SIMPLE: ("researcher",),
        _T.MODERATE: ("researcher", "strategist"),
        _T.COMPLEX: ("strategist", "researcher"),
        _T.EPIC: ("strategist",),
    },
    IntentType.IMPLEMENTATION: {
        _T.TRIVIAL: ("explorer", "writer"),
        _T.SIMPLE: ("frontend", "writer"),
        _T.MODERATE: ("strategist", "frontend"),
        _T.COMPLEX: ("strategist",),
        _T.EPIC: ("strategist",),
    },
    IntentType.DEBUGGING: {
        _T.TRIVIAL: ("explorer",),
        _T.SIMPLE: ("reviewer",),
        _T.MODERATE: ("reviewer", "strategist"),
        _T.COMPLEX: ("strategist", "reviewer"),
        _T.EPIC: ("strategist",),
    },
    IntentType.REFACTORING: {
        _T.TRIVIAL: ("reviewer",),
        _T.SIMPLE: ("reviewer",),
        _T.MODERATE: ("strategist", "reviewer"),
        _T.COMPLEX: ("strategist",),
        _T.EPIC: ("strategist",),
    },
    IntentType.RESEARCH: {
        _T.TRIVIAL: ("explorer",),
        _T.SIMPLE: ("explorer", "researcher"),
        _T.MODERATE: ("researcher",),
        _T.COMPLEX: ("researcher", "strategist"),
        _T.EPIC: ("strategist", "researcher"),
    },
    IntentType.REVIEW: {
        _T.TRIVIAL: ("reviewer",),
        _T.SIMPLE: ("reviewer",),
        _T.MODERATE: ("reviewer", "strategist"),
        _T.COMPLEX: ("strategist", "reviewer"),
        _T.EPIC: ("strategist",),
    },
    IntentType.DOCUMENTATION: {
        _T.TRIVIAL: ("writer",),
        _T.SIMPLE: ("writer",),
        _T.MODERATE: ("writer", "researcher"),
        _T.COMPLEX: ("writer", "strategist"),
        _T.EPIC: ("strategist", "writer"),
    },
}
del _T


@dataclass(slots=True)
class RoutingTables:
    """Injectable routing configuration consumed by the engine and workflow."""

    fallback_chain: Mapping[str, Sequence[str]] = field(default_factory=lambda: FALLBACK_CHAIN)
    intent_to_expert: Mapping[IntentType, str] = field(default_factory=lambda: INTENT_TO_EXPERT)
    selection_matrix: Mapping[IntentType, Mapping[ComplexityLevel, Sequence[str]]] = field(
        default_factory=lambda: EXPERT_SELECTION_MATRIX,
    )
    default_expert: str = DEFAULT_EXPERT
    assessment_expert: str = ASSESSMENT_EXPERT
    verification_expert: str = VERIFICATION_EXPERT

    def fallbacks_for(self, expert_id: str) -> tuple[str, ...]:
        return tuple(self.fallback_chain.get(normalize_expert(expert_id), ()))

    def expert_for_intent(self, intent: IntentType | None) -> str:
        if intent is None:
            return self.default_expert
        return self.intent_to_expert.get(intent, self.default_expert)

    def select_expert(
        self,
        intent: IntentType,
        complexity: ComplexityLevel,
        *,
        excluded: Iterable[str] = (),
    ) -> str:
        """First matrix candidate not excluded, else the default expert."""

        candidates = self.selection_matrix.get(intent, {}).get(complexity, ())
        excluded_set = {normalize_expert(item) for item in excluded}
        for candidate in candidates:
            if candidate not in excluded_set:
                return candidate
        return self.default_expert


def normalize_expert(value: str) -> str:
    return value.strip().lower()


def validate_expert(value: str) -> str:
    normalized = normalize_expert(value)
    if normalized not in SUPPORTED_EXPERTS:
        raise ValueError(
            f"Unsupported expert={value!r}. Expected one of: {', '.join(SUPPORTED_EXPERTS)}",
        )
    return normalized
