"""Table-driven failure classification, recovery decisions, and escalation."""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from agent_relay.orchestrator.models import (
    EscalationReport,
    FailureAnalysis,
    FailureContext,
    FailureRecord,
    FailureType,
    RecoveryAction,
)
from agent_relay.orchestrator.redaction import redact_backend_text
from agent_relay.orchestrator.routing import FALLBACK_CHAIN, normalize_expert

logger = logging.getLogger(__name__)

FAILURE_CLASSIFIER_VERSION = 1

BASE_RETRY_DELAY_SECONDS = 1.0
RATE_LIMIT_BASE_DELAY_SECONDS = 5.0
MAX_RETRY_DELAY_SECONDS = 30.0
RETRY_JITTER_RATIO = 0.2
SWITCH_AFTER_ATTEMPTS = 2


@dataclass(frozen=True, slots=True)
class FailureRule:
    """One ordered classification rule."""

    name: str
    pattern: re.Pattern[str]
    failure_type: FailureType
    recoverable: bool
    action: RecoveryAction


def _rule(
    name: str,
    pattern: str,
    failure_type: FailureType,
    recoverable: bool,
    action: RecoveryAction,
) -> FailureRule:
    return FailureRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE),
        failure_type=failure_type,
        recoverable=recoverable,
        action=action,
    )


# First match wins; later patterns may overlap earlier ones.
FAILURE_RULES: tuple[FailureRule, ...] = (
    _rule(
        "rate_limit",
        r"rate\s*limit|429|too\s*many\s*requests|quota",
        FailureType.RATE_LIMIT,
        True,
        RecoveryAction.SWITCH_EXPERT,
    ),
    _rule(
        "timeout",
        r"timeout|timed?\s*out|deadline|ETIMEDOUT",
        FailureType.TIMEOUT,
        True,
        RecoveryAction.RETRY,
    ),
    _rule(
        "auth_error",
        r"401|403|unauthorized|forbidden|auth|permission",
        FailureType.AUTH_ERROR,
        False,
        RecoveryAction.ESCALATE,
    ),
    _rule(
        "model_error",
        r"model.*not\s*found|invalid\s*model|unsupported\s*model",
        FailureType.MODEL_ERROR,
        True,
        RecoveryAction.SWITCH_EXPERT,
    ),
    _rule(
        "content_filter",
        r"content\s*filter|safety|blocked|harmful",
        FailureType.CONTENT_FILTER,
        True,
        RecoveryAction.RETRY_MODIFIED,
    ),
    _rule(
        "invalid_response",
        r"invalid.*response|parse\s*error|malformed|JSON",
        FailureType.INVALID_RESPONSE,
        True,
        RecoveryAction.RETRY,
    ),
    _rule(
        "network_error",
        r"network|ECONNREFUSED|ENOTFOUND|socket|connection",
        FailureType.NETWORK_ERROR,
        True,
        RecoveryAction.RETRY,
    ),
)

_TYPE_RECOMMENDATIONS: Mapping[FailureType, str] = {
    FailureType.RATE_LIMIT: "Wait a few minutes before retrying; rate limits may have been hit.",
    FailureType.AUTH_ERROR: "Check the credentials and authentication status of the backend CLI.",
    FailureType.CONTENT_FILTER: "Rephrase the request to avoid triggering content filters.",
    FailureType.TIMEOUT: "Break the request down into smaller parts.",
}

GENERIC_RECOMMENDATIONS: tuple[str, ...] = (
    "Try a different expert directly.",
    "Simplify the request.",
    "Provide more specific context.",
)


@dataclass(slots=True)
class FailureClassification:
    """Raw rule match before attempt-based adjustment."""

    failure_type: FailureType
    recoverable: bool
    action: RecoveryAction
    matched_rule: str
    matched_pattern: str | None


@dataclass(slots=True)
class FailureStats:
    """Counters kept per engine instance."""

    total_failures: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_expert: dict[str, int] = field(default_factory=dict)
    switches: int = 0
    escalations: int = 0


def classify_failure(
    error: str | BaseException,
    *,
    rules: Sequence[FailureRule] = FAILURE_RULES,
) -> FailureClassification:
    """Match error text against ``rules`` in order; no match is unknown/retry."""

    text = str(error)
    for rule in rules:
        match = rule.pattern.search(text)
        if match is not None:
            return FailureClassification(
                failure_type=rule.failure_type,
                recoverable=rule.recoverable,
                action=rule.action,
                matched_rule=rule.name,
                matched_pattern=match.group(0),
            )
    return FailureClassification(
        failure_type=FailureType.UNKNOWN,
        recoverable=True,
        action=RecoveryAction.RETRY,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def compute_retry_delay(  # noqa: PLR0913
    failure_type: FailureType,
    attempt: int,
    *,
    base_delay_seconds: float = BASE_RETRY_DELAY_SECONDS,
    rate_limit_base_delay_seconds: float = RATE_LIMIT_BASE_DELAY_SECONDS,
    max_delay_seconds: float = MAX_RETRY_DELAY_SECONDS,
    jitter_ratio: float = RETRY_JITTER_RATIO,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with symmetric jitter, never above ``max_delay_seconds``."""

    base = (
        rate_limit_base_delay_seconds
        if failure_type == FailureType.RATE_LIMIT
        else base_delay_seconds
    )
    exponent = max(attempt, 1) - 1
    delay = min(base * (2**exponent), max_delay_seconds)
    source = rng or random
    jitter = delay * jitter_ratio * (source.random() * 2 - 1)
    return round(min(max(delay + jitter, 0.0), max_delay_seconds), 3)


class FailureEngine:
    """Turns backend errors into recovery decisions for one process.

    The engine is stateless per request; every piece of request state lives in
    the :class:`FailureContext` passed in. Only the aggregate counters in
    :attr:`stats` are shared across requests handled by the same engine.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        fallback_chain: Mapping[str, Sequence[str]] = FALLBACK_CHAIN,
        rules: Sequence[FailureRule] = FAILURE_RULES,
        switch_after_attempts: int = SWITCH_AFTER_ATTEMPTS,
        base_delay_seconds: float = BASE_RETRY_DELAY_SECONDS,
        rate_limit_base_delay_seconds: float = RATE_LIMIT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = MAX_RETRY_DELAY_SECONDS,
        jitter_ratio: float = RETRY_JITTER_RATIO,
        rng: random.Random | None = None,
    ) -> None:
        self.fallback_chain = fallback_chain
        self.rules = tuple(rules)
        self.switch_after_attempts = switch_after_attempts
        self.base_delay_seconds = base_delay_seconds
        self.rate_limit_base_delay_seconds = rate_limit_base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_ratio = jitter_ratio
        self._random = rng or random.Random()  # noqa: S311
        self.stats = FailureStats()

    def create_context(
        self,
        request: str,
        expert_id: str,
        *,
        max_attempts: int = 3,
    ) -> FailureContext:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        return FailureContext(
            original_request=request,
            current_expert=normalize_expert(expert_id),
            max_attempts=max_attempts,
        )

    def analyze(self, error: str | BaseException, context: FailureContext) -> FailureAnalysis:
        """Classify ``error`` and adjust the default action by attempt count."""

        classified = classify_failure(error, rules=self.rules)
        action = classified.action
        recoverable = classified.recoverable
        alternate: str | None = None
        delay: float | None = None

        if self.should_escalate(context):
            action = RecoveryAction.ESCALATE
            recoverable = False
        elif (
            context.attempt_count >= self.switch_after_attempts
            and action != RecoveryAction.ESCALATE
        ):
            action = RecoveryAction.SWITCH_EXPERT

        if action == RecoveryAction.SWITCH_EXPERT:
            alternate = self.next_expert(context)
            if alternate is None:
                logger.info(
                    "No untried fallback for expert %s, escalating",
                    context.current_expert,
                )
                action = RecoveryAction.ESCALATE
                recoverable = False

        if action in {RecoveryAction.RETRY, RecoveryAction.RETRY_MODIFIED}:
            delay = compute_retry_delay(
                classified.failure_type,
                context.attempt_count,
                base_delay_seconds=self.base_delay_seconds,
                rate_limit_base_delay_seconds=self.rate_limit_base_delay_seconds,
                max_delay_seconds=self.max_delay_seconds,
                jitter_ratio=self.jitter_ratio,
                rng=self._random,
            )

        return FailureAnalysis(
            failure_type=classified.failure_type,
            recoverable=recoverable,
            suggested_action=action,
            matched_pattern=classified.matched_pattern,
            retry_delay_seconds=delay,
            alternate_expert=alternate,
        )

    def record_failure(
        self,
        context: FailureContext,
        error: str | BaseException,
        analysis: FailureAnalysis,
    ) -> FailureRecord:
        """Append one record to the context history and update counters."""

        message = str(error)
        record = FailureRecord(
            expert_id=context.current_expert,
            attempt_number=context.attempt_count,
            failure_type=analysis.failure_type,
            error_message=message,
            action_taken=analysis.suggested_action,
        )
        context.failure_history.append(record)
        context.last_error = message

        self.stats.total_failures += 1
        type_key = analysis.failure_type.value
        self.stats.by_type[type_key] = self.stats.by_type.get(type_key, 0) + 1
        self.stats.by_expert[record.expert_id] = self.stats.by_expert.get(record.expert_id, 0) + 1
        if analysis.suggested_action == RecoveryAction.SWITCH_EXPERT:
            self.stats.switches += 1
        elif analysis.suggested_action == RecoveryAction.ESCALATE:
            self.stats.escalations += 1

        logger.warning(
            "Attempt %d/%d on %s failed (%s, action=%s): %s",
            record.attempt_number,
            context.max_attempts,
            record.expert_id,
            type_key,
            analysis.suggested_action.value,
            redact_backend_text(message, max_chars=200),
        )
        return record

    def prepare_next_attempt(
        self,
        context: FailureContext,
        analysis: FailureAnalysis | None = None,
    ) -> FailureContext:
        """Advance the attempt counter, moving to the alternate expert when one was chosen."""

        context.attempt_count += 1
        if analysis is not None and analysis.alternate_expert:
            logger.info(
                "Switching expert %s -> %s for attempt %d",
                context.current_expert,
                analysis.alternate_expert,
                context.attempt_count,
            )
            context.current_expert = analysis.alternate_expert
        return context

    def should_escalate(self, context: FailureContext) -> bool:
        return context.attempt_count >= context.max_attempts

    def next_expert(self, context: FailureContext) -> str | None:
        """First fallback of the current expert that has not failed yet."""

        tried = {record.expert_id for record in context.failure_history}
        tried.add(context.current_expert)
        for candidate in self.fallback_chain.get(context.current_expert, ()):
            if candidate not in tried:
                return candidate
        return None

    def escalation_report(self, context: FailureContext) -> EscalationReport:
        """Build the terminal report; no automatic retry follows it."""

        observed: list[FailureType] = []
        for record in context.failure_history:
            if record.failure_type not in observed:
                observed.append(record.failure_type)

        recommendations: list[str] = []
        for failure_type in observed:
            text = _TYPE_RECOMMENDATIONS.get(failure_type)
            if text is not None and text not in recommendations:
                recommendations.append(text)
        for text in GENERIC_RECOMMENDATIONS:
            if text not in recommendations:
                recommendations.append(text)

        experts_tried = context.experts_tried
        if context.current_expert not in experts_tried:
            experts_tried.append(context.current_expert)

        logger.warning(
            "Escalating after %d attempts (experts tried: %s)",
            context.attempt_count,
            ", ".join(experts_tried),
        )
        return EscalationReport(
            original_request=context.original_request,
            experts_tried=experts_tried,
            failure_history=list(context.failure_history),
            recommendations=recommendations,
        )
