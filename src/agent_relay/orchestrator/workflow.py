"""Phase-driven workflow orchestrator.

One request moves through ``intent -> assessment -> exploration ->
implementation -> verification -> completion``. A failed implementation, or one
the reviewer rejects, goes to ``recovery``, which asks the failure engine what
to do and either loops back to implementation or escalates. In loop mode the
implementation step is replaced by the retry loop controller.

Hooks see every transition. A ``block`` anywhere before completion aborts the
run with ``blocked=True``; blocks never reach the failure engine. ``cancel``
is cooperative and takes effect at the next phase boundary.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from agent_relay.common import truncate, utc_now
from agent_relay.config import WorkflowSettings
from agent_relay.hooks import (
    DispatchResult,
    ErrorContext,
    ExpertCallContext,
    ExpertResultContext,
    HookContext,
    HookDispatcher,
    RateLimitContext,
    WorkflowEndContext,
    WorkflowPhaseContext,
    WorkflowStartContext,
)
from agent_relay.orchestrator.backend import BackendRequest, BackendResponse, ExpertBackend
from agent_relay.orchestrator.failure_classifier import FailureEngine
from agent_relay.orchestrator.loop import LoopOptions, LoopResult, RetryLoopController
from agent_relay.orchestrator.models import (
    ComplexityLevel,
    EscalationReport,
    FailureAnalysis,
    FailureContext,
    FailureType,
    IntentType,
    PhaseHistoryEntry,
    PhaseId,
    PhaseResult,
    RecoveryAction,
    WorkflowResult,
)
from agent_relay.orchestrator.phases import (
    build_assessment_prompt,
    build_delegation_prompt,
    build_exploration_queries,
    build_verification_prompt,
    classify_intent,
    critical_response_problem,
    estimate_complexity,
    extract_keywords,
    needs_exploration,
    parse_relevant_files,
    parse_verification,
    simplify_request,
    summarize_exploration,
)
from agent_relay.orchestrator.reporting import format_escalation_report
from agent_relay.orchestrator.routing import RoutingTables

logger = logging.getLogger(__name__)

_HOOK_DETAIL_CHARS = 500
# Reviewer rejections are classified as bad replies, whatever the findings say.
_VERIFICATION_REJECTED = "Invalid response: rejected by verification"


class WorkflowBlocked(Exception):
    """A hook blocked the run; carries the hook's reason."""

    def __init__(self, reason: str, *, hook_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.hook_id = hook_id


@dataclass(slots=True)
class WorkflowOptions:
    """Per-run overrides of :class:`WorkflowSettings`."""

    intent_hint: IntentType | None = None
    max_attempts: int | None = None
    timeout_seconds: float | None = None
    skip_intent: bool | None = None
    skip_assessment: bool | None = None
    skip_exploration: bool | None = None
    skip_verification: bool | None = None
    loop_mode: bool = False
    loop_options: LoopOptions | None = None
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class WorkflowSnapshot:
    """Read-only view of a run in progress."""

    run_id: str
    request: str
    intent: IntentType | None
    complexity: ComplexityLevel | None
    current_phase: PhaseId | None
    attempts_made: int
    phases_executed: tuple[PhaseId, ...]
    cancel_requested: bool


@dataclass(slots=True)
class _Run:
    """Mutable state of one run; never shared between runs."""

    request: str
    original_request: str
    options: WorkflowOptions
    max_attempts: int
    timeout_seconds: float
    deadline: float
    skip_intent: bool
    skip_assessment: bool
    skip_exploration: bool
    skip_verification: bool
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    current_phase: PhaseId | None = None
    cancel_reason: str | None = None
    cancelled: bool = False
    intent: IntentType | None = None
    complexity: ComplexityLevel | None = None
    relevant_files: list[str] = field(default_factory=list)
    codebase_context: str | None = None
    exploration_results: list[str] = field(default_factory=list)
    failure: FailureContext | None = None
    pending_analysis: FailureAnalysis | None = None
    last_error: str | None = None
    implementation_output: str | None = None
    implemented: bool = False
    verification_failures: list[str] = field(default_factory=list)
    verification_rejected: bool = False
    timed_out: bool = False
    escalated: bool = False
    escalation_report: EscalationReport | None = None
    escalation_text: str | None = None
    loop_result: LoopResult | None = None
    history: list[PhaseHistoryEntry] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    recovery_actions: list[str] = field(default_factory=list)


class WorkflowOrchestrator:
    """Runs requests through the phase graph with recovery and hooks."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: ExpertBackend,
        dispatcher: HookDispatcher | None = None,
        failure_engine: FailureEngine | None = None,
        loop_controller: RetryLoopController | None = None,
        routing: RoutingTables | None = None,
        settings: WorkflowSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.dispatcher = dispatcher or HookDispatcher()
        self.routing = routing or RoutingTables()
        self.failure_engine = failure_engine or FailureEngine(
            fallback_chain=self.routing.fallback_chain,
        )
        self.loop_controller = loop_controller or RetryLoopController(
            backend=backend,
            dispatcher=self.dispatcher,
        )
        self.settings = settings or WorkflowSettings()
        self._sleep = sleep
        self._clock = clock
        self._active: dict[str, _Run] = {}
        self._handlers: dict[PhaseId, Callable[[_Run], Awaitable[PhaseResult]]] = {
            PhaseId.INTENT: self._intent_phase,
            PhaseId.ASSESSMENT: self._assessment_phase,
            PhaseId.EXPLORATION: self._exploration_phase,
            PhaseId.IMPLEMENTATION: self._implementation_phase,
            PhaseId.VERIFICATION: self._verification_phase,
            PhaseId.RECOVERY: self._recovery_phase,
            PhaseId.LOOP: self._loop_phase,
            PhaseId.COMPLETION: self._completion_phase,
        }

    async def run(self, request: str, options: WorkflowOptions | None = None) -> WorkflowResult:
        """Drive ``request`` to completion, escalation, or a hook block."""

        if not request.strip():
            raise ValueError("Request must not be empty.")
        options = options or WorkflowOptions()
        started = self._clock()
        run = self._new_run(request, options, started)
        logger.info(
            "Workflow started (loop_mode=%s, max_attempts=%d): %s",
            options.loop_mode,
            run.max_attempts,
            truncate(request, 100),
        )

        self._active[run.run_id] = run
        try:
            return await self._run(run, started)
        finally:
            self._active.pop(run.run_id, None)

    def cancel(self, run_id: str | None = None, *, reason: str = "Cancelled by request") -> bool:
        """Ask active runs to stop at the next phase boundary.

        Without ``run_id`` every active run is cancelled. A run inside the
        retry loop also cancels the loop, which stops before its next
        iteration. Returns False when nothing was running.
        """

        if run_id is None:
            targets = list(self._active.values())
        else:
            targets = [self._active[run_id]] if run_id in self._active else []
        for run in targets:
            if run.cancel_reason is None:
                run.cancel_reason = reason
                logger.info("Cancellation requested for workflow %s: %s", run.run_id, reason)
            if run.current_phase == PhaseId.LOOP:
                self.loop_controller.cancel()
        return bool(targets)

    def get_context(self, run_id: str | None = None) -> WorkflowSnapshot | None:
        """Snapshot of ``run_id``, or of the latest active run when omitted."""

        if run_id is None:
            run = next(reversed(self._active.values()), None)
        else:
            run = self._active.get(run_id)
        if run is None:
            return None
        return WorkflowSnapshot(
            run_id=run.run_id,
            request=run.request,
            intent=run.intent,
            complexity=run.complexity,
            current_phase=run.current_phase,
            attempts_made=run.failure.attempt_count if run.failure is not None else 0,
            phases_executed=tuple(entry.phase for entry in run.history),
            cancel_requested=run.cancel_reason is not None,
        )

    async def _run(self, run: _Run, started: float) -> WorkflowResult:
        options = run.options
        blocked_reason: str | None = None
        try:
            start = await self._emit(
                WorkflowStartContext(
                    session_id=options.session_id,
                    request=run.original_request,
                    intent_hint=options.intent_hint.value if options.intent_hint else None,
                    loop_mode=options.loop_mode,
                ),
                run,
            )
            if start.modified and isinstance(start.context, WorkflowStartContext):
                run.request = start.context.request
            await self._drive(run)
        except WorkflowBlocked as blocked:
            blocked_reason = blocked.reason
            logger.warning(
                "Workflow blocked by hook %s: %s",
                blocked.hook_id or "<unknown>",
                blocked.reason,
            )

        result = self._build_result(run, started, blocked_reason)
        end = await self.dispatcher.dispatch(
            WorkflowEndContext(
                session_id=options.session_id,
                request=run.original_request,
                success=result.success,
                escalated=result.escalated,
                blocked=result.blocked,
                cancelled=result.cancelled,
                total_time_ms=result.total_time_ms,
                phases=tuple(phase.value for phase in result.phases_executed),
            ),
        )
        result.messages.extend(end.messages)
        logger.info(
            "Workflow finished: success=%s escalated=%s blocked=%s cancelled=%s attempts=%d",
            result.success,
            result.escalated,
            result.blocked,
            result.cancelled,
            result.attempts_made,
        )
        return result

    async def _drive(self, run: _Run) -> None:
        phase: PhaseId | None = self._first_phase(run)
        while phase is not None:
            if run.cancel_reason is not None:
                run.cancelled = True
                if phase != PhaseId.COMPLETION:
                    logger.warning(
                        "Workflow %s cancelled before %s: %s",
                        run.run_id,
                        phase.value,
                        run.cancel_reason,
                    )
                    phase = PhaseId.COMPLETION
            run.current_phase = phase
            await self._emit_phase(run, phase, stage="enter")
            phase_started = self._clock()
            started_at = utc_now()
            result = await self._handlers[phase](run)

            if (
                phase not in {PhaseId.RECOVERY, PhaseId.COMPLETION}
                and self._clock() > run.deadline
            ):
                run.timed_out = True
                run.last_error = (
                    f"Workflow timed out after {run.timeout_seconds:g}s during {phase.value}"
                )
                logger.warning("%s", run.last_error)
                result = PhaseResult(
                    phase=phase,
                    success=False,
                    next_phase=PhaseId.RECOVERY,
                    error=run.last_error,
                )

            run.history.append(
                PhaseHistoryEntry(
                    phase=phase,
                    started_at=started_at,
                    duration_ms=(self._clock() - phase_started) * 1000,
                    success=result.success,
                    error=result.error,
                ),
            )
            logger.debug(
                "Phase %s finished (success=%s, next=%s)",
                phase.value,
                result.success,
                result.next_phase.value if result.next_phase else None,
            )
            await self._emit_phase(
                run,
                phase,
                stage="exit",
                success=result.success,
                detail=result.error or result.output,
            )
            phase = result.next_phase

    def _new_run(self, request: str, options: WorkflowOptions, started: float) -> _Run:
        max_attempts = (
            options.max_attempts
            if options.max_attempts is not None
            else self.settings.max_attempts
        )
        timeout_seconds = (
            options.timeout_seconds
            if options.timeout_seconds is not None
            else self.settings.timeout_seconds
        )
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")
        return _Run(
            request=request,
            original_request=request,
            options=options,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            deadline=started + timeout_seconds,
            skip_intent=_pick(options.skip_intent, self.settings.skip_intent),
            skip_assessment=_pick(options.skip_assessment, self.settings.skip_assessment),
            skip_exploration=_pick(options.skip_exploration, self.settings.skip_exploration),
            skip_verification=_pick(options.skip_verification, self.settings.skip_verification),
        )

    def _first_phase(self, run: _Run) -> PhaseId:
        if not run.skip_intent:
            return PhaseId.INTENT
        run.intent = run.options.intent_hint or IntentType.IMPLEMENTATION
        return self._after_intent(run)

    def _after_intent(self, run: _Run) -> PhaseId:
        if not run.skip_assessment:
            return PhaseId.ASSESSMENT
        return self._after_assessment(run)

    def _after_assessment(self, run: _Run) -> PhaseId:
        if run.options.loop_mode:
            return PhaseId.LOOP
        intent = run.intent or IntentType.IMPLEMENTATION
        if not run.skip_exploration and needs_exploration(intent, run.relevant_files):
            return PhaseId.EXPLORATION
        return PhaseId.IMPLEMENTATION

    async def _intent_phase(self, run: _Run) -> PhaseResult:
        hint = run.options.intent_hint
        run.intent = hint or classify_intent(run.request)
        run.complexity = estimate_complexity(run.request)
        logger.info(
            "Intent %s (%s), complexity %s",
            run.intent.value,
            "hint" if hint else "classified",
            run.complexity.value,
        )
        return PhaseResult(
            phase=PhaseId.INTENT,
            success=True,
            next_phase=self._after_intent(run),
            output=f"intent={run.intent.value} complexity={run.complexity.value}",
            data={"intent": run.intent.value, "complexity": run.complexity.value},
        )

    async def _assessment_phase(self, run: _Run) -> PhaseResult:
        intent = run.intent or IntentType.IMPLEMENTATION
        keywords = extract_keywords(run.request)
        prompt = build_assessment_prompt(run.request, intent, keywords)
        try:
            response = await self._call_expert(run, self.routing.assessment_expert, prompt)
        except WorkflowBlocked:
            raise
        except Exception as exc:  # noqa: BLE001
            # Assessment only gathers context; implementation proceeds without it.
            logger.warning("Assessment failed, continuing without context: %s", exc)
            return PhaseResult(
                phase=PhaseId.ASSESSMENT,
                success=False,
                next_phase=self._after_assessment(run),
                error=f"Assessment failed: {exc}",
            )

        run.codebase_context = response.content
        run.relevant_files = parse_relevant_files(response.content)
        logger.info("Assessment found %d relevant files", len(run.relevant_files))
        return PhaseResult(
            phase=PhaseId.ASSESSMENT,
            success=True,
            next_phase=self._after_assessment(run),
            output=f"{len(run.relevant_files)} relevant files",
            data={"keywords": keywords, "relevant_files": list(run.relevant_files)},
        )

    async def _exploration_phase(self, run: _Run) -> PhaseResult:
        intent = run.intent or IntentType.IMPLEMENTATION
        queries = build_exploration_queries(run.request, intent, run.relevant_files)
        batch_size = max(self.settings.exploration_parallelism, 1)
        results: list[str] = []
        for offset in range(0, len(queries), batch_size):
            batch = queries[offset : offset + batch_size]
            outcomes = await asyncio.gather(
                *(
                    self._call_expert(run, self.routing.assessment_expert, query.prompt)
                    for query in batch
                ),
                return_exceptions=True,
            )
            for query, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, WorkflowBlocked):
                    raise outcome
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.warning("Exploration query %s failed: %s", query.kind, outcome)
                    results.append(f"[Query failed: {outcome}]")
                else:
                    results.append(outcome.content)

        run.exploration_results = results
        failed = sum(1 for item in results if item.startswith("[Query failed"))
        return PhaseResult(
            phase=PhaseId.EXPLORATION,
            success=True,
            next_phase=PhaseId.IMPLEMENTATION,
            output=summarize_exploration(queries, results),
            data={"queries": len(queries), "failed": failed},
        )

    async def _implementation_phase(self, run: _Run) -> PhaseResult:
        intent = run.intent or IntentType.IMPLEMENTATION
        if run.complexity is None:
            run.complexity = estimate_complexity(run.request)
        if run.failure is None:
            expert = self.routing.select_expert(intent, run.complexity)
            run.failure = self.failure_engine.create_context(
                run.original_request,
                expert,
                max_attempts=run.max_attempts,
            )
        context = run.failure
        self.failure_engine.prepare_next_attempt(context, run.pending_analysis)
        run.pending_analysis = None

        prompt = build_delegation_prompt(
            request=run.request,
            intent=intent,
            complexity=run.complexity,
            relevant_files=run.relevant_files,
            codebase_context=run.codebase_context,
            exploration_results=run.exploration_results,
            attempt=context.attempt_count,
            review_findings=run.verification_failures[-1:],
        )
        try:
            response = await self._call_expert(
                run,
                context.current_expert,
                prompt,
                attempt=context.attempt_count,
            )
        except WorkflowBlocked:
            raise
        except Exception as exc:  # noqa: BLE001
            run.last_error = str(exc) or type(exc).__name__
            return PhaseResult(
                phase=PhaseId.IMPLEMENTATION,
                success=False,
                next_phase=PhaseId.RECOVERY,
                error=run.last_error,
            )

        problem = critical_response_problem(response.content)
        if problem is not None:
            run.last_error = problem
            run.implementation_output = response.content
            return PhaseResult(
                phase=PhaseId.IMPLEMENTATION,
                success=False,
                next_phase=PhaseId.RECOVERY,
                error=problem,
            )

        run.implementation_output = response.content
        run.implemented = True
        return PhaseResult(
            phase=PhaseId.IMPLEMENTATION,
            success=True,
            next_phase=PhaseId.COMPLETION if run.skip_verification else PhaseId.VERIFICATION,
            output=response.content,
            data={"expert": response.expert_id, "attempt": context.attempt_count},
        )

    async def _verification_phase(self, run: _Run) -> PhaseResult:
        intent = run.intent or IntentType.IMPLEMENTATION
        prompt = build_verification_prompt(
            run.original_request,
            intent,
            run.implementation_output or "",
            run.verification_failures,
        )
        try:
            response = await self._call_expert(run, self.routing.verification_expert, prompt)
        except WorkflowBlocked:
            raise
        except Exception as exc:  # noqa: BLE001
            # The reviewer being unavailable leaves the reply unverified, not rejected.
            logger.warning("Verification unavailable, completing unverified: %s", exc)
            return PhaseResult(
                phase=PhaseId.VERIFICATION,
                success=False,
                next_phase=PhaseId.COMPLETION,
                error=f"Verification unavailable: {exc}",
            )

        verdict = parse_verification(response.content)
        logger.info(
            "Verification %s (confidence=%s, issues=%d, round=%d)",
            "passed" if verdict.passed else "failed",
            verdict.confidence or "unstated",
            len(verdict.issues),
            len(run.verification_failures) + 1,
        )
        if verdict.passed:
            return PhaseResult(
                phase=PhaseId.VERIFICATION,
                success=True,
                next_phase=PhaseId.COMPLETION,
                output=f"Verification passed (confidence {verdict.confidence or 'unstated'})",
                data={"confidence": verdict.confidence},
            )

        summary = verdict.summary()
        run.verification_failures.append(summary)
        run.verification_rejected = True
        run.implemented = False
        run.last_error = f"Verification failed: {summary}"
        return PhaseResult(
            phase=PhaseId.VERIFICATION,
            success=False,
            next_phase=PhaseId.RECOVERY,
            error=run.last_error,
            data={"issues": list(verdict.issues), "confidence": verdict.confidence},
        )

    async def _recovery_phase(self, run: _Run) -> PhaseResult:
        if run.failure is None:
            run.failure = self.failure_engine.create_context(
                run.original_request,
                self.routing.default_expert,
                max_attempts=run.max_attempts,
            )
        context = run.failure
        error = run.last_error or "Unknown failure"
        classified = _VERIFICATION_REJECTED if run.verification_rejected else error
        run.verification_rejected = False
        analysis = self.failure_engine.analyze(classified, context)
        if run.timed_out:
            analysis = dataclasses.replace(
                analysis,
                failure_type=FailureType.TIMEOUT,
                recoverable=False,
                suggested_action=RecoveryAction.ESCALATE,
                retry_delay_seconds=None,
                alternate_expert=None,
            )
        failed_expert = context.current_expert
        self.failure_engine.record_failure(context, error, analysis)
        run.recovery_actions.append(
            f"{analysis.suggested_action.value}: {analysis.failure_type.value} "
            f"on {failed_expert} (attempt {context.attempt_count}/{context.max_attempts})",
        )

        await self._emit(
            ErrorContext(
                session_id=run.options.session_id,
                error_message=error,
                source=f"expert:{failed_expert}",
                recoverable=analysis.recoverable,
                failure_type=analysis.failure_type.value,
            ),
            run,
        )
        if analysis.failure_type == FailureType.RATE_LIMIT:
            await self._emit(
                RateLimitContext(
                    session_id=run.options.session_id,
                    expert_id=failed_expert,
                    error_message=error,
                    fallback_expert=analysis.alternate_expert,
                    retry_delay_seconds=analysis.retry_delay_seconds,
                ),
                run,
            )

        action = analysis.suggested_action
        if action in {RecoveryAction.RETRY, RecoveryAction.RETRY_MODIFIED}:
            if analysis.retry_delay_seconds:
                await self._sleep(analysis.retry_delay_seconds)
            if action == RecoveryAction.RETRY_MODIFIED:
                run.request = simplify_request(run.request)
            run.pending_analysis = analysis
            return PhaseResult(
                phase=PhaseId.RECOVERY,
                success=True,
                next_phase=PhaseId.IMPLEMENTATION,
                output=f"{action.value} after {analysis.failure_type.value}",
                data=analysis.to_event_details(),
            )
        if action == RecoveryAction.SWITCH_EXPERT and analysis.alternate_expert:
            run.pending_analysis = analysis
            return PhaseResult(
                phase=PhaseId.RECOVERY,
                success=True,
                next_phase=PhaseId.IMPLEMENTATION,
                output=f"switching {failed_expert} -> {analysis.alternate_expert}",
                data=analysis.to_event_details(),
            )

        report = self.failure_engine.escalation_report(context)
        run.escalated = True
        run.escalation_report = report
        run.escalation_text = format_escalation_report(report)
        return PhaseResult(
            phase=PhaseId.RECOVERY,
            success=False,
            next_phase=PhaseId.COMPLETION,
            error=f"Escalated after {context.attempt_count} attempts",
            data=analysis.to_event_details(),
        )

    async def _loop_phase(self, run: _Run) -> PhaseResult:
        base = run.options.loop_options or LoopOptions()
        loop_options = dataclasses.replace(
            base,
            expert_id=base.expert_id or self.routing.expert_for_intent(run.intent),
            context=base.context or run.codebase_context,
        )
        task_id = f"workflow-{uuid.uuid4().hex[:12]}"
        result = await self.loop_controller.execute(task_id, run.request, loop_options)
        run.loop_result = result
        run.messages.extend(result.messages)
        return PhaseResult(
            phase=PhaseId.LOOP,
            success=result.completed,
            next_phase=PhaseId.COMPLETION,
            output=result.output,
            error=None if result.completed else f"Loop ended as {result.status.value}",
            data={"status": result.status.value, "iterations": result.iterations},
        )

    async def _completion_phase(self, run: _Run) -> PhaseResult:
        return PhaseResult(
            phase=PhaseId.COMPLETION,
            success=self._succeeded(run),
            next_phase=None,
        )

    def _succeeded(self, run: _Run) -> bool:
        if run.escalated or run.cancelled:
            return False
        if run.loop_result is not None:
            return run.loop_result.completed
        return run.implemented

    def _build_result(
        self,
        run: _Run,
        started: float,
        blocked_reason: str | None,
    ) -> WorkflowResult:
        metadata: dict[str, object] = {
            "run_id": run.run_id,
            "recovery_actions": list(run.recovery_actions),
            "relevant_files": list(run.relevant_files),
            "phase_history": [
                {
                    "phase": entry.phase.value,
                    "duration_ms": round(entry.duration_ms, 3),
                    "success": entry.success,
                    "error": entry.error,
                }
                for entry in run.history
            ],
        }
        if run.failure is not None:
            metadata["experts_tried"] = run.failure.experts_tried
            metadata["final_expert"] = run.failure.current_expert
        if run.loop_result is not None:
            metadata["loop"] = {
                "task_id": run.loop_result.task_id,
                "status": run.loop_result.status.value,
                "iterations": run.loop_result.iterations,
                "failed_iterations": run.loop_result.failed_iterations,
            }

        if run.verification_failures:
            metadata["verification_failures"] = list(run.verification_failures)

        if blocked_reason is not None:
            output = blocked_reason
            success = False
        elif run.cancelled:
            output = f"Workflow cancelled: {run.cancel_reason}"
            success = False
        elif run.escalated:
            output = run.escalation_text or "Escalation required"
            success = False
        elif run.loop_result is not None:
            output = run.loop_result.output
            success = run.loop_result.completed
        else:
            output = run.implementation_output or run.last_error or "No output generated"
            success = run.implemented

        return WorkflowResult(
            success=success,
            output=output,
            intent=run.intent,
            complexity=run.complexity,
            phases_executed=[entry.phase for entry in run.history],
            total_time_ms=(self._clock() - started) * 1000,
            attempts_made=run.failure.attempt_count if run.failure is not None else 0,
            escalated=run.escalated,
            blocked=blocked_reason is not None,
            cancelled=run.cancelled and blocked_reason is None,
            messages=list(run.messages),
            metadata=metadata,
            escalation_report=run.escalation_report,
        )

    async def _call_expert(
        self,
        run: _Run,
        expert_id: str,
        prompt: str,
        *,
        attempt: int = 1,
    ) -> BackendResponse:
        call = await self._emit(
            ExpertCallContext(
                session_id=run.options.session_id,
                expert_id=expert_id,
                prompt=prompt,
                attempt=attempt,
            ),
            run,
        )
        if call.modified and isinstance(call.context, ExpertCallContext):
            expert_id = call.context.expert_id
            prompt = call.context.prompt

        started = self._clock()
        try:
            response = await self.backend.call(
                BackendRequest(expert_id=expert_id, prompt=prompt),
            )
        except Exception as exc:
            await self._emit(
                ExpertResultContext(
                    session_id=run.options.session_id,
                    expert_id=expert_id,
                    response=truncate(str(exc), _HOOK_DETAIL_CHARS),
                    success=False,
                    duration_ms=(self._clock() - started) * 1000,
                ),
                run,
                allow_block=False,
            )
            raise
        outcome = await self._emit(
            ExpertResultContext(
                session_id=run.options.session_id,
                expert_id=response.expert_id,
                response=response.content,
                success=True,
                duration_ms=(self._clock() - started) * 1000,
                model=response.model,
            ),
            run,
        )
        if "response" in outcome.modified and isinstance(outcome.context, ExpertResultContext):
            response = dataclasses.replace(response, content=outcome.context.response)
        return response

    async def _emit_phase(
        self,
        run: _Run,
        phase: PhaseId,
        *,
        stage: str,
        success: bool | None = None,
        detail: str | None = None,
    ) -> None:
        await self._emit(
            WorkflowPhaseContext(
                session_id=run.options.session_id,
                phase=phase.value,
                stage=stage,
                request=run.request,
                success=success,
                detail=truncate(detail, _HOOK_DETAIL_CHARS) if detail else None,
            ),
            run,
        )

    async def _emit(
        self,
        context: HookContext,
        run: _Run,
        *,
        allow_block: bool = True,
    ) -> DispatchResult:
        outcome = await self.dispatcher.dispatch(context)
        run.messages.extend(outcome.messages)
        if outcome.blocked and allow_block:
            raise WorkflowBlocked(
                outcome.reason or f"Blocked by hook on {context.event.value}",
                hook_id=outcome.blocked_by,
            )
        return outcome


def _pick(override: bool | None, default: bool) -> bool:
    return default if override is None else override
