"""Retry loop: re-invoke one expert until it prints the completion marker.

A loop moves ``idle -> running -> completed | cancelled | exhausted``. Each
iteration sends the accumulated transcript to the expert and scans the output
for ``<promise>TEXT</promise>``. An iteration that raises is counted as a
failed attempt and the loop moves on; only the marker, cancellation, or the
iteration cap end it. Cancellation is cooperative and observed before the next
iteration starts.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from agent_relay.common import truncate, utc_now
from agent_relay.hooks import (
    DispatchResult,
    ErrorContext,
    ExpertCallContext,
    ExpertResultContext,
    HookContext,
    HookDispatcher,
    LoopEndContext,
    LoopIterationContext,
    LoopStartContext,
)
from agent_relay.orchestrator.backend import BackendMessage, BackendRequest, ExpertBackend
from agent_relay.orchestrator.failure_classifier import classify_failure
from agent_relay.orchestrator.loop_store import (
    LAST_OUTPUT_MAX_CHARS,
    InMemoryLoopStateStore,
    LoopState,
    LoopStateStore,
)
from agent_relay.orchestrator.models import LoopStatus
from agent_relay.orchestrator.routing import normalize_expert, validate_expert

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_PROMISE = "DONE"
DEFAULT_MAX_ITERATIONS = 10
MAX_ITERATIONS_LIMIT = 50
DEFAULT_ITERATION_DELAY_SECONDS = 1.0
COMPLETION_TAG_PATTERN = re.compile(r"<promise>(.*?)</promise>", re.IGNORECASE | re.DOTALL)

_HOOK_OUTPUT_CHARS = 500
_PREVIOUS_OUTPUT_CHARS = 500
_STATUS_EXCERPT_CHARS = 200

INITIAL_PROMPT_TEMPLATE = """\
[RETRY LOOP TASK - up to {max_iterations} iterations]

This task runs in a loop until you report completion.

How it works:
1. Work on the task.
2. When the task is FULLY complete, output: <promise>{promise}</promise>
3. Without that marker the loop continues automatically.
4. You have up to {max_iterations} iterations.

Rules:
- Finish the task completely before emitting the marker.
- Make meaningful progress in every iteration.
- If you are stuck, try a different approach.

## Task
{prompt}
{context}
Begin now. Output <promise>{promise}</promise> when completely done."""

CONTINUATION_PROMPT_TEMPLATE = """\
[RETRY LOOP - iteration {iteration}/{max_iterations}]

Your previous attempt did not output the completion marker. Continue the task.

- Review your progress so far and continue from where you left off.
- When FULLY complete, output: <promise>{promise}</promise>

## Previous Output Summary
{previous_output}

## Original Task
{prompt}

Continue now. Output <promise>{promise}</promise> when done."""


class LoopAlreadyActiveError(RuntimeError):
    """Raised by ``start`` while another loop is running."""

    def __init__(self, state: LoopState) -> None:
        super().__init__(
            f"A retry loop is already active: task {state.task_id} at iteration "
            f"{state.iteration}/{state.max_iterations}, started {state.started_at.isoformat()}. "
            "Cancel it or wait for it to finish.",
        )
        self.state = state


class ExpertCallBlocked(RuntimeError):
    """A hook blocked the expert call or its result inside a loop iteration."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True)
class LoopOptions:
    """Per-invocation overrides; unset values fall back to controller defaults."""

    max_iterations: int | None = None
    completion_promise: str | None = None
    expert_id: str | None = None
    context: str | None = None


@dataclass(slots=True)
class LoopResult:
    """Terminal outcome of one loop run."""

    task_id: str
    status: LoopStatus
    output: str
    iterations: int
    total_time_ms: float
    expert_id: str | None = None
    detected_promise: str | None = None
    failed_iterations: int = 0
    last_error: str | None = None
    reason: str | None = None
    messages: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == LoopStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == LoopStatus.CANCELLED

    @property
    def max_iterations_reached(self) -> bool:
        return self.status == LoopStatus.EXHAUSTED


@dataclass(slots=True)
class LoopStatusSnapshot:
    """Out-of-band view of the running loop."""

    task_id: str
    status: LoopStatus
    iteration: int
    max_iterations: int
    expert_id: str
    elapsed_seconds: float
    last_output_excerpt: str | None
    cancel_requested: bool
    failed_iterations: int


def detect_completion_promise(output: str, expected: str) -> str | None:
    """Return the marker text when a ``<promise>`` tag matches ``expected``.

    Matching is case-insensitive and a tag containing the expected text also
    counts, so ``<promise>Task DONE</promise>`` satisfies ``DONE``.
    """

    wanted = expected.strip().lower()
    if not wanted:
        return None
    for match in COMPLETION_TAG_PATTERN.finditer(output):
        detected = match.group(1).strip()
        if wanted in detected.lower():
            return detected
    return None


def build_initial_prompt(
    prompt: str,
    *,
    max_iterations: int,
    completion_promise: str,
    context: str | None = None,
) -> str:
    context_section = f"\n## Additional Context\n{context}\n" if context else ""
    return INITIAL_PROMPT_TEMPLATE.format(
        max_iterations=max_iterations,
        promise=completion_promise,
        prompt=prompt,
        context=context_section,
    )


def build_continuation_prompt(state: LoopState) -> str:
    previous = (
        truncate(state.last_output, _PREVIOUS_OUTPUT_CHARS)
        if state.last_output
        else "No previous output recorded."
    )
    return CONTINUATION_PROMPT_TEMPLATE.format(
        iteration=state.iteration,
        max_iterations=state.max_iterations,
        promise=state.completion_promise,
        previous_output=previous,
        prompt=state.prompt,
    )


def format_final_output(outputs: list[str], detected_promise: str | None) -> str:
    if not outputs:
        return "No output generated"
    if len(outputs) == 1:
        return outputs[0]
    lines = [
        f"## Retry Loop Result ({len(outputs)} iterations)",
        "### Final Output",
        outputs[-1],
    ]
    if detected_promise is not None:
        lines.extend(["", "### Completion Detected", f"<promise>{detected_promise}</promise>"])
    return "\n".join(lines)


class RetryLoopController:
    """Owns at most one running loop; construct one per process or session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: ExpertBackend,
        dispatcher: HookDispatcher | None = None,
        store: LoopStateStore | None = None,
        default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
        default_completion_promise: str = DEFAULT_COMPLETION_PROMISE,
        default_expert: str = "strategist",
        iteration_delay_seconds: float = DEFAULT_ITERATION_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.dispatcher = dispatcher or HookDispatcher()
        self.store = store or InMemoryLoopStateStore()
        self.default_max_iterations = default_max_iterations
        self.default_completion_promise = default_completion_promise
        self.default_expert = default_expert
        self.iteration_delay_seconds = iteration_delay_seconds
        self._sleep = sleep
        self._clock = clock
        self._cancel_requested = False
        self.last_result: LoopResult | None = None

    def start(self, task_id: str, prompt: str, options: LoopOptions | None = None) -> LoopState:
        """Move ``idle -> running``; raise if a loop is already running."""

        current = self.store.load()
        if current is not None and current.active:
            raise LoopAlreadyActiveError(current)

        options = options or LoopOptions()
        max_iterations = (
            options.max_iterations
            if options.max_iterations is not None
            else self.default_max_iterations
        )
        if not 1 <= max_iterations <= MAX_ITERATIONS_LIMIT:
            raise ValueError(f"max_iterations must be between 1 and {MAX_ITERATIONS_LIMIT}.")
        completion_promise = options.completion_promise or self.default_completion_promise
        completion_promise = completion_promise.strip()
        if not completion_promise:
            raise ValueError("completion_promise must not be empty.")
        if not prompt.strip():
            raise ValueError("Loop prompt must not be empty.")
        expert_id = validate_expert(options.expert_id or self.default_expert)

        state = LoopState(
            task_id=task_id,
            prompt=prompt,
            iteration=0,
            max_iterations=max_iterations,
            completion_promise=completion_promise,
            expert_id=expert_id,
            started_at=utc_now(),
        )
        self._cancel_requested = False
        self.store.save(state)
        logger.info(
            "Retry loop %s started (expert=%s, max_iterations=%d, promise=%r)",
            task_id,
            state.expert_id,
            max_iterations,
            completion_promise,
        )
        return state

    async def execute(
        self,
        task_id: str,
        prompt: str,
        options: LoopOptions | None = None,
    ) -> LoopResult:
        """Run a loop to a terminal state. A busy controller returns a rejected result."""

        try:
            state = self.start(task_id, prompt, options)
        except LoopAlreadyActiveError as error:
            logger.warning("Rejected loop %s: %s", task_id, error)
            return LoopResult(
                task_id=task_id,
                status=LoopStatus.REJECTED,
                output=str(error),
                iterations=0,
                total_time_ms=0.0,
                reason=str(error),
            )

        started = self._clock()
        context_text = (options or LoopOptions()).context
        messages: list[str] = []

        start_dispatch = await self.dispatcher.dispatch(
            LoopStartContext(
                task_id=task_id,
                prompt=state.prompt,
                max_iterations=state.max_iterations,
                completion_promise=state.completion_promise,
                expert_id=state.expert_id,
            ),
        )
        if start_dispatch.blocked:
            self.store.clear()
            reason = start_dispatch.reason or "Loop start blocked by hook"
            result = LoopResult(
                task_id=task_id,
                status=LoopStatus.REJECTED,
                output=reason,
                iterations=0,
                total_time_ms=self._elapsed_ms(started),
                expert_id=state.expert_id,
                reason=reason,
            )
            self.last_result = result
            return result
        messages.extend(start_dispatch.messages)
        _apply_start_overrides(state, start_dispatch)
        self.store.save(state)

        transcript: list[BackendMessage] = []
        outputs: list[str] = []
        detected: str | None = None
        last_error: str | None = None
        reason: str | None = None
        try:
            while True:
                if self._observe_cancel(state):
                    status = LoopStatus.CANCELLED
                    reason = "Cancelled by request"
                    break

                state.iteration += 1
                prompt_text = (
                    build_initial_prompt(
                        state.prompt,
                        max_iterations=state.max_iterations,
                        completion_promise=state.completion_promise,
                        context=context_text,
                    )
                    if state.iteration == 1
                    else build_continuation_prompt(state)
                )
                logger.info(
                    "Loop %s iteration %d/%d on %s",
                    task_id,
                    state.iteration,
                    state.max_iterations,
                    state.expert_id,
                )

                error_text: str | None = None
                try:
                    output = await self._invoke_expert(state, prompt_text, transcript, messages)
                except ExpertCallBlocked as blocked:
                    status = LoopStatus.CANCELLED
                    reason = blocked.reason
                    break
                except Exception as exc:  # noqa: BLE001
                    error_text = str(exc) or type(exc).__name__
                    output = f"Error: {error_text}"
                    last_error = error_text
                    state.failed_iterations += 1
                    logger.warning(
                        "Loop %s iteration %d failed, continuing: %s",
                        task_id,
                        state.iteration,
                        error_text,
                    )
                    await self._dispatch(
                        ErrorContext(
                            error_message=error_text,
                            source=f"loop:{task_id}",
                            recoverable=True,
                            failure_type=classify_failure(error_text).failure_type.value,
                        ),
                        messages,
                    )

                outputs.append(output)
                state.last_output = output[:LAST_OUTPUT_MAX_CHARS]
                if error_text is None:
                    detected = detect_completion_promise(output, state.completion_promise)

                iteration_dispatch = await self._dispatch(
                    LoopIterationContext(
                        task_id=task_id,
                        iteration=state.iteration,
                        max_iterations=state.max_iterations,
                        output=output[:_HOOK_OUTPUT_CHARS],
                        completed=detected is not None,
                        error=error_text,
                    ),
                    messages,
                )
                rewritten = _apply_iteration_overrides(state, iteration_dispatch, outputs)
                if rewritten and error_text is None:
                    transcript[-1] = BackendMessage(role="assistant", content=outputs[-1])
                    detected = detect_completion_promise(outputs[-1], state.completion_promise)

                if detected is not None:
                    status = LoopStatus.COMPLETED
                    break
                if iteration_dispatch.blocked:
                    status = LoopStatus.CANCELLED
                    reason = iteration_dispatch.reason
                    break
                if state.iteration >= state.max_iterations:
                    status = LoopStatus.EXHAUSTED
                    break

                self._persist(state)
                if self.iteration_delay_seconds > 0:
                    await self._sleep(self.iteration_delay_seconds)
        except Exception as exc:
            logger.exception("Retry loop %s failed unexpectedly", task_id)
            self._release(state)
            await self._dispatch(
                ErrorContext(
                    error_message=str(exc),
                    source=f"loop:{task_id}",
                    recoverable=False,
                ),
                messages,
            )
            raise

        self._release(state)
        state.status = status
        total_ms = self._elapsed_ms(started)
        await self._dispatch(
            LoopEndContext(
                task_id=task_id,
                status=status.value,
                iterations=state.iteration,
                completed=status == LoopStatus.COMPLETED,
                cancelled=status == LoopStatus.CANCELLED,
                max_iterations_reached=status == LoopStatus.EXHAUSTED,
                total_duration_ms=total_ms,
            ),
            messages,
        )
        logger.info(
            "Retry loop %s finished as %s after %d iterations (%d failed)",
            task_id,
            status.value,
            state.iteration,
            state.failed_iterations,
        )
        result = LoopResult(
            task_id=task_id,
            status=status,
            output=format_final_output(outputs, detected),
            iterations=state.iteration,
            total_time_ms=total_ms,
            expert_id=state.expert_id,
            detected_promise=detected,
            failed_iterations=state.failed_iterations,
            last_error=last_error,
            reason=reason,
            messages=messages,
        )
        self.last_result = result
        return result

    def cancel(self, *, force: bool = False) -> bool:
        """Request cancellation of the running loop.

        The loop observes the request before its next iteration. ``force``
        also drops persisted state, for a loop whose process is gone.
        """

        state = self.store.load()
        if state is None or not state.active:
            return False
        self._cancel_requested = True
        if force:
            self.store.clear()
            logger.warning("Force-cleared loop state for task %s", state.task_id)
            return True
        requested = self.store.request_cancel()
        logger.info("Cancellation requested for loop %s", state.task_id)
        return requested

    def get_state(self) -> LoopState | None:
        state = self.store.load()
        return dataclasses.replace(state) if state is not None else None

    def is_active(self) -> bool:
        state = self.store.load()
        return state is not None and state.active

    def status(self) -> LoopStatusSnapshot | None:
        state = self.store.load()
        if state is None:
            return None
        return LoopStatusSnapshot(
            task_id=state.task_id,
            status=state.status,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            expert_id=state.expert_id,
            elapsed_seconds=max(0.0, (utc_now() - state.started_at).total_seconds()),
            last_output_excerpt=(
                truncate(state.last_output, _STATUS_EXCERPT_CHARS) if state.last_output else None
            ),
            cancel_requested=state.cancel_requested,
            failed_iterations=state.failed_iterations,
        )

    def _observe_cancel(self, state: LoopState) -> bool:
        if self._cancel_requested:
            return True
        stored = self.store.load()
        return stored is None or stored.task_id != state.task_id or stored.cancel_requested

    def _persist(self, state: LoopState) -> None:
        stored = self.store.load()
        if stored is None or stored.task_id != state.task_id:
            # A forced cancel dropped the state; writing it back would revive the loop.
            logger.warning("Loop %s state was cleared externally, stopping", state.task_id)
            state.cancel_requested = True
            self._cancel_requested = True
            return
        # Keep a cancel flag written by another process since the last save.
        if stored.cancel_requested:
            state.cancel_requested = True
        self.store.save(state)

    def _release(self, state: LoopState) -> None:
        stored = self.store.load()
        if stored is not None and stored.task_id == state.task_id:
            self.store.clear()

    async def _invoke_expert(
        self,
        state: LoopState,
        prompt_text: str,
        transcript: list[BackendMessage],
        messages: list[str],
    ) -> str:
        """Call the loop's expert through the expert call and result hooks.

        Raises :class:`ExpertCallBlocked` when a hook blocks either event.
        Backend errors propagate after the failed result has been reported.
        """

        call = await self._dispatch(
            ExpertCallContext(
                expert_id=state.expert_id,
                prompt=prompt_text,
                attempt=state.iteration,
                metadata={"loop_task_id": state.task_id},
            ),
            messages,
        )
        if call.blocked:
            raise ExpertCallBlocked(call.reason or "Expert call blocked by hook")
        expert_id = state.expert_id
        if call.modified and isinstance(call.context, ExpertCallContext):
            expert_id = normalize_expert(call.context.expert_id)
            prompt_text = call.context.prompt

        started = self._clock()
        try:
            response = await self.backend.call(
                BackendRequest(expert_id=expert_id, prompt=prompt_text, messages=list(transcript)),
            )
        except Exception as exc:
            await self._dispatch(
                ExpertResultContext(
                    expert_id=expert_id,
                    response=truncate(str(exc), _HOOK_OUTPUT_CHARS),
                    success=False,
                    duration_ms=self._elapsed_ms(started),
                ),
                messages,
            )
            raise

        result = await self._dispatch(
            ExpertResultContext(
                expert_id=response.expert_id,
                response=response.content,
                success=True,
                duration_ms=self._elapsed_ms(started),
                model=response.model,
            ),
            messages,
        )
        if result.blocked:
            raise ExpertCallBlocked(result.reason or "Expert result blocked by hook")
        output = response.content
        if "response" in result.modified and isinstance(result.context, ExpertResultContext):
            output = result.context.response
        transcript.append(BackendMessage(role="user", content=prompt_text))
        transcript.append(BackendMessage(role="assistant", content=output))
        return output

    async def _dispatch(self, context: HookContext, messages: list[str]) -> DispatchResult:
        outcome = await self.dispatcher.dispatch(context)
        messages.extend(outcome.messages)
        return outcome

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000


def _apply_start_overrides(state: LoopState, dispatch: DispatchResult) -> None:
    """Adopt fields a start hook modified, keeping the iteration cap in range."""

    if not dispatch.modified:
        return
    context = dispatch.context
    if not isinstance(context, LoopStartContext):
        return
    state.prompt = context.prompt
    state.max_iterations = min(max(int(context.max_iterations), 1), MAX_ITERATIONS_LIMIT)
    state.completion_promise = context.completion_promise.strip() or state.completion_promise
    if "expert_id" not in dispatch.modified:
        return
    try:
        state.expert_id = validate_expert(context.expert_id)
    except ValueError as error:
        logger.warning("Ignoring start hook expert override for %s: %s", state.task_id, error)


def _apply_iteration_overrides(
    state: LoopState,
    dispatch: DispatchResult,
    outputs: list[str],
) -> bool:
    """Adopt a rewritten output or iteration cap; True when the output changed."""

    context = dispatch.context
    if not dispatch.modified or not isinstance(context, LoopIterationContext):
        return False
    if "max_iterations" in dispatch.modified:
        state.max_iterations = min(
            max(int(context.max_iterations), state.iteration),
            MAX_ITERATIONS_LIMIT,
        )
    if "output" not in dispatch.modified:
        return False
    outputs[-1] = context.output
    state.last_output = context.output[:LAST_OUTPUT_MAX_CHARS]
    return True
