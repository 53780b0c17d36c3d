from __future__ import annotations

import asyncio
import random

import allure
import pytest

from agent_relay.config import WorkflowSettings
from agent_relay.hooks import (
    ErrorContext,
    HookDefinition,
    HookDispatcher,
    HookEvent,
    HookResult,
    WorkflowEndContext,
)
from agent_relay.hooks.builtin import register_builtin_hooks
from agent_relay.orchestrator.backend import BackendCallError
from agent_relay.orchestrator.failure_classifier import FailureEngine
from agent_relay.orchestrator.loop import LoopOptions, RetryLoopController
from agent_relay.orchestrator.models import ComplexityLevel, IntentType, PhaseId
from agent_relay.orchestrator.workflow import WorkflowOptions, WorkflowOrchestrator

pytestmark = [
    allure.epic("Workflow"),
    allure.feature("Phase Orchestration"),
]

# "multiple" rates the request moderate, which routes implementation to strategist.
REQUEST = "Implement retry handling across multiple services"
NO_ASSESSMENT = WorkflowOptions(skip_assessment=True)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _hook(hook_id: str, event: HookEvent, handler) -> HookDefinition:
    return HookDefinition(id=hook_id, name=hook_id, event=event, handler=handler)


def _orchestrator(backend, sleep, *, dispatcher=None, **kwargs) -> WorkflowOrchestrator:
    dispatcher = dispatcher or HookDispatcher()
    # Most tests script only the implementing expert.
    kwargs.setdefault("settings", WorkflowSettings(skip_verification=True))
    return WorkflowOrchestrator(
        backend=backend,
        dispatcher=dispatcher,
        failure_engine=FailureEngine(jitter_ratio=0.0, rng=random.Random(3)),
        loop_controller=RetryLoopController(
            backend=backend,
            dispatcher=dispatcher,
            iteration_delay_seconds=0,
            sleep=sleep,
        ),
        sleep=sleep,
        **kwargs,
    )


def _timeout(expert_id: str = "strategist") -> BackendCallError:
    return BackendCallError(f"Expert {expert_id} timed out after 300s", expert_id=expert_id)


def test_happy_path_runs_every_phase_and_succeeds(scripted_backend, sleep_recorder) -> None:
    ended: list[WorkflowEndContext] = []
    dispatcher = HookDispatcher()
    dispatcher.register(_hook("ended", HookEvent.WORKFLOW_END, ended.append))
    backend = scripted_backend(
        by_expert={"explorer": ["## Relevant Files\n- src/relay/retry.py: retry helpers\n"]},
    )
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST))

    assert result.success
    assert not result.escalated
    assert not result.blocked
    assert result.intent == IntentType.IMPLEMENTATION
    assert result.complexity == ComplexityLevel.MODERATE
    assert result.phases_executed == [
        PhaseId.INTENT,
        PhaseId.ASSESSMENT,
        PhaseId.IMPLEMENTATION,
        PhaseId.COMPLETION,
    ]
    assert result.attempts_made == 1
    assert backend.experts_called == ["explorer", "strategist"]
    assert result.metadata["relevant_files"] == ["src/relay/retry.py"]
    assert result.metadata["final_expert"] == "strategist"
    assert result.metadata["recovery_actions"] == []
    assert "src/relay/retry.py" in backend.requests[1].prompt
    assert backend.requests[1].prompt.startswith(f"# TASK\n{REQUEST}")
    assert sleep_recorder.calls == []
    assert len(ended) == 1
    assert ended[0].success
    assert ended[0].phases == ("intent", "assessment", "implementation", "completion")


def test_failed_assessment_does_not_stop_the_run(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(by_expert={"explorer": [RuntimeError("socket closed")]})

    result = asyncio.run(_orchestrator(backend, sleep_recorder).run(REQUEST))

    assert result.success
    assessment = result.metadata["phase_history"][1]
    assert assessment["phase"] == "assessment"
    assert assessment["success"] is False
    assert assessment["error"] == "Assessment failed: socket closed"
    assert backend.experts_called == ["explorer", "strategist"]


def test_retry_then_switch_then_escalate(scripted_backend, sleep_recorder) -> None:
    errors: list[ErrorContext] = []
    dispatcher = HookDispatcher()
    dispatcher.register(_hook("errors", HookEvent.ERROR, errors.append))
    backend = scripted_backend(
        by_expert={
            "strategist": [_timeout(), _timeout()],
            "researcher": [_timeout("researcher")],
        },
    )
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert not result.success
    assert result.escalated
    assert result.attempts_made == 3
    assert backend.experts_called == ["strategist", "strategist", "researcher"]
    assert sleep_recorder.calls == [1.0]
    assert result.metadata["recovery_actions"] == [
        "retry: timeout on strategist (attempt 1/3)",
        "switch_expert: timeout on strategist (attempt 2/3)",
        "escalate: timeout on researcher (attempt 3/3)",
    ]
    assert result.phases_executed == [
        PhaseId.INTENT,
        PhaseId.IMPLEMENTATION,
        PhaseId.RECOVERY,
        PhaseId.IMPLEMENTATION,
        PhaseId.RECOVERY,
        PhaseId.IMPLEMENTATION,
        PhaseId.RECOVERY,
        PhaseId.COMPLETION,
    ]
    report = result.escalation_report
    assert report is not None
    assert report.experts_tried == ["strategist", "researcher"]
    assert len(report.failure_history) == 3
    assert report.recommendations[0] == "Break the request down into smaller parts."
    assert result.output.startswith("## Escalation Required")
    assert [error.source for error in errors] == [
        "expert:strategist",
        "expert:strategist",
        "expert:researcher",
    ]
    assert errors[-1].recoverable is False


def test_retry_succeeds_on_second_attempt(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(by_expert={"strategist": [_timeout()]})

    result = asyncio.run(_orchestrator(backend, sleep_recorder).run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert result.attempts_made == 2
    assert backend.experts_called == ["strategist", "strategist"]
    assert "Note: this is attempt 2." in backend.requests[1].prompt
    assert result.metadata["experts_tried"] == ["strategist"]
    assert sleep_recorder.calls == [1.0]


def test_rate_limit_switches_expert_and_announces_fallback(
    scripted_backend,
    sleep_recorder,
) -> None:
    dispatcher = HookDispatcher()
    register_builtin_hooks(dispatcher)
    backend = scripted_backend(
        by_expert={
            "strategist": [BackendCallError("429 Too Many Requests", expert_id="strategist")],
        },
    )
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert backend.experts_called == ["strategist", "researcher"]
    assert "Expert strategist is rate limited; retrying with researcher..." in result.messages
    assert result.metadata["final_expert"] == "researcher"
    assert sleep_recorder.calls == []


def test_auth_error_escalates_immediately(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(by_expert={"strategist": [RuntimeError("401 Unauthorized")]})

    result = asyncio.run(_orchestrator(backend, sleep_recorder).run(REQUEST, NO_ASSESSMENT))

    assert result.escalated
    assert result.attempts_made == 1
    assert backend.experts_called == ["strategist"]
    assert result.escalation_report.recommendations[0] == (
        "Check the credentials and authentication status of the backend CLI."
    )


def test_short_reply_is_treated_as_invalid_response(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(by_expert={"strategist": ["ok"]})

    result = asyncio.run(_orchestrator(backend, sleep_recorder).run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert result.metadata["recovery_actions"] == [
        "retry: invalid_response on strategist (attempt 1/3)",
    ]


def test_content_filter_retries_with_simplified_request(scripted_backend, sleep_recorder) -> None:
    request = (
        "Write a migration guide. Cover every breaking change. Include examples for each API."
    )
    backend = scripted_backend(
        by_expert={"writer": [RuntimeError("Output blocked by content filter")]},
    )
    options = WorkflowOptions(intent_hint=IntentType.DOCUMENTATION, skip_assessment=True)

    result = asyncio.run(_orchestrator(backend, sleep_recorder).run(request, options))

    assert result.success
    assert result.intent == IntentType.DOCUMENTATION
    assert backend.experts_called == ["writer", "writer"]
    assert "Include examples" in backend.requests[0].prompt
    assert backend.requests[1].prompt.startswith(
        "# TASK\nWrite a migration guide. Cover every breaking change\n",
    )
    assert sleep_recorder.calls == [1.0]


def test_block_on_start_skips_every_phase(scripted_backend, sleep_recorder) -> None:
    ended: list[WorkflowEndContext] = []
    dispatcher = HookDispatcher()
    dispatcher.register(
        _hook("freeze", HookEvent.WORKFLOW_START, lambda context: HookResult.block("code freeze")),
    )
    dispatcher.register(_hook("ended", HookEvent.WORKFLOW_END, ended.append))
    backend = scripted_backend()
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST))

    assert result.blocked
    assert not result.success
    assert result.output == "code freeze"
    assert result.phases_executed == []
    assert backend.requests == []
    assert len(ended) == 1
    assert ended[0].blocked


def test_block_on_phase_entry_aborts_before_backend_call(scripted_backend, sleep_recorder) -> None:
    def no_implementation(context):
        if context.phase == "implementation" and context.stage == "enter":
            return HookResult.block("implementation disabled")
        return None

    dispatcher = HookDispatcher()
    dispatcher.register(_hook("guard", HookEvent.WORKFLOW_PHASE, no_implementation))
    backend = scripted_backend()
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.blocked
    assert result.output == "implementation disabled"
    assert result.phases_executed == [PhaseId.INTENT]
    assert backend.requests == []


def test_block_on_expert_call_never_reaches_failure_engine(
    scripted_backend,
    sleep_recorder,
) -> None:
    dispatcher = HookDispatcher()
    dispatcher.register(
        _hook(
            "deny",
            HookEvent.EXPERT_CALL,
            lambda context: HookResult.block(f"{context.expert_id} is not allowed"),
        ),
    )
    backend = scripted_backend()
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.blocked
    assert not result.escalated
    assert result.output == "strategist is not allowed"
    assert result.metadata["recovery_actions"] == []
    assert orchestrator.failure_engine.stats.total_failures == 0
    assert backend.requests == []


def test_start_and_expert_call_modifications_are_applied(scripted_backend, sleep_recorder) -> None:
    dispatcher = HookDispatcher()
    dispatcher.register(
        _hook(
            "rewrite",
            HookEvent.WORKFLOW_START,
            lambda context: HookResult.modify({"request": context.request + " with tests"}),
        ),
    )
    dispatcher.register(
        _hook(
            "reroute",
            HookEvent.EXPERT_CALL,
            lambda context: HookResult.modify({"expert_id": "reviewer"}),
        ),
    )
    backend = scripted_backend()
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert backend.experts_called == ["reviewer"]
    assert backend.requests[0].prompt.startswith(f"# TASK\n{REQUEST} with tests")


def test_expert_result_modification_replaces_reply(scripted_backend, sleep_recorder) -> None:
    dispatcher = HookDispatcher()
    dispatcher.register(
        _hook(
            "trim",
            HookEvent.EXPERT_RESULT,
            lambda context: HookResult.modify({"response": context.response[:60]}),
        ),
    )
    reply = "Added retry handling to every service client and its tests. " * 7
    backend = scripted_backend([reply])
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert len(reply) > 400
    assert result.success
    assert result.output == reply[:60]
    assert len(result.output) == 60


def test_phase_overrunning_deadline_escalates_as_timeout(scripted_backend, sleep_recorder) -> None:
    clock = FakeClock()

    class _SlowBackend(scripted_backend):
        async def call(self, request):
            clock.now += 700.0
            return await super().call(request)

    backend = _SlowBackend()
    orchestrator = _orchestrator(backend, sleep_recorder, clock=clock)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert not result.success
    assert result.escalated
    assert result.phases_executed == [
        PhaseId.INTENT,
        PhaseId.IMPLEMENTATION,
        PhaseId.RECOVERY,
        PhaseId.COMPLETION,
    ]
    assert len(backend.requests) == 1
    record = result.escalation_report.failure_history[0]
    assert record.error_message == "Workflow timed out after 600s during implementation"
    assert record.failure_type.value == "timeout"
    assert result.metadata["recovery_actions"][0].startswith("escalate: timeout")


def test_loop_mode_replaces_implementation(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(["Split the first class.", "Finished <promise>DONE</promise>"])
    options = WorkflowOptions(
        skip_assessment=True,
        loop_mode=True,
        loop_options=LoopOptions(max_iterations=3),
    )

    result = asyncio.run(
        _orchestrator(backend, sleep_recorder).run("Refactor the billing module", options),
    )

    assert result.success
    assert result.intent == IntentType.REFACTORING
    assert result.phases_executed == [PhaseId.INTENT, PhaseId.LOOP, PhaseId.COMPLETION]
    assert backend.experts_called == ["reviewer", "reviewer"]
    assert result.metadata["loop"]["status"] == "completed"
    assert result.metadata["loop"]["iterations"] == 2
    assert result.attempts_made == 0
    assert "<promise>DONE</promise>" in result.output


def test_verification_pass_completes_the_run(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(
        by_expert={
            "reviewer": ["VERIFICATION_RESULT: PASS\nISSUES_FOUND:\nNone\nCONFIDENCE: HIGH"],
        },
    )
    orchestrator = _orchestrator(backend, sleep_recorder, settings=WorkflowSettings())

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert result.phases_executed == [
        PhaseId.INTENT,
        PhaseId.IMPLEMENTATION,
        PhaseId.VERIFICATION,
        PhaseId.COMPLETION,
    ]
    assert backend.experts_called == ["strategist", "reviewer"]
    review_prompt = backend.requests[1].prompt
    assert review_prompt.startswith("## Verification Request")
    assert "1. Code compiles without errors" in review_prompt
    assert "Implemented the requested change" in review_prompt
    assert result.output.startswith("Implemented the requested change")
    assert "verification_failures" not in result.metadata


def test_verification_failure_goes_to_recovery_and_retries(
    scripted_backend,
    sleep_recorder,
) -> None:
    backend = scripted_backend(
        by_expert={
            "reviewer": [
                "VERIFICATION_RESULT: FAIL\n"
                "ISSUES_FOUND:\n- Missing timeout handling in the HTTP client\n"
                "CONFIDENCE: HIGH",
                "VERIFICATION_RESULT: PASS\nISSUES_FOUND: None\nCONFIDENCE: MEDIUM",
            ],
        },
    )
    orchestrator = _orchestrator(backend, sleep_recorder, settings=WorkflowSettings())

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.success
    assert result.attempts_made == 2
    assert result.phases_executed == [
        PhaseId.INTENT,
        PhaseId.IMPLEMENTATION,
        PhaseId.VERIFICATION,
        PhaseId.RECOVERY,
        PhaseId.IMPLEMENTATION,
        PhaseId.VERIFICATION,
        PhaseId.COMPLETION,
    ]
    assert backend.experts_called == ["strategist", "reviewer", "strategist", "reviewer"]
    assert result.metadata["recovery_actions"] == [
        "retry: invalid_response on strategist (attempt 1/3)",
    ]
    assert result.metadata["verification_failures"] == [
        "Missing timeout handling in the HTTP client",
    ]
    retry_prompt = backend.requests[2].prompt
    assert "Reviewer findings on the previous attempt:" in retry_prompt
    assert "- Missing timeout handling in the HTTP client" in retry_prompt
    assert "Earlier verification rounds: 1." in backend.requests[3].prompt
    assert orchestrator.failure_engine.stats.by_type == {"invalid_response": 1}
    assert sleep_recorder.calls == [1.0]


def test_repeated_verification_failures_escalate(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(
        by_expert={"reviewer": ["VERIFICATION_RESULT: FAIL\nCONFIDENCE: LOW"] * 3},
    )
    orchestrator = _orchestrator(backend, sleep_recorder, settings=WorkflowSettings())

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert not result.success
    assert result.escalated
    assert result.output.startswith("## Escalation Required")
    history = result.escalation_report.failure_history
    assert [record.error_message for record in history] == [
        "Verification failed: reviewer confidence too low",
    ] * 3
    assert result.metadata["recovery_actions"][-1].startswith("escalate: invalid_response")


def test_unavailable_verifier_leaves_result_unverified(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend(
        by_expert={"reviewer": [RuntimeError("reviewer CLI exited with status 1")]},
    )
    orchestrator = _orchestrator(backend, sleep_recorder, settings=WorkflowSettings())

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.success
    verification = result.metadata["phase_history"][2]
    assert verification["phase"] == "verification"
    assert verification["success"] is False
    assert verification["error"] == "Verification unavailable: reviewer CLI exited with status 1"
    assert result.metadata["recovery_actions"] == []


def test_cancel_stops_the_run_at_the_next_phase_boundary(
    scripted_backend,
    sleep_recorder,
) -> None:
    snapshots = []
    accepted = []
    ended: list[WorkflowEndContext] = []

    def stop(context) -> None:
        snapshots.append(orchestrator.get_context())
        accepted.append(orchestrator.cancel(reason="operator stop"))

    dispatcher = HookDispatcher()
    dispatcher.register(_hook("stop", HookEvent.EXPERT_CALL, stop))
    dispatcher.register(_hook("ended", HookEvent.WORKFLOW_END, ended.append))
    backend = scripted_backend(by_expert={"strategist": [_timeout()]})
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)

    result = asyncio.run(orchestrator.run(REQUEST, NO_ASSESSMENT))

    assert result.cancelled
    assert not result.success
    assert not result.escalated
    assert result.output == "Workflow cancelled: operator stop"
    assert result.phases_executed == [PhaseId.INTENT, PhaseId.IMPLEMENTATION, PhaseId.COMPLETION]
    assert orchestrator.failure_engine.stats.total_failures == 0
    assert accepted == [True]
    snapshot = snapshots[0]
    assert snapshot.current_phase == PhaseId.IMPLEMENTATION
    assert snapshot.phases_executed == (PhaseId.INTENT,)
    assert snapshot.intent == IntentType.IMPLEMENTATION
    assert snapshot.attempts_made == 1
    assert not snapshot.cancel_requested
    assert ended[0].cancelled
    assert orchestrator.get_context() is None
    assert orchestrator.cancel() is False


def test_cancel_during_loop_mode_stops_the_loop(scripted_backend, sleep_recorder) -> None:
    def stop(context) -> None:
        orchestrator.cancel()

    dispatcher = HookDispatcher()
    dispatcher.register(_hook("stop", HookEvent.EXPERT_CALL, stop))
    backend = scripted_backend(default="still refactoring")
    orchestrator = _orchestrator(backend, sleep_recorder, dispatcher=dispatcher)
    options = WorkflowOptions(
        skip_assessment=True,
        loop_mode=True,
        loop_options=LoopOptions(max_iterations=5),
    )

    result = asyncio.run(orchestrator.run("Refactor the billing module", options))

    assert result.cancelled
    assert result.output == "Workflow cancelled: Cancelled by request"
    assert result.phases_executed == [PhaseId.INTENT, PhaseId.LOOP, PhaseId.COMPLETION]
    assert result.metadata["loop"]["status"] == "cancelled"
    assert result.metadata["loop"]["iterations"] == 1
    assert len(backend.requests) == 1


def test_skip_flags_jump_straight_to_implementation(scripted_backend, sleep_recorder) -> None:
    backend = scripted_backend()
    options = WorkflowOptions(
        intent_hint=IntentType.DOCUMENTATION,
        skip_intent=True,
        skip_assessment=True,
    )

    result = asyncio.run(
        _orchestrator(backend, sleep_recorder).run("Document the public hooks API", options),
    )

    assert result.success
    assert result.intent == IntentType.DOCUMENTATION
    assert result.complexity == ComplexityLevel.TRIVIAL
    assert result.phases_executed == [PhaseId.IMPLEMENTATION, PhaseId.COMPLETION]
    assert backend.experts_called == ["writer"]


def test_research_request_runs_exploration_and_tolerates_failed_query(
    scripted_backend,
    sleep_recorder,
) -> None:
    assessment = (
        "## Relevant Files\n"
        "- src/cache/session.py: session cache\n"
        "- src/api/auth.py: invalidation entry point\n"
    )
    backend = scripted_backend(
        by_expert={
            "explorer": [
                assessment,
                "session.py defines SessionCache with an invalidate() method.",
                "auth.py calls SessionCache.invalidate() on logout.",
                RuntimeError("connection reset by peer"),
            ],
        },
    )

    result = asyncio.run(
        _orchestrator(backend, sleep_recorder).run("Find where the session cache is invalidated"),
    )

    assert result.success
    assert result.intent == IntentType.RESEARCH
    assert PhaseId.EXPLORATION in result.phases_executed
    assert result.metadata["relevant_files"] == ["src/cache/session.py", "src/api/auth.py"]
    # assessment, two file summaries, one usage search, then implementation
    assert len(backend.requests) == 5
    implementation_prompt = backend.requests[-1].prompt
    assert "[Query failed: connection reset by peer]" in implementation_prompt
    assert "SessionCache with an invalidate() method" in implementation_prompt


@pytest.mark.parametrize(
    ("request_text", "options", "message"),
    [
        ("   ", None, "Request"),
        (REQUEST, WorkflowOptions(max_attempts=0), "max_attempts"),
        (REQUEST, WorkflowOptions(timeout_seconds=0), "timeout_seconds"),
    ],
)
def test_invalid_run_arguments(
    request_text,
    options,
    message,
    scripted_backend,
    sleep_recorder,
) -> None:
    orchestrator = _orchestrator(scripted_backend(), sleep_recorder)

    with pytest.raises(ValueError, match=message):
        asyncio.run(orchestrator.run(request_text, options))
