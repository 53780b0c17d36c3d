"""Operator-facing text rendering for escalation reports and run results."""

from __future__ import annotations

from agent_relay.common import truncate
from agent_relay.orchestrator.models import EscalationReport, WorkflowResult
from agent_relay.orchestrator.redaction import redact_backend_text

_REQUEST_PREVIEW_CHARS = 500
_ERROR_PREVIEW_CHARS = 200


def format_escalation_report(report: EscalationReport) -> str:
    """Render the escalation report shown to the user when recovery gives up."""

    lines = [
        "## Escalation Required",
        "",
        "Automatic recovery was exhausted. A human decision is needed before retrying.",
        "",
        "### Original Request",
        truncate(report.original_request.strip(), _REQUEST_PREVIEW_CHARS),
        "",
        "### Experts Tried",
        ", ".join(report.experts_tried) if report.experts_tried else "none",
        "",
        "### Failure History",
    ]
    if report.failure_history:
        for record in report.failure_history:
            lines.append(
                f"- attempt {record.attempt_number} | expert={record.expert_id} "
                f"| type={record.failure_type.value} "
                f"| action={record.action_taken.value} "
                f"| at={record.timestamp.isoformat()}",
            )
            lines.append(
                "  error: "
                + (
                    redact_backend_text(record.error_message, max_chars=_ERROR_PREVIEW_CHARS)
                    or "<empty>"
                ),
            )
    else:
        lines.append("- none recorded")

    lines.extend(["", "### Recommendations"])
    for index, text in enumerate(report.recommendations, start=1):
        lines.append(f"{index}. {text}")

    lines.extend(
        [
            "",
            "### What You Can Do",
            "- Retry the request after addressing the recommendations above.",
            "- Choose an expert explicitly with --intent-hint or loop --expert.",
            f"Report generated at {report.generated_at.isoformat()}.",
        ],
    )
    return "\n".join(lines)


def render_workflow_lines(result: WorkflowResult) -> list[str]:
    """Summary header plus output for ``agent-relay run``."""

    if result.blocked:
        status = "blocked"
    elif result.cancelled:
        status = "cancelled"
    elif result.escalated:
        status = "escalated"
    elif result.success:
        status = "succeeded"
    else:
        status = "failed"

    lines = [
        f"Workflow {status}",
        (
            f"intent={result.intent.value if result.intent else 'unknown'} "
            f"complexity={result.complexity.value if result.complexity else 'unknown'} "
            f"attempts={result.attempts_made} "
            f"elapsed_ms={result.total_time_ms:.0f}"
        ),
        "Phases: " + (" -> ".join(phase.value for phase in result.phases_executed) or "none"),
    ]
    for message in result.messages:
        lines.append(f"Note: {message}")
    recovery_actions = result.metadata.get("recovery_actions") or []
    if recovery_actions:
        lines.append("Recovery actions:")
        lines.extend(f"  {action}" for action in recovery_actions)
    lines.append("")
    lines.append(result.output)
    return lines
