"""Scrub credentials out of expert CLI output before it reaches reports and logs.

Expert backends are subprocesses, and their stderr is where credentials leak:
the CLI echoes its own command line, prints request URLs, or dumps the
``AGENT_RELAY_*`` and provider variables it was started with. Colour codes are
stripped first so the rules see plain text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_relay.common import truncate

DEFAULT_MAX_CHARS = 2_000
REDACTED = "[redacted]"

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


@dataclass(frozen=True, slots=True)
class RedactionRule:
    name: str
    pattern: re.Pattern[str]
    replacement: str


REDACTION_RULES: tuple[RedactionRule, ...] = (
    # ANTHROPIC_API_KEY=..., AGENT_RELAY_REVIEWER_TOKEN="..." in env dumps
    RedactionRule(
        "env_assignment",
        re.compile(r"\b([A-Z][A-Z0-9_]*(?:KEY|TOKEN|SECRET|PASSWORD))=(\"[^\"]*\"|'[^']*'|\S+)"),
        rf"\1={REDACTED}",
    ),
    # "api_key": "...", password: ... in JSON or YAML error bodies
    RedactionRule(
        "key_value",
        re.compile(
            r"(?i)([\"']?\b(?:api[_-]?key|access[_-]?token|client[_-]?secret|password)[\"']?"
            r"\s*:\s*)(\"[^\"]*\"|'[^']*'|[^\s,}]+)",
        ),
        rf"\1{REDACTED}",
    ),
    # --api-key VALUE, --token=VALUE echoed with the failing command line
    RedactionRule(
        "cli_flag",
        re.compile(r"(?i)(--(?:api-key|auth-token|token|password|secret)(?:=|\s+))\S+"),
        rf"\1{REDACTED}",
    ),
    RedactionRule(
        "bearer",
        re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]{8,}"),
        rf"\1 {REDACTED}",
    ),
    RedactionRule(
        "provider_key",
        re.compile(
            r"\b(?:sk-(?:ant-|proj-)?[A-Za-z0-9_-]{8,}|AIza[0-9A-Za-z_-]{20,}"
            r"|gh[pousr]_[A-Za-z0-9]{20,})",
        ),
        REDACTED,
    ),
    RedactionRule(
        "url_userinfo",
        re.compile(r"(?i)(\bhttps?://)[^/\s:@]+:[^/\s@]+@"),
        rf"\1{REDACTED}@",
    ),
    RedactionRule(
        "url_query",
        re.compile(r"(?i)([?&](?:token|key|api_key|access_token|signature|auth)=)[^&\s#]+"),
        rf"\1{REDACTED}",
    ),
)


def redact_backend_text(text: str, *, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Strip terminal escapes, redact credentials, and clamp to ``max_chars``."""

    cleaned = _ANSI_ESCAPE.sub("", text).strip()
    if not cleaned:
        return ""
    for rule in REDACTION_RULES:
        cleaned = rule.pattern.sub(rule.replacement, cleaned)
    return truncate(cleaned, max_chars)
