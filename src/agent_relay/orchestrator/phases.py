"""Text heuristics and prompt builders used by the workflow phases.

Nothing here calls a backend. Intent and complexity come from regex scoring,
the assessment reply is mined for file paths, and the delegation prompt is a
fixed sectioned template filled per intent. The reviewer is asked for a fixed
``VERIFICATION_RESULT`` reply that is parsed back into a verdict.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from agent_relay.common import truncate
from agent_relay.orchestrator.models import ComplexityLevel, IntentType

MAX_KEYWORDS = 10
MAX_RELEVANT_FILES = 20
EXPLORATION_FILE_LIMIT = 5
EXPLORATION_TRIGGER_FILE_COUNT = 5
SHORT_RESPONSE_CHARS = 50


def _patterns(*items: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(item, re.IGNORECASE) for item in items)


INTENT_PATTERNS: dict[IntentType, tuple[re.Pattern[str], ...]] = {
    IntentType.CONCEPTUAL: _patterns(
        r"what\s+is",
        r"explain",
        r"how\s+does",
        r"why\s+does",
        r"difference\s+between",
        r"concept",
        r"theory",
        r"understand",
    ),
    IntentType.IMPLEMENTATION: _patterns(
        r"implement",
        r"create",
        r"build",
        r"add\s+(a\s+)?feature",
        r"write\s+(a\s+)?code",
        r"develop",
        r"make\s+(a\s+)?new",
        r"set\s*up",
    ),
    IntentType.DEBUGGING: _patterns(
        r"fix",
        r"bug",
        r"error",
        r"not\s+working",
        r"broken",
        r"crash",
        r"fail",
        r"issue",
        r"problem",
        r"debug",
    ),
    IntentType.REFACTORING: _patterns(
        r"refactor",
        r"restructure",
        r"reorganize",
        r"improve",
        r"optimize",
        r"clean\s*up",
        r"modernize",
        r"migrate",
    ),
    IntentType.RESEARCH: _patterns(
        r"find",
        r"search",
        r"look\s+for",
        r"where\s+is",
        r"locate",
        r"explore",
        r"discover",
        r"investigate",
    ),
    IntentType.REVIEW: _patterns(
        r"review",
        r"audit",
        r"check",
        r"analy[sz]e",
        r"evaluate",
        r"assess",
        r"security",
        r"vulnerability",
    ),
    IntentType.DOCUMENTATION: _patterns(
        r"document",
        r"readme",
        r"write\s+docs",
        r"api\s+docs",
        r"comment",
        r"docstring",
        r"explain\s+code",
    ),
}

# Checked in level order; the first level with a matching keyword wins.
COMPLEXITY_KEYWORDS: tuple[tuple[ComplexityLevel, tuple[re.Pattern[str], ...]], ...] = (
    (
        ComplexityLevel.TRIVIAL,
        _patterns(r"simple", r"quick", r"easy", r"small", r"minor", r"typo"),
    ),
    (ComplexityLevel.SIMPLE, _patterns(r"single", r"one\s+file", r"basic")),
    (ComplexityLevel.MODERATE, _patterns(r"several", r"multiple", r"few\s+files")),
    (
        ComplexityLevel.COMPLEX,
        _patterns(r"many", r"entire", r"system", r"architecture", r"redesign"),
    ),
    (
        ComplexityLevel.EPIC,
        _patterns(r"rewrite", r"overhaul", r"complete", r"full", r"massive"),
    ),
)

COMPLEXITY_WORD_LIMITS: tuple[tuple[int, ComplexityLevel], ...] = (
    (20, ComplexityLevel.TRIVIAL),
    (50, ComplexityLevel.SIMPLE),
    (100, ComplexityLevel.MODERATE),
    (200, ComplexityLevel.COMPLEX),
)

STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could
    should may might must shall can need dare ought used to of in for on with at by
    from as into through during before after above below between under again further
    then once here there when where why how all each few more most other some such no
    nor not only own same so than too very just and but if or because until while
    this that these those me my myself we our you your it please help want like make
    create add
    """.split(),
)

_CODE_IDENTIFIER = re.compile(
    r"[A-Z][a-z]+(?:[A-Z][a-z]+)*|[a-z]+(?:_[a-z]+)+|[a-z]+(?:[A-Z][a-z]+)+",
)
_FILE_EXTENSIONS = r"py|ts|js|tsx|jsx|json|md|yaml|yml|toml"
_FILE_PATH_PATTERNS = (
    re.compile(rf"(?:^|\s)([\w\-./\\]+\.(?:{_FILE_EXTENSIONS}))(?=\s|$|:)", re.MULTILINE),
    re.compile(rf"`([\w\-./\\]+\.(?:{_FILE_EXTENSIONS}))`"),
)
_CRITICAL_RESPONSE_MARKERS = ("rate limit", "api error", "connection refused")

ASSESSMENT_FOCUS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: (
        "Key concepts that need explanation",
        "Related code patterns in the codebase, if any",
        "Relevant documentation or comments",
    ),
    IntentType.IMPLEMENTATION: (
        "Files that will likely need modification",
        "Existing patterns to follow",
        "Dependencies and imports needed",
        "Areas the change may affect",
    ),
    IntentType.DEBUGGING: (
        "Files where the bug might live",
        "Error patterns and stack traces",
        "Related test files",
        "Recent changes that might have caused the issue",
    ),
    IntentType.REFACTORING: (
        "Files that need restructuring",
        "Current code patterns in use",
        "Dependencies that might be affected",
        "Test coverage for affected areas",
    ),
    IntentType.RESEARCH: (
        "Relevant files and directories",
        "Code patterns matching the query",
        "Documentation and comments",
        "External dependencies",
    ),
    IntentType.REVIEW: (
        "Files to be reviewed",
        "Security-sensitive areas",
        "Performance-critical sections",
        "Test coverage gaps",
    ),
    IntentType.DOCUMENTATION: (
        "Code that needs documentation",
        "Existing documentation patterns",
        "Interfaces to document",
        "Usage examples to include",
    ),
}

EXPECTED_OUTCOMES: dict[IntentType, str] = {
    IntentType.CONCEPTUAL: "A clear explanation with examples where helpful.",
    IntentType.IMPLEMENTATION: "Working code for the requested feature with error handling.",
    IntentType.DEBUGGING: "The root cause and a fix, with an explanation of what went wrong.",
    IntentType.REFACTORING: "Improved structure with unchanged behavior and a short rationale.",
    IntentType.RESEARCH: "Findings with references to the relevant code and documentation.",
    IntentType.REVIEW: "Findings grouped by severity: critical, high, medium, low.",
    IntentType.DOCUMENTATION: "Well-structured documentation following project conventions.",
}

INTENT_CONSTRAINTS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("Prefer accuracy over breadth", "Cite sources when possible"),
    IntentType.IMPLEMENTATION: (
        "Write testable code",
        "Handle edge cases",
        "Add error handling where failures are possible",
    ),
    IntentType.DEBUGGING: ("Preserve existing functionality", "Add a regression test"),
    IntentType.REFACTORING: (
        "No behavior changes",
        "Keep test coverage",
        "Prefer incremental changes",
    ),
    IntentType.RESEARCH: ("Verify what you report", "Include code references"),
    IntentType.REVIEW: ("Be objective and constructive", "Report security issues first"),
    IntentType.DOCUMENTATION: ("Match the existing doc style", "Include usage examples"),
}

BASE_CONSTRAINTS = (
    "Follow existing code patterns and conventions",
    "Keep public interfaces backwards compatible unless asked otherwise",
)

RESPONSE_SECTIONS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("Summary", "Explanation", "Examples"),
    IntentType.IMPLEMENTATION: ("Approach", "Changes", "Code", "Testing"),
    IntentType.DEBUGGING: ("Root Cause", "Fix", "Prevention"),
    IntentType.REFACTORING: ("Current State", "Changes", "Rationale"),
    IntentType.RESEARCH: ("Findings", "Evidence", "Recommendations"),
    IntentType.REVIEW: ("Summary", "Critical Issues", "Improvements", "Minor Notes"),
    IntentType.DOCUMENTATION: ("Overview", "Content", "Examples"),
}

EXIT_CONDITIONS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("The question is fully answered", "All relevant aspects covered"),
    IntentType.IMPLEMENTATION: (
        "Code runs",
        "Feature works as requested",
        "Edge cases handled",
    ),
    IntentType.DEBUGGING: ("Bug fixed", "Root cause identified", "No regressions introduced"),
    IntentType.REFACTORING: ("Code improved", "Tests still pass", "No behavior changes"),
    IntentType.RESEARCH: ("Information gathered", "Sources verified", "Findings written up"),
    IntentType.REVIEW: ("All code reviewed", "Issues categorized", "Recommendations given"),
    IntentType.DOCUMENTATION: ("Documentation complete", "Examples included"),
}

VERIFICATION_CRITERIA: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: (
        "Answer addresses the question directly",
        "Explanation is accurate and complete",
        "Examples are relevant and correct",
    ),
    IntentType.IMPLEMENTATION: (
        "Code compiles without errors",
        "Implementation matches requirements",
        "Edge cases are handled",
        "No breaking changes introduced",
    ),
    IntentType.DEBUGGING: (
        "Root cause is correctly identified",
        "Fix addresses the root cause",
        "No regressions introduced",
        "Fix is minimal and targeted",
    ),
    IntentType.REFACTORING: (
        "Behavior is unchanged",
        "Code quality improved",
        "Tests still pass",
        "Changes are incremental",
    ),
    IntentType.RESEARCH: (
        "Information is accurate",
        "Sources are verified",
        "Findings are comprehensive",
        "Recommendations are actionable",
    ),
    IntentType.REVIEW: (
        "All code sections reviewed",
        "Issues are correctly categorized",
        "Recommendations are specific",
        "Security concerns addressed",
    ),
    IntentType.DOCUMENTATION: (
        "Documentation is accurate",
        "Examples are working",
        "Format matches project style",
        "All sections complete",
    ),
}

VERIFICATION_OUTPUT_CHARS = 3000
MAX_PREVIOUS_VERIFICATION_FAILURES = 3

_VERDICT_PATTERN = re.compile(r"VERIFICATION_RESULT:\s*(PASS|FAIL)", re.IGNORECASE)
_ISSUES_PATTERN = re.compile(
    r"ISSUES_FOUND:\s*(.*?)(?:CONFIDENCE:|$)",
    re.IGNORECASE | re.DOTALL,
)
_CONFIDENCE_PATTERN = re.compile(r"CONFIDENCE:\s*(HIGH|MEDIUM|LOW)", re.IGNORECASE)
_FAILURE_WORDS = ("fail", "error", "issue", "problem")
_NO_ISSUE_LINES = {"none", "none.", "```"}


@dataclass(slots=True, frozen=True)
class ExplorationQuery:
    kind: str
    prompt: str
    priority: int


@dataclass(slots=True, frozen=True)
class VerificationVerdict:
    """Reviewer verdict on an implementation reply."""

    passed: bool
    issues: tuple[str, ...] = ()
    confidence: str | None = None

    def summary(self) -> str:
        if self.issues:
            return "; ".join(self.issues)
        if self.confidence == "LOW":
            return "reviewer confidence too low"
        return "reviewer did not approve the result"


def classify_intent(request: str) -> IntentType:
    """Score each intent by how many of its patterns match; ties keep declaration order."""

    best = IntentType.IMPLEMENTATION
    best_score = 0
    for intent, patterns in INTENT_PATTERNS.items():
        score = sum(1 for pattern in patterns if pattern.search(request))
        if score > best_score:
            best = intent
            best_score = score
    return best


def estimate_complexity(request: str) -> ComplexityLevel:
    for level, patterns in COMPLEXITY_KEYWORDS:
        if any(pattern.search(request) for pattern in patterns):
            return level
    word_count = len(request.split())
    for limit, level in COMPLEXITY_WORD_LIMITS:
        if word_count <= limit:
            return level
    return ComplexityLevel.EPIC


def extract_keywords(request: str, *, limit: int = MAX_KEYWORDS) -> list[str]:
    """Content words plus code-looking identifiers, de-duplicated in order."""

    cleaned = re.sub(r"[^\w\s-]", " ", request.lower())
    words = [word for word in cleaned.split() if len(word) > 2 and word not in STOP_WORDS]
    identifiers = [match.lower() for match in _CODE_IDENTIFIER.findall(request)]
    keywords: list[str] = []
    for item in [*words, *identifiers]:
        if item not in keywords:
            keywords.append(item)
    return keywords[:limit]


def build_assessment_prompt(request: str, intent: IntentType, keywords: Sequence[str]) -> str:
    focus = "\n".join(
        f"{index}. {item}" for index, item in enumerate(ASSESSMENT_FOCUS[intent], start=1)
    )
    return (
        f"Analyze this {intent.value} request and identify:\n{focus}\n\n"
        f"User request: {request}\n\n"
        f"Keywords to search: {', '.join(keywords) or 'none'}\n\n"
        "Search the codebase and reply in this format:\n"
        "## Relevant Files\n- path/to/file.py: what it contains\n\n"
        "## Context Summary\nShort overview of the structure relevant to the request.\n\n"
        "## Recommendations\nWhat the implementation step should do."
    )


def parse_relevant_files(response: str, *, limit: int = MAX_RELEVANT_FILES) -> list[str]:
    files: list[str] = []
    for pattern in _FILE_PATH_PATTERNS:
        for match in pattern.finditer(response):
            path = match.group(1).replace("\\", "/")
            if path not in files:
                files.append(path)
    return files[:limit]


def needs_exploration(intent: IntentType, relevant_files: Sequence[str]) -> bool:
    return (
        intent == IntentType.RESEARCH
        or len(relevant_files) > EXPLORATION_TRIGGER_FILE_COUNT
    )


def build_exploration_queries(
    request: str,
    intent: IntentType,
    relevant_files: Sequence[str],
) -> list[ExplorationQuery]:
    """Queries for the explorer, highest priority first."""

    topic = truncate(request, 100)
    queries = [
        ExplorationQuery(
            kind="file_content",
            prompt=(
                f"Read and summarize {path}. Focus on main exports, key functions and "
                f"their signatures, imports, and anything relevant to: {topic}"
            ),
            priority=3,
        )
        for path in relevant_files[:EXPLORATION_FILE_LIMIT]
    ]
    if intent in {IntentType.DEBUGGING, IntentType.IMPLEMENTATION}:
        queries.append(
            ExplorationQuery(
                kind="pattern_search",
                prompt=(
                    "Search for error handling, exception blocks and validation logic "
                    f"related to: {topic}"
                ),
                priority=2,
            ),
        )
    if intent == IntentType.REFACTORING:
        queries.append(
            ExplorationQuery(
                kind="dependency_trace",
                prompt=(
                    "Trace imports of the files mentioned, list the modules that depend "
                    "on them, and describe the impact of restructuring them."
                ),
                priority=2,
            ),
        )
    queries.append(
        ExplorationQuery(
            kind="usage_search",
            prompt=f"Find usages of and references to the main components in: {topic}",
            priority=1,
        ),
    )
    return sorted(queries, key=lambda query: query.priority, reverse=True)


def summarize_exploration(queries: Sequence[ExplorationQuery], results: Sequence[str]) -> str:
    lines = ["## Exploration Results"]
    for query, result in zip(queries, results, strict=False):
        lines.extend(["", f"### {query.kind.replace('_', ' ').upper()}", truncate(result, 500)])
    return "\n".join(lines)


def build_delegation_prompt(  # noqa: PLR0913
    *,
    request: str,
    intent: IntentType,
    complexity: ComplexityLevel,
    relevant_files: Sequence[str] = (),
    codebase_context: str | None = None,
    exploration_results: Sequence[str] = (),
    attempt: int = 1,
    review_findings: Sequence[str] = (),
) -> str:
    """Sectioned hand-off prompt for the implementing expert."""

    context_lines = [f"Original request: {request}"]
    if relevant_files:
        context_lines.append("Relevant files:")
        context_lines.extend(f"- {path}" for path in relevant_files)
    if codebase_context:
        context_lines.extend(["Codebase context:", truncate(codebase_context, 1000)])
    if exploration_results:
        context_lines.append("Exploration results:")
        context_lines.append(
            "\n---\n".join(truncate(item, 300) for item in exploration_results[:3]),
        )
    if attempt > 1:
        context_lines.append(
            f"Note: this is attempt {attempt}. Earlier attempts ran into problems.",
        )
    if review_findings:
        context_lines.append("Reviewer findings on the previous attempt:")
        context_lines.extend(f"- {item}" for item in review_findings)

    outcome = EXPECTED_OUTCOMES[intent]
    if complexity in {ComplexityLevel.COMPLEX, ComplexityLevel.EPIC}:
        outcome += " Break the work into steps if needed."

    constraints = [*BASE_CONSTRAINTS, *INTENT_CONSTRAINTS[intent]]
    response_format = "\n".join(f"## {section}" for section in RESPONSE_SECTIONS[intent])

    sections = [
        ("TASK", request),
        ("EXPECTED OUTCOME", outcome),
        ("CONTEXT", "\n".join(context_lines)),
        ("CONSTRAINTS", "\n".join(f"- {item}" for item in constraints)),
        ("RESPONSE FORMAT", response_format),
        ("EXIT CONDITIONS", "\n".join(f"- {item}" for item in EXIT_CONDITIONS[intent])),
    ]
    return "\n\n".join(f"# {title}\n{body}" for title, body in sections)


def build_verification_prompt(
    request: str,
    intent: IntentType,
    output: str,
    previous_failures: Sequence[str] = (),
) -> str:
    """Ask the reviewer to check ``output`` against the criteria for ``intent``."""

    criteria = VERIFICATION_CRITERIA[intent]
    lines = [
        "## Verification Request",
        "",
        "Do not take the implementation output at face value. Check each claim.",
        "",
        "### Original Task",
        request,
        "",
        "### Implementation Output",
        truncate(output, VERIFICATION_OUTPUT_CHARS)
        if output.strip()
        else "No implementation output available.",
        "",
        "### Criteria",
        *(f"{index}. {item}" for index, item in enumerate(criteria, start=1)),
        "",
        "### Required Output Format",
        "VERIFICATION_RESULT: PASS or FAIL",
        "CRITERIA_CHECK:",
        *(f"- [ ] Criterion {index}: {item}" for index, item in enumerate(criteria, start=1)),
        "ISSUES_FOUND:",
        "One line per issue, or None",
        "CONFIDENCE: HIGH, MEDIUM or LOW",
    ]
    if previous_failures:
        lines.extend(["", f"Earlier verification rounds: {len(previous_failures)}. Findings:"])
        lines.extend(
            f"- {item}" for item in previous_failures[-MAX_PREVIOUS_VERIFICATION_FAILURES:]
        )
    return "\n".join(lines)


def parse_verification(response: str) -> VerificationVerdict:
    """Read the reviewer's verdict.

    A PASS that still lists issues counts as a FAIL, and so does LOW
    confidence. A reply without a ``VERIFICATION_RESULT`` line passes only if
    it never mentions a failure word.
    """

    issues: list[str] = []
    found = _ISSUES_PATTERN.search(response)
    if found:
        for line in found.group(1).splitlines():
            item = line.strip().lstrip("-*").strip()
            if item and item.lower() not in _NO_ISSUE_LINES:
                issues.append(item)

    confidence_match = _CONFIDENCE_PATTERN.search(response)
    confidence = confidence_match.group(1).upper() if confidence_match else None

    verdict = _VERDICT_PATTERN.search(response)
    if verdict is not None:
        passed = verdict.group(1).upper() == "PASS" and not issues
    else:
        lowered = response.lower()
        passed = not any(word in lowered for word in _FAILURE_WORDS)
    if confidence == "LOW":
        passed = False
    return VerificationVerdict(passed=passed, issues=tuple(issues), confidence=confidence)


def critical_response_problem(response: str) -> str | None:
    """Error text when a reply looks like a relayed API failure rather than an answer."""

    lowered = response.lower()
    for marker in _CRITICAL_RESPONSE_MARKERS:
        if marker in lowered:
            return f"Expert response reports a failure ({marker}): {truncate(response, 200)}"
    if len(response.strip()) < SHORT_RESPONSE_CHARS:
        return (
            f"Invalid response: expert reply too short ({len(response.strip())} chars)"
        )
    return None


def simplify_request(request: str) -> str:
    """First two sentences of ``request``; its first 200 chars when no sentence survives."""

    sentences = [part.strip() for part in re.split(r"[.!?]", request) if part.strip()]
    simplified = ". ".join(sentences[:2]).strip()
    return simplified if simplified else request[:200]
