"""
Goal metadata extracted from free-text prompts.

Acceptance criteria, clarifying questions and the style-only flag are all
derived here without calling the language model; the LLM clarification
request lives in features.goals.service.
"""

from __future__ import annotations

import re

from features.goals.models import GoalMetadata

DONE_QUESTION = 'What should "done" look like? Please provide acceptance criteria.'
EXPECTED_ACTUAL_QUESTION = "What is the expected behavior, and what is currently happening?"

_AC_HEADER_RE = re.compile(r"^\s*(acceptance\s*criteria|ac)\s*:\s*(.*)$", re.IGNORECASE)
_SECTION_HEADER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9 _-]{0,40}:\s*$")
_BULLET_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.+?)\s*$")

_BUG_RE = re.compile(r"\b(fix|bug|broken|error|issue|crash)\b", re.IGNORECASE)
_EXPECTED_ACTUAL_RE = re.compile(r"\b(expected|actual|currently|steps to reproduce|repro)\b", re.IGNORECASE)
_GENERIC_VERB_RE = re.compile(r"^(build|make|create)\b")
_GENERIC_NOUN_RE = re.compile(r"\b(something|anything|stuff|thing)\b")


def _dedupe(items) -> list[str]:
    return list(dict.fromkeys(item for item in items if item))


def extract_acceptance_criteria(prompt: str) -> list[str]:
    """
    Collect bullets under an "Acceptance Criteria:" / "AC:" header.

    Text on the header line itself counts as the first criterion. Collection
    stops at a blank line (once something was collected) or at the next
    "Header:" line.
    """
    if not isinstance(prompt, str):
        return []
    lines = prompt.splitlines()
    criteria: list[str] = []
    start = None

    for idx, line in enumerate(lines):
        match = _AC_HEADER_RE.match(line)
        if match:
            inline = match.group(2).strip()
            if inline:
                criteria.append(inline)
            start = idx + 1
            break

    if start is None:
        return []

    for raw in lines[start:]:
        line = raw.strip()
        if not line:
            if criteria:
                break
            continue
        if _SECTION_HEADER_RE.match(line):
            break
        bullet = _BULLET_RE.match(line)
        if bullet:
            criteria.append(bullet.group(1).strip())

    return _dedupe(criteria)


def normalize_clarifying_questions(questions) -> list[str]:
    if not isinstance(questions, (list, tuple)):
        return []
    return _dedupe(q.strip() for q in questions if isinstance(q, str))


def looks_underspecified(prompt: str) -> bool:
    normalized = prompt.strip().lower()
    if not normalized:
        return True
    if len(normalized.split()) <= 2:
        return True
    return bool(_GENERIC_VERB_RE.search(normalized) and _GENERIC_NOUN_RE.search(normalized))


def looks_like_bug_fix(prompt: str) -> bool:
    return bool(_BUG_RE.search(prompt))


def has_expected_actual_context(prompt: str) -> bool:
    return bool(_EXPECTED_ACTUAL_RE.search(prompt))


def extract_clarifying_questions(prompt: str, acceptance_criteria=()) -> list[str]:
    """Questions that must be answered before the goal can be executed."""
    if acceptance_criteria:
        return []
    prompt = prompt if isinstance(prompt, str) else ""

    questions = []
    if looks_underspecified(prompt) or looks_like_bug_fix(prompt):
        questions.append(DONE_QUESTION)
    if looks_like_bug_fix(prompt) and not has_expected_actual_context(prompt):
        questions.append(EXPECTED_ACTUAL_QUESTION)
    return _dedupe(questions)


# ── Style-only detection ──────────────────────────────────────────────

_TARGETED_STYLE_SIGNALS = [
    re.compile(r"\b(navbar|navigation\s+bar|nav\s+bar)\b"),
    re.compile(r"\b(header|footer|sidebar|hero|card|modal|toolbar)\b"),
    re.compile(r"\b(button|input|form|menu|dropdown|link|tab)\b"),
    re.compile(r"\b(for|on|in)\s+the\s+[a-z0-9_-]+\b"),
    re.compile(r"[.#][a-z0-9_-]+"),
]

_CORE_STYLE_RE = re.compile(
    r"\b(css|style|styling|theme|color|background|font|typography|spacing"
    r"|margin|padding|border|radius|shadow|layout)\b"
)

_NON_STYLE_RE = re.compile(
    r"\b(api|endpoint|database|sql|schema|auth|login|token|server|backend|express"
    r"|route|controller|service|workflow|refactor|performance|optimi[sz]e|fix|bug"
    r"|crash|error|unit test|integration test|coverage|vitest|je?st)\b"
)

_REQUEST_LABEL_RE = re.compile(r"^(?:current request|original request|user answer)\s*:\s*(.+)$", re.IGNORECASE)


def extract_latest_request(prompt: str) -> str:
    """Pick the newest request out of a "Current request: ..." style transcript."""
    if not isinstance(prompt, str):
        return ""
    lines = [line.strip() for line in prompt.splitlines()]
    for label in ("current request", "original request", "user answer"):
        for line in reversed(lines):
            match = _REQUEST_LABEL_RE.match(line)
            if match and line.lower().startswith(label):
                return match.group(1).strip()
    return prompt.strip()


def is_style_only_prompt(prompt: str) -> bool:
    """True for pure look-and-feel requests (colours, theme, spacing)."""
    text = extract_latest_request(prompt).lower()
    if not text:
        return False
    if any(signal.search(text) for signal in _TARGETED_STYLE_SIGNALS):
        return False
    if not _CORE_STYLE_RE.search(text):
        return False
    return not _NON_STYLE_RE.search(text)


def build_goal_metadata(prompt: str, extra_questions=()) -> GoalMetadata:
    prompt = prompt if isinstance(prompt, str) else ""
    criteria = extract_acceptance_criteria(prompt)
    auto_questions = extract_clarifying_questions(prompt, criteria)
    return GoalMetadata(
        acceptance_criteria=criteria,
        clarifying_questions=normalize_clarifying_questions([*auto_questions, *extra_questions]),
        style_only=is_style_only_prompt(prompt),
    )
