"""
Plan normalization — turns untrusted, LLM-authored plan trees into a clean,
deduplicated, bounded goal tree.

Raw input goes through parse_plan_entries() first, which degrades anything
malformed to an empty plan instead of raising.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import config
from features.goals.models import GoalPlanNode, PlanEntry, PlanLeaf, PlanNode
from utils.llm import extract_json_object

log = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 96
_MAX_PARSE_DEPTH = 64

TITLE_STOPWORDS = frozenset({
    "a", "an", "and", "at", "but", "for", "from", "in", "of", "on", "or", "the", "to", "with",
})

_TITLE_PREFIX_RE = re.compile(
    r"^(?:please|can you|could you|would you|let['’]?s|lets|we need to|i need to"
    r"|need to|make sure to|ensure)[\s,:-]*",
    re.IGNORECASE,
)
_TEST_COMMAND_RE = re.compile(r"(\bnpm\b|\byarn\b|\bpnpm\b)\s+run\s+\btest\b", re.IGNORECASE)
_VERIFY_VERB_RE = re.compile(r"^(run|re-?run|execute|verify|check)\b", re.IGNORECASE)
_VERIFY_OBJECT_RE = re.compile(
    r"(\bunit\s+tests\b|\bintegration\s+tests\b|\btests\b|\bvitest\b|\bcoverage\b)", re.IGNORECASE
)
_COMPOUND_RE = re.compile(r"(\band\b|\bwith\b|\bplus\b|\balso\b|\bincluding\b|\binclude\b|,|;)")


# ── Titles ────────────────────────────────────────────────────────────

def _title_word(word: str, index: int) -> str:
    lower = word.lower()
    if (
        word == word.upper()
        and re.search(r"[A-Z]", word)
        and len(word) <= 5
        and lower not in TITLE_STOPWORDS
    ):
        return word
    if index > 0 and lower in TITLE_STOPWORDS:
        return lower
    return lower[:1].upper() + lower[1:]


def derive_goal_title(value: Any, fallback: str = "Goal") -> str:
    """Human-readable title from the first line of a prompt."""
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        return fallback

    first_line = next((line.strip() for line in text.splitlines() if line.strip()), text)
    sanitized = re.sub(r"""['"`]+$""", "", re.sub(r"""^['"`]+""", "", first_line))
    without_prefix = _TITLE_PREFIX_RE.sub("", sanitized, count=1).strip()
    if not without_prefix:
        return fallback

    collapsed = re.sub(r"\s+", " ", without_prefix)
    if len(collapsed) > MAX_TITLE_LENGTH:
        collapsed = re.sub(r"\s+\S*$", "", collapsed[:MAX_TITLE_LENGTH])

    titled = " ".join(_title_word(word, idx) for idx, word in enumerate(collapsed.split(" ")))
    return titled or fallback


# ── Defensive parsing ─────────────────────────────────────────────────

def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_entry(entry: Any, depth: int) -> PlanEntry | None:
    if isinstance(entry, (PlanLeaf, PlanNode)):
        return entry
    if isinstance(entry, str):
        return PlanLeaf(entry.strip())
    if isinstance(entry, GoalPlanNode):
        return PlanNode(
            prompt=entry.prompt,
            title=entry.title or None,
            children=tuple(_parse_list(entry.children, depth + 1)),
        )
    if isinstance(entry, dict):
        children = entry.get("children")
        if not isinstance(children, list):
            children = entry.get("childGoals")
        return PlanNode(
            prompt=_as_text(entry.get("prompt")),
            title=_as_text(entry.get("title")) or None,
            children=tuple(_parse_list(children, depth + 1)),
        )
    return None


def _parse_list(items: Any, depth: int) -> list[PlanEntry]:
    if not isinstance(items, (list, tuple)) or depth > _MAX_PARSE_DEPTH:
        return []
    parsed = (_parse_entry(item, depth) for item in items)
    return [p for p in parsed if p is not None]


def parse_plan_entries(raw: Any) -> list[PlanEntry]:
    """
    Accepts a flat list of prompts, a list of {prompt, title?, children|childGoals}
    nodes, a planner object carrying `childGoals` / `childPrompts`, or JSON text
    of any of those. Anything else yields [].
    """
    if isinstance(raw, str):
        parsed = extract_json_object(raw)
        if parsed is None:
            return []
        raw = parsed
    if isinstance(raw, dict):
        for key in ("childGoals", "children", "childPrompts", "steps"):
            if isinstance(raw.get(key), list):
                return _parse_list(raw[key], 1)
        return []
    return _parse_list(raw, 1)


# ── Normalization ─────────────────────────────────────────────────────

def is_programmatic_verification_step(value: Any) -> bool:
    """Steps like "Run unit tests" or "npm run test" that the test gate already enforces."""
    text = _as_text(value)
    if not text:
        return False
    if _TEST_COMMAND_RE.search(text):
        return True
    if not _VERIFY_VERB_RE.search(text):
        return False
    return bool(_VERIFY_OBJECT_RE.search(text))


@dataclass
class _Budget:
    max_depth: int
    max_nodes: int
    count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_nodes


def _splice(nodes: list[GoalPlanNode], seen: set[str], node: GoalPlanNode, budget: _Budget) -> None:
    """Add a spliced node at this level, merging it away if the prompt is already present."""
    if node.prompt in seen:
        budget.count -= 1
        for child in node.children:
            _splice(nodes, seen, child, budget)
        return
    seen.add(node.prompt)
    nodes.append(node)


def _normalize_level(entries: list[PlanEntry], depth: int, budget: _Budget) -> list[GoalPlanNode]:
    if not entries or depth > budget.max_depth:
        return []

    nodes: list[GoalPlanNode] = []
    seen: set[str] = set()

    for entry in entries:
        if budget.exhausted:
            break

        prompt = entry.prompt.strip()
        title = entry.title if isinstance(entry, PlanNode) else None
        children = list(entry.children) if isinstance(entry, PlanNode) else []

        # Nodes that only carry their children: empty prompt, verification
        # steps, duplicate siblings.
        if not prompt or is_programmatic_verification_step(prompt) or prompt in seen:
            for child in _normalize_level(children, depth + 1, budget):
                _splice(nodes, seen, child, budget)
            continue

        seen.add(prompt)
        budget.count += 1
        fallback = title or f"Goal {budget.count}"
        node = GoalPlanNode(
            prompt=prompt,
            title=title or derive_goal_title(prompt, fallback=fallback),
        )
        nodes.append(node)
        node.children = _normalize_level(children, depth + 1, budget)

    return nodes


def normalize_plan_tree(
    entries: Any,
    max_depth: int = config.MAX_PLAN_DEPTH,
    max_nodes: int = config.MAX_PLAN_NODES,
) -> list[GoalPlanNode]:
    """
    Clean a raw plan into a bounded GoalPlanNode tree.

    Depth starts at 1 and nothing deeper than `max_depth` is kept. A single
    node budget is shared by the whole recursion. Verification steps,
    prompt-less nodes and duplicate siblings are dropped with their children
    spliced into the parent level. Normalizing an already-normalized tree
    returns an equal tree.
    """
    budget = _Budget(max_depth=max_depth, max_nodes=max_nodes)
    tree = _normalize_level(parse_plan_entries(entries), 1, budget)
    log.debug("[PLAN] Normalized plan: %d node(s)", budget.count)
    return tree


def count_plan_nodes(nodes: list[GoalPlanNode]) -> int:
    return sum(1 + count_plan_nodes(n.children) for n in nodes)


# ── Low-information plans ─────────────────────────────────────────────

def _comparison_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    text = re.sub(r"[^a-z0-9\s]", " ", value.lower())
    return re.sub(r"\s+", " ", text).strip()


def is_near_duplicate_plan(parent_prompt: Any, child_prompt: Any) -> bool:
    parent = _comparison_text(parent_prompt)
    child = _comparison_text(child_prompt)
    if not parent or not child:
        return False
    if parent in child or child in parent:
        shorter, longer = sorted((len(parent), len(child)))
        return longer > 0 and shorter / longer >= 0.6
    return False


def is_compound_prompt(prompt: Any) -> bool:
    # Punctuation is stripped by the comparison normalization, so commas and
    # semicolons are checked on the raw text.
    if isinstance(prompt, str) and re.search(r"[,;]", prompt):
        return True
    normalized = _comparison_text(prompt)
    return bool(normalized and _COMPOUND_RE.search(normalized))


def is_low_information_plan(prompt: str, plans: list[GoalPlanNode]) -> bool:
    """A plan that just restates the request in one child isn't worth executing as-is."""
    if not plans:
        return True
    if len(plans) > 1:
        return False
    plan = plans[0]
    if plan.children:
        return False
    return is_near_duplicate_plan(prompt, plan.prompt or plan.title) or is_compound_prompt(prompt)


def build_heuristic_child_plans(prompt: Any) -> list[GoalPlanNode]:
    """Identify, build, wire up: the fallback plan when the planner gives nothing usable."""
    subject = _as_text(prompt) or "the requested feature"
    prompts = [
        f"Identify the components, routes, and behaviors needed for {subject}.",
        f"Build the UI components required for {subject}, including any reusable pieces.",
        f"Wire the new components into the app and ensure the behavior matches the request for {subject}.",
    ]
    return [
        GoalPlanNode(prompt=p, title=derive_goal_title(p, fallback=f"Child Goal {idx + 1}"))
        for idx, p in enumerate(prompts)
    ]


def build_style_only_plans(prompt: str) -> list[GoalPlanNode]:
    """Fixed plan for look-and-feel requests; no planner round-trip needed."""
    request = _as_text(prompt)
    prompts = [
        "Confirm the working branch and locate the global stylesheet or theme entry point.",
        f"Apply the requested styling change: {request}",
        "Stage the updated style files for review.",
    ]
    return [GoalPlanNode(prompt=p, title=derive_goal_title(p)) for p in prompts]
