"""Firewall: cheap deterministic checks a memory must pass before storage."""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from nanomem.memory.types import utcnow

TRANSIENT_CONFIDENCE = 0.3
MIN_CONFIDENCE = 0.4
MIN_CHARS = 8
MIN_WORDS = 3

# Checked in order; the first tier that matches sets the expiry.
TRANSIENT_TIERS: list[tuple[re.Pattern[str], timedelta]] = [
    (
        re.compile(r"\b(today|tonight|right now|i dag|i aften|lige nu)\b", re.IGNORECASE),
        timedelta(days=1),
    ),
    (
        re.compile(r"\b(currently|at the moment|asked about|for tiden|i øjeblikket|spurgte om)\b", re.IGNORECASE),
        timedelta(days=3),
    ),
    (
        re.compile(r"\b(this week|working on|denne uge|arbejder på)\b", re.IGNORECASE),
        timedelta(days=7),
    ),
]

EPISODE_VERBS = (
    "deployed", "migrated", "created", "deleted", "changed", "updated", "fixed",
    "broke", "shipped", "released", "added", "removed", "decided", "discovered",
    "completed", "failed", "enabled", "disabled", "started", "finished",
    "launched", "configured", "installed", "moved", "built", "designed",
    "implemented", "resolved", "merged", "reverted", "upgraded", "downgraded",
)
EPISODE_VERB_RE = re.compile(r"\b(" + "|".join(EPISODE_VERBS) + r")\b", re.IGNORECASE)

PROCEDURE_MARKER_RE = re.compile(
    r"\b(always|never|must|should|ensure|avoid|prefer|use|do not|don't|make sure|validate|check"
    r"|altid|aldrig|skal|undgå|må ikke|sørg for)\b",
    re.IGNORECASE,
)


@dataclass
class GuardResult:
    passed: bool
    confidence: float
    expires_at: datetime | None = None
    reason: str | None = None


def guard_fact(content: str, now: datetime | None = None) -> GuardResult:
    """Kind-independent checks: questions, fragments, transient phrasing, length."""
    text = content.strip()
    if text.endswith("?"):
        return GuardResult(False, 0.0, reason="question")
    if len(text) < MIN_CHARS:
        return GuardResult(False, 0.0, reason="too_short")
    if len(text.split()) < MIN_WORDS:
        return GuardResult(False, 0.0, reason="too_few_words")

    for pattern, ttl in TRANSIENT_TIERS:
        if pattern.search(text):
            return GuardResult(True, TRANSIENT_CONFIDENCE, expires_at=(now or utcnow()) + ttl, reason="transient")

    confidence = min(1.0, 0.5 + len(text) / 400)
    if confidence < MIN_CONFIDENCE:
        return GuardResult(False, confidence, reason="low_confidence")
    return GuardResult(True, confidence)


def has_episode_verb(content: str) -> bool:
    return EPISODE_VERB_RE.search(content) is not None


def has_procedure_marker(content: str) -> bool:
    return PROCEDURE_MARKER_RE.search(content) is not None


def guard(content: str, kind: str = "fact", now: datetime | None = None) -> GuardResult:
    """Run the base checks, then the kind-specific hard requirements."""
    result = guard_fact(content, now)
    if not result.passed:
        return result
    if kind == "episode" and not has_episode_verb(content):
        return GuardResult(False, result.confidence, reason="missing_action_verb")
    if kind == "procedure" and not has_procedure_marker(content):
        return GuardResult(False, result.confidence, reason="missing_normative_marker")
    return result
