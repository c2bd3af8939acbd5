"""Deterministic multilingual extraction of candidate facts from message text."""

import re
import unicodedata
from dataclasses import dataclass
from typing import Callable

from nanomem.memory.types import FactCandidate

NEGATION_WINDOW = 40

_UPPER = "A-ZÀ-ÖØ-Þ"
_CAP_WORD = rf"[{_UPPER}][\w'-]*"
# One to four capitalised words: "Alice", "Anne-Marie Johnson", "New York".
_PROPER = rf"({_CAP_WORD}(?:[ ]{_CAP_WORD}){{0,3}})"

NEGATION_RE = re.compile(
    r"\b(not|never|no longer|don't|doesn't|isn't|wasn't|aren't|won't|didn't|can't"
    r"|ikke|aldrig|ej|ingen|nej)\b",
    re.IGNORECASE,
)

_QUOTE_FOLD = str.maketrans({"‘": "'", "’": "'", "′": "'", "“": '"', "”": '"'})


@dataclass(frozen=True)
class SlotPattern:
    slot: str
    lang: str
    regex: re.Pattern[str]
    template: str


def _p(slot: str, lang: str, lead: str, capture: str, template: str, tail: str = "") -> SlotPattern:
    # The lead phrase is case-insensitive; the capture keeps its own casing rules.
    return SlotPattern(slot, lang, re.compile(rf"\b(?i:{lead})\s+{capture}{tail}"), template)


_AGE = r"(\d{1,3})"

IDENTITY_PATTERNS: list[SlotPattern] = [
    # name
    _p("name", "en", r"my (?:new )?name is|my name's", _PROPER, "User's name is {}"),
    _p("name", "en", r"(?:please )?call me|i'm called|i am called", _PROPER, "User's name is {}"),
    _p("name", "da", r"(?:nu |fremover )?hedder jeg|jeg hedder", _PROPER, "User's name is {}"),
    _p("name", "da", r"(?:du kan )?kalde? mig", _PROPER, "User's name is {}"),
    _p("name", "da", r"mit (?:nye )?navn er|jeg har skiftet navn til", _PROPER, "User's name is {}"),
    # age
    _p("age", "en", r"i am|i'm", _AGE, "User is {} years old", tail=r"\s*(?i:years?\s+old|yrs?\s+old|y/?o)\b"),
    _p("age", "en", r"my age is", _AGE, "User is {} years old", tail=r"\b"),
    _p("age", "da", r"jeg er", _AGE, "User is {} years old", tail=r"\s*(?i:år)\b"),
    # location
    _p("location", "en", r"i live in|i'm based in|i am based in|i'm from|i am from|i moved to", _PROPER, "User lives in {}"),
    _p("location", "da", r"jeg bor i|jeg kommer fra|jeg er flyttet til", _PROPER, "User lives in {}"),
]

_VERB_FORMS = {"prefer": "prefers", "like": "likes", "want": "wants", "need": "needs", "use": "uses", "have": "has"}
_CLAUSE = r"([^.!?\n]{3,200})"

GENERIC_PATTERNS: list[tuple[re.Pattern[str], Callable[[re.Match[str]], str]]] = [
    (
        re.compile(rf"\byou (prefer|like|want|need|use|have)\s+{_CLAUSE}", re.IGNORECASE),
        lambda m: f"User {_VERB_FORMS[m.group(1).lower()]} {m.group(2).strip()}",
    ),
    (
        re.compile(rf"\byour (name|email|role|team|project) is\s+{_CLAUSE}", re.IGNORECASE),
        lambda m: f"User's {m.group(1).lower()} is {m.group(2).strip()}",
    ),
    (
        re.compile(rf"\bremember that\s+{_CLAUSE}", re.IGNORECASE),
        lambda m: _capitalize(m.group(1).strip()),
    ),
    (
        re.compile(rf"\bimportant:\s*{_CLAUSE}", re.IGNORECASE),
        lambda m: _capitalize(m.group(1).strip()),
    ),
]


def normalize_text(text: str) -> str:
    """NFC-normalise and fold curly quotes to straight ones."""
    return unicodedata.normalize("NFC", text).translate(_QUOTE_FOLD)


def is_negated(text: str, start: int, end: int) -> bool:
    """True when a negation token sits near or inside the span."""
    window = text[max(0, start - NEGATION_WINDOW):end + NEGATION_WINDOW]
    return NEGATION_RE.search(window) is not None


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def _valid_age(value: str) -> bool:
    return 0 < int(value) < 130


def extract_candidates(text: str, role: str = "user") -> list[FactCandidate]:
    """
    Match identity and generic patterns in a message.

    Identity slots (name/age/location) are only read from user text.
    Pure: nothing is stored.
    """
    if not text or not text.strip():
        return []
    text = normalize_text(text)
    candidates: list[FactCandidate] = []
    seen: set[tuple[str, str]] = set()

    def add(candidate: FactCandidate) -> None:
        key = (candidate.slot, candidate.slot_value.lower())
        if key not in seen:
            seen.add(key)
            candidates.append(candidate)

    if role == "user":
        for pattern in IDENTITY_PATTERNS:
            for match in pattern.regex.finditer(text):
                value = match.group(1).strip(" '-")
                if not value or is_negated(text, match.start(), match.end()):
                    continue
                if pattern.slot == "age" and not _valid_age(value):
                    continue
                add(FactCandidate(
                    content=pattern.template.format(value),
                    slot=pattern.slot,
                    slot_value=value,
                    lang=pattern.lang,
                ))

    for regex, render in GENERIC_PATTERNS:
        for match in regex.finditer(text):
            if is_negated(text, match.start(), match.end()):
                continue
            if text[match.end():match.end() + 1] == "?":
                continue
            content = render(match).rstrip(" ,;:")
            add(FactCandidate(content=content, slot="other", slot_value=content, lang="en"))

    return candidates
