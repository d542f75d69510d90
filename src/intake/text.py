"""
Text normalization and small deterministic classifiers.

Everything here is pure: no config, no logging, no I/O. The flow engine and
the FAQ matcher both compare text through `normalize()` so punctuation and
casing from the STT provider never affect a decision.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional

SHORT_ANSWER_MAX_CHARS = 280
MIN_ISSUE_WORDS = 2
MIN_ISSUE_CHARS = 10

EMERGENCY_KEYWORDS: tuple[str, ...] = (
    "fire",
    "smoke",
    "gas",
    "flood",
    "leak",
    "water leak",
    "no heat",
    "sparks",
)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")

_AFFIRMATIVE_RE = re.compile(r"\b(yes|yeah|yep|sure|ok|okay|affirmative)\b")
_NEGATIVE_RE = re.compile(r"\b(no|nope|nah|negative)\b")


def normalize(text: Optional[str]) -> str:
    """Lowercase, replace non-alphanumerics with spaces, collapse whitespace."""
    text = (text or "").lower()
    text = _NON_ALNUM_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_free_text(text: Optional[str]) -> str:
    """Trim and collapse internal whitespace; case and punctuation are kept."""
    return _WHITESPACE_RE.sub(" ", (text or "").strip())


def parse_yes_no(text: Optional[str]) -> Optional[bool]:
    """
    Parse a yes/no answer.

    Returns:
        True for an affirmative token, False for a negative token,
        None when the text is empty or carries neither.
    """
    normalized = normalize(text)
    if not normalized:
        return None
    if _AFFIRMATIVE_RE.search(normalized):
        return True
    if _NEGATIVE_RE.search(normalized):
        return False
    return None


def is_short_answer(answer: Optional[str]) -> bool:
    """True when an answer is short enough to be spoken inline."""
    text = (answer or "").strip()
    return 0 < len(text) <= SHORT_ANSWER_MAX_CHARS


def is_too_short_issue(text: Optional[str]) -> bool:
    clean = normalize_free_text(text)
    words = clean.split() if clean else []
    return len(words) < MIN_ISSUE_WORDS or len(clean) < MIN_ISSUE_CHARS


def emergency_hits(text: Optional[str], keywords: Iterable[str] = EMERGENCY_KEYWORDS) -> List[str]:
    """Return the keywords found in `text` (substring match on normalized forms)."""
    normalized = normalize(text)
    if not normalized:
        return []
    hits = []
    for keyword in keywords:
        kw = normalize(keyword)
        if kw and kw in normalized:
            hits.append(keyword)
    return hits


def detect_emergency(text: Optional[str], keywords: Iterable[str] = EMERGENCY_KEYWORDS) -> bool:
    return bool(emergency_hits(text, keywords))


def word_count(text: Optional[str]) -> int:
    clean = normalize_free_text(text)
    return len(clean.split()) if clean else 0
