"""
FAQ matching against the cached dashboard context.

Scoring per entry (all on normalized text):
- +5 if the whole question appears in the transcript, otherwise
  +1 for every question token present in the transcript
- +2 for every keyword that appears in the transcript

The best entry wins, ties keep the earlier entry, and anything below
`MIN_MATCH_SCORE` is treated as no match.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from src.intake.dashboard import FaqEntry
from src.intake.store import CallStore
from src.intake.telnyx_client import CallControlClient
from src.intake.text import is_short_answer, normalize

logger = structlog.get_logger(__name__)

MIN_MATCH_SCORE = 3
QUESTION_MATCH_SCORE = 5
KEYWORD_MATCH_SCORE = 2

CALLBACK_OFFER = "Would you like someone to call you back?"


@dataclass(frozen=True)
class FaqMatch:
    faq: FaqEntry
    score: int
    index: int


def score_faq(transcript_norm: str, tokens: set[str], faq: FaqEntry) -> int:
    score = 0
    question = normalize(faq.question)
    if question and question in transcript_norm:
        score += QUESTION_MATCH_SCORE
    else:
        score += sum(1 for tok in question.split() if tok in tokens)

    for keyword in faq.keywords:
        kw = normalize(keyword)
        if kw and kw in transcript_norm:
            score += KEYWORD_MATCH_SCORE
    return score


def find_faq_match(transcript: Optional[str], faqs: Sequence[FaqEntry]) -> Optional[FaqMatch]:
    """Return the best-scoring FAQ entry, or None below the threshold."""
    if not transcript or not faqs:
        return None
    transcript_norm = normalize(transcript)
    if not transcript_norm:
        return None

    tokens = set(transcript_norm.split())
    best: Optional[FaqMatch] = None
    for index, faq in enumerate(faqs):
        score = score_faq(transcript_norm, tokens, faq)
        if score > 0 and (best is None or score > best.score):
            best = FaqMatch(faq=faq, score=score, index=index)

    if best is None or best.score < MIN_MATCH_SCORE:
        return None
    return best


def choose_reply(match: Optional[FaqMatch]) -> tuple[str, str]:
    """
    Pick what to say for a match.

    Returns:
        (text, action) where action is "speak_answer" or "callback"
    """
    if match is None or not match.faq.answer:
        return CALLBACK_OFFER, "callback"
    if is_short_answer(match.faq.answer):
        return match.faq.answer, "speak_answer"
    return CALLBACK_OFFER, "callback"


class FaqResponder:
    """Answers one recognized utterance from the call's cached FAQ list."""

    def __init__(self, store: CallStore, call_control: CallControlClient):
        self.store = store
        self.call_control = call_control

    async def respond(self, call_control_id: str, transcript: str) -> str:
        context = self.store.get_context(call_control_id)
        faqs = context.faqs if context is not None else []

        match = find_faq_match(transcript, faqs)
        text, action = choose_reply(match)
        logger.info(
            "FAQ response",
            call_control_id=call_control_id,
            context_cached=context is not None,
            faqs=len(faqs),
            match=match.index if match else None,
            score=match.score if match else 0,
            answer_len=len(match.faq.answer) if match else 0,
            action=action,
        )
        await self.call_control.speak(call_control_id, text)
        return action
