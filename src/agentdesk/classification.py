"""Intent classification contract and a deterministic keyword classifier."""

from __future__ import annotations

import re
from typing import Protocol

from agentdesk.jobs.models import Intent

CLARIFICATION_INTENTS = frozenset({"clarification_needed", "unknown"})

_INTENT_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("media_strategy", ("media strategy", "media plan", "channel mix")),
    ("media_performance", ("campaign performance", "ctr", "roas", "impressions")),
    ("sales_tracking", ("deal status", "pipeline", "status of the deal")),
    ("sales_followup", ("follow up", "follow-up", "stuck deal")),
    ("sales_email", ("sales email", "outreach email", "cold email")),
    ("influencer_research", ("influencer research", "find influencers")),
    ("influencer_concept", ("influencer campaign", "influencer idea")),
    ("hr_satisfaction", ("employee satisfaction", "engagement survey")),
    ("hr_feedback", ("performance review", "employee feedback")),
    ("calendar_query", ("my calendar", "meetings today", "am i free")),
    ("calendar_create", ("schedule a meeting", "create event", "book a meeting")),
    ("generate_proposal", ("proposal", "price quote", "quotation")),
)
_CLIENT_NAME_PATTERN = re.compile(
    r"\b(?:client|customer|for)\s+(?:named\s+|called\s+)?([A-Z][\w&.-]*(?:\s+[A-Z][\w&.-]*)*)",
)
_MIN_GENERAL_WORDS = 3


class IntentClassifier(Protocol):
    """Maps raw request text to an intent with a confidence score."""

    async def classify(self, raw_input: str, *, job_id: str, user_id: str) -> Intent:
        """Classify one request; raise only on infrastructure failure."""


class KeywordIntentClassifier:
    """Pattern-table classifier used for demos, tests and as an offline fallback."""

    def __init__(
        self,
        patterns: tuple[tuple[str, tuple[str, ...]], ...] = _INTENT_PATTERNS,
    ) -> None:
        self.patterns = patterns

    async def classify(self, raw_input: str, *, job_id: str, user_id: str) -> Intent:
        del job_id, user_id
        return classify_text(raw_input, patterns=self.patterns)


def classify_text(
    raw_input: str,
    *,
    patterns: tuple[tuple[str, tuple[str, ...]], ...] = _INTENT_PATTERNS,
) -> Intent:
    """Score every intent by matched patterns; the best match wins."""

    haystack = raw_input.strip().lower()
    entities = _extract_entities(raw_input)
    if not haystack:
        return Intent(primary="unknown", confidence=0.0, entities=entities)

    best_intent: str | None = None
    best_hits = 0
    for intent_name, intent_patterns in patterns:
        hits = sum(1 for pattern in intent_patterns if pattern in haystack)
        if hits > best_hits:
            best_intent = intent_name
            best_hits = hits

    if best_intent is not None:
        confidence = min(0.95, 0.7 + 0.1 * (best_hits - 1))
        return Intent(primary=best_intent, confidence=confidence, entities=entities)
    if len(haystack.split()) >= _MIN_GENERAL_WORDS:
        return Intent(primary="general_question", confidence=0.55, entities=entities)
    return Intent(primary="unknown", confidence=0.0, entities=entities)


def needs_clarification(intent: Intent, *, threshold: float) -> bool:
    """Return True when the request must go back to the user."""

    return intent.primary in CLARIFICATION_INTENTS or intent.confidence < threshold


def clarification_prompt(intent: Intent, *, threshold: float) -> str:
    """User-facing question asking to clarify an ambiguous request."""

    if intent.primary == "unknown":
        return (
            "I could not understand what you need. "
            "Could you describe the request in more detail?"
        )
    if intent.confidence < threshold:
        readable = intent.primary.replace("_", " ")
        return f"I am not sure I understood correctly. Did you mean: {readable}?"
    return "Could you add a bit more detail about what you need?"


def _extract_entities(raw_input: str) -> dict[str, str]:
    match = _CLIENT_NAME_PATTERN.search(raw_input)
    if match is None:
        return {}
    return {"client_name": match.group(1).strip()}
