"""Human-facing response formatting."""

from __future__ import annotations

import logging
import re

from agentdesk.jobs.models import CapabilityResult, JobView

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_FALLBACK = "I could not process the request properly. Please try rephrasing it."
GENERIC_FAILURE_MESSAGE = "Something went wrong while processing your request. It has been logged."
STILL_PROCESSING_MESSAGE = (
    "Your request is still being processed. "
    "Some additional information is being gathered first."
)
HUMAN_REVIEW_MESSAGE = (
    "Your request could not be completed automatically and was handed over for review."
)
CANCELED_MESSAGE = "Your request was canceled before it was processed."

_FENCED_BLOCK = re.compile(r"```.*?```", re.DOTALL)
_BRACKET_MARKER = re.compile(r"\[[^\]\n]*\]")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def format_response(result: CapabilityResult, *, job_id: str | None = None) -> str:
    """Strip machine artefacts from capability output.

    Removes fenced code blocks and bracketed citation markers and collapses runs
    of blank lines. Falls back to a generic apology when nothing is left.
    """

    output = _FENCED_BLOCK.sub("", result.output)
    output = _BRACKET_MARKER.sub("", output)
    output = _EXTRA_BLANK_LINES.sub("\n\n", output).strip()
    if not output:
        logger.warning("Output empty after cleaning job_id=%s", job_id or "-")
        return EMPTY_OUTPUT_FALLBACK
    return output


def format_for_cli(result: CapabilityResult, job: JobView, *, debug: bool = False) -> str:
    output = format_response(result, job_id=job.job_id)
    if not debug:
        return output
    pack = job.knowledge_pack
    lines = [
        output,
        "",
        "---",
        f"job_id: {job.job_id}",
        f"intent: {job.intent.primary if job.intent is not None else 'n/a'}",
        f"capability: {job.assigned_capability or 'n/a'}",
        f"confidence: {result.confidence.value}",
        f"knowledge_chunks: {len(pack.chunks) if pack is not None else 0}",
    ]
    return "\n".join(lines)
