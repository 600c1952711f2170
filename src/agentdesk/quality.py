"""Quality gate between capability execution and job completion."""

from __future__ import annotations

import logging

from agentdesk.config import QualitySettings
from agentdesk.jobs.models import (
    CapabilityResult,
    JobView,
    ResultConfidence,
    ValidationCheck,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)

_CONFIDENCE_SCORES = {
    ResultConfidence.HIGH: 1.0,
    ResultConfidence.MEDIUM: 0.7,
    ResultConfidence.LOW: 0.3,
}
_CONFIDENCE_PASS_SCORE = 0.5
_UNGROUNDED_SCORE = 0.4


class QualityGate:
    """Scores a candidate result and decides done versus retry.

    The verdict passes when safety passes and either the mean check score
    reaches ``pass_threshold`` or at least ``min_passed_checks`` checks pass.
    With ``lenient_on_capability_success`` enabled, a result that reports
    success and passes safety is accepted regardless of the other checks.
    """

    def __init__(self, settings: QualitySettings) -> None:
        self.settings = settings

    def evaluate(self, job: JobView, result: CapabilityResult) -> ValidationOutcome:
        checks = [
            self._check_completeness(result),
            self._check_grounding(job, result),
            self._check_confidence(result),
            self._check_safety(result),
        ]
        overall_score = round(sum(check.score for check in checks) / len(checks), 4)
        passed_count = sum(1 for check in checks if check.passed)
        safety_passed = next(check.passed for check in checks if check.name == "safety")

        lenient = False
        if not result.success:
            passed = False
        elif self.settings.lenient_on_capability_success and safety_passed:
            passed = True
            lenient = True
        else:
            passed = safety_passed and (
                overall_score >= self.settings.pass_threshold
                or passed_count >= self.settings.min_passed_checks
            )

        feedback = None
        if not passed:
            reasons = [check.details or check.name for check in checks if not check.passed]
            if not result.success:
                reasons.insert(0, "capability reported failure")
            feedback = "; ".join(reasons)
            logger.warning(
                "Quality gate rejected job_id=%s score=%.2f passed_checks=%d failed=%s",
                job.job_id,
                overall_score,
                passed_count,
                ",".join(check.name for check in checks if not check.passed) or "-",
            )
        else:
            logger.info(
                "Quality gate passed job_id=%s score=%.2f lenient=%s",
                job.job_id,
                overall_score,
                lenient,
            )

        return ValidationOutcome(
            passed=passed,
            overall_score=overall_score,
            checks=checks,
            feedback=feedback,
            lenient=lenient,
        )

    def _check_completeness(self, result: CapabilityResult) -> ValidationCheck:
        length = len(result.output.strip())
        minimum = self.settings.min_output_chars
        if length == 0:
            return ValidationCheck(
                name="completeness",
                passed=False,
                score=0.0,
                details="output is empty",
            )
        if length < minimum:
            return ValidationCheck(
                name="completeness",
                passed=False,
                score=round(length / minimum, 4),
                details=f"output shorter than {minimum} characters",
            )
        return ValidationCheck(name="completeness", passed=True, score=1.0)

    def _check_grounding(self, job: JobView, result: CapabilityResult) -> ValidationCheck:
        pack = job.knowledge_pack
        if pack is None or not pack.documents:
            return ValidationCheck(
                name="grounding",
                passed=True,
                score=1.0,
                details="no documents to cite",
            )
        if result.citations:
            return ValidationCheck(name="grounding", passed=True, score=1.0)
        return ValidationCheck(
            name="grounding",
            passed=False,
            score=_UNGROUNDED_SCORE,
            details="knowledge pack held documents but the result cites none",
        )

    def _check_confidence(self, result: CapabilityResult) -> ValidationCheck:
        score = _CONFIDENCE_SCORES[result.confidence]
        passed = score >= _CONFIDENCE_PASS_SCORE
        return ValidationCheck(
            name="confidence",
            passed=passed,
            score=score,
            details=None if passed else f"capability confidence is {result.confidence.value}",
        )

    def _check_safety(self, result: CapabilityResult) -> ValidationCheck:
        haystack = result.output.lower()
        matched = [phrase for phrase in self.settings.blocked_phrases if phrase in haystack]
        if matched:
            return ValidationCheck(
                name="safety",
                passed=False,
                score=0.0,
                details=f"blocked content: {', '.join(matched)}",
            )
        return ValidationCheck(name="safety", passed=True, score=1.0)
