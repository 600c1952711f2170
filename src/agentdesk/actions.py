"""Side-effecting actions derived from results and held for approval."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from agentdesk.errors import ActionNotFoundError, ActionStateError
from agentdesk.jobs.models import (
    CapabilityResult,
    JobView,
    PendingActionCreate,
    PendingActionStatus,
    PendingActionType,
    PendingActionView,
)
from agentdesk.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

_EMAIL_PATTERNS = (
    re.compile(r"\b(?:send|email)\s+(?:it\s+|this\s+)?to\s+([A-Za-z@.\s,]+)", re.IGNORECASE),
    re.compile(r"\b(?:mail|email)\s+(?:to)[:\s-]*([A-Za-z@.\s,]+)", re.IGNORECASE),
)
_TASK_PATTERNS = (re.compile(r"\b(?:create|add)\s+(?:a\s+)?task\s*[:\s-]*([^\n]+)", re.IGNORECASE),)
_EVENT_PATTERNS = (
    re.compile(
        r"\b(?:schedule|create|book)\s+(?:a\s+)?(?:meeting|event)\s+(?:with\s+)?([^\n]+)",
        re.IGNORECASE,
    ),
)
_SUBJECT_PATTERN = re.compile(r"\bsubject[:\s]+([^\n]+)", re.IGNORECASE)
_RECIPIENT_TAIL = re.compile(r"\s+(?:about|regarding|with|on)\b.*$", re.IGNORECASE)
_NAME_SPLIT = re.compile(r"\s*(?:,|\band\b)\s*", re.IGNORECASE)
_MAX_NAME_CHARS = 50


@dataclass(slots=True)
class ParsedAction:
    """Actionable request detected in raw input."""

    action_type: PendingActionType
    confidence: float
    recipients: list[str] = field(default_factory=list)
    subject: str | None = None
    title: str | None = None


@dataclass(slots=True)
class ActionExecutionResult:
    success: bool
    message: str
    already_executed: bool = False
    in_progress: bool = False


class ActionExecutor(Protocol):
    """Connector performing an approved action in an external system."""

    async def execute(self, action: PendingActionView) -> ActionExecutionResult:
        """Perform the action; raise on connector failure."""


class DryRunActionExecutor:
    """Records approved actions instead of contacting external systems."""

    def __init__(self) -> None:
        self.executed: list[PendingActionView] = []

    async def execute(self, action: PendingActionView) -> ActionExecutionResult:
        logger.info(
            "Dry-run action action_id=%s type=%s parameters=%s",
            action.action_id,
            action.action_type.value,
            sorted(action.parameters),
        )
        self.executed.append(action)
        return ActionExecutionResult(
            success=True,
            message=f"Dry run: {action.preview.get('description', action.action_type.value)}",
        )


def parse_actions(raw_input: str) -> list[ParsedAction]:
    """Detect email, task and event requests in the input text."""

    actions = [
        action
        for action in (
            _detect_email(raw_input),
            _detect_task(raw_input),
            _detect_event(raw_input),
        )
        if action is not None
    ]
    logger.debug("Actions parsed types=%s", [action.action_type.value for action in actions])
    return actions


def main_action(raw_input: str) -> ParsedAction | None:
    """Highest-confidence action, first detected wins ties."""

    best: ParsedAction | None = None
    for action in parse_actions(raw_input):
        if best is None or action.confidence > best.confidence:
            best = action
    return best


class ActionService:
    """Prepares, approves and rejects pending actions."""

    def __init__(self, *, repository: JobRepository, executor: ActionExecutor) -> None:
        self.repository = repository
        self.executor = executor

    async def prepare_for_job(
        self,
        job: JobView,
        result: CapabilityResult,
    ) -> PendingActionView | None:
        """Store the main detected action of the request as ``pending``."""

        parsed = main_action(job.raw_input)
        if parsed is None:
            return None
        payload = _build_pending_action(job, result, parsed)
        action = await asyncio.to_thread(self.repository.create_pending_action, payload)
        logger.info(
            "Action prepared for approval job_id=%s action_id=%s type=%s",
            job.job_id,
            action.action_id,
            action.action_type.value,
        )
        return action

    async def approve(self, action_id: str) -> ActionExecutionResult:
        """Approve and execute; approving an executed action is a no-op.

        Moving to ``executing`` is the claim: only the caller that wins the
        guarded transition runs the executor, concurrent callers get an
        ``in_progress`` result.
        """

        action = await self._require(action_id)
        if action.status == PendingActionStatus.EXECUTED:
            return ActionExecutionResult(
                success=True,
                message=action.result_message or "Action already executed.",
                already_executed=True,
            )
        if action.status == PendingActionStatus.EXECUTING:
            return ActionExecutionResult(
                success=False,
                message="Action execution is already in progress.",
                in_progress=True,
            )
        if action.status == PendingActionStatus.REJECTED:
            raise ActionStateError(f"Action {action_id} was rejected and cannot be approved")

        claimed = await asyncio.to_thread(
            self.repository.transition_pending_action,
            action_id=action_id,
            status_from=action.status,
            status_to=PendingActionStatus.EXECUTING,
        )
        if not claimed:
            return await self.approve(action_id)

        try:
            outcome = await self.executor.execute(action)
        except Exception as error:  # noqa: BLE001
            logger.error("Action execution failed action_id=%s error=%s", action_id, error)
            outcome = ActionExecutionResult(success=False, message=f"Action failed: {error}")

        if not outcome.success:
            await asyncio.to_thread(
                self.repository.transition_pending_action,
                action_id=action_id,
                status_from=PendingActionStatus.EXECUTING,
                status_to=PendingActionStatus.APPROVED,
                result_message=outcome.message,
            )
            return outcome

        await asyncio.to_thread(
            self.repository.transition_pending_action,
            action_id=action_id,
            status_from=PendingActionStatus.EXECUTING,
            status_to=PendingActionStatus.EXECUTED,
            result_message=outcome.message,
        )
        logger.info("Action executed action_id=%s type=%s", action_id, action.action_type.value)
        return outcome

    async def reject(self, action_id: str) -> PendingActionView:
        action = await self._require(action_id)
        if action.status == PendingActionStatus.REJECTED:
            return action
        moved = await asyncio.to_thread(
            self.repository.transition_pending_action,
            action_id=action_id,
            status_from=PendingActionStatus.PENDING,
            status_to=PendingActionStatus.REJECTED,
        )
        if not moved:
            raise ActionStateError(
                f"Action {action_id} cannot be rejected from status={action.status.value}",
            )
        logger.info("Action rejected action_id=%s", action_id)
        return await self._require(action_id)

    async def _require(self, action_id: str) -> PendingActionView:
        action = await asyncio.to_thread(self.repository.get_pending_action, action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action


def _build_pending_action(
    job: JobView,
    result: CapabilityResult,
    parsed: ParsedAction,
) -> PendingActionCreate:
    if parsed.action_type == PendingActionType.SEND_EMAIL:
        preview = {
            "title": "Send email",
            "description": f"Send email to {', '.join(parsed.recipients)}",
            "recipient": parsed.recipients[0] if parsed.recipients else "",
        }
        parameters = {
            "to": parsed.recipients,
            "subject": parsed.subject or _first_line(result.output, limit=80),
            "body": result.output,
        }
    elif parsed.action_type == PendingActionType.CREATE_TASK:
        preview = {"title": "Create task", "description": f"Create task: {parsed.title}"}
        parameters = {"task_name": parsed.title or "New task", "description": result.output}
    else:
        preview = {
            "title": "Schedule meeting",
            "description": f"Schedule meeting: {parsed.title}",
            "recipient": ", ".join(parsed.recipients),
        }
        parameters = {"event_title": parsed.title or "Meeting", "attendees": parsed.recipients}
    return PendingActionCreate(
        job_id=job.job_id,
        user_id=job.user_id,
        action_type=parsed.action_type,
        preview=preview,
        parameters=parameters,
    )


def _detect_email(raw_input: str) -> ParsedAction | None:
    for pattern in _EMAIL_PATTERNS:
        match = pattern.search(raw_input)
        if match is None:
            continue
        recipients = _split_names(_RECIPIENT_TAIL.sub("", match.group(1).strip()))
        if not recipients:
            continue
        subject_match = _SUBJECT_PATTERN.search(raw_input)
        return ParsedAction(
            action_type=PendingActionType.SEND_EMAIL,
            confidence=0.9,
            recipients=recipients,
            subject=subject_match.group(1).strip() if subject_match else None,
        )
    return None


def _detect_task(raw_input: str) -> ParsedAction | None:
    for pattern in _TASK_PATTERNS:
        match = pattern.search(raw_input)
        if match is None:
            continue
        title = re.split(r"[,.\n]", match.group(1).strip())[0].strip()
        return ParsedAction(
            action_type=PendingActionType.CREATE_TASK,
            confidence=0.85,
            title=title or None,
        )
    return None


def _detect_event(raw_input: str) -> ParsedAction | None:
    for pattern in _EVENT_PATTERNS:
        match = pattern.search(raw_input)
        if match is None:
            continue
        details = match.group(1).strip()
        title = re.split(r"[,.\n]", details)[0].strip()
        return ParsedAction(
            action_type=PendingActionType.CREATE_EVENT,
            confidence=0.8,
            recipients=_split_names(title),
            title=title or None,
        )
    return None


def _split_names(raw: str) -> list[str]:
    return [
        name.strip()
        for name in _NAME_SPLIT.split(raw)
        if name.strip() and len(name.strip()) < _MAX_NAME_CHARS
    ]


def _first_line(text: str, *, limit: int) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:limit]
    return ""
