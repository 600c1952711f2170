"""Capability interface implemented by every pluggable unit of work."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from agentdesk.jobs.models import CapabilityResult, Intent, JobView

if TYPE_CHECKING:
    from agentdesk.scheduler import StepInput


class Capability(Protocol):
    """Unit of work bound to an id, invoked with a persisted job.

    Implementations read knowledge only from ``job.knowledge_pack`` and must be
    safe to invoke again when the orchestrator retries an attempt.
    """

    capability_id: str

    def can_handle(self, intent: Intent) -> bool:
        """Return True when the capability accepts requests with this intent."""

    async def execute(
        self,
        job: JobView,
        step_input: StepInput | None = None,
    ) -> CapabilityResult:
        """Produce a structured result for the job or one plan step."""
