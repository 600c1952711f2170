"""Deterministic demo capability for local runs and integration tests."""

from __future__ import annotations

from agentdesk.jobs.models import (
    CapabilityResult,
    Citation,
    Intent,
    JobView,
    ResultConfidence,
    UsageCounters,
)
from agentdesk.scheduler import StepInput

_MAX_CITATIONS = 3


class EchoCapability:
    """Answers with the request text plus the top chunks of the persisted pack."""

    def __init__(self, capability_id: str, *, intents: tuple[str, ...] = ()) -> None:
        self.capability_id = capability_id
        self.intents = intents

    def can_handle(self, intent: Intent) -> bool:
        return not self.intents or intent.primary in self.intents

    async def execute(
        self,
        job: JobView,
        step_input: StepInput | None = None,
    ) -> CapabilityResult:
        pack = job.knowledge_pack
        chunks = list(pack.chunks[:_MAX_CITATIONS]) if pack is not None else []

        lines = [f"{self.capability_id}: {job.raw_input.strip()}"]
        if step_input is not None:
            for step_id, upstream in sorted(step_input.upstream.items()):
                first_line = upstream.output.splitlines()[0] if upstream.output else ""
                lines.append(f"{step_id}: {first_line}")
        lines.extend(f"- {chunk.content.strip()[:200]}" for chunk in chunks)
        output = "\n".join(lines)

        words = len(output.split())
        return CapabilityResult(
            success=True,
            output=output,
            structured={"capability": self.capability_id, "chunks": len(chunks)},
            citations=[
                Citation(source=chunk.source, content=chunk.content, document_id=chunk.document_id)
                for chunk in chunks
            ],
            confidence=ResultConfidence.HIGH if chunks else ResultConfidence.MEDIUM,
            usage=UsageCounters(
                prompt_tokens=len(job.raw_input.split()),
                completion_tokens=words,
                total_tokens=len(job.raw_input.split()) + words,
            ),
        )
