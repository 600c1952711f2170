"""Knowledge retrieval contract and the mandatory readiness gate."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from agentdesk.errors import KnowledgeNotReadyError, KnowledgeUnavailableError, StageTimeoutError
from agentdesk.jobs.models import KnowledgeChunk, KnowledgeDocument, KnowledgePack
from agentdesk.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class KnowledgeContext:
    user_id: str
    client_id: str | None = None


class KnowledgeRetriever(Protocol):
    """Query to knowledge pack.

    No results is a valid ``ready=True`` empty pack; implementations raise only
    on genuine infrastructure failure.
    """

    async def retrieve(
        self,
        query: str,
        *,
        job_id: str,
        context: KnowledgeContext,
    ) -> KnowledgePack:
        """Return the knowledge pack for one processing attempt."""


@dataclass(slots=True)
class StaticDocument:
    document_id: str
    title: str
    content: str
    source: str = "static"
    client_id: str | None = None
    keywords: tuple[str, ...] = ()


@dataclass(slots=True)
class StaticKnowledgeRetriever:
    """In-memory keyword retriever over a fixed document set."""

    documents: list[StaticDocument] = field(default_factory=list)
    required_sources: tuple[str, ...] = ()
    max_chunks: int = 5

    async def retrieve(
        self,
        query: str,
        *,
        job_id: str,
        context: KnowledgeContext,
    ) -> KnowledgePack:
        del job_id
        terms = {term for term in query.lower().replace(":", " ").split() if len(term) > 2}
        scored: list[tuple[float, StaticDocument]] = []
        for document in self.documents:
            if document.client_id is not None and document.client_id != context.client_id:
                continue
            haystack = " ".join((document.title, document.content, *document.keywords)).lower()
            hits = sum(1 for term in terms if term in haystack)
            if hits:
                scored.append((hits / max(1, len(terms)), document))
        scored.sort(key=lambda item: (-item[0], item[1].document_id))
        selected = scored[: self.max_chunks]

        present_sources = {document.source for _, document in selected}
        missing = [source for source in self.required_sources if source not in present_sources]
        return KnowledgePack(
            ready=not missing,
            query=query,
            documents=[
                KnowledgeDocument(
                    document_id=document.document_id,
                    title=document.title,
                    source=document.source,
                )
                for _, document in selected
            ],
            chunks=[
                KnowledgeChunk(
                    document_id=document.document_id,
                    content=document.content,
                    source=document.source,
                    relevance=round(score, 4),
                )
                for score, document in selected
            ],
            missing=missing,
        )


class KnowledgeGate:
    """Calls the retriever once per attempt and persists the pack on the job.

    Capabilities only ever see the persisted ``job.knowledge_pack``.
    """

    def __init__(
        self,
        *,
        retriever: KnowledgeRetriever,
        repository: JobRepository,
        timeout_seconds: float,
    ) -> None:
        self.retriever = retriever
        self.repository = repository
        self.timeout_seconds = timeout_seconds

    async def gather(
        self,
        *,
        job_id: str,
        query: str,
        context: KnowledgeContext,
    ) -> KnowledgePack:
        """Retrieve and persist; raise unless the pack is ready."""

        try:
            pack = await asyncio.wait_for(
                self.retriever.retrieve(query, job_id=job_id, context=context),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            raise StageTimeoutError("knowledge", self.timeout_seconds) from error
        except Exception as error:  # noqa: BLE001
            raise KnowledgeUnavailableError(
                f"Knowledge retriever failed for job {job_id}: {error}",
            ) from error

        await asyncio.to_thread(self.repository.update_knowledge_pack, job_id=job_id, pack=pack)
        logger.info(
            "Knowledge gathered job_id=%s ready=%s documents=%d missing=%s",
            job_id,
            pack.ready,
            len(pack.documents),
            ",".join(pack.missing) or "-",
        )
        if not pack.ready:
            raise KnowledgeNotReadyError(job_id, tuple(pack.missing))
        return pack
