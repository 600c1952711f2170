"""Composition of the orchestrator from settings and default collaborators."""

from __future__ import annotations

from dataclasses import dataclass

from agentdesk.actions import ActionExecutor, ActionService, DryRunActionExecutor
from agentdesk.capabilities.echo import EchoCapability
from agentdesk.capabilities.registry import CapabilityRegistry
from agentdesk.classification import IntentClassifier, KeywordIntentClassifier
from agentdesk.config import Settings
from agentdesk.jobs.repository import JobRepository
from agentdesk.knowledge import KnowledgeGate, KnowledgeRetriever, StaticKnowledgeRetriever
from agentdesk.orchestrator import JobOrchestrator
from agentdesk.quality import QualityGate
from agentdesk.routing import RoutingTable
from agentdesk.scheduler import ParallelExecutor


@dataclass(slots=True)
class OrchestratorComponents:
    """Optional overrides for the default offline collaborators."""

    classifier: IntentClassifier | None = None
    retriever: KnowledgeRetriever | None = None
    registry: CapabilityRegistry | None = None
    routing: RoutingTable | None = None
    action_executor: ActionExecutor | None = None


def build_default_registry(routing: RoutingTable) -> CapabilityRegistry:
    """Register an echo capability for every id the routing table can produce."""

    registry = CapabilityRegistry()
    for rule in routing.rules:
        if not registry.has(rule.capability_id):
            registry.register(EchoCapability(rule.capability_id, intents=(rule.intent,)))
    for capability_id in routing.capability_ids():
        if not registry.has(capability_id):
            registry.register(EchoCapability(capability_id))
    return registry


def build_action_service(
    repository: JobRepository,
    executor: ActionExecutor | None = None,
) -> ActionService:
    return ActionService(repository=repository, executor=executor or DryRunActionExecutor())


def build_orchestrator(
    *,
    settings: Settings,
    repository: JobRepository,
    components: OrchestratorComponents | None = None,
    worker_id: str | None = None,
) -> JobOrchestrator:
    """Wire a ``JobOrchestrator`` with defaults for anything not overridden."""

    parts = components or OrchestratorComponents()
    routing = parts.routing or RoutingTable.from_settings(settings.orchestrator)
    registry = parts.registry or build_default_registry(routing)
    return JobOrchestrator(
        repository=repository,
        classifier=parts.classifier or KeywordIntentClassifier(),
        routing=routing,
        knowledge_gate=KnowledgeGate(
            retriever=parts.retriever or StaticKnowledgeRetriever(),
            repository=repository,
            timeout_seconds=settings.orchestrator.knowledge_timeout_seconds,
        ),
        registry=registry,
        executor=ParallelExecutor(
            registry,
            step_timeout_seconds=settings.orchestrator.step_timeout_seconds,
        ),
        quality_gate=QualityGate(settings.quality),
        actions=build_action_service(repository, parts.action_executor),
        settings=settings.orchestrator,
        worker_id=worker_id,
    )
