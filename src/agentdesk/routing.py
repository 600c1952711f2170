"""Routing resolution from classified intent to capability execution plans."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agentdesk.config import OrchestratorSettings
from agentdesk.jobs.models import Intent

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6


@dataclass(frozen=True, slots=True)
class PlannedStep:
    """One capability invocation of a multi-step route."""

    step_id: str
    capability_id: str
    depends_on: tuple[str, ...] = ()
    critical: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """Static mapping from an intent to a capability and knowledge query template."""

    intent: str
    capability_id: str
    requires_knowledge: bool = True
    knowledge_query: str = "{raw_input}"
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    integrations: tuple[str, ...] = ()
    steps: tuple[PlannedStep, ...] = ()


@dataclass(slots=True)
class RoutingPlan:
    """Resolved route for one processing attempt."""

    capability_id: str
    requires_knowledge: bool
    knowledge_query: str
    integrations: tuple[str, ...]
    below_threshold: bool
    steps: tuple[PlannedStep, ...] = ()

    @property
    def is_multi_step(self) -> bool:
        return len(self.steps) > 1

    def capability_ids(self) -> tuple[str, ...]:
        """All capability ids the plan needs, primary first."""

        if not self.steps:
            return (self.capability_id,)
        ordered: list[str] = []
        for step in self.steps:
            if step.capability_id not in ordered:
                ordered.append(step.capability_id)
        return tuple(ordered)


DEFAULT_ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(
        intent="media_strategy",
        capability_id="media/strategy",
        knowledge_query="client:{client_name} briefs strategy media",
        integrations=("drive",),
    ),
    RoutingRule(
        intent="media_performance",
        capability_id="media/strategy",
        knowledge_query="client:{client_name} campaigns performance metrics",
    ),
    RoutingRule(
        intent="sales_tracking",
        capability_id="sales/tracker",
        knowledge_query="client:{client_name} deals pipeline",
        integrations=("tasks",),
    ),
    RoutingRule(
        intent="sales_followup",
        capability_id="sales/followup",
        knowledge_query="client:{client_name} communications history",
        integrations=("mail",),
    ),
    RoutingRule(
        intent="sales_email",
        capability_id="sales/email-writer",
        knowledge_query="client:{client_name} context tone",
    ),
    RoutingRule(
        intent="influencer_research",
        capability_id="influencers/research",
        knowledge_query="client:{client_name} brand target audience",
    ),
    RoutingRule(
        intent="influencer_concept",
        capability_id="influencers/concept",
        knowledge_query="client:{client_name} brand values campaign goals",
    ),
    RoutingRule(
        intent="hr_satisfaction",
        capability_id="hr/satisfaction",
        knowledge_query="employee surveys feedback",
    ),
    RoutingRule(
        intent="hr_feedback",
        capability_id="hr/feedback",
        knowledge_query="employee {client_name} performance",
    ),
    RoutingRule(
        intent="calendar_query",
        capability_id="calendar/calendar",
        requires_knowledge=False,
        knowledge_query="",
        integrations=("calendar",),
    ),
    RoutingRule(
        intent="calendar_create",
        capability_id="calendar/calendar",
        requires_knowledge=False,
        knowledge_query="",
        integrations=("calendar",),
    ),
    RoutingRule(
        intent="generate_proposal",
        capability_id="proposals/proposal",
        knowledge_query="client:{client_name} brand research templates",
        integrations=("drive",),
        steps=(
            PlannedStep(step_id="research", capability_id="research/brand"),
            PlannedStep(step_id="strategy", capability_id="media/strategy"),
            PlannedStep(
                step_id="proposal",
                capability_id="proposals/proposal",
                depends_on=("research", "strategy"),
                critical=True,
            ),
        ),
    ),
    RoutingRule(
        intent="general_question",
        capability_id="general/assistant",
        knowledge_query="{raw_input}",
        confidence_threshold=0.4,
    ),
)


class RoutingTable:
    """Id-keyed routing rules selected once at composition time."""

    def __init__(
        self,
        rules: tuple[RoutingRule, ...] = DEFAULT_ROUTING_RULES,
        *,
        fallback_capability: str = "general/assistant",
    ) -> None:
        if not fallback_capability.strip():
            raise ValueError("Fallback capability id must not be empty")
        self._rules: dict[str, RoutingRule] = {}
        for rule in rules:
            if rule.intent in self._rules:
                raise ValueError(f"Duplicate routing rule for intent={rule.intent!r}")
            if not 0.0 <= rule.confidence_threshold <= 1.0:
                raise ValueError(
                    f"Confidence threshold out of range for intent={rule.intent!r}: "
                    f"{rule.confidence_threshold}",
                )
            self._rules[rule.intent] = rule
        self.fallback_capability = fallback_capability.strip()

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        rules: tuple[RoutingRule, ...] = DEFAULT_ROUTING_RULES,
    ) -> RoutingTable:
        return cls(rules, fallback_capability=settings.fallback_capability)

    @property
    def rules(self) -> tuple[RoutingRule, ...]:
        return tuple(self._rules.values())

    def capability_ids(self) -> tuple[str, ...]:
        """Every capability id any rule may route to, in first-seen order."""

        ordered: list[str] = [self.fallback_capability]
        for rule in self._rules.values():
            for capability_id in (rule.capability_id, *(s.capability_id for s in rule.steps)):
                if capability_id not in ordered:
                    ordered.append(capability_id)
        return tuple(ordered)

    def resolve(
        self,
        intent: Intent,
        raw_input: str,
        *,
        requested_capability: str | None = None,
    ) -> RoutingPlan:
        """Resolve the routing plan for one attempt.

        ``requested_capability`` pins the capability for sub-jobs spawned from a
        sub-task marker while keeping the rule's knowledge query.
        """

        rule = self._rules.get(intent.primary)
        if rule is None:
            logger.warning("No routing rule for intent=%s; using fallback", intent.primary)
            plan = RoutingPlan(
                capability_id=self.fallback_capability,
                requires_knowledge=True,
                knowledge_query=raw_input,
                integrations=(),
                below_threshold=True,
            )
        else:
            plan = RoutingPlan(
                capability_id=rule.capability_id,
                requires_knowledge=rule.requires_knowledge,
                knowledge_query=build_knowledge_query(
                    rule.knowledge_query,
                    intent=intent,
                    raw_input=raw_input,
                ),
                integrations=rule.integrations,
                below_threshold=intent.confidence < rule.confidence_threshold,
                steps=rule.steps,
            )

        if requested_capability:
            plan = RoutingPlan(
                capability_id=requested_capability,
                requires_knowledge=plan.requires_knowledge,
                knowledge_query=plan.knowledge_query or raw_input,
                integrations=plan.integrations,
                below_threshold=plan.below_threshold,
            )
        return plan


def build_knowledge_query(template: str, *, intent: Intent, raw_input: str) -> str:
    """Substitute entity placeholders in a knowledge query template."""

    client_name = intent.entities.get("client_name", "")
    query = template.replace("{client_name}", client_name).replace("{raw_input}", raw_input)
    return " ".join(query.split())
