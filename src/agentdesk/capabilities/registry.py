"""Capability registry: id to implementation map built at composition time."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from agentdesk.capabilities.base import Capability
from agentdesk.errors import CapabilityNotFoundError
from agentdesk.jobs.models import Intent

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Read-mostly capability lookup shared by orchestrator and scheduler.

    Registration happens once while wiring the application; lookups afterwards
    never mutate the map, so instances are shared without locking.
    """

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        capability_id = capability.capability_id.strip()
        if not capability_id:
            raise ValueError("Capability id must not be empty")
        if capability_id in self._capabilities:
            raise ValueError(f"Capability already registered: {capability_id}")
        self._capabilities[capability_id] = capability
        logger.debug("Registered capability=%s", capability_id)

    def get(self, capability_id: str) -> Capability:
        """Return the capability or raise ``CapabilityNotFoundError``."""

        capability = self._capabilities.get(capability_id)
        if capability is None:
            raise CapabilityNotFoundError(capability_id)
        return capability

    def has(self, capability_id: str) -> bool:
        return capability_id in self._capabilities

    def find_for_intent(self, intent: Intent) -> Capability | None:
        """First registered capability accepting the intent, in registration order."""

        for capability in self._capabilities.values():
            if capability.can_handle(intent):
                return capability
        return None

    def ids(self) -> tuple[str, ...]:
        return tuple(self._capabilities)

    def __len__(self) -> int:
        return len(self._capabilities)
