"""
Provider registry.

Built once at startup and validated against the task routes, so a task
nobody can serve is reported before the first request.
"""

import asyncio
import logging
from typing import Dict, Iterable, Iterator, List, Optional

from enhance_guard.config.loader import RouterConfig
from enhance_guard.core.errors import NoProvidersAvailable
from enhance_guard.core.types import EditTask, ProviderID

from .base import ProviderAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """One adapter per provider identity."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()):
        self._adapters: Dict[ProviderID, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        """Add an adapter.

        Raises:
            ValueError: If an adapter with the same identity is registered
        """
        if adapter.provider_id in self._adapters:
            raise ValueError(f"Provider '{adapter.provider_id.value}' is already registered")
        self._adapters[adapter.provider_id] = adapter
        logger.debug(
            "Registered %s for %s",
            adapter.provider_id.value,
            sorted(task.value for task in adapter.capabilities()),
        )

    def get(self, provider_id: ProviderID) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider_id)

    def capable_of(self, task: EditTask) -> List[ProviderAdapter]:
        """Registered adapters that support ``task``, in enum order."""
        return [
            adapter for adapter in sorted(self._adapters.values(), key=lambda a: a.provider_id.ordinal)
            if adapter.supports(task)
        ]

    def eligible(self, task: EditTask, config: RouterConfig) -> List[ProviderAdapter]:
        """Adapters the router may place in a chain for ``task``."""
        route = config.route_for(task)
        return [
            adapter for adapter in self.capable_of(task)
            if (adapter.cost_class.billable and adapter.cost_class.rank <= route.cost_class.rank)
            or (not adapter.cost_class.billable and route.on_device_fallback)
        ]

    def unservable(self, config: RouterConfig) -> List[EditTask]:
        """Configured tasks no registered adapter can serve."""
        return [
            task for task in EditTask
            if task in config.tasks and not self.eligible(task, config)
        ]

    def validate(self, config: RouterConfig) -> None:
        """Check every configured task can be served by some adapter.

        Raises:
            NoProvidersAvailable: For the first task with no capable adapter
        """
        missing = self.unservable(config)
        if missing:
            raise NoProvidersAvailable(missing[0], "no registered provider declares this capability")

    async def aclose(self) -> None:
        """Close every adapter, logging any that fail to close."""
        adapters = list(self)
        results = await asyncio.gather(
            *(adapter.aclose() for adapter in adapters), return_exceptions=True
        )
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                logger.warning("Failed to close %s: %s", adapter.provider_id.value, result)

    def __contains__(self, provider_id: ProviderID) -> bool:
        return provider_id in self._adapters

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(sorted(self._adapters.values(), key=lambda a: a.provider_id.ordinal))

    def __len__(self) -> int:
        return len(self._adapters)
