"""
Enhancement session.

Single entry point for a client: selects the best frame of a burst, routes
it, and keeps at most one request in flight. Starting a new request
supersedes the pending one. Use it as an async context manager, or call
``aclose``, to release the provider clients when done.
"""

import asyncio
import logging
import os
from typing import Iterable, Optional, Sequence, Set

import httpx

from enhance_guard.config.loader import RouterConfig, default_config
from enhance_guard.core.cache import ResultCache
from enhance_guard.core.errors import RequestCancelled
from enhance_guard.core.ledger import Clock, UsageLedger, utc_now
from enhance_guard.core.routing import Listener, RoutingEngine, Size
from enhance_guard.core.scoring import Frame, FrameScorer, load_frame
from enhance_guard.core.types import (
    STANDARD_QUALITY,
    EditTask,
    ProviderResult,
    QualityHint,
    Tier,
    UsageSnapshot,
    classify_prompt,
)
from enhance_guard.providers import (
    ClipdropProvider,
    FalFluxProvider,
    GeminiProvider,
    OnDeviceProvider,
    OpenAIImageProvider,
    ProviderRegistry,
)
from enhance_guard.providers.clipdrop import API_KEY_ENV as CLIPDROP_KEY_ENV
from enhance_guard.providers.fal_flux import API_KEY_ENV as FAL_KEY_ENV
from enhance_guard.providers.gemini import API_KEY_ENV as GEMINI_KEY_ENV
from enhance_guard.storage.repository import InMemoryUsageStore, UsageStore

logger = logging.getLogger(__name__)


class EnhancementSession:
    """Per-account enhancement front end.

    One request may be in flight at a time. Calling ``enhance`` again, or
    ``cancel``, cancels the pending request; its caller receives
    ``RequestCancelled`` and no credit is charged.
    """

    def __init__(self, account_id: str, engine: RoutingEngine, scorer: FrameScorer):
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        self.account_id = account_id
        self.engine = engine
        self.scorer = scorer
        self._current: Optional[asyncio.Task] = None
        self._superseded: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    async def enhance(
        self,
        burst: Sequence[Frame],
        task: Optional[EditTask] = None,
        tier: Optional[Tier] = None,
        prompt: Optional[str] = None,
        quality: QualityHint = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> ProviderResult:
        """Enhance the best frame of a burst.

        Args:
            burst: Candidate frames, images or encoded bytes
            task: Task to run; classified from ``prompt`` when omitted
            tier: Account tier, persisted before routing; the stored tier when omitted
            prompt: Optional free-text instruction
            quality: Quality hint, a toggle or a 0-1 value
            target_size: Optional output size

        Returns:
            Result of the first provider that succeeded

        Raises:
            NoScorableFrames: No frame of the burst could be scored
            RequestCancelled: The request was cancelled or superseded
            RoutingError: Any other terminal routing outcome
        """
        if task is None:
            task = classify_prompt(prompt)

        self.cancel()
        request = asyncio.create_task(
            self._run(list(burst), task, tier, prompt, quality, target_size)
        )
        self._current = request
        try:
            return await request
        except asyncio.CancelledError:
            if request in self._superseded:
                raise RequestCancelled() from None
            raise
        finally:
            self._superseded.discard(request)
            if self._current is request:
                self._current = None

    def cancel(self) -> None:
        """Cancel the in-flight request, if any."""
        request = self._current
        if request is None or request.done():
            return
        logger.info("Cancelling in-flight request for %s", self.account_id)
        self._superseded.add(request)
        request.cancel()
        self._current = None

    async def usage_snapshot(self, tier: Optional[Tier] = None) -> UsageSnapshot:
        return await self.engine.ledger.snapshot(self.account_id, tier)

    async def aclose(self) -> None:
        """Cancel any pending request and close the provider clients."""
        self.cancel()
        await self.engine.aclose()

    async def __aenter__(self) -> "EnhancementSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _run(
        self,
        burst: Sequence[Frame],
        task: EditTask,
        tier: Optional[Tier],
        prompt: Optional[str],
        quality: QualityHint,
        target_size: Optional[Size],
    ) -> ProviderResult:
        selection = await asyncio.to_thread(self.scorer.select_best, burst)
        if selection.excluded:
            logger.info("Excluded unscorable frames %s", selection.excluded)
        image = load_frame(selection.frame)
        return await self.engine.route(
            self.account_id, image, task, tier,
            prompt=prompt, quality=quality, target_size=target_size,
        )


def build_default_registry(
    openai_client=None,
    http_client: Optional[httpx.AsyncClient] = None,
    include_cloud: bool = True,
) -> ProviderRegistry:
    """Registry with the on-device provider and every configured cloud provider.

    A cloud provider is registered when its API key is present in the
    environment (or, for OpenAI, when a client is passed in).

    Args:
        openai_client: Optional preconfigured ``openai.AsyncOpenAI``
        http_client: Optional shared client for the HTTP based providers
        include_cloud: Register cloud providers at all
    """
    registry = ProviderRegistry([OnDeviceProvider()])
    if not include_cloud:
        return registry

    if openai_client is not None or os.environ.get("OPENAI_API_KEY"):
        registry.register(OpenAIImageProvider(client=openai_client))
    if os.environ.get(CLIPDROP_KEY_ENV):
        registry.register(ClipdropProvider(client=http_client))
    if os.environ.get(GEMINI_KEY_ENV):
        registry.register(GeminiProvider(client=http_client))
    if os.environ.get(FAL_KEY_ENV):
        registry.register(FalFluxProvider(client=http_client))

    logger.info("Registered providers: %s", [adapter.provider_id.value for adapter in registry])
    return registry


def build_session(
    account_id: str,
    config: Optional[RouterConfig] = None,
    store: Optional[UsageStore] = None,
    registry: Optional[ProviderRegistry] = None,
    clock: Clock = utc_now,
    listeners: Iterable[Listener] = (),
    validate: bool = True,
) -> EnhancementSession:
    """Wire a session from explicit dependencies.

    Raises:
        NoProvidersAvailable: If ``validate`` is set and a configured task
            has no provider
    """
    config = config or default_config()
    registry = registry if registry is not None else build_default_registry()
    if validate:
        registry.validate(config)

    ledger = UsageLedger(
        store if store is not None else InMemoryUsageStore(),
        config.capacities,
        config.reset_period,
        clock=clock,
    )
    cache = None
    if config.result_cache_size > 0:
        cache = ResultCache(config.result_cache_size, config.result_cache_ttl_seconds)
    engine = RoutingEngine(registry, ledger, config, listeners, cache=cache)
    scorer = FrameScorer(config.score_weights)
    return EnhancementSession(account_id, engine, scorer)
