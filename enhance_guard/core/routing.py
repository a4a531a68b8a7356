"""
Cost-aware provider routing.

Each request moves through Deciding, Gating and Executing and ends in exactly
one terminal state. The engine decides a cost class and provider chain,
checks the ledger once before any provider runs, tries providers in order,
and commits a single credit only after a billable success. Repeated
requests are answered from the optional result cache without a charge.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from enhance_guard.config.loader import RouterConfig, TaskRoute
from enhance_guard.providers.base import ProviderAdapter
from enhance_guard.providers.registry import ProviderRegistry

from .cache import ResultCache, cache_key
from .errors import (
    AllProvidersFailed,
    CreditLimitExceeded,
    EnhanceGuardError,
    InsufficientCredits,
    NoProvidersAvailable,
    ProviderError,
    ProviderErrorKind,
)
from .ledger import UsageLedger
from .types import (
    STANDARD_QUALITY,
    CostClass,
    EditTask,
    ProviderID,
    ProviderResult,
    QualityHint,
    RoutingDecision,
    Tier,
    normalize_quality,
)

logger = logging.getLogger(__name__)

Size = Tuple[int, int]


class RequestState(Enum):
    """Lifecycle of one enhancement request."""
    IDLE = "idle"
    DECIDING = "deciding"
    GATING = "gating"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({RequestState.SUCCEEDED, RequestState.EXHAUSTED, RequestState.CANCELLED})

_TRANSITIONS = {
    RequestState.IDLE: {RequestState.DECIDING, RequestState.CANCELLED},
    RequestState.DECIDING: {
        RequestState.GATING, RequestState.SUCCEEDED, RequestState.EXHAUSTED, RequestState.CANCELLED,
    },
    RequestState.GATING: {RequestState.EXECUTING, RequestState.EXHAUSTED, RequestState.CANCELLED},
    RequestState.EXECUTING: {RequestState.SUCCEEDED, RequestState.EXHAUSTED, RequestState.CANCELLED},
}


class RoutingEventType(Enum):
    DECIDED = "decided"
    PROVIDER_ATTEMPTED = "provider_attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RoutingEvent:
    """Notification delivered to routing listeners.

    ``provider`` is set for per-provider events. A FAILED event without a
    provider is the terminal failure of the request.
    """
    type: RoutingEventType
    request_id: str
    account_id: str
    task: EditTask
    state: RequestState
    decision: Optional[RoutingDecision] = None
    provider: Optional[ProviderID] = None
    attempt: int = 0
    error: Optional[Exception] = None
    result: Optional[ProviderResult] = None


Listener = Callable[[RoutingEvent], None]


class RequestContext:
    """State of a single request. Terminal states are final."""

    def __init__(self, account_id: str, task: EditTask, tier: Optional[Tier]):
        self.request_id = uuid.uuid4().hex[:12]
        self.account_id = account_id
        self.task = task
        self.tier = tier
        self.state = RequestState.IDLE
        self.decision: Optional[RoutingDecision] = None
        self.attempts = 0

    def transition(self, new_state: RequestState) -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the move is not allowed from the current state
        """
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(
                f"Request {self.request_id} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state


class RoutingEngine:
    """Routes enhancement requests across providers under credit limits.

    Holds no per-request state; concurrent requests are isolated and the
    ledger serialises their credit checks per account.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        ledger: UsageLedger,
        config: RouterConfig,
        listeners: Iterable[Listener] = (),
        cache: Optional[ResultCache] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._config = config
        self._listeners: List[Listener] = list(listeners)
        self._cache = cache

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def cache(self) -> Optional[ResultCache]:
        return self._cache

    async def aclose(self) -> None:
        """Close the registered adapters."""
        await self._registry.aclose()

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def decide_for_remaining(
        self,
        task: EditTask,
        tier: Tier,
        image_size: Optional[Size] = None,
        quality: QualityHint = STANDARD_QUALITY,
        remaining: Optional[Dict[CostClass, int]] = None,
    ) -> RoutingDecision:
        """Pure routing decision for known remaining credit.

        Args:
            task: Requested task
            tier: Account tier
            image_size: Input size, used to skip providers with size limits
            quality: Quality hint
            remaining: Credits left per billable class; the tier's full
                capacity when omitted

        Returns:
            Decision with cost class and ordered provider chain

        Raises:
            NoProvidersAvailable: If no registered provider can serve the request
        """
        route = self._config.route_for(task)
        quality = normalize_quality(quality)
        if remaining is None:
            remaining = {
                CostClass.BUDGET: self._config.capacity(tier, CostClass.BUDGET),
                CostClass.PREMIUM: self._config.capacity(tier, CostClass.PREMIUM),
            }

        capable = self._registry.capable_of(task)
        has_free_provider = any(not adapter.cost_class.billable for adapter in capable)
        has_premium_provider = any(adapter.cost_class is CostClass.PREMIUM for adapter in capable)

        cost_class = route.cost_class
        if (
            cost_class is CostClass.BUDGET
            and quality >= self._config.high_quality_threshold
            and has_premium_provider
            and remaining.get(CostClass.PREMIUM, 0) > 0
        ):
            cost_class = CostClass.PREMIUM
        if (
            cost_class.billable
            and route.on_device_fallback
            and has_free_provider
            and remaining.get(cost_class, 0) <= 0
        ):
            cost_class = CostClass.FREE

        chain = _build_chain(route, cost_class, capable, image_size)
        if not chain:
            raise NoProvidersAvailable(task, f"no provider can serve a {cost_class.value} request")

        return RoutingDecision(
            cost_class=cost_class,
            provider_chain=chain,
            will_consume_credit=cost_class.billable,
            estimated_quality=self._config.quality_of(chain[0]),
        )

    async def decide(
        self,
        account_id: str,
        task: EditTask,
        tier: Optional[Tier] = None,
        image_size: Optional[Size] = None,
        quality: QualityHint = STANDARD_QUALITY,
    ) -> RoutingDecision:
        """Routing decision against the account's current ledger state."""
        record = await self._ledger.record(account_id)
        effective_tier = tier or record.tier
        remaining = {
            cost_class: await self._ledger.remaining(account_id, cost_class, effective_tier)
            for cost_class in (CostClass.BUDGET, CostClass.PREMIUM)
        }
        return self.decide_for_remaining(task, effective_tier, image_size, quality, remaining)

    async def route(
        self,
        account_id: str,
        image,
        task: EditTask,
        tier: Optional[Tier] = None,
        prompt: Optional[str] = None,
        quality: QualityHint = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> ProviderResult:
        """Run one request from decision to result.

        Args:
            account_id: Account to charge
            image: Pillow image to enhance
            task: Requested task
            tier: Account tier, persisted to the ledger before deciding; the
                stored tier when omitted
            prompt: Optional free-text instruction
            quality: Quality hint
            target_size: Optional output size

        Returns:
            The first successful provider result, or a cached result for an
            identical earlier request

        Raises:
            InsufficientCredits: The gate check failed, or the commit lost a race
            AllProvidersFailed: Every provider in the chain failed; nothing charged
            NoProvidersAvailable: No provider can serve the task
            asyncio.CancelledError: The request was cancelled; nothing charged
        """
        quality = normalize_quality(quality)
        context = RequestContext(account_id, task, tier)
        image_size = getattr(image, "size", None)

        try:
            context.transition(RequestState.DECIDING)
            if tier is not None:
                await self._ledger.set_tier(account_id, tier)

            key = None
            if self._cache is not None and image_size is not None:
                key = await asyncio.to_thread(cache_key, image, task, prompt, quality, target_size)
                cached = self._cache.get(key)
                if cached is not None:
                    context.transition(RequestState.SUCCEEDED)
                    logger.info(
                        "Request %s for %s served from cache (%s)",
                        context.request_id, task.value, cached.provider_used.value,
                    )
                    self._emit(
                        context, RoutingEventType.SUCCEEDED, provider=cached.provider_used, result=cached
                    )
                    return cached

            try:
                decision = await self.decide(account_id, task, None, image_size, quality)
            except NoProvidersAvailable as e:
                self._fail(context, e)
                raise
            context.decision = decision
            logger.info(
                "Request %s for %s: %s via %s",
                context.request_id, task.value, decision.cost_class.value,
                [p.value for p in decision.provider_chain],
            )
            self._emit(context, RoutingEventType.DECIDED)

            context.transition(RequestState.GATING)
            decision = await self._gate(context, decision)

            context.transition(RequestState.EXECUTING)
            result = await self._execute(context, decision, image, prompt, quality, target_size)
            if key is not None:
                self._cache.put(key, result)
            return result
        except asyncio.CancelledError:
            if not context.state.is_terminal:
                context.transition(RequestState.CANCELLED)
                logger.info("Request %s cancelled in %s", context.request_id, task.value)
                self._emit(context, RoutingEventType.CANCELLED)
            raise

    async def _gate(self, context: RequestContext, decision: RoutingDecision) -> RoutingDecision:
        if not decision.will_consume_credit:
            return decision
        if await self._ledger.can_perform(context.account_id, decision.cost_class):
            return decision

        free_chain = tuple(
            provider_id for provider_id in decision.provider_chain
            if not self._adapter(provider_id).cost_class.billable
        )
        if free_chain:
            downgraded = replace(
                decision,
                cost_class=CostClass.FREE,
                provider_chain=free_chain,
                will_consume_credit=False,
                estimated_quality=self._config.quality_of(free_chain[0]),
            )
            context.decision = downgraded
            logger.info(
                "Request %s has no %s credit left; falling back to %s",
                context.request_id, decision.cost_class.value, [p.value for p in free_chain],
            )
            self._emit(context, RoutingEventType.DECIDED)
            return downgraded

        remaining = await self._ledger.remaining(context.account_id, decision.cost_class)
        error = InsufficientCredits(1, remaining, decision.cost_class)
        self._fail(context, error)
        raise error

    async def _execute(
        self,
        context: RequestContext,
        decision: RoutingDecision,
        image,
        prompt: Optional[str],
        quality: float,
        target_size: Optional[Size],
    ) -> ProviderResult:
        timeout = self._config.provider_timeout_seconds
        last_error: Optional[ProviderError] = None

        for provider_id in decision.provider_chain:
            adapter = self._adapter(provider_id)
            context.attempts += 1
            logger.info(
                "Request %s attempt %d: %s", context.request_id, context.attempts, provider_id.value
            )
            self._emit(context, RoutingEventType.PROVIDER_ATTEMPTED, provider=provider_id)

            started = time.monotonic()
            try:
                output = await asyncio.wait_for(
                    adapter.execute(image, context.task, prompt, quality, target_size),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                error = ProviderError.transient(f"timed out after {timeout:g}s", provider_id)
            except ProviderError as e:
                error = e
                if error.provider is None:
                    error.provider = provider_id
            except Exception as e:
                logger.exception(
                    "Request %s: %s raised an unexpected error", context.request_id, provider_id.value
                )
                error = ProviderError.permanent(f"unexpected {type(e).__name__}: {e}", provider_id)
                error.__cause__ = e
            else:
                elapsed = time.monotonic() - started
                return await self._commit(context, decision, adapter, output, elapsed)

            _log_provider_failure(context, provider_id, error)
            self._emit(context, RoutingEventType.FAILED, provider=provider_id, error=error)
            last_error = error

        exhausted = AllProvidersFailed(last_error, context.attempts)
        logger.info("Request %s exhausted all %d provider(s)", context.request_id, context.attempts)
        self._fail(context, exhausted)
        raise exhausted

    async def _commit(
        self,
        context: RequestContext,
        decision: RoutingDecision,
        adapter: ProviderAdapter,
        output,
        elapsed: float,
    ) -> ProviderResult:
        charged = decision.cost_class if adapter.cost_class.billable else CostClass.FREE
        if charged.billable:
            try:
                await self._ledger.consume(
                    context.account_id,
                    charged,
                    provider=adapter.provider_id.value,
                    task=context.task.value,
                )
            except CreditLimitExceeded as e:
                error = InsufficientCredits(1, 0, charged)
                logger.warning("Request %s lost its credit before commit: %s", context.request_id, e)
                self._fail(context, error)
                raise error from e

        result = ProviderResult(
            image=output,
            provider_used=adapter.provider_id,
            cost_class=charged,
            elapsed_time=elapsed,
        )
        context.transition(RequestState.SUCCEEDED)
        logger.info(
            "Request %s succeeded with %s (%s, %.2fs)",
            context.request_id, adapter.provider_id.value, charged.value, elapsed,
        )
        self._emit(context, RoutingEventType.SUCCEEDED, provider=adapter.provider_id, result=result)
        return result

    def _adapter(self, provider_id: ProviderID) -> ProviderAdapter:
        # Chains are built from the registry, so every id resolves
        return self._registry.get(provider_id)

    def _fail(self, context: RequestContext, error: EnhanceGuardError) -> None:
        context.transition(RequestState.EXHAUSTED)
        self._emit(context, RoutingEventType.FAILED, error=error)

    def _emit(
        self,
        context: RequestContext,
        event_type: RoutingEventType,
        provider: Optional[ProviderID] = None,
        error: Optional[Exception] = None,
        result: Optional[ProviderResult] = None,
    ) -> None:
        event = RoutingEvent(
            type=event_type,
            request_id=context.request_id,
            account_id=context.account_id,
            task=context.task,
            state=context.state,
            decision=context.decision,
            provider=provider,
            attempt=context.attempts,
            error=error,
            result=result,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Routing listener %r failed on %s", listener, event_type.value)


def _build_chain(
    route: TaskRoute,
    cost_class: CostClass,
    capable: List[ProviderAdapter],
    image_size: Optional[Size],
) -> Tuple[ProviderID, ...]:
    """Ordered providers for a decision.

    Billable providers at or below the decided class come first, exact class
    matches before cheaper ones, then by route priority and enum order. Free
    providers close the chain when the route allows on-device fallback.
    """
    usable = [adapter for adapter in capable if adapter.accepts_size(image_size)]
    free = [adapter.provider_id for adapter in usable if not adapter.cost_class.billable]
    if not cost_class.billable:
        return tuple(free)

    billable = [
        adapter for adapter in usable
        if adapter.cost_class.billable and adapter.cost_class.rank <= cost_class.rank
    ]
    billable.sort(key=lambda a: (
        a.cost_class is not cost_class,
        route.priority(a.provider_id),
        a.provider_id.ordinal,
    ))
    chain = [adapter.provider_id for adapter in billable]
    if route.on_device_fallback:
        chain.extend(free)
    return tuple(chain)


def _log_provider_failure(context: RequestContext, provider_id: ProviderID, error: ProviderError) -> None:
    if error.kind is ProviderErrorKind.PERMANENT:
        level = logging.ERROR
    else:
        level = logging.WARNING
    extra = f" (retry after {error.retry_after:g}s)" if error.retry_after is not None else ""
    logger.log(
        level,
        "Request %s: %s failed [%s]: %s%s",
        context.request_id, provider_id.value, error.kind.value, error, extra,
    )
