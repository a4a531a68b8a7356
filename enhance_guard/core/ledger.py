"""
Per-account credit ledger.

The ledger is the only component allowed to change consumption counters.
Every read and write of a record is one atomic store update, run in a worker
thread under the account's lock, so a gate check and the later charge can
never both pass for the last credit, even across ledgers sharing a store.

Period resets are lazy: whenever a record is touched after its period has
ended, both counters drop to zero and ``period_start`` moves forward by whole
periods, keeping resets on a fixed schedule however late the read happens.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from enhance_guard.config.loader import UNLIMITED, CapacityConfig, ResetPeriod
from enhance_guard.storage.models import CreditChargeEvent, UsageRecord
from enhance_guard.storage.repository import UsageStore

from .errors import CreditLimitExceeded
from .types import CostClass, Tier, UsageSnapshot

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    """Tracks credit consumption per account, tier and cost class."""

    def __init__(
        self,
        store: UsageStore,
        capacities: Dict[Tier, CapacityConfig],
        reset_period: ResetPeriod = ResetPeriod(),
        clock: Clock = utc_now,
    ):
        """Initialize the ledger.

        Args:
            store: Key-value store holding one record per account
            capacities: Credits per period for each tier
            reset_period: Schedule on which consumption resets
            clock: Source of "now"; tests pass a fake clock
        """
        missing = set(Tier) - set(capacities)
        if missing:
            raise ValueError(f"Missing capacities for tiers: {sorted(t.value for t in missing)}")
        self._store = store
        self._capacities = dict(capacities)
        self._reset_period = reset_period
        self._clock = clock
        # Entries disappear once no request holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def reset_period(self) -> ResetPeriod:
        return self._reset_period

    def capacity(self, tier: Tier, cost_class: CostClass) -> int:
        """Credits available per period. FREE work is unlimited."""
        if not cost_class.billable:
            return UNLIMITED
        return self._capacities[tier].for_cost_class(cost_class)

    async def record(self, account_id: str) -> UsageRecord:
        """Current record for an account, after any due reset."""
        return await self._apply(account_id)

    async def remaining(
        self, account_id: str, cost_class: CostClass, tier: Optional[Tier] = None
    ) -> int:
        """Credits left this period.

        Args:
            account_id: Account to check
            cost_class: Cost class to check
            tier: Tier to measure against for a read-only preview; defaults
                to the account's stored tier
        """
        if not cost_class.billable:
            return UNLIMITED
        record = await self._apply(account_id)
        return self._remaining(record, cost_class, tier or record.tier)

    async def can_perform(self, account_id: str, cost_class: CostClass) -> bool:
        """Gate check against the stored tier.

        FREE always passes; billable classes need a credit left.
        """
        if not cost_class.billable:
            return True
        return await self.remaining(account_id, cost_class) > 0

    async def consume(
        self,
        account_id: str,
        cost_class: CostClass,
        provider: Optional[str] = None,
        task: Optional[str] = None,
    ) -> UsageRecord:
        """Commit one credit of ``cost_class`` against the stored tier.

        The check and the increment run as one atomic store update, so a
        concurrent request that spent the last credit, in this ledger or in
        another one sharing the store, makes this call fail.

        Returns:
            The updated record

        Raises:
            CreditLimitExceeded: If no credit remains; nothing is changed
        """
        if not cost_class.billable:
            return await self._apply(account_id)

        def charge(record: UsageRecord) -> UsageRecord:
            capacity = self.capacity(record.tier, cost_class)
            if self._remaining(record, cost_class, record.tier) <= 0:
                logger.warning(
                    "Refused %s charge for %s: %d/%d used",
                    cost_class.value, account_id, record.consumed(cost_class), capacity,
                )
                raise CreditLimitExceeded(account_id, cost_class, capacity, record.consumed(cost_class))
            return record.incremented(cost_class)

        async with self._lock_for(account_id):
            updated = await self._apply(account_id, charge, locked=True)
            await asyncio.to_thread(self._store.append_charge, CreditChargeEvent(
                timestamp=self._clock(),
                account_id=account_id,
                tier=updated.tier,
                cost_class=cost_class,
                provider=provider,
                task=task,
            ))
        logger.debug(
            "Charged %s credit to %s (%d/%d)",
            cost_class.value, account_id, updated.consumed(cost_class),
            self.capacity(updated.tier, cost_class),
        )
        return updated

    async def set_tier(self, account_id: str, tier: Tier) -> UsageRecord:
        """Apply a tier change from billing. Consumed counts are kept."""

        def change(record: UsageRecord) -> UsageRecord:
            if record.tier is tier:
                return record
            logger.info("Account %s moved from %s to %s", account_id, record.tier.value, tier.value)
            return UsageRecord(
                tier=tier,
                budget_consumed=record.budget_consumed,
                premium_consumed=record.premium_consumed,
                period_start=record.period_start,
            )

        return await self._apply(account_id, change)

    async def snapshot(self, account_id: str, tier: Optional[Tier] = None) -> UsageSnapshot:
        """Read-only usage summary for display."""
        record = await self._apply(account_id)
        effective_tier = tier or record.tier
        return UsageSnapshot(
            tier=effective_tier,
            budget_remaining=self._remaining(record, CostClass.BUDGET, effective_tier),
            premium_remaining=self._remaining(record, CostClass.PREMIUM, effective_tier),
            budget_capacity=self.capacity(effective_tier, CostClass.BUDGET),
            premium_capacity=self.capacity(effective_tier, CostClass.PREMIUM),
            period_start=record.period_start,
            next_reset=self._reset_period.next_boundary(record.period_start),
        )

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def _remaining(self, record: UsageRecord, cost_class: CostClass, tier: Tier) -> int:
        return max(0, self.capacity(tier, cost_class) - record.consumed(cost_class))

    async def _apply(
        self,
        account_id: str,
        change: Optional[Callable[[UsageRecord], UsageRecord]] = None,
        locked: bool = False,
    ) -> UsageRecord:
        """Load or lazily create a record, apply any due reset, then ``change``.

        Runs as one atomic store update in a worker thread. Nothing is
        written when the record is unchanged.
        """
        now = self._clock()

        def mutate(raw: Optional[Dict[str, Any]]) -> Tuple[Optional[Dict[str, Any]], UsageRecord]:
            record, dirty = self._current(account_id, raw, now)
            if change is not None:
                updated = change(record)
                if updated is not record:
                    record, dirty = updated, True
            return (record.to_dict() if dirty else None), record

        if locked:
            return await asyncio.to_thread(self._store.update, _record_key(account_id), mutate)
        async with self._lock_for(account_id):
            return await asyncio.to_thread(self._store.update, _record_key(account_id), mutate)

    def _current(
        self, account_id: str, raw: Optional[Dict[str, Any]], now: datetime
    ) -> Tuple[UsageRecord, bool]:
        """Record as of ``now`` and whether it differs from what is stored."""
        if raw is None:
            record = UsageRecord(
                tier=Tier.FREE,
                budget_consumed=0,
                premium_consumed=0,
                period_start=self._reset_period.period_start_for(now),
            )
            return record, True

        record = UsageRecord.from_dict(raw)
        period_start = record.period_start
        boundary = self._reset_period.next_boundary(period_start)
        if now < boundary:
            return record, False

        while now >= boundary:
            period_start = boundary
            boundary = self._reset_period.next_boundary(period_start)

        logger.info("Usage reset for %s; period now starts %s", account_id, period_start.isoformat())
        return record.reset_to(period_start), True


def _record_key(account_id: str) -> str:
    return f"usage:{account_id}"
