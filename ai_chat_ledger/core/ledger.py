"""
Token usage ledger and quota enforcement.

Records token consumption per principal and answers how much a principal
has consumed in the current day or month.

Quota enforcement is a pre-flight gate only:
1. check_quota reads the daily and monthly sums
2. the caller performs the completion call
3. record_usage appends the tokens actually consumed

Nothing makes steps 1 and 3 atomic. Concurrent sends from one principal can
all pass the gate before any of them is recorded, so usage may overshoot a
limit by up to (in-flight requests x max_tokens_per_request).
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from ai_chat_ledger.config.loader import PlanLimits, PlanTier, get_plan_limits
from ai_chat_ledger.storage.models import UsageEvent
from ai_chat_ledger.storage.repository import UsageRepository
from .outcome import Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    """Result of a pre-flight quota check."""
    allowed: bool
    daily_usage: int
    monthly_usage: int
    daily_limit: int
    monthly_limit: int
    remaining_daily: int
    remaining_monthly: int

    @property
    def daily_exceeded(self) -> bool:
        return self.daily_usage >= self.daily_limit

    @property
    def monthly_exceeded(self) -> bool:
        return self.monthly_usage >= self.monthly_limit


def day_start(as_of: datetime) -> datetime:
    """Local midnight of the day containing ``as_of``."""
    return as_of.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(as_of: datetime) -> datetime:
    """Midnight on the first of the month containing ``as_of``."""
    return day_start(as_of).replace(day=1)


def evaluate_quota(daily_usage: int, monthly_usage: int, limits: PlanLimits) -> QuotaStatus:
    """Decide whether a principal may make another request.

    A request is allowed while both sums are strictly below their limits,
    even if the request itself will push usage past the boundary.

    Args:
        daily_usage: Tokens consumed since local midnight
        monthly_usage: Tokens consumed since the first of the month
        limits: Plan quotas to check against

    Returns:
        QuotaStatus with the verdict and the remaining allowances
    """
    return QuotaStatus(
        allowed=daily_usage < limits.daily_tokens and monthly_usage < limits.monthly_tokens,
        daily_usage=daily_usage,
        monthly_usage=monthly_usage,
        daily_limit=limits.daily_tokens,
        monthly_limit=limits.monthly_tokens,
        remaining_daily=max(0, limits.daily_tokens - daily_usage),
        remaining_monthly=max(0, limits.monthly_tokens - monthly_usage),
    )


class UsageLedger:
    """Per-principal token accounting over an append-only event store."""

    def __init__(
        self,
        repository: UsageRepository,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the ledger.

        Args:
            repository: Usage event storage
            clock: Source of the current local time
        """
        self.repository = repository
        self.clock = clock

    def record_usage(
        self,
        principal_id: str,
        tokens: int,
        model_id: str,
        request_type: str = "chat",
        occurred_at: Optional[datetime] = None
    ) -> Outcome:
        """Append a usage event without ever failing the caller.

        Usage tracking is best-effort and not transactional with the chat
        write, so every failure is logged and reported through the Outcome.
        Pass ``occurred_at`` to book the tokens at the same instant as the
        message that consumed them.

        Returns:
            Outcome carrying the stored event id on success
        """
        try:
            if not principal_id:
                raise ValueError("principal_id is required")
            if not model_id:
                raise ValueError("model_id is required")
            event = UsageEvent(
                principal_id=principal_id,
                tokens=int(tokens),
                occurred_at=occurred_at or self.clock(),
                model_id=model_id,
                request_type=request_type,
            )
            event_id = self.repository.insert(event)
        except Exception as e:
            logger.exception(
                "Failed to record usage for %s (%s tokens, model %s)",
                principal_id, tokens, model_id
            )
            return Outcome.failure(e)
        logger.debug("Recorded %d tokens for %s as %s", event.tokens, principal_id, event_id)
        return Outcome.success(event_id)

    def daily_usage(self, principal_id: str, as_of: Optional[datetime] = None) -> int:
        """Tokens consumed since local midnight of ``as_of``. Returns 0 on failure."""
        return self._usage_since(principal_id, day_start(as_of or self.clock()), "daily")

    def monthly_usage(self, principal_id: str, as_of: Optional[datetime] = None) -> int:
        """Tokens consumed since the first of the month. Returns 0 on failure."""
        return self._usage_since(principal_id, month_start(as_of or self.clock()), "monthly")

    def _usage_since(self, principal_id: str, since: datetime, period: str) -> int:
        try:
            return self.repository.sum_tokens_since(principal_id, since)
        except Exception:
            logger.exception("Error getting %s token usage for %s", period, principal_id)
            return 0

    def check_quota(
        self,
        principal_id: str,
        plan: Union[PlanTier, str],
        as_of: Optional[datetime] = None
    ) -> QuotaStatus:
        """Pre-flight quota check for a principal on a plan.

        The daily and monthly sums are independent aggregations and are
        fetched concurrently.

        Raises:
            ValueError: If the plan tier is unknown
        """
        limits = get_plan_limits(plan)
        as_of = as_of or self.clock()

        with ThreadPoolExecutor(max_workers=2) as pool:
            daily = pool.submit(self.daily_usage, principal_id, as_of)
            monthly = pool.submit(self.monthly_usage, principal_id, as_of)
            status = evaluate_quota(daily.result(), monthly.result(), limits)

        if not status.allowed:
            logger.info(
                "Quota reached for %s: daily %d/%d, monthly %d/%d",
                principal_id, status.daily_usage, status.daily_limit,
                status.monthly_usage, status.monthly_limit
            )
        return status
