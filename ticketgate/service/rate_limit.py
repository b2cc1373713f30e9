from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from ticketgate.logging import get_logger
from ticketgate.service.errors import RateLimitedError
from ticketgate.storage.counters import CounterStore
from ticketgate.storage.errors import StoreUnavailable
from ticketgate.storage.models import utcnow

logger = get_logger(__name__)

SLIDING = "sliding"
FIXED = "fixed"

_SCOPE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")


@dataclass(frozen=True)
class WindowPolicy:
    algorithm: str
    limit: int
    window: timedelta

    @property
    def window_ms(self) -> int:
        return int(self.window.total_seconds() * 1000)


def sliding_window(limit: int, window: timedelta) -> WindowPolicy:
    """Weighted two-bucket window; smooths bursts at bucket edges."""
    return WindowPolicy(SLIDING, limit, window)


def fixed_window(limit: int, window: timedelta) -> WindowPolicy:
    """Plain counter per bucket; allows up to 2x burst across an edge."""
    return WindowPolicy(FIXED, limit, window)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset_at: datetime
    key: str
    tier: str = "ip"

    def reset_seconds(self, now: Optional[datetime] = None) -> int:
        delta = (self.reset_at - (now or utcnow())).total_seconds()
        return max(0, math.ceil(delta))


def raise_if_limited(result: RateLimitResult) -> RateLimitResult:
    """Turn a failed check into ``RateLimitedError``; pass successes through."""
    if result.success:
        return result
    logger.warning(
        "rate_limit_exceeded",
        tier=result.tier,
        namespace=":".join(result.key.split(":")[:2]),
        limit=result.limit,
    )
    raise RateLimitedError(
        "Too many requests, please try again later",
        limit=result.limit,
        remaining=result.remaining,
        reset_seconds=result.reset_seconds(),
    )


class RateLimiter:
    """Counts requests per key in a shared counter store.

    ``limit_ip`` is the coarse single-tier guard. ``limit_email`` is tiered:
    the tight IP+email combo window runs first and, when it fails, the
    identity-only window is never touched, so its budget stays available to
    legitimate traffic from other networks.

    A counter store that errors or does not answer within ``timeout_seconds``
    counts as a rejection.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        timeout_seconds: float = 2.0,
        bypass_ips: Iterable[str] = (),
        combo_policy: Optional[WindowPolicy] = None,
        email_policy: Optional[WindowPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.counters = counters
        self.timeout_seconds = timeout_seconds
        self.bypass_ips = frozenset(bypass_ips)
        self.combo_policy = combo_policy or fixed_window(5, timedelta(minutes=5))
        self.email_policy = email_policy or sliding_window(10, timedelta(hours=1))
        self.clock = clock

    @staticmethod
    def _check_scope(scope: str) -> str:
        if not _SCOPE_PATTERN.match(scope):
            raise ValueError(f"invalid rate limit scope: {scope!r}")
        return scope

    async def limit(
        self, key: str, policy: WindowPolicy, *, tier: str = "ip"
    ) -> RateLimitResult:
        """Count one call against ``key`` and report whether it fits the window."""
        now = self.clock()
        now_ms = int(now.timestamp() * 1000)
        if policy.algorithm == SLIDING:
            call = self.counters.sliding_window(key, policy.limit, policy.window_ms, now_ms)
        else:
            call = self.counters.fixed_window(key, policy.limit, policy.window_ms, now_ms)
        try:
            success, remaining, reset_ms = await asyncio.wait_for(
                call, timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, StoreUnavailable) as exc:
            logger.error(
                "rate_limit_store_unavailable",
                tier=tier,
                algorithm=policy.algorithm,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitResult(
                success=False,
                limit=policy.limit,
                remaining=0,
                reset_at=now + policy.window,
                key=key,
                tier=tier,
            )
        return RateLimitResult(
            success=bool(success),
            limit=policy.limit,
            remaining=max(0, int(remaining)),
            reset_at=datetime.fromtimestamp(reset_ms / 1000, tz=timezone.utc),
            key=key,
            tier=tier,
        )

    def _bypass(self, ip: str, key: str, policy: WindowPolicy, tier: str) -> Optional[RateLimitResult]:
        if ip not in self.bypass_ips:
            return None
        return RateLimitResult(
            success=True,
            limit=policy.limit,
            remaining=policy.limit,
            reset_at=self.clock() + policy.window,
            key=key,
            tier=tier,
        )

    async def limit_ip(
        self,
        ip: str,
        scope: str,
        limit: int = 100,
        window: timedelta = timedelta(minutes=1),
    ) -> RateLimitResult:
        key = f"ip:{self._check_scope(scope)}:{ip}"
        policy = sliding_window(limit, window)
        bypassed = self._bypass(ip, key, policy, "ip")
        if bypassed:
            return bypassed
        return await self.limit(key, policy, tier="ip")

    async def limit_email(self, ip: str, email: str, scope: str) -> RateLimitResult:
        scope = self._check_scope(scope)
        email = email.strip().lower()
        combo_key = f"combo:{scope}:{ip}:{email}"
        bypassed = self._bypass(ip, combo_key, self.combo_policy, "combo")
        if bypassed:
            return bypassed
        combo = await self.limit(combo_key, self.combo_policy, tier="combo")
        if not combo.success:
            return combo
        return await self.limit(f"email:{scope}:{email}", self.email_policy, tier="email")


__all__ = [
    "RateLimitResult",
    "RateLimiter",
    "WindowPolicy",
    "fixed_window",
    "raise_if_limited",
    "sliding_window",
]
