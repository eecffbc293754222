"""Fixed-window rate limiting per client and endpoint class.

Window state lives in a :class:`RateWindowStore` passed in by the owner
(the defense pipeline), never in module globals. The in-memory store
performs every read-modify-write under one lock so concurrent requests
cannot both take the last slot of a window.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Protocol

from agrilens.logging import get_logger
from agrilens.security.models import EndpointClass, RateDecision, RateWindow

log = get_logger("agrilens.security.rate_limiter")

Clock = Callable[[], float]


@dataclass(frozen=True)
class RatePolicy:
    """Budget for one endpoint class."""

    limit: int
    window_seconds: float
    skip_successful: bool = False

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {self.window_seconds}")


DEFAULT_POLICIES: dict[EndpointClass, RatePolicy] = {
    EndpointClass.AI: RatePolicy(limit=3, window_seconds=60.0),
    EndpointClass.ANALYSIS: RatePolicy(limit=3, window_seconds=60.0),
    EndpointClass.AUTH: RatePolicy(limit=5, window_seconds=60.0, skip_successful=True),
    EndpointClass.GENERAL: RatePolicy(limit=100, window_seconds=15 * 60.0),
}


class RateWindowStore(Protocol):
    """Storage for fixed windows keyed by (client key, endpoint class)."""

    def get(self, key: str, endpoint_class: EndpointClass) -> RateWindow | None: ...

    def increment(
        self,
        key: str,
        endpoint_class: EndpointClass,
        *,
        now: float,
        limit: int,
        window_seconds: float,
    ) -> tuple[RateWindow, bool]:
        """Atomically admit one request; returns (window snapshot, accepted)."""
        ...

    def decrement(
        self, key: str, endpoint_class: EndpointClass, *, window_start: float | None = None
    ) -> None: ...

    def reset(self, key: str, endpoint_class: EndpointClass | None = None) -> None: ...

    def evict_idle(self, now: float, idle_seconds: float) -> int: ...


class InMemoryRateWindowStore:
    """Process-local window table guarded by a single lock."""

    def __init__(self) -> None:
        self._windows: dict[tuple[str, EndpointClass], RateWindow] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def get(self, key: str, endpoint_class: EndpointClass) -> RateWindow | None:
        with self._lock:
            window = self._windows.get((key, endpoint_class))
            return replace(window) if window is not None else None

    def increment(
        self,
        key: str,
        endpoint_class: EndpointClass,
        *,
        now: float,
        limit: int,
        window_seconds: float,
    ) -> tuple[RateWindow, bool]:
        with self._lock:
            window = self._windows.get((key, endpoint_class))
            if window is None or window.expired(now):
                window = RateWindow(
                    key=key,
                    endpoint_class=endpoint_class,
                    window_start=now,
                    count=1,
                    limit=limit,
                    window_seconds=window_seconds,
                    last_seen=now,
                )
                self._windows[(key, endpoint_class)] = window
                return replace(window), True

            window.last_seen = now
            if window.count < limit:
                window.count += 1
                return replace(window), True
            return replace(window), False

    def decrement(
        self, key: str, endpoint_class: EndpointClass, *, window_start: float | None = None
    ) -> None:
        """Give back one slot; with *window_start*, only to that same window."""
        with self._lock:
            window = self._windows.get((key, endpoint_class))
            if window is None or window.count <= 0:
                return
            if window_start is not None and window.window_start != window_start:
                return
            window.count -= 1

    def reset(self, key: str, endpoint_class: EndpointClass | None = None) -> None:
        with self._lock:
            if endpoint_class is not None:
                self._windows.pop((key, endpoint_class), None)
                return
            for window_key in [k for k in self._windows if k[0] == key]:
                del self._windows[window_key]

    def evict_idle(self, now: float, idle_seconds: float) -> int:
        """Drop expired windows not touched for *idle_seconds*."""
        with self._lock:
            stale = [
                k
                for k, w in self._windows.items()
                if w.expired(now) and now - w.last_seen >= idle_seconds
            ]
            for window_key in stale:
                del self._windows[window_key]
            return len(stale)


class FixedWindowRateLimiter:
    """Accept or reject requests synchronously; never sleeps or queues."""

    def __init__(
        self,
        store: RateWindowStore,
        policies: Mapping[EndpointClass, RatePolicy] | None = None,
        *,
        clock: Clock = time.monotonic,
        sweep_interval: float = 300.0,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Window storage shared by every request.
            policies: Budget per endpoint class; missing classes use defaults.
            clock: Monotonic time source in seconds.
            sweep_interval: Minimum seconds between idle window evictions.
        """
        self._store = store
        self._policies = {**DEFAULT_POLICIES, **(policies or {})}
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def policy(self, endpoint_class: EndpointClass) -> RatePolicy:
        return self._policies[endpoint_class]

    def admit(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        """Count one request for ``(key, endpoint_class)``.

        Returns:
            A :class:`RateDecision`; rejected decisions carry
            ``retry_after`` seconds until the current window ends.
        """
        policy = self._policies[endpoint_class]
        now = self._clock()
        self._maybe_sweep(now)

        window, accepted = self._store.increment(
            key,
            endpoint_class,
            now=now,
            limit=policy.limit,
            window_seconds=policy.window_seconds,
        )
        if accepted:
            return RateDecision(
                accepted=True,
                limit=policy.limit,
                remaining=max(0, policy.limit - window.count),
                window_start=window.window_start,
            )

        retry_after = window.retry_after(now)
        log.debug(
            "rate_limit_rejected",
            key=key,
            endpoint_class=endpoint_class.value,
            retry_after=round(retry_after, 3),
        )
        return RateDecision(
            accepted=False,
            limit=policy.limit,
            remaining=0,
            retry_after=retry_after,
            window_start=window.window_start,
        )

    def release(
        self, key: str, endpoint_class: EndpointClass, *, window_start: float | None = None
    ) -> None:
        """Refund one slot, e.g. after a successful request on a skip-successful class.

        Passing the admitting decision's ``window_start`` keeps a refund from
        landing on a newer window that opened while the request was in flight.
        """
        self._store.decrement(key, endpoint_class, window_start=window_start)

    def reset(self, key: str, endpoint_class: EndpointClass | None = None) -> None:
        self._store.reset(key, endpoint_class)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        idle = max(p.window_seconds for p in self._policies.values())
        evicted = self._store.evict_idle(now, idle)
        if evicted:
            log.debug("rate_windows_evicted", count=evicted)
