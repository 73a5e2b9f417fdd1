"""Fixed-window rate limiting shared across actors and action types.

A window opens at the first admitted request for an (actor, action type) pair
and lasts ``window_seconds``; requests after ``window_start + window_seconds``
open a fresh window. Because windows are fixed rather than sliding, an actor
can land up to ``2 * max_attempts`` requests around a window boundary. That
imprecision is accepted.

Admission and counting are a single store operation: every returned check has
already been counted, so probing consumes quota.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Protocol, Sequence

from clientcheck.obs import metrics
from clientcheck.trust.domain import audit
from clientcheck.trust.domain.audit import AuditRecord, AuditSink
from clientcheck.trust.domain.errors import InvalidRequest, Unauthorized, Unavailable, ValidationError
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.limits import LimitResolver, RateLimitConfig
from clientcheck.trust.domain.store import bounded

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActorKind(str, Enum):
    USER = "user"
    EXTERNAL = "external"


@dataclass(frozen=True, slots=True)
class Actor:
    """Identity a counter is kept for: an internal user or an external (bot) id."""

    kind: ActorKind
    id: int

    @classmethod
    def user(cls, user_id: int) -> "Actor":
        return cls(ActorKind.USER, int(user_id))

    @classmethod
    def external(cls, external_id: int) -> "Actor":
        return cls(ActorKind.EXTERNAL, int(external_id))

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(slots=True)
class RateLimitRequest:
    action_type: str
    user_id: int | None = None
    external_id: int | None = None
    cost: int = 1
    max_attempts: int | None = None
    window_seconds: int | None = None

    def actor(self) -> Actor:
        if self.user_id is not None and self.external_id is not None:
            raise InvalidRequest("identifier", "exactly one of user_id or external_id must be provided")
        if self.user_id is not None:
            return Actor.user(self.user_id)
        if self.external_id is not None:
            return Actor.external(self.external_id)
        raise InvalidRequest("identifier", "either user_id or external_id must be provided")


@dataclass(slots=True)
class RateWindow:
    actor: Actor
    action_type: str
    window_start: datetime
    count: int
    expires_at: datetime
    id: int | None = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(slots=True)
class RateLimitCheck:
    allowed: bool
    remaining: int
    reset_at: datetime
    total_in_window: int
    degraded: bool = False


class FailPolicy(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(slots=True)
class ActionStats:
    action_type: str
    count: int
    blocked_count: int


@dataclass(slots=True)
class DailyActivity:
    day: date
    checks: int
    blocked: int


@dataclass(slots=True)
class RateLimitStats:
    total_windows: int
    total_requests: int
    total_blocked: int
    blocked_percentage: float
    top_actions: list[ActionStats] = field(default_factory=list)
    recent_activity: list[DailyActivity] = field(default_factory=list)


class CounterStore(Protocol):
    """Durable window records; at most one current window per (actor, action type)."""

    async def increment_live(self, actor: Actor, action_type: str, cost: int, now: datetime) -> RateWindow | None:
        """Add ``cost`` to the current window if it has not expired; ``None`` otherwise."""

    async def open_window(
        self,
        actor: Actor,
        action_type: str,
        cost: int,
        now: datetime,
        expires_at: datetime,
    ) -> RateWindow | None:
        """Conditionally insert a new current window; ``None`` when another one already exists."""

    async def retire_expired(self, actor: Actor, action_type: str, now: datetime) -> None:
        """Demote an expired current window to history so a new one can open."""

    async def find_live(self, actor: Actor, action_type: str, now: datetime) -> RateWindow | None:
        ...

    async def delete_for(self, actor: Actor, action_type: str) -> int:
        ...

    async def delete_expired(self, now: datetime) -> int:
        ...

    async def list_windows(self, *, start: datetime | None, end: datetime | None) -> Sequence[RateWindow]:
        ...


class InMemoryCounterStore(CounterStore):
    """Reference store used in tests and developer environments."""

    def __init__(self) -> None:
        self._current: dict[tuple[Actor, str], RateWindow] = {}
        self._windows: list[RateWindow] = []
        self._next_id = 1

    async def increment_live(self, actor: Actor, action_type: str, cost: int, now: datetime) -> RateWindow | None:
        window = self._current.get((actor, action_type))
        if window is None or not window.is_live(now):
            return None
        window.count += cost
        return replace(window)

    async def open_window(
        self,
        actor: Actor,
        action_type: str,
        cost: int,
        now: datetime,
        expires_at: datetime,
    ) -> RateWindow | None:
        key = (actor, action_type)
        if key in self._current:
            return None
        window = RateWindow(
            id=self._next_id,
            actor=actor,
            action_type=action_type,
            window_start=now,
            count=cost,
            expires_at=expires_at,
        )
        self._next_id += 1
        self._current[key] = window
        self._windows.append(window)
        return replace(window)

    async def retire_expired(self, actor: Actor, action_type: str, now: datetime) -> None:
        key = (actor, action_type)
        window = self._current.get(key)
        if window is not None and not window.is_live(now):
            del self._current[key]

    async def find_live(self, actor: Actor, action_type: str, now: datetime) -> RateWindow | None:
        window = self._current.get((actor, action_type))
        if window is None or not window.is_live(now):
            return None
        return replace(window)

    async def delete_for(self, actor: Actor, action_type: str) -> int:
        self._current.pop((actor, action_type), None)
        before = len(self._windows)
        self._windows = [w for w in self._windows if not (w.actor == actor and w.action_type == action_type)]
        return before - len(self._windows)

    async def delete_expired(self, now: datetime) -> int:
        expired = [w for w in self._windows if w.expires_at < now]
        if not expired:
            return 0
        self._windows = [w for w in self._windows if w.expires_at >= now]
        for key, window in list(self._current.items()):
            if window.expires_at < now:
                del self._current[key]
        return len(expired)

    async def list_windows(self, *, start: datetime | None, end: datetime | None) -> Sequence[RateWindow]:
        rows = self._windows
        if start is not None:
            rows = [w for w in rows if w.window_start >= start]
        if end is not None:
            rows = [w for w in rows if w.window_start <= end]
        return [replace(w) for w in rows]


class RateLimiter:
    """Admits or denies (actor, action type) pairs against the counter store."""

    def __init__(
        self,
        store: CounterStore,
        limits: LimitResolver,
        *,
        fail_open_actions: Iterable[str] = (),
        timeout_seconds: float | None = None,
        window_retries: int = 3,
        audit_sink: AuditSink | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._limits = limits
        self._fail_open = frozenset(fail_open_actions)
        self._timeout = timeout_seconds
        self._retries = max(1, window_retries)
        self._audit = audit_sink
        self._clock = clock

    def policy_for(self, action_type: str) -> FailPolicy:
        return FailPolicy.OPEN if action_type in self._fail_open else FailPolicy.CLOSED

    async def check(self, request: RateLimitRequest, *, timeout: float | None = None) -> RateLimitCheck:
        """Count the request and decide admission.

        Raises ``InvalidRequest`` for requests without exactly one identity and
        ``Unavailable`` when the store fails or exceeds the timeout.
        """

        actor = request.actor()
        if request.cost < 1:
            raise ValidationError("cost", "cost must be a positive integer")
        if not request.action_type:
            raise ValidationError("action_type")
        return await bounded(
            self._evaluate(actor, request),
            timeout=timeout if timeout is not None else self._timeout,
            operation="rate_limit_check",
        )

    async def admit(self, request: RateLimitRequest, *, timeout: float | None = None) -> RateLimitCheck:
        """Like :meth:`check`, but resolves store failures with the action's fail policy."""

        try:
            return await self.check(request, timeout=timeout)
        except Unavailable as exc:
            policy = self.policy_for(request.action_type)
            config = self._limits.default_for(request.action_type)
            metrics.RATE_LIMIT_DEGRADED.labels(action=request.action_type, policy=policy.value).inc()
            logger.warning(
                "rate limit store unavailable, applying fail policy",
                extra={"action_type": request.action_type, "policy": policy.value, "error": exc.detail},
            )
            allowed = policy is FailPolicy.OPEN
            return RateLimitCheck(
                allowed=allowed,
                remaining=config.max_attempts if allowed else 0,
                reset_at=self._clock() + config.window,
                total_in_window=0,
                degraded=True,
            )

    async def check_all(
        self,
        requests: Sequence[RateLimitRequest],
        *,
        timeout: float | None = None,
    ) -> list[RateLimitCheck]:
        """Evaluate requests in order and stop after the first denial.

        Later requests are not counted once an earlier one is denied; an error
        aborts the batch.
        """

        results: list[RateLimitCheck] = []
        for request in requests:
            result = await self.check(request, timeout=timeout)
            results.append(result)
            if not result.allowed:
                break
        return results

    async def status(self, actor: Actor, action_type: str) -> RateLimitCheck:
        """Report the current window without consuming quota."""

        config = await self._limits.resolve(action_type)
        now = self._clock()
        window = await bounded(
            self._store.find_live(actor, action_type, now),
            timeout=self._timeout,
            operation="rate_limit_status",
        )
        if window is None:
            return RateLimitCheck(
                allowed=True,
                remaining=config.max_attempts,
                reset_at=now + config.window,
                total_in_window=0,
            )
        return RateLimitCheck(
            allowed=window.count < config.max_attempts,
            remaining=max(0, config.max_attempts - window.count),
            reset_at=window.expires_at,
            total_in_window=window.count,
        )

    async def reset(self, actor: Actor, action_type: str, *, performed_by: ActorContext) -> int:
        if not performed_by.is_elevated:
            raise Unauthorized()
        removed = await bounded(
            self._store.delete_for(actor, action_type),
            timeout=self._timeout,
            operation="rate_limit_reset",
        )
        if self._audit is not None:
            record = AuditRecord(
                actor_id=performed_by.actor_id,
                action_type=audit.LIMIT_RESET,
                target_type="rate_limit",
                target_id=f"{actor.key}:{action_type}",
                details={"removed": removed},
            )
            await bounded(self._audit.append(record), timeout=self._timeout, operation="audit_append")
        logger.info("rate limit reset", extra={"actor": actor.key, "action_type": action_type, "removed": removed})
        return removed

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete windows that expired before ``now``; admission never depends on this."""

        removed = await bounded(
            self._store.delete_expired(now or self._clock()),
            timeout=self._timeout,
            operation="rate_window_gc",
        )
        if removed:
            metrics.RATE_WINDOW_GC_REMOVED.inc(removed)
        return removed

    async def statistics(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        activity_days: int = 7,
    ) -> RateLimitStats:
        windows = await bounded(
            self._store.list_windows(start=start, end=end),
            timeout=self._timeout,
            operation="rate_limit_statistics",
        )
        limits: dict[str, RateLimitConfig] = {}
        per_action: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for window in windows:
            if window.action_type not in limits:
                limits[window.action_type] = await self._limits.resolve(window.action_type)
            blocked = max(0, window.count - limits[window.action_type].max_attempts)
            per_action[window.action_type][0] += window.count
            per_action[window.action_type][1] += blocked

        top_actions = sorted(
            (ActionStats(action_type=name, count=vals[0], blocked_count=vals[1]) for name, vals in per_action.items()),
            key=lambda item: item.count,
            reverse=True,
        )
        total_requests = sum(item.count for item in top_actions)
        total_blocked = sum(item.blocked_count for item in top_actions)

        since = self._clock() - timedelta(days=activity_days)
        daily: dict[date, list[int]] = defaultdict(lambda: [0, 0])
        for window in windows:
            if window.window_start < since:
                continue
            day = window.window_start.date()
            daily[day][0] += window.count
            daily[day][1] += max(0, window.count - limits[window.action_type].max_attempts)

        return RateLimitStats(
            total_windows=len(windows),
            total_requests=total_requests,
            total_blocked=total_blocked,
            blocked_percentage=(total_blocked / total_requests) * 100 if total_requests else 0.0,
            top_actions=top_actions[:10],
            recent_activity=[DailyActivity(day=d, checks=v[0], blocked=v[1]) for d, v in sorted(daily.items())],
        )

    async def _evaluate(self, actor: Actor, request: RateLimitRequest) -> RateLimitCheck:
        config = await self._limits.resolve(
            request.action_type,
            max_attempts=request.max_attempts,
            window_seconds=request.window_seconds,
        )
        window = await self._consume(actor, request.action_type, request.cost, config)
        allowed = window.count <= config.max_attempts
        metrics.observe_decision(request.action_type, allowed)
        if not allowed:
            logger.info(
                "rate limit exceeded",
                extra={
                    "actor": actor.key,
                    "action_type": request.action_type,
                    "count": window.count,
                    "max_attempts": config.max_attempts,
                },
            )
        return RateLimitCheck(
            allowed=allowed,
            remaining=max(0, config.max_attempts - window.count),
            reset_at=window.expires_at,
            total_in_window=window.count,
        )

    async def _consume(self, actor: Actor, action_type: str, cost: int, config: RateLimitConfig) -> RateWindow:
        for _ in range(self._retries):
            now = self._clock()
            window = await self._store.increment_live(actor, action_type, cost, now)
            if window is not None:
                return window
            await self._store.retire_expired(actor, action_type, now)
            window = await self._store.open_window(actor, action_type, cost, now, now + config.window)
            if window is not None:
                return window
            # Lost the race to open the window; count against the winner's row.
        raise Unavailable("rate_window_contention")
