"""Rate limit configuration: static defaults, operator overrides and per-call overrides."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Protocol

from clientcheck.trust.domain import audit
from clientcheck.trust.domain.audit import AuditRecord, AuditSink
from clientcheck.trust.domain.caching import ConfigCache
from clientcheck.trust.domain.errors import Unauthorized, ValidationError
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.store import bounded


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    max_attempts: int
    window_seconds: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    def to_payload(self) -> dict[str, int]:
        return {"max_attempts": self.max_attempts, "window_seconds": self.window_seconds}


def _minutes(max_attempts: int, minutes: int) -> RateLimitConfig:
    return RateLimitConfig(max_attempts=max_attempts, window_seconds=minutes * 60)


DEFAULT_RATE_LIMITS: Mapping[str, RateLimitConfig] = {
    "create_review": _minutes(5, 60),
    "upload_photo": _minutes(10, 60),
    "search_client": _minutes(50, 60),
    "create_client": _minutes(10, 60),
    "send_message": _minutes(100, 60),
    "api_request": _minutes(1000, 60),
    "login_attempt": _minutes(5, 15),
    "password_reset": _minutes(3, 60),
    "flag_review": _minutes(20, 60),
}

FALLBACK_RATE_LIMIT = _minutes(100, 60)

CONFIG_KEY_PREFIX = "rate_limit."
_NO_OVERRIDE: dict[str, Any] = {}


def validate_config(max_attempts: Any, window_seconds: Any) -> RateLimitConfig:
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise ValidationError("max_attempts", "max_attempts must be a positive integer")
    if not isinstance(window_seconds, int) or isinstance(window_seconds, bool) or window_seconds < 1:
        raise ValidationError("window_seconds", "window_seconds must be a positive integer")
    return RateLimitConfig(max_attempts=max_attempts, window_seconds=window_seconds)


class ConfigRepository(Protocol):
    """Key/value configuration store (JSON values)."""

    async def get_value(self, key: str) -> Mapping[str, Any] | None:
        ...

    async def set_value(self, key: str, value: Mapping[str, Any], *, updated_by: int | None) -> None:
        ...

    async def delete_value(self, key: str) -> None:
        ...


class InMemoryConfigRepository(ConfigRepository):
    def __init__(self) -> None:
        self.values: dict[str, dict[str, Any]] = {}
        self.reads = 0

    async def get_value(self, key: str) -> Mapping[str, Any] | None:
        self.reads += 1
        value = self.values.get(key)
        return dict(value) if value is not None else None

    async def set_value(self, key: str, value: Mapping[str, Any], *, updated_by: int | None) -> None:
        self.values[key] = dict(value)

    async def delete_value(self, key: str) -> None:
        self.values.pop(key, None)


class LimitResolver:
    """Resolves the effective limit for an action type.

    Precedence: per-call override, operator override (read through the cache),
    static defaults, then :data:`FALLBACK_RATE_LIMIT`. A per-call override may
    set one field only; the other falls back to the resolved value.
    """

    def __init__(
        self,
        repository: ConfigRepository,
        cache: ConfigCache,
        *,
        audit_sink: AuditSink | None = None,
        defaults: Mapping[str, RateLimitConfig] = DEFAULT_RATE_LIMITS,
        timeout_seconds: float | None = None,
    ) -> None:
        self._repo = repository
        self._cache = cache
        self._audit = audit_sink
        self._defaults = dict(defaults)
        self._timeout = timeout_seconds

    async def resolve(
        self,
        action_type: str,
        *,
        max_attempts: int | None = None,
        window_seconds: int | None = None,
    ) -> RateLimitConfig:
        if max_attempts is not None and window_seconds is not None:
            return validate_config(max_attempts, window_seconds)
        base = await self._configured(action_type)
        if max_attempts is None and window_seconds is None:
            return base
        return validate_config(
            max_attempts if max_attempts is not None else base.max_attempts,
            window_seconds if window_seconds is not None else base.window_seconds,
        )

    def default_for(self, action_type: str) -> RateLimitConfig:
        return self._defaults.get(action_type, FALLBACK_RATE_LIMIT)

    async def _configured(self, action_type: str) -> RateLimitConfig:
        key = f"{CONFIG_KEY_PREFIX}{action_type}"
        cached = await self._cache.get(key)
        if cached is None:
            stored = await bounded(self._repo.get_value(key), timeout=self._timeout, operation="limit_config_read")
            cached = dict(stored) if stored else _NO_OVERRIDE
            await self._cache.set(key, cached)
        if not cached:
            return self.default_for(action_type)
        return RateLimitConfig(
            max_attempts=int(cached["max_attempts"]),
            window_seconds=int(cached["window_seconds"]),
        )

    async def set_override(self, action_type: str, config: RateLimitConfig, *, actor: ActorContext) -> RateLimitConfig:
        if not actor.is_admin:
            raise Unauthorized()
        if not action_type:
            raise ValidationError("action_type")
        validated = validate_config(config.max_attempts, config.window_seconds)
        key = f"{CONFIG_KEY_PREFIX}{action_type}"
        await bounded(
            self._repo.set_value(key, validated.to_payload(), updated_by=actor.actor_id),
            timeout=self._timeout,
            operation="limit_config_write",
        )
        await bounded(self._cache.invalidate(key), timeout=self._timeout, operation="limit_cache_invalidate")
        await self._record(actor, action_type, {"action": "set", **validated.to_payload()})
        return validated

    async def clear_override(self, action_type: str, *, actor: ActorContext) -> RateLimitConfig:
        if not actor.is_admin:
            raise Unauthorized()
        key = f"{CONFIG_KEY_PREFIX}{action_type}"
        await bounded(self._repo.delete_value(key), timeout=self._timeout, operation="limit_config_write")
        await bounded(self._cache.invalidate(key), timeout=self._timeout, operation="limit_cache_invalidate")
        await self._record(actor, action_type, {"action": "clear"})
        return self.default_for(action_type)

    async def _record(self, actor: ActorContext, action_type: str, details: Mapping[str, Any]) -> None:
        if self._audit is None:
            return
        record = AuditRecord(
            actor_id=actor.actor_id,
            action_type=audit.LIMIT_CONFIGURE,
            target_type="rate_limit",
            target_id=action_type,
            details=dict(details),
        )
        await bounded(self._audit.append(record), timeout=self._timeout, operation="audit_append")
