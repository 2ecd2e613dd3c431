from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.clock import Clock, RandomSource, SystemClock
from warden.service.email import NotificationDispatcher
from warden.service.rate_limit import MemoryRateLimiter, RateLimiter, RedisRateLimiter
from warden.service.security_events import AlertHook, LoggingAlertHook, WebhookAlertHook
from warden.storage.memory import MemoryStore
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_rate_limiter(settings: Settings, clock: Clock) -> RateLimiter:
    """Redis-backed limiter when REDIS_URL answers, otherwise a per-process one."""
    if not settings.redis_url:
        return MemoryRateLimiter(clock)
    try:
        cache = RedisCache(settings.redis_url)
        cache.verify_connection()
    except Exception as exc:
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error_type=type(exc).__name__,
            message="Redis unreachable; rate limits are enforced per process only",
        )
        return MemoryRateLimiter(clock)
    logger.info("redis_rate_limiter_enabled", redis_url=_mask_url_password(settings.redis_url))
    return RedisRateLimiter(cache, clock)


def build_alert_hook(settings: Settings) -> AlertHook:
    if settings.alert_webhook_url:
        return WebhookAlertHook(settings.alert_webhook_url)
    return LoggingAlertHook()


def build_auth_service(
    settings: Optional[Settings] = None,
    *,
    store: Optional[MemoryStore] = None,
    clock: Optional[Clock] = None,
    rng: Optional[RandomSource] = None,
    notifier: Optional[NotificationDispatcher] = None,
    rate_limiter: Optional[RateLimiter] = None,
    alert_hook: Optional[AlertHook] = None,
) -> AuthService:
    """Wire an AuthService and its collaborators from settings.

    Every collaborator can be passed in; anything omitted is built from the
    settings. Each call returns an independent service.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store or MemoryStore(encryption_key=settings.encryption_key_material)
    return AuthService(
        store,
        settings,
        clock=clock,
        rng=rng,
        notifier=notifier,
        rate_limiter=rate_limiter or build_rate_limiter(settings, clock),
        alert_hook=alert_hook or build_alert_hook(settings),
    )
