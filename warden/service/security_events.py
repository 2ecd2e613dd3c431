from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional, Protocol

import httpx

from warden.logging import get_logger
from warden.service.clock import Clock
from warden.storage.memory import MemoryStore
from warden.storage.models import RiskLevel, SecurityEvent, SecurityEventType

logger = get_logger(__name__)


class AlertHook(Protocol):
    async def on_high_risk_event(self, event: SecurityEvent) -> None: ...


class LoggingAlertHook:
    """Default hook: surfaces high-risk events in the log stream."""

    async def on_high_risk_event(self, event: SecurityEvent) -> None:
        logger.warning(
            "security_alert",
            event_id=event.id,
            event_type=event.type.value,
            account_id=event.account_id,
            ip_addr=event.ip_addr,
        )


class WebhookAlertHook:
    """POSTs the event JSON to an alerting endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def on_high_risk_event(self, event: SecurityEvent) -> None:
        payload = {"alert": "high_risk_security_event", "event": event.to_dict()}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=2.0), follow_redirects=False
        ) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


class SecurityEventRecorder:
    """Append-only security audit trail plus login risk scoring."""

    def __init__(
        self,
        store: MemoryStore,
        clock: Clock,
        *,
        alert_hook: Optional[AlertHook] = None,
        lookback: timedelta = timedelta(hours=24),
        sample_size: int = 10,
        distinct_ip_threshold: int = 5,
        distinct_agent_threshold: int = 3,
        event_threshold: int = 10,
    ) -> None:
        self.store = store
        self.clock = clock
        self.alert_hook = alert_hook or LoggingAlertHook()
        self.lookback = lookback
        self.sample_size = sample_size
        self.distinct_ip_threshold = distinct_ip_threshold
        self.distinct_agent_threshold = distinct_agent_threshold
        self.event_threshold = event_threshold

    async def record(
        self,
        event_type: SecurityEventType,
        account_id: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        risk_level: RiskLevel = RiskLevel.LOW,
    ) -> SecurityEvent:
        """Persist an event. Store failures propagate; alert failures do not."""
        event = self.store.append_event(
            SecurityEvent(
                type=event_type,
                account_id=account_id or "unknown",
                timestamp=self.clock.now(),
                ip_addr=ip_addr or "unknown",
                user_agent=user_agent or "unknown",
                details=dict(details or {}),
                risk_level=risk_level,
            )
        )
        logger.info(
            "security_event_recorded",
            event_type=event_type.value,
            account_id=event.account_id,
            risk_level=risk_level.value,
        )
        if risk_level == RiskLevel.HIGH:
            await self._alert(event)
        return event

    async def _alert(self, event: SecurityEvent) -> None:
        try:
            await self.alert_hook.on_high_risk_event(event)
        except Exception as exc:
            logger.error(
                "security_alert_failed",
                event_id=event.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def classify_login_risk(self, account_id: str) -> RiskLevel:
        """Advisory score from the account's recent successful logins.

        Looks at up to ``sample_size`` ``login`` events inside the lookback
        window: too many distinct source IPs is high risk, too many distinct
        user agents or too many events is medium.
        """
        recent = self.store.list_events(
            account_id=account_id,
            types=[SecurityEventType.LOGIN],
            since=self.clock.now() - self.lookback,
            limit=self.sample_size,
        )
        distinct_ips = {e.ip_addr for e in recent}
        distinct_agents = {e.user_agent for e in recent}
        if len(distinct_ips) > self.distinct_ip_threshold:
            return RiskLevel.HIGH
        if len(distinct_agents) > self.distinct_agent_threshold:
            return RiskLevel.MEDIUM
        if len(recent) > self.event_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def count(
        self,
        *,
        account_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        within: Optional[timedelta] = None,
    ) -> int:
        since = self.clock.now() - within if within is not None else None
        return self.store.count_events(
            account_id=account_id,
            types=[event_type] if event_type else None,
            since=since,
        )
