from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from warden.logging import get_logger
from warden.service.clock import Clock, RandomSource
from warden.service.errors import SessionExpiredError
from warden.storage.memory import MemoryStore
from warden.storage.models import Session

logger = get_logger(__name__)


class SessionManager:
    """Server-side session lifecycle: capped creation, idle expiry, revocation."""

    def __init__(
        self,
        store: MemoryStore,
        clock: Clock,
        rng: RandomSource,
        *,
        max_sessions: int = 5,
        idle_timeout: timedelta = timedelta(minutes=30),
    ) -> None:
        self.store = store
        self.clock = clock
        self.rng = rng
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout

    def create(
        self,
        account_id: str,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self.clock.now()
        session = Session(
            id=self.rng.token_urlsafe(32),
            account_id=account_id,
            created_at=now,
            last_activity=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            device_info=dict(device_info or {}),
        )
        evicted = self.store.create_session(session, max_active=self.max_sessions)
        if evicted:
            logger.info(
                "sessions_evicted_for_cap",
                account_id=account_id,
                evicted=len(evicted),
                max_sessions=self.max_sessions,
            )
        logger.info("session_created", account_id=account_id, session_id=session.id)
        return session

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, now=self.clock.now())

    def validate(self, session_id: str, account_id: str) -> Session:
        """Return the live session or raise SessionExpiredError.

        An idle session is deactivated before the error is raised.
        """
        session = self.store.get_session(session_id) if session_id else None
        if session is None or not session.is_active or session.account_id != account_id:
            raise SessionExpiredError("session is no longer valid")
        now = self.clock.now()
        if session.idle_for(now) > self.idle_timeout:
            self.store.deactivate_session(session_id, now=now)
            logger.info("session_idle_expired", account_id=account_id, session_id=session_id)
            raise SessionExpiredError("session expired due to inactivity")
        return session

    def invalidate(self, session_id: str) -> bool:
        return self.store.deactivate_session(session_id, now=self.clock.now())

    def invalidate_all(self, account_id: str) -> int:
        count = self.store.deactivate_account_sessions(account_id, now=self.clock.now())
        logger.info("sessions_invalidated", account_id=account_id, count=count)
        return count

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def active_sessions(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, active_only=True)

    def deactivate_idle(self) -> int:
        now = self.clock.now()
        return self.store.deactivate_idle_sessions(cutoff=now - self.idle_timeout, now=now)
