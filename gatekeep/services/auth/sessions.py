from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
from uuid import uuid4

from gatekeep.core.errors import SessionExpiredError
from gatekeep.domain.models import Identity, Session, SessionMetadata, Token


logger = logging.getLogger(__name__)

SESSION_PREFIX = "gks_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    return f"{SESSION_PREFIX}{uuid4().hex}"


class SessionManager:
    """In-memory login sessions for a single process.

    Expiry is lazy: ``validate_session`` destroys a session whose
    ``expires_at`` has passed, and ``cleanup_expired_sessions`` is the periodic
    sweep of the same rule. Sessions without a provider token live for
    ``timeout_minutes``.
    """

    def __init__(self, *, timeout_minutes: int = 480, max_concurrent: int = 5) -> None:
        self._timeout = timedelta(minutes=timeout_minutes)
        self._max_concurrent = max_concurrent
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def configure(self, *, timeout_minutes: int, max_concurrent: int) -> None:
        with self._lock:
            self._timeout = timedelta(minutes=timeout_minutes)
            self._max_concurrent = max_concurrent

    def create_session(
        self,
        provider_id: str,
        identity: Identity,
        token: Token | None = None,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        now = _utc_now()
        with self._lock:
            expires_at = token.expires_at if token is not None else now + self._timeout
            last_login = max(
                (s.created_at for s in self._sessions.values() if s.user_id == identity.id),
                default=None,
            )
            base = metadata or SessionMetadata()
            session = Session(
                id=generate_session_id(),
                provider=provider_id,
                user_id=identity.id,
                identity=identity,
                created_at=now,
                expires_at=expires_at,
                metadata=SessionMetadata(
                    ip_address=base.ip_address,
                    user_agent=base.user_agent,
                    device=base.device,
                    location=base.location,
                    is_new_user=base.is_new_user,
                    last_login=base.last_login or last_login,
                    extra=dict(base.extra),
                ),
                token=token,
            )
            self._sessions[session.id] = session
            evicted = self._enforce_limit(identity.id)
        for session_id in evicted:
            logger.info("session_evicted session=%s user=%s", session_id, identity.id)
        logger.info("session_created session=%s provider=%s user=%s", session.id, provider_id, identity.id)
        return session

    def _enforce_limit(self, user_id: str) -> list[str]:
        # Caller holds the lock; oldest sessions go first.
        owned = sorted(
            (s for s in self._sessions.values() if s.user_id == user_id),
            key=lambda s: s.created_at,
        )
        overflow = len(owned) - self._max_concurrent
        evicted: list[str] = []
        for session in owned[: max(overflow, 0)]:
            del self._sessions[session.id]
            evicted.append(session.id)
        return evicted

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def validate_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.expires_at <= _utc_now():
                del self._sessions[session_id]
                expired = True
            else:
                expired = False
        if expired:
            logger.info("session_expired session=%s", session_id)
            return False
        return True

    def require_session(self, session_id: str) -> Session:
        if not self.validate_session(session_id):
            raise SessionExpiredError("Session expired or unknown", session_id=session_id)
        session = self.get_session(session_id)
        if session is None:
            raise SessionExpiredError("Session expired or unknown", session_id=session_id)
        return session

    def destroy_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("session_destroyed session=%s", session_id)
        return removed

    def cleanup_expired_sessions(self) -> int:
        now = _utc_now()
        with self._lock:
            expired = [sid for sid, session in self._sessions.items() if session.expires_at <= now]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info("sessions_swept count=%s", len(expired))
        return len(expired)

    def get_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def get_sessions_by_provider(self, provider_id: str) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.provider == provider_id]

    def get_sessions_by_user(self, user_id: str) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == user_id]
