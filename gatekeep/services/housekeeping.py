from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from gatekeep.core.config import get_settings
from gatekeep.services.auth.local import LockoutTracker
from gatekeep.services.auth.oauth import OAuthFlowEngine
from gatekeep.services.auth.sessions import SessionManager
from gatekeep.services.crypto.keys import KeyRing


logger = logging.getLogger(__name__)


class Housekeeper:
    """Periodic sweep of expired sessions, tokens and PKCE entries plus scheduled key rotation.

    Runs as its own asyncio task so request handling never waits on it.
    """

    def __init__(
        self,
        *,
        oauth: OAuthFlowEngine,
        sessions: SessionManager,
        keyring: KeyRing,
        lockouts: LockoutTracker | None = None,
        interval_s: int | None = None,
    ) -> None:
        self._oauth = oauth
        self._sessions = sessions
        self._keyring = keyring
        self._lockouts = lockouts
        self._interval = max(1, int(interval_s or get_settings().housekeeping_interval_s))
        self._task: asyncio.Task[None] | None = None

    def run_cycle(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "sessions_expired": self._sessions.cleanup_expired_sessions(),
            "challenges_expired": self._oauth.purge_expired_challenges(),
            "tokens_expired": self._oauth.purge_expired_tokens(),
            "lockouts_cleared": self._lockouts.purge_stale() if self._lockouts else 0,
            "rotated_key_id": None,
        }
        try:
            rotated = self._keyring.rotate_if_due()
        except Exception:  # noqa: BLE001 - rotation is retried on the next cycle.
            logger.exception("housekeeping_rotation_failed")
        else:
            summary["rotated_key_id"] = rotated.id if rotated else None
        logger.debug(
            "housekeeping_cycle sessions=%s challenges=%s tokens=%s rotated=%s",
            summary["sessions_expired"],
            summary["challenges_expired"],
            summary["tokens_expired"],
            summary["rotated_key_id"],
        )
        return summary

    async def run_loop(self) -> None:
        while True:
            try:
                self.run_cycle()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("housekeeping cycle failed")
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_loop(), name="gatekeep-housekeeping")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
