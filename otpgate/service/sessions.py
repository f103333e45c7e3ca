from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from otpgate.logging import get_logger
from otpgate.service.errors import AuthenticationError
from otpgate.service.hashing import SecretHasher
from otpgate.storage.models import Session, utcnow
from otpgate.storage.protocols import SessionStore


@dataclass
class SessionTokens:
    session_token: str
    refresh_token: str
    session_id: str
    user_id: str


@dataclass
class ActiveSession:
    device_info: Optional[str]
    ip_address: Optional[str]


class SessionManager:
    """Multi-device session lifecycle: creation, eviction, logout and rotation.

    Plaintext tokens are returned to the caller once and never stored; the
    store only sees their keyed hashes.
    """

    def __init__(
        self,
        store: SessionStore,
        hasher: SecretHasher,
        *,
        session_ttl_minutes: int = 60 * 24,
        refresh_ttl_minutes: int = 60 * 24 * 7,
        max_active_sessions: int = 3,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.session_ttl_minutes = session_ttl_minutes
        self.refresh_ttl_minutes = refresh_ttl_minutes
        self.max_active_sessions = max_active_sessions
        self._now = now
        self.logger = get_logger(__name__)

    async def create(
        self,
        user_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SessionTokens:
        session_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(32)
        session = Session.new(
            user_id,
            self.hasher.hash(session_token),
            self.hasher.hash(refresh_token),
            session_ttl_minutes=self.session_ttl_minutes,
            refresh_ttl_minutes=self.refresh_ttl_minutes,
            device_info=device_info,
            ip_address=ip_address,
            now=self._now(),
        )
        await asyncio.to_thread(self.store.add_session, session)
        self.logger.info("session_created", session_id=session.id, user_id=user_id)
        await self._evict_overflow(user_id)
        return SessionTokens(
            session_token=session_token,
            refresh_token=refresh_token,
            session_id=session.id,
            user_id=user_id,
        )

    async def _evict_overflow(self, user_id: str) -> None:
        # Best effort: concurrent creates may briefly leave one extra session
        active = await asyncio.to_thread(self.store.list_active_sessions, user_id)
        if len(active) <= self.max_active_sessions:
            return
        oldest = min(active, key=lambda s: (s.created_at, s.id))
        if await asyncio.to_thread(self.store.deactivate_session, oldest.id):
            self.logger.info(
                "session_evicted",
                session_id=oldest.id,
                user_id=user_id,
                active_count=len(active),
            )

    async def logout(self, session_token: str) -> None:
        if not session_token:
            return
        session = await asyncio.to_thread(
            self.store.find_session_by_token_hash, self.hasher.hash(session_token)
        )
        if session is None or not session.active:
            return
        if await asyncio.to_thread(self.store.deactivate_session, session.id):
            self.logger.info("session_logged_out", session_id=session.id, user_id=session.user_id)

    async def find_refreshable(self, refresh_token: str) -> Session:
        """Return the active session a refresh token may rotate, without spending it."""
        if not refresh_token:
            raise AuthenticationError("invalid refresh token")
        session = await asyncio.to_thread(
            self.store.find_session_by_refresh_hash, self.hasher.hash(refresh_token)
        )
        if session is None or not session.active:
            raise AuthenticationError("invalid refresh token")
        if session.refresh_expires_at <= self._now():
            raise AuthenticationError("refresh token expired")
        return session

    async def rotate(self, session: Session) -> SessionTokens:
        """Spend ``session`` and issue a replacement for the same device.

        The old session is deactivated with a conditional update, so of two
        concurrent rotations of one session only one gets new tokens.
        """
        if not await asyncio.to_thread(self.store.deactivate_session, session.id):
            raise AuthenticationError("invalid refresh token")
        tokens = await self.create(session.user_id, session.device_info, session.ip_address)
        self.logger.info(
            "session_refreshed",
            old_session_id=session.id,
            session_id=tokens.session_id,
            user_id=session.user_id,
        )
        return tokens

    async def refresh(self, refresh_token: str) -> SessionTokens:
        session = await self.find_refreshable(refresh_token)
        return await self.rotate(session)

    async def list_active(self, user_id: str) -> List[ActiveSession]:
        sessions = await asyncio.to_thread(self.store.list_active_sessions, user_id)
        sessions.sort(key=lambda s: (s.created_at, s.id))
        return [ActiveSession(device_info=s.device_info, ip_address=s.ip_address) for s in sessions]

    async def resolve(self, session_token: str) -> Session:
        if not session_token:
            raise AuthenticationError("invalid session")
        session = await asyncio.to_thread(
            self.store.find_session_by_token_hash, self.hasher.hash(session_token)
        )
        if session is None or not session.active:
            raise AuthenticationError("invalid session")
        if session.session_expires_at <= self._now():
            await asyncio.to_thread(self.store.deactivate_session, session.id)
            self.logger.info("session_expired", session_id=session.id, user_id=session.user_id)
            raise AuthenticationError("session expired")
        return session
