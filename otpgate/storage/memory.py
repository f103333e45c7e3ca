from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from otpgate.logging import get_logger
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import Challenge, IdentifierKind, Role, Session, User


class MemoryStore:
    """In-memory backing store implementing the challenge, session and identity contracts.

    Records are copied on the way in and out so callers never hold a
    reference into the store; all mutation happens under ``_data_lock``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.challenges: Dict[str, Challenge] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be nested inside public methods
        self._data_lock = threading.RLock()

    # identities
    def create_user(
        self,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        role: Role = Role.USER,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        status: bool = True,
    ) -> User:
        if not phone and not email:
            raise ConstraintViolation("phone or email is required", {"field": "identifier"})
        with self._data_lock:
            if phone and self._find_user(phone, IdentifierKind.PHONE):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if email and self._find_user(email, IdentifierKind.EMAIL):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                role=Role(role),
                phone=phone,
                email=email,
                username=username,
                password_hash=password_hash,
                status=status,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_user(self, identifier: str, kind: IdentifierKind) -> Optional[User]:
        return next((u for u in self.users.values() if u.matches(identifier, kind)), None)

    def find_user(self, identifier: str, kind: IdentifierKind) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(identifier, kind)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            return replace(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            user.password_hash = password_hash

    def update_user_identifier(
        self, user_id: str, identifier: str, kind: IdentifierKind
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            holder = self._find_user(identifier, kind)
            if holder and holder.id != user_id:
                raise ConstraintViolation(f"{kind.value} already exists", {"field": kind.value})
            if kind == IdentifierKind.EMAIL:
                user.email = identifier
            else:
                user.phone = identifier
            return replace(user)

    def set_user_status(
        self, user_id: str, *, status: Optional[bool] = None, is_forbidden: Optional[bool] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if status is not None:
                user.status = status
            if is_forbidden is not None:
                user.is_forbidden = is_forbidden
            return replace(user)

    # challenges
    def add_challenge(self, challenge: Challenge) -> Challenge:
        with self._data_lock:
            if challenge.id in self.challenges:
                raise ConstraintViolation("challenge already exists", {"id": challenge.id})
            self.challenges[challenge.id] = replace(challenge)
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def record_failed_attempt(
        self,
        challenge_id: str,
        attempted_at: datetime,
        max_attempts: Optional[int] = None,
    ) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.used:
                return None
            if max_attempts is not None and challenge.attempt_count >= max_attempts:
                return None
            challenge.attempt_count += 1
            challenge.last_attempt_at = attempted_at
            return replace(challenge)

    def consume_challenge(
        self, challenge_id: str, max_attempts: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.used:
                return False
            if max_attempts is not None and challenge.attempt_count >= max_attempts:
                return False
            challenge.used = True
            return True

    # sessions
    def add_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def find_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.session_token_hash == token_hash),
                None,
            )
            return replace(session) if session else None

    def find_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.refresh_token_hash == refresh_hash),
                None,
            )
            return replace(session) if session else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.active
            ]

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.active:
                return False
            session.active = False
            return True


class MemoryCache:
    """TTL dictionary standing in for Redis in tests and local development."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                self._entries.pop(key, None)
        return len(expired)
