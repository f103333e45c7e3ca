"""Storage contracts consumed by the challenge, session and auth services.

Store implementations are synchronous; the services call them through
``asyncio.to_thread``. Methods that change a single record in response to a
race-prone event (failed attempt, consumption, deactivation) must be atomic
at the storage level.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from otpgate.storage.models import Challenge, IdentifierKind, Role, Session, User


class ChallengeStore(Protocol):
    def add_challenge(self, challenge: Challenge) -> Challenge: ...

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]: ...

    def record_failed_attempt(
        self,
        challenge_id: str,
        attempted_at: datetime,
        max_attempts: Optional[int] = None,
    ) -> Optional[Challenge]:
        """Increment ``attempt_count`` of an unused challenge.

        Returns None if the challenge is missing or used, or if
        ``max_attempts`` is given and the count has already reached it.
        """
        ...

    def consume_challenge(
        self, challenge_id: str, max_attempts: Optional[int] = None
    ) -> bool:
        """Flip ``used`` to True; only the caller that performed the flip gets True.

        With ``max_attempts`` the flip is refused once the count has reached it.
        """
        ...


class SessionStore(Protocol):
    def add_session(self, session: Session) -> Session: ...

    def find_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def find_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def deactivate_session(self, session_id: str) -> bool:
        """Flip ``active`` to False; only the caller that performed the flip gets True."""
        ...


class IdentityStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_user(self, identifier: str, kind: IdentifierKind) -> Optional[User]: ...

    def create_user(
        self,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        role: Role = Role.USER,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        status: bool = True,
    ) -> User: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def update_user_identifier(
        self, user_id: str, identifier: str, kind: IdentifierKind
    ) -> Optional[User]:
        """Replace the phone or email of an identity; ``ConstraintViolation`` if taken."""
        ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...


class ContextCache(Protocol):
    """Short-lived key/value store with per-key TTL."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def remove(self, key: str) -> None: ...


__all__ = ["ChallengeStore", "SessionStore", "IdentityStore", "ContextCache"]
