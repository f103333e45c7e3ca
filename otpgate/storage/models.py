from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentifierKind(str, Enum):
    PHONE = "phone"
    EMAIL = "email"


class Role(str, Enum):
    """Closed set of roles; anything else in storage is rejected on load."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"

    @property
    def is_privileged(self) -> bool:
        return self in (Role.ADMIN, Role.SUPER_ADMIN)


@dataclass
class User:
    id: str
    role: Role = Role.USER
    phone: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    password_hash: Optional[str] = None
    status: bool = True
    is_forbidden: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def locked(self) -> bool:
        return not self.status or self.is_forbidden

    def matches(self, identifier: str, kind: IdentifierKind) -> bool:
        if kind == IdentifierKind.EMAIL:
            return self.email is not None and self.email.lower() == identifier.lower()
        return self.phone == identifier


@dataclass
class Challenge:
    id: str
    identifier: str
    identifier_kind: IdentifierKind
    created_at: datetime
    expires_at: datetime
    hashed_code: str
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    used: bool = False

    @classmethod
    def new(
        cls,
        identifier: str,
        identifier_kind: IdentifierKind,
        hashed_code: str,
        ttl_minutes: int = 5,
        *,
        now: Optional[datetime] = None,
    ) -> "Challenge":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identifier=identifier,
            identifier_kind=identifier_kind,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            hashed_code=hashed_code,
        )


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    session_token_hash: str
    refresh_token_hash: str
    session_expires_at: datetime
    refresh_expires_at: datetime
    active: bool = True
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        *,
        session_ttl_minutes: int = 60 * 24,
        refresh_ttl_minutes: int = 60 * 24 * 7,
        device_info: str | None = None,
        ip_address: str | None = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            session_token_hash=session_token_hash,
            refresh_token_hash=refresh_token_hash,
            session_expires_at=now + timedelta(minutes=session_ttl_minutes),
            refresh_expires_at=now + timedelta(minutes=refresh_ttl_minutes),
            device_info=device_info,
            ip_address=ip_address,
        )
