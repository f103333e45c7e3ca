from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, List, Optional, TypeVar

from otpgate.logging import correlation_id_var, get_correlation_id, get_logger, set_correlation_id
from otpgate.service.challenges import (
    FLOW_ADMIN,
    FLOW_CHANGE_CURRENT,
    FLOW_SELF_SERVICE,
    FLOW_UPDATE_TO_NEW,
    IDENTIFIER_CHANGE_FLOWS,
    LOGIN_FLOWS,
    OtpChallengeManager,
    VerifiedIdentifier,
)
from otpgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from otpgate.service.hashing import SecretHasher
from otpgate.service.identifiers import validate_identifier
from otpgate.service.sessions import ActiveSession, SessionManager, SessionTokens
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import IdentifierKind, Role, User
from otpgate.storage.protocols import IdentityStore

T = TypeVar("T")


class IdentifierChangePurpose(str, Enum):
    # Prove ownership of the identifier currently on the account
    CHANGE_CURRENT = FLOW_CHANGE_CURRENT
    # Prove ownership of the identifier that will replace it
    UPDATE_TO_NEW = FLOW_UPDATE_TO_NEW


@dataclass
class AuthResult:
    session_token: str
    refresh_token: str
    role: Role


@dataclass
class AuthContext:
    user_id: str
    role: Role
    session_id: str


async def _bounded(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    # One correlation id per operation unless the caller already bound one
    fresh = get_correlation_id() is None
    if fresh:
        set_correlation_id()
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    finally:
        if fresh:
            correlation_id_var.set(None)


class AuthService:
    """Self-service and administrative OTP login on top of the challenge and
    session managers, plus OTP-confirmed changes of an account's identifier.

    Every public operation accepts an optional ``timeout`` in seconds. Writes
    completed before a timeout or cancellation are kept.
    """

    def __init__(
        self,
        identities: IdentityStore,
        challenges: OtpChallengeManager,
        sessions: SessionManager,
        hasher: SecretHasher,
    ) -> None:
        self.identities = identities
        self.challenges = challenges
        self.sessions = sessions
        self.hasher = hasher
        self.logger = get_logger(__name__)

    async def _find_identity(self, identifier: str, kind: IdentifierKind) -> Optional[User]:
        return await asyncio.to_thread(self.identities.find_user, identifier, kind)

    async def _get_identity(self, user_id: str) -> Optional[User]:
        return await asyncio.to_thread(self.identities.get_user, user_id)

    # challenge issue
    async def issue_self_service_challenge(
        self, identifier: str, *, timeout: Optional[float] = None
    ) -> str:
        return await _bounded(self._issue_self_service(identifier), timeout)

    async def _issue_self_service(self, identifier: str) -> str:
        identifier, kind = validate_identifier(identifier)
        user = await self._find_identity(identifier, kind)
        if user is not None:
            if user.locked:
                self.logger.warning("otp_issue_denied", user_id=user.id, reason="locked")
                raise ForbiddenError("account is locked")
            if user.role != Role.USER:
                self.logger.warning("otp_issue_denied", user_id=user.id, reason="role")
                raise ForbiddenError("account must use the administrative login")
        return await self.challenges.issue(identifier, kind, flow=FLOW_SELF_SERVICE)

    async def issue_admin_challenge(
        self, identifier: str, password: str, *, timeout: Optional[float] = None
    ) -> str:
        return await _bounded(self._issue_admin(identifier, password), timeout)

    async def _issue_admin(self, identifier: str, password: str) -> str:
        identifier, kind = validate_identifier(identifier)
        user = await self._find_identity(identifier, kind)
        if user is None:
            raise NotFoundError("account not found")
        password_ok = await asyncio.to_thread(
            self.hasher.verify_password, user.password_hash, password or ""
        )
        if not password_ok:
            self.logger.warning("admin_otp_denied", user_id=user.id, reason="password")
            raise ForbiddenError("invalid credentials")
        if user.locked:
            self.logger.warning("admin_otp_denied", user_id=user.id, reason="locked")
            raise ForbiddenError("account is locked")
        if not user.role.is_privileged:
            self.logger.warning("admin_otp_denied", user_id=user.id, reason="role")
            raise ForbiddenError("administrator role required")
        return await self.challenges.issue(identifier, kind, flow=FLOW_ADMIN)

    async def resend_challenge(self, context_id: str, *, timeout: Optional[float] = None) -> str:
        return await _bounded(self.challenges.resend(context_id, flows=LOGIN_FLOWS), timeout)

    # verification
    async def verify_challenge(
        self,
        context_id: str,
        code: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AuthResult:
        return await _bounded(
            self._verify(context_id, code, device_info, ip_address), timeout
        )

    async def _verify(
        self,
        context_id: str,
        code: str,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> AuthResult:
        verified = await self.challenges.verify(context_id, code, flows=LOGIN_FLOWS)
        user = await self._resolve_identity(verified)
        if user.locked:
            self.logger.warning("login_denied", user_id=user.id, reason="locked")
            raise ForbiddenError("account is locked")
        tokens = await self.sessions.create(user.id, device_info, ip_address)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=tokens.session_id,
            flow=verified.flow,
        )
        return self._result(tokens, user.role)

    async def _resolve_identity(self, verified: VerifiedIdentifier) -> User:
        user = await self._find_identity(verified.identifier, verified.kind)
        if user is not None:
            return user
        if verified.flow == FLOW_ADMIN:
            raise NotFoundError("account not found")
        fields: dict[str, Any] = {"role": Role.USER, "status": True}
        if verified.kind == IdentifierKind.EMAIL:
            fields["email"] = verified.identifier
        else:
            fields["phone"] = verified.identifier
        try:
            user = await asyncio.to_thread(lambda: self.identities.create_user(**fields))
        except ConstraintViolation:
            # Created by a concurrent verify for the same identifier
            user = await self._find_identity(verified.identifier, verified.kind)
            if user is None:
                raise
            return user
        self.logger.info("identity_created", user_id=user.id, kind=verified.kind.value)
        return user

    @staticmethod
    def _result(tokens: SessionTokens, role: Role) -> AuthResult:
        return AuthResult(
            session_token=tokens.session_token,
            refresh_token=tokens.refresh_token,
            role=role,
        )

    # sessions
    async def logout(self, session_token: str, *, timeout: Optional[float] = None) -> None:
        await _bounded(self.sessions.logout(session_token), timeout)

    async def refresh(self, refresh_token: str, *, timeout: Optional[float] = None) -> AuthResult:
        return await _bounded(self._refresh(refresh_token), timeout)

    async def _refresh(self, refresh_token: str) -> AuthResult:
        session = await self.sessions.find_refreshable(refresh_token)
        # Identity checks run before the refresh token is spent
        user = await self._get_identity(session.user_id)
        if user is None:
            raise AuthenticationError("invalid refresh token")
        if user.locked:
            self.logger.warning("refresh_denied", user_id=user.id, reason="locked")
            raise ForbiddenError("account is locked")
        tokens = await self.sessions.rotate(session)
        return self._result(tokens, user.role)

    async def list_active_sessions(
        self, user_id: str, *, timeout: Optional[float] = None
    ) -> List[ActiveSession]:
        return await _bounded(self.sessions.list_active(user_id), timeout)

    async def authenticate(
        self, session_token: str, *, timeout: Optional[float] = None
    ) -> AuthContext:
        return await _bounded(self._authenticate(session_token), timeout)

    async def _authenticate(self, session_token: str) -> AuthContext:
        session = await self.sessions.resolve(session_token)
        user = await self._get_identity(session.user_id)
        if user is None:
            raise NotFoundError("account not found")
        if user.locked:
            raise ForbiddenError("account is locked")
        return AuthContext(user_id=user.id, role=user.role, session_id=session.id)

    # identifier change
    async def _active_identity(self, user_id: str) -> User:
        user = await self._get_identity(user_id)
        if user is None:
            raise NotFoundError("account not found")
        if user.locked:
            raise ForbiddenError("account is locked")
        return user

    async def request_identifier_change_otp(
        self,
        user_id: str,
        identifier: str,
        purpose: IdentifierChangePurpose,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        return await _bounded(
            self._request_identifier_change(user_id, identifier, purpose), timeout
        )

    async def _request_identifier_change(
        self, user_id: str, identifier: str, purpose: IdentifierChangePurpose
    ) -> str:
        purpose = IdentifierChangePurpose(purpose)
        user = await self._active_identity(user_id)
        identifier, kind = validate_identifier(identifier)
        if purpose == IdentifierChangePurpose.CHANGE_CURRENT:
            if not user.matches(identifier, kind):
                raise ForbiddenError("identifier does not belong to this account")
        else:
            holder = await self._find_identity(identifier, kind)
            if holder is not None:
                reason = "unchanged" if holder.id == user.id else "in use"
                raise ValidationError(
                    f"identifier is already {reason}", detail={"kind": kind.value}
                )
        return await self.challenges.issue(
            identifier, kind, flow=purpose.value, user_id=user.id
        )

    async def confirm_identifier_change(
        self,
        user_id: str,
        context_id: str,
        code: str,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        """Verify an identifier-change code issued to ``user_id``.

        For ``UPDATE_TO_NEW`` the verified identifier replaces the account's
        phone or email; ``CHANGE_CURRENT`` only confirms ownership.
        """
        return await _bounded(self._confirm_identifier_change(user_id, context_id, code), timeout)

    async def _confirm_identifier_change(self, user_id: str, context_id: str, code: str) -> User:
        verified = await self.challenges.verify(
            context_id, code, flows=IDENTIFIER_CHANGE_FLOWS, user_id=user_id
        )
        user = await self._active_identity(user_id)
        if verified.flow != FLOW_UPDATE_TO_NEW:
            self.logger.info("identifier_ownership_confirmed", user_id=user.id)
            return user
        try:
            updated = await asyncio.to_thread(
                self.identities.update_user_identifier,
                user.id,
                verified.identifier,
                verified.kind,
            )
        except ConstraintViolation as exc:
            raise ValidationError(
                "identifier is already in use", detail={"kind": verified.kind.value}
            ) from exc
        if updated is None:
            raise NotFoundError("account not found")
        self.logger.info("identifier_updated", user_id=user.id, kind=verified.kind.value)
        return updated

    async def resend_identifier_change_otp(
        self, user_id: str, context_id: str, *, timeout: Optional[float] = None
    ) -> str:
        return await _bounded(
            self.challenges.resend(
                context_id, flows=IDENTIFIER_CHANGE_FLOWS, user_id=user_id
            ),
            timeout,
        )
