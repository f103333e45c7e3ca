from __future__ import annotations

import asyncio
import json
import math
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Collection, NoReturn, Optional

from otpgate.logging import get_logger
from otpgate.service.errors import (
    AttemptsExhaustedError,
    ChallengeExpiredError,
    InvalidCodeError,
    NotFoundError,
)
from otpgate.service.hashing import SecretHasher
from otpgate.service.identifiers import validate_identifier
from otpgate.service.notifier import Notifier
from otpgate.storage.models import Challenge, IdentifierKind, utcnow
from otpgate.storage.protocols import ChallengeStore, ContextCache

CONTEXT_KEY_PREFIX = "otp_context:"
# Context outlives the challenge slightly so an expired code reports as expired
CONTEXT_TTL_GRACE_SECONDS = 5

FLOW_SELF_SERVICE = "self_service"
FLOW_ADMIN = "admin"
FLOW_CHANGE_CURRENT = "change_current_identifier"
FLOW_UPDATE_TO_NEW = "update_to_new_identifier"

LOGIN_FLOWS = (FLOW_SELF_SERVICE, FLOW_ADMIN)
IDENTIFIER_CHANGE_FLOWS = (FLOW_CHANGE_CURRENT, FLOW_UPDATE_TO_NEW)

_CONTEXT_NOT_FOUND = "otp context not found or already used"


@dataclass
class VerifiedIdentifier:
    identifier: str
    kind: IdentifierKind
    flow: str = FLOW_SELF_SERVICE
    user_id: Optional[str] = None


@dataclass
class _ContextEntry:
    challenge_id: str
    flow: str
    user_id: Optional[str] = None

    def dumps(self) -> str:
        return json.dumps(
            {"challenge_id": self.challenge_id, "flow": self.flow, "user_id": self.user_id}
        )

    @classmethod
    def loads(cls, raw: str) -> Optional["_ContextEntry"]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or not data.get("challenge_id"):
            return None
        return cls(
            challenge_id=str(data["challenge_id"]),
            flow=data.get("flow") or FLOW_SELF_SERVICE,
            user_id=data.get("user_id"),
        )


class OtpChallengeManager:
    """Issues and verifies one-time codes bound to an opaque context id.

    The challenge record is the source of truth; the cache only maps a
    context id to a challenge id (plus the flow and owning user that issued
    it). The attempt limit is enforced inside the store's atomic failed-attempt
    and consume operations, so verifies racing on one context cannot push the
    challenge past its limit or succeed after it.
    """

    def __init__(
        self,
        store: ChallengeStore,
        cache: ContextCache,
        hasher: SecretHasher,
        notifier: Notifier,
        *,
        ttl_minutes: int = 5,
        max_attempts: int = 5,
        code_length: int = 6,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hasher = hasher
        self.notifier = notifier
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._now = now
        self.logger = get_logger(__name__)

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.code_length):0{self.code_length}d}"

    @staticmethod
    def _context_key(context_id: str) -> str:
        return f"{CONTEXT_KEY_PREFIX}{context_id}"

    def _context_ttl(self, challenge: Challenge) -> int:
        remaining = (challenge.expires_at - self._now()).total_seconds()
        return max(1, math.ceil(remaining) + CONTEXT_TTL_GRACE_SECONDS)

    async def issue(
        self,
        identifier: str,
        kind: Optional[IdentifierKind] = None,
        *,
        flow: str = FLOW_SELF_SERVICE,
        user_id: Optional[str] = None,
    ) -> str:
        identifier, kind = validate_identifier(identifier, kind)
        code = self._generate_code()
        challenge = Challenge.new(
            identifier,
            kind,
            self.hasher.hash(code),
            self.ttl_minutes,
            now=self._now(),
        )
        # Durable before the code leaves the process
        await asyncio.to_thread(self.store.add_challenge, challenge)

        context_id = secrets.token_urlsafe(32)
        entry = _ContextEntry(challenge_id=challenge.id, flow=flow, user_id=user_id)
        await self.cache.set(
            self._context_key(context_id),
            entry.dumps(),
            self._context_ttl(challenge),
        )
        self.logger.info(
            "otp_challenge_issued",
            challenge_id=challenge.id,
            kind=kind.value,
            flow=flow,
        )

        await self.notifier.send_code(identifier, kind, code)
        return context_id

    async def _load(
        self,
        context_id: str,
        *,
        flows: Optional[Collection[str]] = None,
        user_id: Optional[str] = None,
    ) -> tuple[_ContextEntry, Challenge]:
        if not context_id:
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        key = self._context_key(context_id)
        raw = await self.cache.get(key)
        entry = _ContextEntry.loads(raw) if raw else None
        if entry is None:
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        # A context issued for another flow or user is invisible here
        if flows is not None and entry.flow not in flows:
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        if user_id is not None and entry.user_id != user_id:
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        challenge = await asyncio.to_thread(self.store.get_challenge, entry.challenge_id)
        if challenge is None or challenge.used:
            await self.cache.remove(key)
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        return entry, challenge

    async def _terminate(self, context_id: str, challenge_id: str) -> None:
        await asyncio.to_thread(self.store.consume_challenge, challenge_id)
        await self.cache.remove(self._context_key(context_id))

    async def _raise_lost_race(self, context_id: str, challenge_id: str) -> NoReturn:
        """Report why a limit-guarded store update was refused."""
        current = await asyncio.to_thread(self.store.get_challenge, challenge_id)
        if current is not None and not current.used and current.attempt_count >= self.max_attempts:
            await self._terminate(context_id, challenge_id)
            self.logger.warning(
                "otp_attempts_exhausted",
                challenge_id=challenge_id,
                attempts=current.attempt_count,
            )
            raise AttemptsExhaustedError("too many incorrect attempts")
        raise NotFoundError(_CONTEXT_NOT_FOUND)

    async def verify(
        self,
        context_id: str,
        code: str,
        *,
        flows: Optional[Collection[str]] = None,
        user_id: Optional[str] = None,
    ) -> VerifiedIdentifier:
        entry, challenge = await self._load(context_id, flows=flows, user_id=user_id)

        if self._now() > challenge.expires_at:
            await self._terminate(context_id, challenge.id)
            self.logger.info("otp_challenge_expired", challenge_id=challenge.id)
            raise ChallengeExpiredError("otp code has expired")

        if challenge.attempt_count >= self.max_attempts:
            await self._terminate(context_id, challenge.id)
            self.logger.warning(
                "otp_attempts_exhausted",
                challenge_id=challenge.id,
                attempts=challenge.attempt_count,
            )
            raise AttemptsExhaustedError("too many incorrect attempts")

        if not self.hasher.matches(str(code or ""), challenge.hashed_code):
            updated = await asyncio.to_thread(
                self.store.record_failed_attempt,
                challenge.id,
                self._now(),
                self.max_attempts,
            )
            if updated is None:
                await self._raise_lost_race(context_id, challenge.id)
            self.logger.info(
                "otp_verify_failed",
                challenge_id=challenge.id,
                attempts=updated.attempt_count,
            )
            raise InvalidCodeError(
                "incorrect otp code",
                detail={"attempts_remaining": max(0, self.max_attempts - updated.attempt_count)},
            )

        consumed = await asyncio.to_thread(
            self.store.consume_challenge, challenge.id, self.max_attempts
        )
        if not consumed:
            await self._raise_lost_race(context_id, challenge.id)
        await self.cache.remove(self._context_key(context_id))
        self.logger.info("otp_challenge_verified", challenge_id=challenge.id, flow=entry.flow)
        return VerifiedIdentifier(
            identifier=challenge.identifier,
            kind=challenge.identifier_kind,
            flow=entry.flow,
            user_id=entry.user_id,
        )

    async def resend(
        self,
        context_id: str,
        *,
        flows: Optional[Collection[str]] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Replace a live challenge with a fresh one for the same identifier.

        The old challenge is marked used and its context dropped before the
        new code is issued, so at most one code per context chain is valid.
        """
        entry, challenge = await self._load(context_id, flows=flows, user_id=user_id)
        consumed = await asyncio.to_thread(self.store.consume_challenge, challenge.id)
        if not consumed:
            raise NotFoundError(_CONTEXT_NOT_FOUND)
        await self.cache.remove(self._context_key(context_id))
        self.logger.info("otp_challenge_resend", challenge_id=challenge.id, flow=entry.flow)
        return await self.issue(
            challenge.identifier,
            challenge.identifier_kind,
            flow=entry.flow,
            user_id=entry.user_id,
        )
