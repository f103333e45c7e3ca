from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from otpgate.logging import get_logger
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import (
    Challenge,
    IdentifierKind,
    Role,
    Session,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        phone TEXT UNIQUE,
        email TEXT,
        username TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        password_hash TEXT,
        status BOOLEAN NOT NULL DEFAULT TRUE,
        is_forbidden BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        identifier_kind TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        hashed_code TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_attempt_at TIMESTAMPTZ,
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        session_token_hash TEXT NOT NULL UNIQUE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        session_expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        device_info TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_active_idx ON user_session (user_id) WHERE active",
)


class PostgresStore:
    """Postgres-backed store for identities, OTP challenges and sessions.

    Race-prone single-record transitions are expressed as conditional
    UPDATE ... RETURNING statements so the database serializes them.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            role=Role(row.get("role") or Role.USER.value),
            phone=row.get("phone"),
            email=row.get("email"),
            username=row.get("username"),
            password_hash=row.get("password_hash"),
            status=bool(row.get("status", True)),
            is_forbidden=bool(row.get("is_forbidden", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_challenge(row: Dict[str, Any]) -> Challenge:
        return Challenge(
            id=str(row["id"]),
            identifier=row["identifier"],
            identifier_kind=IdentifierKind(row["identifier_kind"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            hashed_code=row["hashed_code"],
            attempt_count=int(row.get("attempt_count") or 0),
            last_attempt_at=row.get("last_attempt_at"),
            used=bool(row.get("used", False)),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            session_token_hash=row["session_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            session_expires_at=row["session_expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            active=bool(row.get("active", False)),
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
        )

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
        user = User(
            id=str(uuid.uuid4()),
            role=Role(role),
            phone=phone,
            email=email,
            username=username,
            password_hash=password_hash,
            status=status,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, phone, email, username, role, password_hash, status, is_forbidden, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.phone,
                        user.email,
                        user.username,
                        user.role.value,
                        user.password_hash,
                        user.status,
                        user.is_forbidden,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identifier already exists", {"phone": phone, "email": email}
            ) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user(self, identifier: str, kind: IdentifierKind) -> Optional[User]:
        if kind == IdentifierKind.EMAIL:
            query = "SELECT * FROM app_user WHERE lower(email) = lower(%s)"
        else:
            query = "SELECT * FROM app_user WHERE phone = %s"
        with self._connect() as conn:
            row = conn.execute(query, (identifier,)).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_identifier(
        self, user_id: str, identifier: str, kind: IdentifierKind
    ) -> Optional[User]:
        column = "email" if kind == IdentifierKind.EMAIL else "phone"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {column} = %s WHERE id = %s RETURNING *",
                    (identifier, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(f"{column} already exists", {"field": column}) from exc
        return self._row_to_user(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    # challenges
    def add_challenge(self, challenge: Challenge) -> Challenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_challenge (id, identifier, identifier_kind, created_at, expires_at, hashed_code, attempt_count, last_attempt_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        challenge.id,
                        challenge.identifier,
                        challenge.identifier_kind.value,
                        challenge.created_at,
                        challenge.expires_at,
                        challenge.hashed_code,
                        challenge.attempt_count,
                        challenge.last_attempt_at,
                        challenge.used,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("challenge already exists", {"id": challenge.id}) from exc
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._row_to_challenge(row) if row else None

    def record_failed_attempt(
        self,
        challenge_id: str,
        attempted_at: datetime,
        max_attempts: Optional[int] = None,
    ) -> Optional[Challenge]:
        query = """
            UPDATE otp_challenge
            SET attempt_count = attempt_count + 1, last_attempt_at = %s
            WHERE id = %s AND NOT used
        """
        params: tuple = (attempted_at, challenge_id)
        if max_attempts is not None:
            query += " AND attempt_count < %s"
            params += (max_attempts,)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._row_to_challenge(row) if row else None

    def consume_challenge(
        self, challenge_id: str, max_attempts: Optional[int] = None
    ) -> bool:
        query = "UPDATE otp_challenge SET used = TRUE WHERE id = %s AND NOT used"
        params: tuple = (challenge_id,)
        if max_attempts is not None:
            query += " AND attempt_count < %s"
            params += (max_attempts,)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING id", params).fetchone()
        return row is not None

    # sessions
    def add_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, created_at, session_token_hash, refresh_token_hash, session_expires_at, refresh_expires_at, active, device_info, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.session_token_hash,
                        session.refresh_token_hash,
                        session.session_expires_at,
                        session.refresh_expires_at,
                        session.active,
                        session.device_info,
                        session.ip_address,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id}) from exc
        return session

    def find_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token_hash = %s", (refresh_hash,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s AND active ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_session SET active = FALSE WHERE id = %s AND active RETURNING id",
                (session_id,),
            ).fetchone()
        return row is not None

    def set_user_status(
        self, user_id: str, *, status: Optional[bool] = None, is_forbidden: Optional[bool] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET status = COALESCE(%s, status), is_forbidden = COALESCE(%s, is_forbidden)
                WHERE id = %s
                RETURNING *
                """,
                (status, is_forbidden, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None
