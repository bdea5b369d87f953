"""Bearer-token authentication for chat connections.

Two pieces live here:

* ``UserDirectory``: DuckDB-backed lookup of user accounts (id, username,
  active flag). Account management itself belongs to the wider application;
  this table is the read side the chat core needs, plus helpers used by
  seeding and tests.
* ``IdentityVerifier``: validates a JWT (HS256 by default) and resolves
  its ``sub`` claim to an active user, yielding an ``Identity``.

Usage:
    users = UserDirectory.get_instance()
    verifier = IdentityVerifier(secret_key="...", users=users)
    identity = verifier.verify(token)
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import duckdb
import jwt

from mindease.chat.errors import AuthenticationFailure

from .schemas import Identity, UserRecord

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id          VARCHAR PRIMARY KEY,
    username    VARCHAR NOT NULL UNIQUE,
    is_active   BOOLEAN NOT NULL DEFAULT TRUE,
    created_at  TIMESTAMP NOT NULL
)
"""


class UserDirectory:
    """Singleton store of user accounts in DuckDB."""

    _instance: Optional["UserDirectory"] = None
    _default_db_path: str = "users.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        logger.info("[UserDirectory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UserDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def create_user(self, username: str, user_id: Optional[str] = None) -> UserRecord:
        user_id = user_id or uuid.uuid4().hex
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        self._conn.execute(
            "INSERT INTO users (id, username, is_active, created_at) VALUES (?, ?, TRUE, ?)",
            [user_id, username, now],
        )
        return UserRecord(id=user_id, username=username, is_active=True, created_at=now)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self._conn.execute(
            "SELECT id, username, is_active, created_at FROM users WHERE id = ?",
            [user_id],
        ).fetchone()
        if row is None:
            return None
        return UserRecord(id=row[0], username=row[1], is_active=row[2], created_at=row[3])

    def deactivate_user(self, user_id: str) -> bool:
        result = self._conn.execute(
            "UPDATE users SET is_active = FALSE WHERE id = ? RETURNING id", [user_id]
        ).fetchone()
        return result is not None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def issue_token(
    user_id: str,
    secret_key: str,
    *,
    algorithm: str = "HS256",
    expires_in: timedelta = timedelta(days=7),
) -> str:
    """Create a signed access token for ``user_id``.

    Used by the development seed script and tests; production tokens are
    issued by the account service with the same secret and claims.
    """
    now = datetime.now(tz=timezone.utc)
    claims = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(claims, key=secret_key, algorithm=algorithm)


class IdentityVerifier:
    """Turns a bearer credential into a verified ``Identity``.

    Args:
        secret_key: HMAC secret shared with the token issuer.
        users: Directory used to resolve and check the token subject.
        algorithm: Expected JWT signing algorithm.
    """

    def __init__(self, secret_key: Optional[str], users: UserDirectory, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._users = users
        self._algorithm = algorithm

    def verify(self, credential: Optional[str]) -> Identity:
        """Validate ``credential`` and return the identity it names.

        Raises:
            AuthenticationFailure: Missing, malformed, invalid or expired
                token; unknown or deactivated user.
        """
        if not credential:
            raise AuthenticationFailure("No token provided")
        if not self._secret_key:
            logger.error("[Auth] No JWT secret configured; rejecting credential")
            raise AuthenticationFailure("Token is not valid")

        try:
            claims = jwt.decode(credential, key=self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailure("Token has expired") from exc
        except jwt.PyJWTError as exc:
            raise AuthenticationFailure("Token is not valid") from exc

        user_id = claims.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise AuthenticationFailure("Token is not valid")

        user = self._users.get_user(user_id)
        if user is None:
            raise AuthenticationFailure("Token is not valid - user not found")
        if not user.is_active:
            raise AuthenticationFailure("Account is deactivated")

        return user.to_identity()


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
