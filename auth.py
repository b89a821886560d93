from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from passlib.context import CryptContext

from database import Database, UserRecord
from errors import AuthenticationError, NotFoundError, StorageError

AUTH_HEADER_NAME = "Authentication"
TOKEN_BYTES = 32

logger = logging.getLogger(__name__)

# Rows written before hashing was introduced hold the password as-is; the
# plaintext scheme keeps them verifiable and "auto" marks them for rehash.
pwd_context = CryptContext(schemes=["bcrypt", "plaintext"], deprecated="auto")


@dataclass
class SessionToken:
    token: str
    token_hash: str


def generate_session_token() -> SessionToken:
    """Create an unguessable opaque token along with the hash we persist."""
    token = secrets.token_urlsafe(TOKEN_BYTES)
    return SessionToken(token=token, token_hash=hash_session_token(token))


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_password(plain: str) -> str:
    """Wrap passlib's bcrypt hash generator."""
    return pwd_context.hash(plain)


def verify_password(plain: str, stored: str) -> tuple[bool, Optional[str]]:
    """Check a password; the second item is a replacement hash when one is due."""
    return pwd_context.verify_and_update(plain, stored)


class SessionStore:
    """Issues and resolves session tokens, one live session per user."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def issue(self, user: UserRecord) -> str:
        """Replace any existing session of ``user`` and return the new token.

        Storage failures propagate as ``StorageError``.
        """
        session = generate_session_token()
        record = await self.db.replace_session(user.id, session.token_hash)
        logger.info("session issued user_id=%s session_id=%s", user.id, record.id)
        return session.token

    async def resolve(self, token: str) -> Optional[UserRecord]:
        if not token:
            return None
        return await self.db.fetch_user_by_token_hash(hash_session_token(token))


async def authenticate_token(store: SessionStore, raw: object) -> UserRecord:
    """Turn the raw ``Authentication`` header value into a user.

    Every failure, storage errors included, surfaces as the same
    ``AuthenticationError`` so callers cannot tell the causes apart.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise AuthenticationError("missing session token")
    try:
        user = await store.resolve(raw.strip())
    except StorageError:
        logger.exception("session lookup failed")
        raise AuthenticationError("session lookup failed") from None
    if user is None:
        raise AuthenticationError("unknown session token")
    return user


async def check_credentials(
    db: Database, store: SessionStore, username: str, password: str
) -> str:
    """Verify a username/password pair and issue a session token.

    An unknown username and a wrong password raise the same ``NotFoundError``.
    """
    user = await db.fetch_user_by_username(username) if username else None
    if user is None:
        logger.warning("login rejected reason=invalid_credentials")
        raise NotFoundError("invalid credentials")
    valid, new_hash = verify_password(password, user.password)
    if not valid:
        logger.warning("login rejected reason=invalid_credentials")
        raise NotFoundError("invalid credentials")
    if new_hash is not None:
        await db.update_user_password(user.id, new_hash)
        logger.info("password rehashed user_id=%s", user.id)
    return await store.issue(user)
