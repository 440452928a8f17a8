"""
Token store — issues, validates, and revokes bearer tokens.

Flow:
  issue()     → generate raw token, persist SHA-256 hash + expiry, return raw once
  validate()  → hash lookup → revoked? → expired? → owner user id
  revoke()    → flip the revoked flag (idempotent, committed before return)

Every operation opens its own short session from the factory, so a revoke
that has returned is visible to every validate() that starts afterwards.
Raw tokens are NEVER logged — only their display prefix.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow_gateway.auth.hashing import (
    display_prefix,
    generate_token,
    hash_token,
    is_well_formed,
)
from taskflow_gateway.core.config import settings
from taskflow_gateway.core.database import as_utc, utcnow
from taskflow_gateway.core.errors import ExpiredToken, InvalidToken, RevokedToken
from taskflow_gateway.models.auth_token import AuthToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """A freshly issued token. `token` is the only copy of the raw value."""

    token: str
    user_id: str
    prefix: str
    issued_at: datetime.datetime
    expires_at: datetime.datetime


class TokenStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = settings.TOKEN_TTL_SECONDS,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = datetime.timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def issue(
        self,
        user_id: str,
        *,
        ttl: datetime.timedelta | None = None,
    ) -> IssuedToken:
        """Create and persist a new token for `user_id`."""
        raw_token, token_hash = generate_token()
        issued_at = self._clock()
        expires_at = issued_at + (ttl if ttl is not None else self._ttl)
        prefix = display_prefix(raw_token)

        async with self._session_factory() as session:
            session.add(
                AuthToken(
                    user_id=user_id,
                    token_hash=token_hash,
                    prefix=prefix,
                    issued_at=issued_at,
                    expires_at=expires_at,
                    revoked=False,
                )
            )
            await session.commit()

        logger.info("Issued token %s… for user %s (expires %s)", prefix, user_id, expires_at)
        return IssuedToken(
            token=raw_token,
            user_id=user_id,
            prefix=prefix,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    async def validate(self, raw_token: str) -> str:
        """
        Resolve a raw token to its owner's user id.

        Raises:
            InvalidToken: unknown token.
            RevokedToken: revoked flag set (checked before expiry).
            ExpiredToken: now >= expires_at.
        """
        # Garbage never costs a DB round-trip.
        if not is_well_formed(raw_token):
            raise InvalidToken()

        async with self._session_factory() as session:
            result = await session.execute(
                select(AuthToken).where(AuthToken.token_hash == hash_token(raw_token))
            )
            token = result.scalar_one_or_none()

        if token is None:
            raise InvalidToken()
        if token.revoked:
            raise RevokedToken()
        if self._clock() >= as_utc(token.expires_at):
            raise ExpiredToken()
        return token.user_id

    async def revoke(self, raw_token: str) -> None:
        """Mark a token revoked. Unknown or already-revoked tokens are a no-op."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(AuthToken)
                .where(
                    AuthToken.token_hash == hash_token(raw_token),
                    AuthToken.revoked.is_(False),
                )
                .values(revoked=True, revoked_at=now)
            )
            await session.commit()

        if result.rowcount:
            logger.info("Revoked token %s…", display_prefix(raw_token))

    async def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every live token owned by `user_id`. Returns the count."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(AuthToken)
                .where(AuthToken.user_id == user_id, AuthToken.revoked.is_(False))
                .values(revoked=True, revoked_at=now)
            )
            await session.commit()

        count = result.rowcount or 0
        logger.info("Revoked %d token(s) for user %s", count, user_id)
        return count

    async def purge_expired(self, before: datetime.datetime) -> int:
        """Delete tokens that expired before `before`. Returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AuthToken).where(AuthToken.expires_at < before)
            )
            await session.commit()
        return result.rowcount or 0
