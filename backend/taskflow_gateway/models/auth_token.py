"""
Bearer token model — one login session for one user.

Security notes:
  • Raw tokens are NEVER stored. Only a SHA-256 hash is persisted.
  • The `prefix` column stores the first characters (e.g., "tf_3fa9c1e2")
    for identification in logs without exposing the full token.
  • Rows are immutable after insert except for `revoked` / `revoked_at`.
"""

import uuid
import datetime

from sqlalchemy import Boolean, DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskflow_gateway.core.database import Base


class AuthToken(Base):
    """Hashed bearer token issued to a user on login."""

    __tablename__ = "auth_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    token_hash: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
    )
    prefix: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    issued_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expires_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    revoked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    revoked_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<AuthToken id={self.id!s:.8} prefix={self.prefix!r} "
            f"user={self.user_id!r} revoked={self.revoked}>"
        )
