# app/models/access_grant.py
"""
Time-boxed guest access to one patient's record.

A grant is usable while now < expires_at and revoked_at is NULL. Rows are
never deleted: expired and revoked grants stay for the audit trail in
guest_access_logs.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.utils.datetime_utils import utc_now


class AccessGrant(Base):
    __tablename__ = "shared_access_tokens"
    __table_args__ = (
        Index("idx_shared_access_tokens_expires", "expires_at"),
    )

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        doc="Secure random token embedded in the share URL",
    )
    patient_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    permissions: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        doc="{allow_view: true, allow_download, allow_chat, allow_notebook}",
    )
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Usage
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    access_logs: Mapped[list["GuestAccessLog"]] = relationship(
        "GuestAccessLog", back_populates="grant"
    )


class GuestAccessLog(Base):
    """
    Append-only record of every successful use of a grant.
    """

    __tablename__ = "guest_access_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    token_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("shared_access_tokens.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    grant: Mapped["AccessGrant"] = relationship("AccessGrant", back_populates="access_logs")
