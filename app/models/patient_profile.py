# app/models/patient_profile.py
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.models.user import User
from app.utils.datetime_utils import utc_now


class PatientProfile(Base):
    """
    Canonical identity record of one patient-role user.

    (document_type, identification) is the natural key and is unique
    platform-wide; concurrent creation of the same patient from the
    identity registry collides on it.
    """

    __tablename__ = "patient_profiles"
    __table_args__ = (
        UniqueConstraint(
            "document_type",
            "identification",
            name="uq_patient_profiles_document",
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )

    # Identity
    document_type: Mapped[str] = mapped_column(String(5), nullable=False)
    identification: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    eps: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        doc="Health insurer (EPS) reported by the identity registry",
    )
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    registry_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        doc="Raw identity registry payload, optionally enriched under 'hismart'",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user: Mapped["User"] = relationship("User")
