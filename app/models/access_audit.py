# app/models/access_audit.py
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.utils.datetime_utils import utc_now


class AccessType(str, PyEnum):
    CLINIC_LOCAL = "clinic_local"
    GLOBAL_OR_EXTERNAL = "global_or_external"


class PatientAccessLog(Base):
    """
    A professional touching a patient's data. Written at the point of
    access and never updated.

    access_details["auditable_for_patient"] decides whether the entry shows
    up in the patient's own "who accessed my data" view.
    """

    __tablename__ = "patient_access_logs"
    __table_args__ = (
        Index("idx_patient_access_logs_patient_created", "patient_user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    professional_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    clinic_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("clinics.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    access_type: Mapped[AccessType] = mapped_column(
        Enum(
            AccessType,
            name="access_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    access_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
