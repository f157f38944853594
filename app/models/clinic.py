# app/models/clinic.py
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.utils.datetime_utils import utc_now


class Clinic(Base):
    __tablename__ = "clinics"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    patients: Mapped[list["ClinicPatient"]] = relationship(
        "ClinicPatient", back_populates="clinic"
    )
    professionals: Mapped[list["ClinicProfessional"]] = relationship(
        "ClinicProfessional", back_populates="clinic"
    )


class ClinicPatient(Base):
    """
    Roster entry linking a patient to a clinic.
    """

    __tablename__ = "clinic_patients"
    __table_args__ = (
        UniqueConstraint("clinic_id", "patient_user_id", name="uq_clinic_patients"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_professional_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    clinic: Mapped["Clinic"] = relationship("Clinic", back_populates="patients")


class ClinicProfessional(Base):
    """
    Membership of a professional (or clinic admin) in a clinic.
    """

    __tablename__ = "clinic_professionals"
    __table_args__ = (
        UniqueConstraint(
            "clinic_id", "professional_user_id", name="uq_clinic_professionals"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    professional_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    clinic: Mapped["Clinic"] = relationship("Clinic", back_populates="professionals")
