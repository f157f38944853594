"""initial_schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), nullable=False, primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def _user_fk(name: str, *, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        name,
        sa.Uuid(),
        sa.ForeignKey("users.id", ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_roles",
        _id(),
        _user_fk("user_id"),
        sa.Column(
            "role",
            sa.Enum("PATIENT", "PROFESSIONAL", "CLINIC_ADMIN", "SUPER_ADMIN", name="role_name_enum"),
            nullable=False,
        ),
        _created_at(),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])

    op.create_table(
        "patient_profiles",
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("document_type", sa.String(length=5), nullable=False),
        sa.Column("identification", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("eps", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("registry_data", sa.JSON(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("document_type", "identification", name="uq_patient_profiles_document"),
    )
    op.create_index("ix_patient_profiles_identification", "patient_profiles", ["identification"])

    op.create_table(
        "professional_profiles",
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("document_type", sa.String(length=5), nullable=False),
        sa.Column("document_number", sa.String(length=50), nullable=False),
        sa.Column(
            "validation_status",
            sa.Enum("PENDING", "VALIDATED", "REJECTED", name="validation_status_enum"),
            nullable=False,
        ),
        sa.Column("rethus_data", sa.JSON(), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_history", sa.JSON(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_professional_profiles_document_number", "professional_profiles", ["document_number"]
    )

    op.create_table(
        "clinics",
        _id(),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "clinic_patients",
        _id(),
        sa.Column("clinic_id", sa.Uuid(), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        _user_fk("patient_user_id"),
        _user_fk("assigned_professional_user_id", nullable=True, ondelete="SET NULL"),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "patient_user_id", name="uq_clinic_patients"),
    )
    op.create_index("ix_clinic_patients_clinic_id", "clinic_patients", ["clinic_id"])
    op.create_index("ix_clinic_patients_patient_user_id", "clinic_patients", ["patient_user_id"])

    op.create_table(
        "clinic_professionals",
        _id(),
        sa.Column("clinic_id", sa.Uuid(), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        _user_fk("professional_user_id"),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "professional_user_id", name="uq_clinic_professionals"),
    )
    op.create_index("ix_clinic_professionals_clinic_id", "clinic_professionals", ["clinic_id"])
    op.create_index(
        "ix_clinic_professionals_professional_user_id", "clinic_professionals", ["professional_user_id"]
    )

    op.create_table(
        "clinical_documents",
        _id(),
        _user_fk("user_id"),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_type", sa.String(length=100), nullable=True),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("document_type", sa.String(length=100), nullable=True),
        sa.Column("document_date", sa.Date(), nullable=True),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("structured_data", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_clinical_documents_user_id", "clinical_documents", ["user_id"])
    op.create_index("ix_clinical_documents_created_at", "clinical_documents", ["created_at"])

    op.create_table(
        "shared_access_tokens",
        _id(),
        sa.Column("token", sa.String(length=64), nullable=False),
        _user_fk("patient_user_id"),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("access_count", sa.Integer(), nullable=False),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_shared_access_tokens_token", "shared_access_tokens", ["token"], unique=True)
    op.create_index(
        "ix_shared_access_tokens_patient_user_id", "shared_access_tokens", ["patient_user_id"]
    )
    op.create_index("idx_shared_access_tokens_expires", "shared_access_tokens", ["expires_at"])

    op.create_table(
        "guest_access_logs",
        _id(),
        sa.Column(
            "token_id",
            sa.Uuid(),
            sa.ForeignKey("shared_access_tokens.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("patient_user_id"),
        sa.Column("action_type", sa.String(length=50), nullable=False),
        sa.Column("action_details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        _created_at(),
    )
    op.create_index("ix_guest_access_logs_token_id", "guest_access_logs", ["token_id"])
    op.create_index("ix_guest_access_logs_patient_user_id", "guest_access_logs", ["patient_user_id"])

    op.create_table(
        "patient_access_logs",
        _id(),
        _user_fk("professional_user_id"),
        _user_fk("patient_user_id"),
        sa.Column("clinic_id", sa.Uuid(), sa.ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "access_type",
            sa.Enum("clinic_local", "global_or_external", name="access_type_enum"),
            nullable=False,
        ),
        sa.Column("access_details", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_patient_access_logs_professional_user_id", "patient_access_logs", ["professional_user_id"]
    )
    op.create_index("ix_patient_access_logs_clinic_id", "patient_access_logs", ["clinic_id"])
    op.create_index(
        "idx_patient_access_logs_patient_created",
        "patient_access_logs",
        ["patient_user_id", "created_at"],
    )

    op.create_table(
        "professional_patient_context",
        sa.Column(
            "professional_user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _user_fk("current_patient_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column(
            "current_clinic_id",
            sa.Uuid(),
            sa.ForeignKey("clinics.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "conversations",
        _id(),
        _user_fk("user_id"),
        _user_fk("patient_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("title_generated", sa.Boolean(), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])

    op.create_table(
        "chat_messages",
        _id(),
        sa.Column(
            "conversation_id",
            sa.Uuid(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=True,
        ),
        _user_fk("user_id"),
        sa.Column("role", sa.Enum("user", "assistant", name="message_role_enum"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_chat_messages_user_id", "chat_messages", ["user_id"])
    op.create_index(
        "idx_chat_messages_conversation_created",
        "chat_messages",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "message_feedback",
        _id(),
        sa.Column(
            "message_id",
            sa.Uuid(),
            sa.ForeignKey("chat_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("user_id"),
        sa.Column("rating", sa.Enum("up", "down", name="feedback_rating_enum"), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_message_feedback_message_id", "message_feedback", ["message_id"])


def downgrade() -> None:
    op.drop_table("message_feedback")
    op.drop_table("chat_messages")
    op.drop_table("conversations")
    op.drop_table("professional_patient_context")
    op.drop_table("patient_access_logs")
    op.drop_table("guest_access_logs")
    op.drop_table("shared_access_tokens")
    op.drop_table("clinical_documents")
    op.drop_table("clinic_professionals")
    op.drop_table("clinic_patients")
    op.drop_table("clinics")
    op.drop_table("professional_profiles")
    op.drop_table("patient_profiles")
    op.drop_table("user_roles")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_name in (
        "feedback_rating_enum",
        "message_role_enum",
        "access_type_enum",
        "validation_status_enum",
        "role_name_enum",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
