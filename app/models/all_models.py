# app/models/all_models.py
"""
Imports every ORM model so Base.metadata is complete.

Used by Alembic autogenerate and by the test suite's create_all().
"""
from app.models.user import User, UserRole
from app.models.patient_profile import PatientProfile
from app.models.professional_profile import ProfessionalProfile
from app.models.clinic import Clinic, ClinicPatient, ClinicProfessional
from app.models.clinical_document import ClinicalDocument
from app.models.access_grant import AccessGrant, GuestAccessLog
from app.models.access_audit import PatientAccessLog
from app.models.professional_context import ProfessionalPatientContext
from app.models.conversation import ChatMessage, Conversation, MessageFeedback

__all__ = [
    "User",
    "UserRole",
    "PatientProfile",
    "ProfessionalProfile",
    "Clinic",
    "ClinicPatient",
    "ClinicProfessional",
    "ClinicalDocument",
    "AccessGrant",
    "GuestAccessLog",
    "PatientAccessLog",
    "ProfessionalPatientContext",
    "Conversation",
    "ChatMessage",
    "MessageFeedback",
]
