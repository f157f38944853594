# app/services/user_service.py
import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.security import get_password_hash
from app.models.patient_profile import PatientProfile
from app.models.user import RoleName, User, UserRole
from app.schemas.auth import RegisterPatientRequest
from app.services.registry_clients import RegistryLookupError, TopusClient

logger = logging.getLogger(__name__)


class UserAlreadyExistsError(Exception):
    pass


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email.lower()).first()


def get_user(db: Session, user_id: UUID) -> User | None:
    return db.get(User, user_id)


def create_user(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str | None = None,
    roles: list[RoleName] | None = None,
) -> User:
    """
    Create a user with the given roles. Flushes but does not commit, so
    callers can add profiles in the same transaction.
    """
    if get_user_by_email(db, email):
        raise UserAlreadyExistsError("A user with this email already exists")

    user = User(
        email=email.lower(),
        hashed_password=get_password_hash(password),
        full_name=full_name,
        is_active=True,
    )
    db.add(user)
    db.flush()

    for role in roles or []:
        db.add(UserRole(user_id=user.id, role=role))
    db.flush()
    return user


def ensure_role(db: Session, user: User, role: RoleName) -> bool:
    """Grant `role` if the user lacks it. Returns True when a row was added."""
    if user.has_role(role):
        return False
    user.roles.append(UserRole(user_id=user.id, role=role))
    db.flush()
    return True


def register_patient(
    db: Session,
    data: RegisterPatientRequest,
    *,
    topus: TopusClient,
) -> tuple[User, PatientProfile]:
    """
    Patient self-registration.

    The identity is confirmed against Topus when it answers; otherwise the
    manually entered name is stored as-is.
    """
    document_type = data.document_type.strip().upper()
    identification = data.identification.strip()

    existing = (
        db.query(PatientProfile)
        .filter(
            PatientProfile.document_type == document_type,
            PatientProfile.identification == identification,
        )
        .first()
    )
    if existing:
        raise UserAlreadyExistsError("A patient with this document is already registered")

    full_name = data.full_name
    age = None
    eps = None
    registry_data = None
    try:
        identity, registry_data = topus.lookup_identity(document_type, identification)
        full_name, age, eps = identity.full_name, identity.age, identity.eps
    except RegistryLookupError as exc:
        logger.warning(f"Registering {document_type} {identification} without registry confirmation: {exc}")

    user = create_user(
        db,
        email=data.email,
        password=data.password,
        full_name=full_name,
        roles=[RoleName.PATIENT],
    )
    profile = PatientProfile(
        user_id=user.id,
        document_type=document_type,
        identification=identification,
        full_name=full_name,
        age=age,
        eps=eps,
        phone=data.phone,
        registry_data=registry_data,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise UserAlreadyExistsError("A patient with this document is already registered") from exc

    db.refresh(user)
    db.refresh(profile)
    logger.info(f"Patient {user.id} registered")
    return user, profile
