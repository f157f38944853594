from sqlalchemy.orm import Session

from app.core.security import create_access_token, verify_password
from app.models.user import User
from app.schemas.auth import LoginRequest


class AuthenticationError(Exception):
    pass


def authenticate_user(db: Session, login_data: LoginRequest) -> User:
    """
    Authenticate a user by email and password.
    """
    from app.services.user_service import get_user_by_email

    user = get_user_by_email(db, login_data.email)
    if not user:
        raise AuthenticationError("Invalid email or password")

    if not verify_password(login_data.password, user.hashed_password):
        raise AuthenticationError("Invalid email or password")

    if not user.is_active:
        raise AuthenticationError("Account is disabled")

    return user


def issue_access_token_for_user(user: User) -> str:
    return create_access_token(
        subject=str(user.id),
        roles=user.role_names,
    )
