# app/dependencies/authz.py
from typing import Iterable

from fastapi import Depends, HTTPException, status

from app.api.v1.endpoints.auth import get_current_user
from app.models.user import RoleName, User


def require_roles(required_roles: Iterable[RoleName]):
    """
    Dependency factory for role-based access.

    Usage:

    @router.get("/admin")
    def admin_only(user = Depends(require_roles([RoleName.SUPER_ADMIN]))):
        ...

    Returns the current_user if they have at least one required role.
    """

    required = {r.value if isinstance(r, RoleName) else str(r) for r in required_roles}

    def dependency(
        current_user: User = Depends(get_current_user),
    ) -> User:
        if not required.intersection(current_user.role_names):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role permissions.",
            )
        return current_user

    return dependency


require_patient = require_roles([RoleName.PATIENT])
require_professional = require_roles([RoleName.PROFESSIONAL])
require_clinic_admin = require_roles([RoleName.CLINIC_ADMIN, RoleName.SUPER_ADMIN])
require_super_admin = require_roles([RoleName.SUPER_ADMIN])
