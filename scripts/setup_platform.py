#!/usr/bin/env python3
# scripts/setup_platform.py
"""
Platform setup.
This script is safe to run many times (idempotent).

- SUPER_ADMIN creation is idempotent:
  - if the user exists -> it is made login-ready and gets the SUPER_ADMIN role
  - if missing -> it is created
- A clinic is only created when no clinic with that name exists.

Examples:
  # Ensure super admin (from args)
  python -m scripts.setup_platform --ensure-super-admin --email admin@platform.local --password "Admin@12345"

  # Ensure super admin from env, then create a clinic administered by it
  python -m scripts.setup_platform --ensure-super-admin --create-clinic "Clinica Central"
"""

from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.logging_config import configure_logging
from app.core.security import get_password_hash
from app.models.clinic import Clinic
from app.models.user import RoleName, User
from app.services.clinic_admin_service import create_clinic
from app.services.user_service import create_user, ensure_role, get_user_by_email

logger = logging.getLogger(__name__)


def ensure_super_admin(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str = "Platform Admin",
) -> User:
    existing = get_user_by_email(db, email)
    if existing:
        existing.full_name = existing.full_name or full_name
        existing.is_active = True
        # If the password changes in env, it is rotated.
        existing.hashed_password = get_password_hash(password)
        ensure_role(db, existing, RoleName.SUPER_ADMIN)
        db.commit()
        print(f"SUPER_ADMIN ensured (updated if needed): {email}")
        return existing

    user = create_user(
        db,
        email=email,
        password=password,
        full_name=full_name,
        roles=[RoleName.SUPER_ADMIN],
    )
    db.commit()
    db.refresh(user)
    print(f"SUPER_ADMIN created: {email}")
    return user


def ensure_clinic(db: Session, *, name: str, admin: User | None) -> Clinic:
    existing = db.query(Clinic).filter(Clinic.name == name.strip()).first()
    if existing:
        print(f"Clinic exists: {existing.name} ({existing.id})")
        return existing

    clinic = create_clinic(db, name=name, admin_user_id=admin.id if admin else None)
    print(f"Clinic created: {clinic.name} ({clinic.id})")
    return clinic


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Clinical portal platform setup")
    p.add_argument(
        "--ensure-super-admin",
        action="store_true",
        help="Ensure SUPER_ADMIN exists (from args if provided, else from env)",
    )
    p.add_argument("--email", type=str, help="SUPER_ADMIN email (or use env SUPER_ADMIN_EMAIL)")
    p.add_argument("--password", type=str, help="SUPER_ADMIN password (or use env SUPER_ADMIN_PASSWORD)")
    p.add_argument("--full-name", type=str, default=None, help="Default: env SUPER_ADMIN_FULL_NAME")
    p.add_argument("--create-clinic", type=str, default=None, metavar="NAME", help="Ensure a clinic with this name")
    return p.parse_args()


def main() -> None:
    configure_logging()
    args = parse_args()

    if not args.ensure_super_admin and not args.create_clinic:
        print("Nothing to do. Use --ensure-super-admin and/or --create-clinic.")
        sys.exit(1)

    settings = get_settings()

    email: str | None = None
    password: str | None = None
    if args.ensure_super_admin:
        # CLI args take precedence, then settings (from .env)
        email = args.email or settings.super_admin_email
        password = args.password or settings.super_admin_password
        if not email or not password:
            raise SystemExit(
                "SUPER_ADMIN credentials missing.\n"
                "Provide --email/--password OR set env SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD."
            )

    db: Session = SessionLocal()
    try:
        admin = None
        if args.ensure_super_admin:
            admin = ensure_super_admin(
                db,
                email=email,  # type: ignore[arg-type]
                password=password,  # type: ignore[arg-type]
                full_name=args.full_name or settings.super_admin_full_name,
            )

        if args.create_clinic:
            ensure_clinic(db, name=args.create_clinic, admin=admin)

    except Exception:
        db.rollback()
        logger.exception("Platform setup failed")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
