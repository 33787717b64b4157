from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from zeitnachweis.errors import AuthError, ValidationError
from zeitnachweis.models import AdminPassword
from zeitnachweis.security import hash_password, password_needs_rehash, verify_password
from zeitnachweis.settings import Settings, get_settings

logger = logging.getLogger("zeitnachweis.admin")

ADMIN_PASSWORD_ROW_ID = 1
MIN_PASSWORD_LENGTH = 6


def ensure_admin_password(session: Session, settings: Settings | None = None) -> bool:
    """Seed the admin credential on first start. Returns True when a row was created."""
    settings = settings or get_settings()
    if session.get(AdminPassword, ADMIN_PASSWORD_ROW_ID) is not None:
        return False

    session.add(
        AdminPassword(
            id=ADMIN_PASSWORD_ROW_ID,
            password_hash=hash_password(settings.admin_default_password),
        )
    )
    session.commit()
    logger.warning(
        "admin_default_password_seeded",
        extra={"hint": "Change the admin password after the first login."},
    )
    return True


def verify_admin_password(session: Session, password: str | None) -> bool:
    if not password:
        return False
    row = session.get(AdminPassword, ADMIN_PASSWORD_ROW_ID)
    if row is None or not verify_password(password, row.password_hash):
        return False

    if password_needs_rehash(row.password_hash):
        row.password_hash = hash_password(password)
        session.commit()
        logger.info("admin_password_hash_upgraded")
    return True


def change_admin_password(
    session: Session,
    *,
    current_password: str | None,
    new_password: str | None,
) -> None:
    if not current_password or not new_password:
        raise ValidationError(
            "Aktuelles und neues Passwort erforderlich.",
            code="MISSING_FIELDS",
        )
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Das neue Passwort muss mindestens {MIN_PASSWORD_LENGTH} Zeichen lang sein.",
            code="PASSWORD_TOO_SHORT",
        )
    if not verify_admin_password(session, current_password):
        raise AuthError("Aktuelles Passwort ist falsch.", code="INVALID_CREDENTIALS")

    row = session.get(AdminPassword, ADMIN_PASSWORD_ROW_ID)
    if row is None:
        session.add(AdminPassword(id=ADMIN_PASSWORD_ROW_ID, password_hash=hash_password(new_password)))
    else:
        row.password_hash = hash_password(new_password)
    session.commit()
    logger.info("admin_password_changed")
