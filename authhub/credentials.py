from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas, utils
from .errors import ConflictError, InvalidCredentialError

logger = logging.getLogger(__name__)

_DUMMY_PASSWORD_HASH = utils.hash(secrets.token_urlsafe(32))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def find_user_by_email(db: Session, email: str) -> models.User | None:
    return (
        db.query(models.User)
        .filter(models.User.email == normalize_email(email))
        .first()
    )


def verify_credentials(db: Session, email: str, password: str) -> models.User | None:
    """Return the user for a matching email/password pair, else None.

    Unknown emails, OAuth-only accounts and wrong passwords are deliberately
    indistinguishable to the caller.
    """
    user = find_user_by_email(db, email)
    if user is None or not user.password_hash:
        # Keep the response time close to a real verification.
        utils.verify(password, _DUMMY_PASSWORD_HASH)
        return None

    if not utils.verify(password, str(user.password_hash)):
        return None
    return user


def register_user(db: Session, payload: schemas.RegisterRequest) -> models.User:
    email = normalize_email(payload.email)
    if find_user_by_email(db, email) is not None:
        raise ConflictError("Email is already registered", error_code="email_taken")

    user = models.User(
        email=email,
        password_hash=utils.hash(payload.password),
        full_name=payload.full_name,
        student_id=payload.student_id,
        primary_provider=models.AuthProvider.EMAIL,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email is already registered", error_code="email_taken")
    db.refresh(user)
    logger.info("Registered user %s", user.id)
    return user


def login_user(db: Session, email: str, password: str) -> models.User:
    user = verify_credentials(db, email, password)
    if user is None:
        raise InvalidCredentialError()

    user.last_login = datetime.now(timezone.utc)  # type: ignore[assignment]
    db.commit()
    db.refresh(user)
    return user


def update_user(db: Session, user: models.User, payload: schemas.UserUpdate) -> models.User:
    changes = payload.model_dump(exclude_unset=True)

    password = changes.pop("password", None)
    if password:
        # Also gives OAuth-only accounts a password to fall back on.
        user.password_hash = utils.hash(password)  # type: ignore[assignment]

    email = changes.pop("email", None)
    if email:
        email = normalize_email(email)
        existing = find_user_by_email(db, email)
        if existing is not None and existing.id != user.id:
            raise ConflictError("Email is already registered", error_code="email_taken")
        user.email = email  # type: ignore[assignment]

    for field, value in changes.items():
        if field == "full_name" and value is None:
            continue
        setattr(user, field, value)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email is already registered", error_code="email_taken")
    db.refresh(user)
    logger.info("Updated user %s", user.id)
    return user


def delete_user(db: Session, user: models.User) -> None:
    user_id = user.id
    db.delete(user)
    db.commit()
    logger.info("Deleted user %s", user_id)
