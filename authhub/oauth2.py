from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Depends, Request, Response
from fastapi.security import OAuth2PasswordBearer
from jwt import InvalidTokenError
from sqlalchemy.orm import Session

from . import database, models
from .config import settings
from .errors import UnauthorizedError

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"/api/{settings.api_latest_version}/auth/login", auto_error=False
)

SECRET_KEY = settings.secret_key
ALGORITHM = settings.algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.access_token_expire_minutes

BEARER_TOKEN_TYPE = "bearer"  # nosec B105
QUERY_TOKEN_PARAM = "token"  # nosec B105


def create_access_token(user: models.User, expires_minutes: int | None = None) -> str:
    expire_minutes = (
        ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    )
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": models.UserRole(user.role).value,
        "iat": now,
        "exp": now + timedelta(minutes=expire_minutes),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    payload = jwt.decode(
        token,
        SECRET_KEY,
        algorithms=[ALGORITHM],
        options={"require": ["exp", "sub"]},
    )
    if not isinstance(payload, dict):
        raise InvalidTokenError("Invalid payload")
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise InvalidTokenError("Invalid subject")
    return payload


def extract_token(request: Request, bearer_token: Optional[str] = None) -> str | None:
    if bearer_token:
        return bearer_token
    cookie_token = request.cookies.get(settings.session_cookie_name)
    if cookie_token:
        return cookie_token
    # Query tokens leak into logs and referrers; never accepted in production.
    if settings.session_query_token_enabled and not settings.is_production:
        query_token = request.query_params.get(QUERY_TOKEN_PARAM)
        if query_token:
            return query_token
    return None


def authenticate_token(db: Session, token: str) -> models.User:
    try:
        payload = decode_access_token(token)
    except InvalidTokenError:
        raise UnauthorizedError()

    user = db.query(models.User).filter(models.User.id == payload["sub"]).first()
    if user is None:
        raise UnauthorizedError("User no longer exists", error_code="user_not_found")
    return user


def get_current_user(
    request: Request,
    bearer_token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(database.get_db),
) -> models.User:
    token = extract_token(request, bearer_token)
    if token is None:
        raise UnauthorizedError("Not authenticated", error_code="not_authenticated")
    return authenticate_token(db, token)


def get_optional_user(
    request: Request,
    bearer_token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(database.get_db),
) -> models.User | None:
    token = extract_token(request, bearer_token)
    if token is None:
        return None
    try:
        return authenticate_token(db, token)
    except UnauthorizedError:
        logger.debug("Ignoring invalid session token on optional route")
        return None


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_cookie_max_age_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="strict" if settings.is_production else "lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        httponly=True,
        secure=settings.is_production,
        samesite="strict" if settings.is_production else "lax",
    )
