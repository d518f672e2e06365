from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import models
from .errors import LastSignInMethodError, NotLinkedError
from .oauth_external import ProviderProfile, ProviderTokens

logger = logging.getLogger(__name__)


def find_link_by_identity(
    db: Session, provider: models.IntegrationProvider, provider_user_id: str
) -> models.IdentityLink | None:
    return (
        db.query(models.IdentityLink)
        .filter(
            models.IdentityLink.provider == provider,
            models.IdentityLink.provider_user_id == provider_user_id,
        )
        .first()
    )


def find_link_for_user(
    db: Session, user_id: str, provider: models.IntegrationProvider
) -> models.IdentityLink | None:
    return (
        db.query(models.IdentityLink)
        .filter(
            models.IdentityLink.user_id == user_id,
            models.IdentityLink.provider == provider,
        )
        .first()
    )


def refresh_link(
    link: models.IdentityLink, profile: ProviderProfile, tokens: ProviderTokens
) -> models.IdentityLink:
    link.provider_user_id = profile.id  # type: ignore[assignment]
    link.provider_username = profile.username  # type: ignore[assignment]
    link.provider_email = profile.email  # type: ignore[assignment]
    link.access_token = tokens.access_token  # type: ignore[assignment]
    link.refresh_token = tokens.refresh_token  # type: ignore[assignment]
    link.used_for_login = True  # type: ignore[assignment]
    link.last_refreshed_at = datetime.now(timezone.utc)  # type: ignore[assignment]
    return link


def link_account(
    db: Session,
    user_id: str,
    provider: models.IntegrationProvider,
    profile: ProviderProfile,
    tokens: ProviderTokens,
) -> models.IdentityLink:
    """Insert or update the user's link for ``provider``.

    The caller owns the transaction; nothing is committed here so the link can
    be written together with a freshly created user.
    """
    existing = find_link_for_user(db, user_id, provider)
    if existing is not None:
        return refresh_link(existing, profile, tokens)

    link = models.IdentityLink(
        user_id=user_id,
        provider=provider,
        provider_user_id=profile.id,
        provider_username=profile.username,
        provider_email=profile.email,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        used_for_login=True,
    )
    db.add(link)
    return link


def list_linked_accounts(db: Session, user_id: str) -> list[models.IdentityLink]:
    return (
        db.query(models.IdentityLink)
        .filter(
            models.IdentityLink.user_id == user_id,
            models.IdentityLink.used_for_login.is_(True),
        )
        .order_by(models.IdentityLink.created_at.asc())
        .all()
    )


def unlink_account(
    db: Session, user: models.User, provider: models.IntegrationProvider
) -> None:
    link = find_link_for_user(db, str(user.id), provider)
    if link is None:
        raise NotLinkedError()

    if not user.password_hash:
        remaining = (
            db.query(models.IdentityLink)
            .filter(
                models.IdentityLink.user_id == user.id,
                models.IdentityLink.id != link.id,
            )
            .count()
        )
        if remaining == 0:
            raise LastSignInMethodError()

    db.delete(link)
    db.commit()
    logger.info("Unlinked %s from user %s", provider.value, user.id)
