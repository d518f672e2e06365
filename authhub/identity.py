"""Decide which local account an incoming OAuth identity belongs to.

Resolution order, first match wins:

1. the provider identity is already linked: log in as the link's owner;
2. the caller already has a session: link the identity to that user;
3. the provider vouches for an email that matches a user: link to that user;
4. otherwise create a new account and link the identity to it.

Branches 2-4 write in a single transaction. Two callbacks racing on the same
new identity are settled by the unique constraints on ``identity_links`` and
``users.email``: the loser rolls back and resolves to the winner's user.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import linking, models
from .credentials import find_user_by_email, normalize_email
from .errors import ConflictError
from .oauth_external import ProviderProfile, ProviderTokens

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "placeholder.local"


def placeholder_email(provider: models.IntegrationProvider, provider_user_id: str) -> str:
    return f"{provider.slug}_{provider_user_id}@{PLACEHOLDER_EMAIL_DOMAIN}"


def display_name_for(profile: ProviderProfile) -> str:
    return profile.display_name or profile.username or "User"


def _verified_email(profile: ProviderProfile) -> str | None:
    if profile.email and profile.email_verified:
        return normalize_email(profile.email)
    return None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _create_user_for_profile(
    db: Session, provider: models.IntegrationProvider, profile: ProviderProfile
) -> models.User:
    user = models.User(
        email=_verified_email(profile) or placeholder_email(provider, profile.id),
        full_name=display_name_for(profile),
        avatar_url=profile.avatar_url,
        primary_provider=provider.auth_provider,
        password_hash=None,
        last_login=_now_utc(),
    )
    db.add(user)
    db.flush()
    return user


def _link_and_resolve(
    db: Session,
    provider: models.IntegrationProvider,
    profile: ProviderProfile,
    tokens: ProviderTokens,
    current_user: models.User | None,
) -> models.User:
    if current_user is not None:
        linking.link_account(db, str(current_user.id), provider, profile, tokens)
        logger.info("Linked %s identity to signed-in user %s", provider.value, current_user.id)
        return current_user

    email = _verified_email(profile)
    if email is not None:
        existing_user = find_user_by_email(db, email)
        if existing_user is not None:
            linking.link_account(db, str(existing_user.id), provider, profile, tokens)
            existing_user.last_login = _now_utc()  # type: ignore[assignment]
            logger.info(
                "Linked %s identity to user %s by verified email",
                provider.value,
                existing_user.id,
            )
            return existing_user

    user = _create_user_for_profile(db, provider, profile)
    linking.link_account(db, str(user.id), provider, profile, tokens)
    db.flush()
    logger.info("Created user %s from %s identity", user.id, provider.value)
    return user


def resolve_identity(
    db: Session,
    provider: models.IntegrationProvider,
    profile: ProviderProfile,
    tokens: ProviderTokens,
    current_user: models.User | None = None,
) -> models.User:
    existing_link = linking.find_link_by_identity(db, provider, profile.id)
    if existing_link is not None:
        # Returning users get their provider tokens and snapshot refreshed.
        linking.refresh_link(existing_link, profile, tokens)
        user = existing_link.user
        user.last_login = _now_utc()
        db.commit()
        db.refresh(user)
        return user

    try:
        user = _link_and_resolve(db, provider, profile, tokens, current_user)
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = linking.find_link_by_identity(db, provider, profile.id)
        if winner is None:
            logger.warning(
                "Could not link %s identity %s: conflicting account data",
                provider.value,
                profile.id,
            )
            raise ConflictError(
                "This account conflicts with an existing account",
                error_code="identity_conflict",
            )
        logger.info(
            "Concurrent resolution of %s identity %s settled on user %s",
            provider.value,
            profile.id,
            winner.user_id,
        )
        return winner.user

    db.refresh(user)
    return user
