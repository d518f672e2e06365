from __future__ import annotations

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from .. import credentials, database, identity, linking, models, oauth2, oauth_external, schemas
from ..config import settings
from ..errors import InvalidCredentialError
from ..state_store import OAuthHandshake, OAuthStateStore, get_state_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

_FRONTEND_CALLBACK_PATH = "/auth/callback"


def _auth_response(user: models.User) -> schemas.AuthResponse:
    return schemas.AuthResponse(
        user=schemas.UserSummary.model_validate(user),
        access_token=oauth2.create_access_token(user),
        token_type=oauth2.BEARER_TOKEN_TYPE,
    )


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.AuthResponse,
)
def register(payload: schemas.RegisterRequest, db: Session = Depends(database.get_db)):
    user = credentials.register_user(db, payload)
    return _auth_response(user)


@router.post("/login", response_model=schemas.AuthResponse)
def login(payload: schemas.LoginRequest, db: Session = Depends(database.get_db)):
    user = credentials.login_user(db, payload.email, payload.password)
    return _auth_response(user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout():
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    oauth2.clear_session_cookie(response)
    return response


@router.get("/oauth/providers", response_model=schemas.OAuthProvidersResponse)
def oauth_providers():
    providers = [
        schemas.OAuthProvider(
            provider=provider.provider.slug,
            display_name=provider.display_name,
            start_url=f"/api/{settings.api_latest_version}/auth/oauth/{provider.provider.slug}/start",
        )
        for provider in oauth_external.list_enabled_providers()
    ]
    return schemas.OAuthProvidersResponse(providers=providers)


def validate_redirect_destination(redirect_uri: Optional[str]) -> str:
    if not redirect_uri:
        raise InvalidCredentialError(
            "Invalid or missing redirect_uri", error_code="invalid_redirect_uri"
        )
    normalized = redirect_uri.rstrip("/")
    parsed = urlparse(normalized)
    if (
        parsed.scheme not in {"http", "https"}
        or normalized not in settings.oauth_allowed_redirect_origins
    ):
        raise InvalidCredentialError(
            "Invalid or missing redirect_uri", error_code="invalid_redirect_uri"
        )
    return normalized


def _frontend_redirect(destination: str, params: dict[str, str] | None = None) -> str:
    target = f"{destination.rstrip('/')}{_FRONTEND_CALLBACK_PATH}"
    if params:
        return f"{target}?{urlencode(params)}"
    return target


@router.get("/oauth/{provider}/start")
def oauth_start(
    provider: str,
    request: Request,
    redirect_uri: Optional[str] = None,
    current_user: Optional[models.User] = Depends(oauth2.get_optional_user),
    state_store: OAuthStateStore = Depends(get_state_store),
):
    integration = oauth_external.parse_provider(provider)
    identity_provider = oauth_external.get_identity_provider(integration)
    destination = validate_redirect_destination(redirect_uri)

    state = secrets.token_urlsafe(32)
    state_store.put(
        state,
        destination,
        link_user_id=str(current_user.id) if current_user is not None else None,
    )
    authorize_url = identity_provider.authorization_url(
        state=state,
        redirect_uri=oauth_external.callback_url(request, integration),
    )
    return RedirectResponse(authorize_url, status_code=status.HTTP_302_FOUND)


def _linking_user(
    db: Session, handshake: OAuthHandshake, session_user: Optional[models.User]
) -> Optional[models.User]:
    # The flow that started the handshake decides whether this is a link
    # request; the callback's own cookie is only a fallback.
    if handshake.link_user_id is not None:
        return (
            db.query(models.User)
            .filter(models.User.id == handshake.link_user_id)
            .first()
        )
    return session_user


@router.get("/oauth/{provider}/callback")
def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    session_user: Optional[models.User] = Depends(oauth2.get_optional_user),
    state_store: OAuthStateStore = Depends(get_state_store),
    db: Session = Depends(database.get_db),
):
    integration = oauth_external.parse_provider(provider)
    if not state or (not code and not error):
        raise InvalidCredentialError("Missing parameter", error_code="oauth_parameter_missing")

    handshake = state_store.consume(state)
    if handshake is None:
        raise InvalidCredentialError(
            "Invalid or expired OAuth state", error_code="invalid_oauth_state"
        )

    if error:
        logger.info("OAuth %s was declined by the provider: %s", integration.value, error)
        return RedirectResponse(
            _frontend_redirect(
                handshake.destination,
                {"provider": integration.slug, "error": error_description or error},
            ),
            status_code=status.HTTP_302_FOUND,
        )

    profile, tokens = oauth_external.fetch_external_identity(
        integration,
        str(code),
        redirect_uri=oauth_external.callback_url(request, integration),
    )
    user = identity.resolve_identity(
        db,
        integration,
        profile,
        tokens,
        current_user=_linking_user(db, handshake, session_user),
    )

    response = RedirectResponse(
        _frontend_redirect(handshake.destination), status_code=status.HTTP_302_FOUND
    )
    oauth2.set_session_cookie(response, oauth2.create_access_token(user))
    return response


@router.get("/me", response_model=schemas.UserProfile)
def get_me(current_user: models.User = Depends(oauth2.get_current_user)):
    return current_user


@router.get("/linked-accounts", response_model=list[schemas.LinkedAccount])
def get_linked_accounts(
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(database.get_db),
):
    return linking.list_linked_accounts(db, str(current_user.id))


@router.delete("/unlink/{provider}", response_model=schemas.MessageResponse)
def unlink(
    provider: str,
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(database.get_db),
):
    integration = oauth_external.parse_provider(provider)
    linking.unlink_account(db, current_user, integration)
    return schemas.MessageResponse(message="Account unlinked successfully")
