from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from fastapi import Request

from .config import settings
from .errors import (
    ProviderNotConfiguredError,
    UnsupportedProviderError,
    UpstreamFailure,
)
from .models import IntegrationProvider

logger = logging.getLogger(__name__)

_GITHUB_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    refresh_token: str | None = None


@dataclass(frozen=True)
class ProviderProfile:
    provider: IntegrationProvider
    id: str
    username: str | None = None
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None
    avatar_url: str | None = None


class IdentityProvider(Protocol):
    provider: IntegrationProvider
    display_name: str

    def authorization_url(self, *, state: str, redirect_uri: str) -> str: ...

    def exchange_code(self, code: str, *, redirect_uri: str) -> ProviderTokens: ...

    def fetch_profile(self, access_token: str) -> ProviderProfile: ...


class _ProviderStepError(Exception):
    def __init__(self, step: str, cause: str):
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


def _timeout() -> float:
    return settings.oauth_http_timeout_seconds


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"true", "1", "yes"}
    if isinstance(value, int):
        return value != 0
    return False


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _decode_json(response: httpx.Response, step: str) -> Any:
    if response.status_code >= 400:
        raise _ProviderStepError(step, f"HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError:
        raise _ProviderStepError(step, "response was not JSON")


def _post_token_request(
    url: str, step: str, *, data: dict[str, str], as_json: bool = False
) -> ProviderTokens:
    headers = {"Accept": "application/json"}
    try:
        if as_json:
            response = httpx.post(url, json=data, headers=headers, timeout=_timeout())
        else:
            response = httpx.post(url, data=data, headers=headers, timeout=_timeout())
    except httpx.HTTPError as exc:
        raise _ProviderStepError(step, f"{type(exc).__name__}: {exc}")

    payload = _decode_json(response, step)
    if not isinstance(payload, dict):
        raise _ProviderStepError(step, "token response was not an object")
    if "error" in payload:
        raise _ProviderStepError(
            step, str(payload.get("error_description") or payload.get("error"))
        )
    access_token = _optional_str(payload.get("access_token"))
    if access_token is None:
        raise _ProviderStepError(step, "no access token returned")
    return ProviderTokens(
        access_token=access_token,
        refresh_token=_optional_str(payload.get("refresh_token")),
    )


def _fetch_json(
    url: str,
    step: str,
    *,
    access_token: str,
    headers: dict[str, str] | None = None,
) -> Any:
    request_headers = {"Authorization": f"Bearer {access_token}"}
    if headers:
        request_headers.update(headers)
    try:
        response = httpx.get(url, headers=request_headers, timeout=_timeout())
    except httpx.HTTPError as exc:
        raise _ProviderStepError(step, f"{type(exc).__name__}: {exc}")
    return _decode_json(response, step)


def _upstream_failure(provider: IntegrationProvider, exc: _ProviderStepError) -> UpstreamFailure:
    logger.warning(
        "OAuth %s failed at %s: %s",
        provider.value,
        exc.step,
        exc.cause,
        extra={"oauth_provider": provider.value, "oauth_step": exc.step},
    )
    return UpstreamFailure()


@dataclass(frozen=True)
class GitHubIdentityProvider:
    client_id: str
    client_secret: str
    provider: IntegrationProvider = IntegrationProvider.GITHUB
    display_name: str = "GitHub"
    authorize_endpoint: str = "https://github.com/login/oauth/authorize"
    token_endpoint: str = "https://github.com/login/oauth/access_token"
    user_endpoint: str = "https://api.github.com/user"
    emails_endpoint: str = "https://api.github.com/user/emails"
    scopes: tuple[str, ...] = ("user:email", "read:user")

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, *, redirect_uri: str) -> ProviderTokens:
        try:
            return _post_token_request(
                self.token_endpoint,
                "token_exchange",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
        except _ProviderStepError as exc:
            raise _upstream_failure(self.provider, exc)

    def fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            user = _fetch_json(
                self.user_endpoint,
                "profile",
                access_token=access_token,
                headers=_GITHUB_API_HEADERS,
            )
            if not isinstance(user, dict) or user.get("id") is None:
                raise _ProviderStepError("profile", "profile did not include an id")
            emails = _fetch_json(
                self.emails_endpoint,
                "emails",
                access_token=access_token,
                headers=_GITHUB_API_HEADERS,
            )
            if not isinstance(emails, list):
                raise _ProviderStepError("emails", "email list was not an array")
        except _ProviderStepError as exc:
            raise _upstream_failure(self.provider, exc)

        email, verified = _select_primary_email(emails)
        return ProviderProfile(
            provider=self.provider,
            id=str(user["id"]),
            username=_optional_str(user.get("login")),
            email=email,
            email_verified=verified,
            display_name=_optional_str(user.get("name")),
            avatar_url=_optional_str(user.get("avatar_url")),
        )


def _select_primary_email(entries: list[Any]) -> tuple[str | None, bool]:
    primary = next(
        (
            item
            for item in entries
            if isinstance(item, dict) and _to_bool(item.get("primary"))
        ),
        None,
    )
    if primary is None:
        return None, False
    email = _optional_str(primary.get("email"))
    if email is None:
        return None, False
    return email, _to_bool(primary.get("verified"))


@dataclass(frozen=True)
class JiraIdentityProvider:
    """Atlassian OAuth 2.0 three-legged flow.

    The token response carries no profile, so the account is looked up
    afterwards on the Atlassian ``/me`` endpoint.
    """

    client_id: str
    client_secret: str
    provider: IntegrationProvider = IntegrationProvider.JIRA
    display_name: str = "Jira"
    authorize_endpoint: str = "https://auth.atlassian.com/authorize"
    token_endpoint: str = "https://auth.atlassian.com/oauth/token"
    userinfo_endpoint: str = "https://api.atlassian.com/me"
    scopes: tuple[str, ...] = ("read:me", "offline_access")

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        params = {
            "audience": "api.atlassian.com",
            "client_id": self.client_id,
            "scope": " ".join(self.scopes),
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, *, redirect_uri: str) -> ProviderTokens:
        try:
            return _post_token_request(
                self.token_endpoint,
                "token_exchange",
                data={
                    "grant_type": "authorization_code",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                as_json=True,
            )
        except _ProviderStepError as exc:
            raise _upstream_failure(self.provider, exc)

    def fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            userinfo = _fetch_json(
                self.userinfo_endpoint, "profile", access_token=access_token
            )
            if not isinstance(userinfo, dict):
                raise _ProviderStepError("profile", "profile was not an object")
            account_id = _optional_str(userinfo.get("account_id"))
            if account_id is None:
                raise _ProviderStepError("profile", "profile did not include account_id")
        except _ProviderStepError as exc:
            raise _upstream_failure(self.provider, exc)

        name = _optional_str(userinfo.get("name"))
        return ProviderProfile(
            provider=self.provider,
            id=account_id,
            username=_optional_str(userinfo.get("nickname")) or name,
            email=_optional_str(userinfo.get("email")),
            email_verified=_to_bool(userinfo.get("email_verified")),
            display_name=name,
            avatar_url=_optional_str(userinfo.get("picture")),
        )


_PROVIDER_FACTORIES: dict[IntegrationProvider, type] = {
    IntegrationProvider.GITHUB: GitHubIdentityProvider,
    IntegrationProvider.JIRA: JiraIdentityProvider,
}

_PROVIDER_SETTING_PREFIX: dict[IntegrationProvider, str] = {
    IntegrationProvider.GITHUB: "oauth_github",
    IntegrationProvider.JIRA: "oauth_jira",
}


def parse_provider(name: str) -> IntegrationProvider:
    try:
        return IntegrationProvider(name.strip().upper())
    except ValueError:
        raise UnsupportedProviderError()


def _provider_credentials(provider: IntegrationProvider) -> tuple[str, str]:
    prefix = _PROVIDER_SETTING_PREFIX[provider]
    client_id = getattr(settings, f"{prefix}_client_id", None)
    client_secret = getattr(settings, f"{prefix}_client_secret", None)
    if not client_id or not client_secret:
        raise ProviderNotConfiguredError(
            f"OAuth provider '{provider.slug}' is not configured"
        )
    return str(client_id), str(client_secret)


def get_identity_provider(provider: IntegrationProvider) -> IdentityProvider:
    client_id, client_secret = _provider_credentials(provider)
    factory = _PROVIDER_FACTORIES[provider]
    return factory(client_id=client_id, client_secret=client_secret)


def list_enabled_providers() -> list[IdentityProvider]:
    enabled: list[IdentityProvider] = []
    for provider in IntegrationProvider:
        try:
            enabled.append(get_identity_provider(provider))
        except ProviderNotConfiguredError:
            continue
    return enabled


def callback_url(request: Request, provider: IntegrationProvider) -> str:
    configured = getattr(settings, f"{_PROVIDER_SETTING_PREFIX[provider]}_callback_url", None)
    if configured:
        return str(configured)
    base = settings.oauth_public_base_url
    if base:
        normalized = str(base).rstrip("/")
    else:
        normalized = str(request.base_url).rstrip("/")
    return (
        f"{normalized}/api/{settings.api_latest_version}"
        f"/auth/oauth/{provider.slug}/callback"
    )


def fetch_external_identity(
    provider: IntegrationProvider, code: str, *, redirect_uri: str
) -> tuple[ProviderProfile, ProviderTokens]:
    identity_provider = get_identity_provider(provider)
    tokens = identity_provider.exchange_code(code, redirect_uri=redirect_uri)
    profile = identity_provider.fetch_profile(tokens.access_token)
    return profile, tokens
