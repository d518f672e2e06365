from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authhub import oauth_external
from authhub.config import settings
from authhub.errors import (
    ProviderNotConfiguredError,
    UnsupportedProviderError,
    UpstreamFailure,
)
from authhub.models import IntegrationProvider
from starlette.requests import Request

pytestmark = pytest.mark.unit


class DummyResponse:
    def __init__(self, status_code: int, payload: Any = None, *, invalid_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("invalid json")
        return self._payload


@pytest.fixture(autouse=True)
def reset_oauth_settings(monkeypatch):
    for provider in ["github", "jira"]:
        monkeypatch.setattr(settings, f"oauth_{provider}_client_id", None)
        monkeypatch.setattr(settings, f"oauth_{provider}_client_secret", None)
        monkeypatch.setattr(settings, f"oauth_{provider}_callback_url", None)
    monkeypatch.setattr(settings, "oauth_public_base_url", None)


@pytest.fixture
def fake_request() -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "scheme": "http",
        "method": "GET",
        "path": "/api/v1/auth/oauth/github/start",
        "raw_path": b"/api/v1/auth/oauth/github/start",
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


def _enable_provider(monkeypatch, provider: str) -> None:
    monkeypatch.setattr(settings, f"oauth_{provider}_client_id", f"{provider}-client-id")
    monkeypatch.setattr(
        settings,
        f"oauth_{provider}_client_secret",
        f"{provider}-client-secret",
    )


def _github() -> oauth_external.GitHubIdentityProvider:
    return oauth_external.GitHubIdentityProvider(client_id="gh-id", client_secret="gh-secret")


def _jira() -> oauth_external.JiraIdentityProvider:
    return oauth_external.JiraIdentityProvider(client_id="jira-id", client_secret="jira-secret")


def _github_get(user_payload, emails_payload):
    def fake_get(url: str, *, headers: dict[str, str], timeout: float):
        assert headers["Authorization"] == "Bearer gh-token"
        if url.endswith("/user/emails"):
            return emails_payload
        return user_payload

    return fake_get


@pytest.mark.parametrize(
    "name,expected",
    [("github", IntegrationProvider.GITHUB), ("JIRA", IntegrationProvider.JIRA), (" Jira ", IntegrationProvider.JIRA)],
)
def test_parse_provider_is_case_insensitive(name, expected):
    assert oauth_external.parse_provider(name) is expected


def test_parse_provider_rejects_unknown_names():
    with pytest.raises(UnsupportedProviderError) as exc_info:
        oauth_external.parse_provider("gitlab")
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["error_code"] == "invalid_provider"


def test_get_identity_provider_requires_credentials():
    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        oauth_external.get_identity_provider(IntegrationProvider.GITHUB)
    assert exc_info.value.detail["error_code"] == "oauth_provider_not_configured"
    assert "github" in exc_info.value.detail["detail"]


def test_get_identity_provider_selects_by_tag(monkeypatch):
    _enable_provider(monkeypatch, "github")
    _enable_provider(monkeypatch, "jira")

    github = oauth_external.get_identity_provider(IntegrationProvider.GITHUB)
    jira = oauth_external.get_identity_provider(IntegrationProvider.JIRA)

    assert isinstance(github, oauth_external.GitHubIdentityProvider)
    assert github.client_id == "github-client-id"
    assert isinstance(jira, oauth_external.JiraIdentityProvider)


def test_list_enabled_providers(monkeypatch):
    assert oauth_external.list_enabled_providers() == []

    _enable_provider(monkeypatch, "jira")
    providers = oauth_external.list_enabled_providers()
    assert [provider.provider for provider in providers] == [IntegrationProvider.JIRA]


def test_callback_url_prefers_configured_value(monkeypatch, fake_request):
    monkeypatch.setattr(settings, "oauth_github_callback_url", "https://api.example.com/cb")
    assert (
        oauth_external.callback_url(fake_request, IntegrationProvider.GITHUB)
        == "https://api.example.com/cb"
    )


def test_callback_url_uses_public_base_or_request(monkeypatch, fake_request):
    assert (
        oauth_external.callback_url(fake_request, IntegrationProvider.JIRA)
        == "http://testserver/api/v1/auth/oauth/jira/callback"
    )
    monkeypatch.setattr(settings, "oauth_public_base_url", "https://api.example.com/")
    assert (
        oauth_external.callback_url(fake_request, IntegrationProvider.JIRA)
        == "https://api.example.com/api/v1/auth/oauth/jira/callback"
    )


def test_github_authorization_url_carries_state():
    url = _github().authorization_url(state="state-123", redirect_uri="http://testserver/cb")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert parsed.netloc == "github.com"
    assert query["client_id"] == ["gh-id"]
    assert query["state"] == ["state-123"]
    assert query["redirect_uri"] == ["http://testserver/cb"]
    assert query["scope"] == ["user:email read:user"]


def test_jira_authorization_url_requests_offline_access():
    url = _jira().authorization_url(state="state-123", redirect_uri="https://api.example.com/cb")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert parsed.netloc == "auth.atlassian.com"
    assert query["audience"] == ["api.atlassian.com"]
    assert query["scope"] == ["read:me offline_access"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["state-123"]


def test_github_exchange_code_posts_client_credentials(monkeypatch):
    captured: dict[str, Any] = {}

    def fake_post(url: str, *, data: dict[str, str], headers: dict[str, str], timeout: float):
        captured.update(url=url, data=data, headers=headers, timeout=timeout)
        return DummyResponse(200, {"access_token": "gh-token", "token_type": "bearer"})

    monkeypatch.setattr(oauth_external.httpx, "post", fake_post)
    tokens = _github().exchange_code("code-123", redirect_uri="http://testserver/cb")

    assert tokens == oauth_external.ProviderTokens(access_token="gh-token")
    assert captured["url"] == "https://github.com/login/oauth/access_token"
    assert captured["data"]["client_secret"] == "gh-secret"
    assert captured["data"]["code"] == "code-123"
    assert "grant_type" not in captured["data"]
    assert captured["headers"]["Accept"] == "application/json"
    assert captured["timeout"] == settings.oauth_http_timeout_seconds


def test_jira_exchange_code_uses_authorization_code_grant(monkeypatch):
    captured: dict[str, Any] = {}

    def fake_post(url: str, *, json: dict[str, str], headers: dict[str, str], timeout: float):
        captured.update(url=url, json=json)
        return DummyResponse(200, {"access_token": "jira-token", "refresh_token": "jira-refresh"})

    monkeypatch.setattr(oauth_external.httpx, "post", fake_post)
    tokens = _jira().exchange_code("code-123", redirect_uri="https://api.example.com/cb")

    assert tokens.access_token == "jira-token"
    assert tokens.refresh_token == "jira-refresh"
    assert captured["json"]["grant_type"] == "authorization_code"


@pytest.mark.parametrize(
    "outcome",
    [
        httpx.ConnectTimeout("timed out"),
        DummyResponse(500, {"message": "boom"}),
        DummyResponse(200, None, invalid_json=True),
        DummyResponse(200, {"error": "bad_verification_code"}),
        DummyResponse(200, {"token_type": "bearer"}),
        DummyResponse(200, ["not", "an", "object"]),
    ],
)
def test_exchange_code_failures_are_normalized(monkeypatch, caplog, outcome):
    def fake_post(*_args, **_kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(oauth_external.httpx, "post", fake_post)
    with caplog.at_level(logging.WARNING, logger="authhub.oauth_external"):
        with pytest.raises(UpstreamFailure) as exc_info:
            _github().exchange_code("code-123", redirect_uri="http://testserver/cb")

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail == {
        "detail": "OAuth failed, try again",
        "error_code": "oauth_failed",
    }
    assert "token_exchange" in caplog.text


def test_github_fetch_profile_selects_primary_email(monkeypatch):
    user = DummyResponse(
        200,
        {"id": 9001, "login": "octocat", "name": "The Octocat", "avatar_url": "https://a/x.png"},
    )
    emails = DummyResponse(
        200,
        [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "octo@example.com", "primary": True, "verified": True},
        ],
    )
    monkeypatch.setattr(oauth_external.httpx, "get", _github_get(user, emails))

    profile = _github().fetch_profile("gh-token")

    assert profile == oauth_external.ProviderProfile(
        provider=IntegrationProvider.GITHUB,
        id="9001",
        username="octocat",
        email="octo@example.com",
        email_verified=True,
        display_name="The Octocat",
        avatar_url="https://a/x.png",
    )


def test_github_fetch_profile_without_primary_email(monkeypatch):
    user = DummyResponse(200, {"id": 1, "login": "ghost"})
    emails = DummyResponse(200, [{"email": "x@example.com", "primary": False, "verified": True}])
    monkeypatch.setattr(oauth_external.httpx, "get", _github_get(user, emails))

    profile = _github().fetch_profile("gh-token")

    assert profile.email is None
    assert profile.email_verified is False
    assert profile.display_name is None


def test_github_unverified_primary_email_is_flagged(monkeypatch):
    user = DummyResponse(200, {"id": 1, "login": "ghost"})
    emails = DummyResponse(200, [{"email": "x@example.com", "primary": True, "verified": False}])
    monkeypatch.setattr(oauth_external.httpx, "get", _github_get(user, emails))

    profile = _github().fetch_profile("gh-token")

    assert profile.email == "x@example.com"
    assert profile.email_verified is False


@pytest.mark.parametrize(
    "user_response,emails_response,step",
    [
        (DummyResponse(401, {}), DummyResponse(200, []), "profile"),
        (DummyResponse(200, {"login": "no-id"}), DummyResponse(200, []), "profile"),
        (DummyResponse(200, {"id": 1}), DummyResponse(403, {}), "emails"),
        (DummyResponse(200, {"id": 1}), DummyResponse(200, {"not": "a list"}), "emails"),
        (DummyResponse(200, {"id": 1}), DummyResponse(200, None, invalid_json=True), "emails"),
    ],
)
def test_github_fetch_profile_failures_are_normalized(
    monkeypatch, caplog, user_response, emails_response, step
):
    monkeypatch.setattr(
        oauth_external.httpx, "get", _github_get(user_response, emails_response)
    )
    with caplog.at_level(logging.WARNING, logger="authhub.oauth_external"):
        with pytest.raises(UpstreamFailure):
            _github().fetch_profile("gh-token")
    assert f"at {step}" in caplog.text


def test_github_fetch_profile_network_error(monkeypatch):
    def fake_get(*_args, **_kwargs):
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(oauth_external.httpx, "get", fake_get)
    with pytest.raises(UpstreamFailure):
        _github().fetch_profile("gh-token")


def test_jira_fetch_profile_maps_atlassian_fields(monkeypatch):
    captured: dict[str, Any] = {}

    def fake_get(url: str, *, headers: dict[str, str], timeout: float):
        captured["url"] = url
        return DummyResponse(
            200,
            {
                "account_id": "557058:abc",
                "name": "Jane Doe",
                "nickname": "jdoe",
                "email": "jane@example.com",
                "email_verified": True,
                "picture": "https://avatar/jane.png",
            },
        )

    monkeypatch.setattr(oauth_external.httpx, "get", fake_get)
    profile = _jira().fetch_profile("jira-token")

    assert captured["url"] == "https://api.atlassian.com/me"
    assert profile.id == "557058:abc"
    assert profile.username == "jdoe"
    assert profile.display_name == "Jane Doe"
    assert profile.email_verified is True
    assert profile.avatar_url == "https://avatar/jane.png"


def test_jira_fetch_profile_requires_account_id(monkeypatch):
    monkeypatch.setattr(
        oauth_external.httpx,
        "get",
        lambda *_args, **_kwargs: DummyResponse(200, {"name": "Jane"}),
    )
    with pytest.raises(UpstreamFailure):
        _jira().fetch_profile("jira-token")


def test_fetch_external_identity_runs_exchange_then_profile(monkeypatch):
    _enable_provider(monkeypatch, "github")
    monkeypatch.setattr(
        oauth_external.httpx,
        "post",
        lambda *_args, **_kwargs: DummyResponse(200, {"access_token": "gh-token"}),
    )
    monkeypatch.setattr(
        oauth_external.httpx,
        "get",
        _github_get(
            DummyResponse(200, {"id": 42, "login": "octocat"}),
            DummyResponse(200, [{"email": "o@example.com", "primary": True, "verified": True}]),
        ),
    )

    profile, tokens = oauth_external.fetch_external_identity(
        IntegrationProvider.GITHUB, "code-123", redirect_uri="http://testserver/cb"
    )

    assert profile.id == "42"
    assert tokens.access_token == "gh-token"


@pytest.mark.parametrize(
    "value,expected",
    [(True, True), (False, False), ("true", True), ("1", True), ("no", False), (1, True), (0, False), (None, False)],
)
def test_to_bool(value, expected):
    assert oauth_external._to_bool(value) is expected
