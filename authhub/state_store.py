"""Short-lived, single-use storage for the OAuth redirect handshake.

Each OAuth flow stores ``state -> destination`` before redirecting to the
provider and consumes it exactly once on callback. Entries expire on their
own after ``oauth_state_expire_seconds`` so abandoned flows leave nothing
behind.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from fastapi import Request
from redis import Redis

from .config import settings

logger = logging.getLogger(__name__)

_KEY_PREFIX = "oauth:state:"


@dataclass(frozen=True)
class OAuthHandshake:
    destination: str
    link_user_id: str | None = None


def _key(state: str) -> str:
    return f"{_KEY_PREFIX}{state}"


def _encode(handshake: OAuthHandshake) -> str:
    return json.dumps(
        {"redirect_uri": handshake.destination, "link_user_id": handshake.link_user_id}
    )


def _decode(raw: str | None) -> OAuthHandshake | None:
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("Discarding malformed OAuth state entry")
        return None
    if not isinstance(payload, dict):
        return None
    destination = payload.get("redirect_uri")
    if not isinstance(destination, str) or not destination:
        return None
    link_user_id = payload.get("link_user_id")
    if link_user_id is not None and not isinstance(link_user_id, str):
        return None
    return OAuthHandshake(destination=destination, link_user_id=link_user_id)


class OAuthStateStore:
    def __init__(self, redis: Redis, ttl_seconds: int | None = None):
        self._redis = redis
        self._ttl_seconds = (
            settings.oauth_state_expire_seconds if ttl_seconds is None else ttl_seconds
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def put(self, state: str, destination: str, *, link_user_id: str | None = None) -> None:
        handshake = OAuthHandshake(destination=destination, link_user_id=link_user_id)
        self._redis.set(_key(state), _encode(handshake), ex=self._ttl_seconds)

    def get(self, state: str) -> OAuthHandshake | None:
        return _decode(self._redis.get(_key(state)))

    def delete(self, state: str) -> None:
        self._redis.delete(_key(state))

    def consume(self, state: str) -> OAuthHandshake | None:
        # GETDEL reads and removes in one step, so concurrent callbacks
        # presenting the same state cannot both see it.
        return _decode(self._redis.getdel(_key(state)))


def get_state_store(request: Request) -> OAuthStateStore:
    return OAuthStateStore(request.app.state.redis)
