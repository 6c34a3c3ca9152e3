"""Shared fixtures for the LTI gateway test suite.

- In-memory ledger store with redis semantics (INCRBY/TTL/LTRIM/...)
- RSA keys for the platform (signs id_tokens) and the tool (signs deep links)
- Settings, app and TestClient factories with rate limiting disabled
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from lti_gateway.app import create_app
from lti_gateway.config import Settings
from lti_gateway.lti import claims as lti
from lti_gateway.provider import PronunciationFeedback
from lti_gateway.store import TtlState
from lti_gateway.tokens import TokenService

ISSUER = "https://canvas.example.edu"
CLIENT_ID = "100000000000123"
PLATFORM_KID = "platform-key-1"
TOOL_KID = "tool-key-1"
JWT_SECRET = "test-app-token-secret"
ADMIN_SECRET = "test-admin-secret"


class InMemoryLedgerStore:
    """Test double for RedisLedgerStore with the same command semantics."""

    def __init__(self) -> None:
        self.values: dict[str, int | str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiry: dict[str, datetime] = {}
        self.expire_calls: list[tuple[str, datetime]] = []
        self.closed = False

    def _exists(self, key: str) -> bool:
        return key in self.values or key in self.lists or key in self.sets

    async def get(self, key: str) -> str | None:
        value = self.values.get(key)
        return None if value is None else str(value)

    async def set(self, key: str, value: str | int, keep_ttl: bool = False) -> None:
        self.values[key] = value
        if not keep_ttl:
            self.expiry.pop(key, None)

    async def incr(self, key: str) -> int:
        return await self.incrby(key, 1)

    async def incrby(self, key: str, amount: int) -> int:
        self.values[key] = int(self.values.get(key, 0)) + amount
        return int(self.values[key])

    async def decrby(self, key: str, amount: int) -> int:
        return await self.incrby(key, -amount)

    async def expire_at(self, key: str, when: datetime) -> None:
        self.expire_calls.append((key, when))
        if self._exists(key):
            self.expiry[key] = when

    async def ttl_state(self, key: str) -> TtlState:
        if not self._exists(key):
            return TtlState.UNSET
        if key in self.expiry:
            return TtlState.SET
        return TtlState.PERSISTENT

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)
        self.lists.pop(key, None)
        self.sets.pop(key, None)
        self.expiry.pop(key, None)

    async def rpush(self, key: str, *values: str) -> int:
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def ltrim(self, key: str, start: int, end: int) -> None:
        items = self.lists.get(key, [])
        n = len(items)
        start = max(n + start, 0) if start < 0 else start
        end = n + end if end < 0 else end
        self.lists[key] = items[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self.lists.get(key, [])
        n = len(items)
        start = max(n + start, 0) if start < 0 else start
        end = n + end if end < 0 else end
        return list(items[start:end + 1])

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def mget(self, keys: list[str]) -> list[str | None]:
        return [await self.get(k) for k in keys]

    async def close(self) -> None:
        self.closed = True


class StaticKeySet:
    """Platform key set that never touches the network."""

    def __init__(self, keys: list[dict[str, Any]]):
        self.keys = keys

    async def get_key(self, kid: str | None) -> dict[str, Any] | None:
        if kid is None:
            return {"keys": self.keys}
        return next((k for k in self.keys if k.get("kid") == kid), None)

    async def aclose(self) -> None:
        pass


def _generate_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def public_jwk(pem: str, kid: str) -> dict[str, Any]:
    data = jwk.construct(pem, "RS256").public_key().to_dict()
    data.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return data


@pytest.fixture(scope="session")
def platform_pem() -> str:
    return _generate_pem()


@pytest.fixture(scope="session")
def tool_pem() -> str:
    return _generate_pem()


@pytest.fixture
def settings(tool_pem) -> Settings:
    return Settings(
        lti_issuer=ISSUER,
        lti_client_id=CLIENT_ID,
        lti_authorization_endpoint=f"{ISSUER}/api/lti/authorize_redirect",
        lti_redirect_uri="https://tutor.example.com/api/lti/launch",
        lti_jwks_endpoint=f"{ISSUER}/api/lti/security/jwks",
        lti_tool_kid=TOOL_KID,
        lti_tool_private_key_pem=tool_pem,
        jwt_secret=JWT_SECRET,
        admin_secret=ADMIN_SECRET,
        monthly_limit=400,
        speaking_monthly_limit_minutes=20,
        history_max=40,
        checkout_url_50="https://pay.example.com/50",
        rate_limit_enabled=False,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def key_set(platform_pem) -> StaticKeySet:
    return StaticKeySet([public_jwk(platform_pem, PLATFORM_KID)])


@pytest.fixture
def tokens(settings, key_set) -> TokenService:
    return TokenService(settings, key_set)


@pytest.fixture
def provider() -> AsyncMock:
    """Provider double: canned replies, inspectable calls."""
    fake = AsyncMock()
    fake.generate_reply.return_value = "Great question! Let's practice."
    fake.transcribe.return_value = "I goed to school yesterday"
    fake.pronunciation_feedback.return_value = PronunciationFeedback(
        correct_sentence="I went to school yesterday",
        feedback_text="Use 'went', the past tense of 'go'.",
    )
    fake.synthesize.return_value = "bXAzLWJ5dGVz"
    return fake


@pytest.fixture
def app(settings, store, key_set, provider):
    return create_app(settings=settings, store=store, key_set=key_set, provider=provider)


@pytest.fixture
def client(app):
    with TestClient(app, follow_redirects=False) as c:
        yield c


@pytest.fixture
def make_id_token(platform_pem):
    """Factory for platform-signed id_tokens.

    Keyword overrides replace claims; pass ``_key``/``_kid`` to sign with a
    different key.
    """

    def _make(_key: str | None = None, _kid: str = PLATFORM_KID, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "canvas-user-42",
            "email": "  Student@Example.EDU ",
            "nonce": "nonce-1",
            "iat": now,
            "exp": now + 300,
            lti.MESSAGE_TYPE: lti.RESOURCE_LINK_REQUEST,
            lti.VERSION: lti.LTI_VERSION,
            lti.DEPLOYMENT_ID: "deployment-1",
        }
        claims.update(overrides)
        return jwt.encode(claims, _key or platform_pem, algorithm="RS256", headers={"kid": _kid})

    return _make


@pytest.fixture
def app_token(tokens):
    """Factory for application tokens (the ``t`` identity channel)."""
    return tokens.issue_app_token


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
