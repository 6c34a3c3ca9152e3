"""Token service: platform token verification and tool-issued tokens.

Security contract:
- Platform id_tokens are verified against the platform's live JWKS
  (RS256 only, issuer == LTI_ISSUER, audience contains LTI_CLIENT_ID)
- Application tokens are HS256, 24h TTL, sub = anonymous user id
- Invalid or expired application tokens read as "absent" (never an error)
- Deep-link responses are RS256-signed with the tool key and carry its kid
- Handshake cookies are HMAC-signed; comparison is constant-time
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from jose import JWTError, jwk, jwt

from lti_gateway.config import Settings
from lti_gateway.errors import ConfigMissing, TokenRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)

PLATFORM_ALGORITHMS = ["RS256"]
_APP_ALGORITHM = "HS256"
_APP_TOKEN_TTL = timedelta(hours=24)
_DEEP_LINK_ALGORITHM = "RS256"

# Minimum spacing between refetches triggered by an unknown kid
_UNKNOWN_KID_REFRESH_SECONDS = 30


class RemoteKeySet:
    """Platform JWKS fetched over HTTP and cached in-process.

    Refresh policy: cached keys are reused for ``cache_seconds``; an unknown
    ``kid`` forces one refetch, at most every 30 seconds.
    """

    def __init__(
        self,
        jwks_url: str,
        cache_seconds: int = 300,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._url = jwks_url
        self._cache_seconds = cache_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._keys: list[dict[str, Any]] = []
        self._fetched_at = 0.0

    async def _refresh(self) -> None:
        if not self._url:
            raise ConfigMissing("LTI_JWKS_ENDPOINT is not configured")
        try:
            resp = await self._client.get(self._url)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Platform JWKS fetch failed: %s (%s)", self._url, type(e).__name__)
            raise UpstreamUnavailable("The platform key set could not be loaded.") from e
        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list):
            raise UpstreamUnavailable("The platform key set is malformed.")
        self._keys = [k for k in keys if isinstance(k, dict)]
        self._fetched_at = time.monotonic()
        logger.info("Platform JWKS refreshed: %d keys", len(self._keys))

    def _lookup(self, kid: str | None) -> dict[str, Any] | None:
        if kid is None:
            return {"keys": self._keys} if self._keys else None
        for key in self._keys:
            if key.get("kid") == kid:
                return key
        return None

    async def get_key(self, kid: str | None) -> dict[str, Any] | None:
        """Return the JWK for ``kid`` (or the whole set when kid is absent)."""
        age = time.monotonic() - self._fetched_at
        if not self._keys or age > self._cache_seconds:
            await self._refresh()
            return self._lookup(kid)

        key = self._lookup(kid)
        if key is None and age > _UNKNOWN_KID_REFRESH_SECONDS:
            await self._refresh()
            key = self._lookup(kid)
        return key

    async def aclose(self) -> None:
        await self._client.aclose()


def sign_cookie(value: str, secret: str) -> str:
    """Append an HMAC-SHA256 tag to a cookie value."""
    mac = hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{value}.{mac}"


def unsign_cookie(raw: str | None, secret: str) -> str | None:
    """Return the cookie value if its tag verifies, else None."""
    if not raw:
        return None
    value, _, mac = raw.rpartition(".")
    if not value or not mac:
        return None
    expected = hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, mac):
        return None
    return value


class TokenService:
    """Verifies platform tokens and issues/signs the tool's own tokens."""

    def __init__(self, settings: Settings, key_set: RemoteKeySet):
        self._settings = settings
        self._key_set = key_set

    # ── Platform tokens ───────────────────────────────────────────────────

    async def verify_platform_token(self, id_token: str) -> dict[str, Any]:
        """Verify an LMS id_token and return its claims.

        Raises:
            TokenRejected: signature, algorithm, issuer, audience or expiry failed
            UpstreamUnavailable: the platform key set could not be fetched
        """
        issuer = self._settings.require("lti_issuer")
        client_id = self._settings.require("lti_client_id")

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise TokenRejected("malformed token header") from e
        if header.get("alg") not in PLATFORM_ALGORITHMS:
            raise TokenRejected(f"unexpected algorithm {header.get('alg')!r}")

        key = await self._key_set.get_key(header.get("kid"))
        if key is None:
            raise TokenRejected("no platform key matches the token")

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=PLATFORM_ALGORITHMS,
                audience=client_id,
                issuer=issuer,
                options={"verify_at_hash": False},
            )
        except JWTError as e:
            raise TokenRejected(str(e)) from e

    # ── Application tokens ────────────────────────────────────────────────

    def issue_app_token(self, user_id: str) -> str:
        """Create a 24h application token whose subject is the user id."""
        secret = self._settings.require("jwt_secret")
        now = datetime.now(timezone.utc)
        payload = {"sub": user_id, "iat": now, "exp": now + _APP_TOKEN_TTL}
        return jwt.encode(payload, secret, algorithm=_APP_ALGORITHM)

    def verify_app_token(self, token: str | None) -> str | None:
        """Return the token's subject, or None for a missing/invalid/expired token."""
        if not token:
            return None
        secret = self._settings.require("jwt_secret")
        try:
            claims = jwt.decode(token, secret, algorithms=[_APP_ALGORITHM])
        except JWTError:
            return None
        sub = claims.get("sub")
        return sub if isinstance(sub, str) and sub else None

    # ── Tool signing key ──────────────────────────────────────────────────

    def _signing_key(self) -> str | dict[str, Any]:
        if self._settings.lti_tool_private_key_pem:
            # Env vars often carry the PEM with literal "\n" separators
            return self._settings.lti_tool_private_key_pem.replace("\\n", "\n")
        if self._settings.lti_tool_private_jwk:
            try:
                return json.loads(self._settings.lti_tool_private_jwk)
            except ValueError as e:
                raise ConfigMissing("LTI_TOOL_PRIVATE_JWK is not valid JSON") from e
        raise ConfigMissing("LTI_TOOL_PRIVATE_KEY_PEM is not configured")

    def sign_deep_link_response(self, claims: dict[str, Any]) -> str:
        """Sign a deep-linking response JWT with the tool's private key."""
        kid = self._settings.require("lti_tool_kid")
        return jwt.encode(
            claims,
            self._signing_key(),
            algorithm=_DEEP_LINK_ALGORITHM,
            headers={"kid": kid},
        )

    def tool_jwks(self) -> dict[str, Any]:
        """The tool's public key set, as served to the platform."""
        if self._settings.lti_tool_jwks:
            try:
                parsed = json.loads(self._settings.lti_tool_jwks)
            except ValueError as e:
                raise ConfigMissing("LTI_TOOL_JWKS is not valid JSON", code="jwks_invalid") from e
            keys = parsed.get("keys") if isinstance(parsed, dict) else None
            if not isinstance(keys, list) or not keys:
                raise ConfigMissing("LTI_TOOL_JWKS must contain a non-empty keys array", code="jwks_invalid")
            return parsed

        kid = self._settings.require("lti_tool_kid")
        public = jwk.construct(self._signing_key(), _DEEP_LINK_ALGORITHM).public_key().to_dict()
        public.update({"kid": kid, "use": "sig", "alg": _DEEP_LINK_ALGORITHM})
        return {"keys": [public]}
