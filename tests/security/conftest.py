"""Security test fixtures.

- ``start_login`` runs the OIDC login step and returns what a browser
  would hold afterwards (state from the redirect, signed cookies)
- ``parse_set_cookies`` reads Set-Cookie headers into name -> attributes
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

import pytest

from tests.conftest import ISSUER


def parse_set_cookies(response) -> dict[str, dict[str, str]]:
    """name -> {"value": ..., "max-age": ..., "secure": "", ...} (lower-cased keys)."""
    cookies: dict[str, dict[str, str]] = {}
    for header in response.headers.get_list("set-cookie"):
        first, *attrs = [part.strip() for part in header.split(";")]
        name, _, value = first.partition("=")
        parsed = {"value": value.strip('"')}
        for attr in attrs:
            key, _, val = attr.partition("=")
            parsed[key.strip().lower()] = val.strip()
        cookies[name] = parsed
    return cookies


@dataclass
class BrowserSession:
    state: str
    nonce: str
    cookie_header: str


@pytest.fixture
def start_login(client):
    def _start() -> BrowserSession:
        resp = client.get(
            "/api/lti/login",
            params={"iss": ISSUER, "login_hint": "hint-1", "lti_message_hint": "msg-1"},
        )
        assert resp.status_code == 302
        query = parse_qs(urlsplit(resp.headers["location"]).query)
        cookies = parse_set_cookies(resp)
        header = f"lti_state={cookies['lti_state']['value']}; lti_nonce={cookies['lti_nonce']['value']}"
        return BrowserSession(state=query["state"][0], nonce=query["nonce"][0], cookie_header=header)

    return _start
