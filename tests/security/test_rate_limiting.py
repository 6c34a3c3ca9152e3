"""Rate limiting on the launch endpoints.

429 + Retry-After once the per-IP launch limit is exceeded; other routes
are not limited. Each app carries its own limiter.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from lti_gateway.app import create_app
from lti_gateway.security import LAUNCH_RATE_LIMIT, extract_bearer_token


def _limit_count() -> int:
    return int(LAUNCH_RATE_LIMIT.split("/")[0])


@pytest.fixture
def make_client(settings, store, key_set, provider):
    """Build an app with rate limiting switched on or off."""

    def _make(enabled: bool) -> TestClient:
        app_settings = settings.model_copy(update={"rate_limit_enabled": enabled})
        app = create_app(settings=app_settings, store=store, key_set=key_set, provider=provider)
        return TestClient(app, follow_redirects=False)

    return _make


@pytest.fixture
def limited_client(make_client):
    with make_client(True) as c:
        yield c


class TestLaunchRateLimit:
    def test_login_limited(self, limited_client):
        statuses = [limited_client.get("/api/lti/login").status_code for _ in range(_limit_count() + 1)]
        assert statuses[:-1] == [400] * _limit_count()
        assert statuses[-1] == 429

    def test_429_body_and_retry_after(self, limited_client):
        for _ in range(_limit_count()):
            limited_client.get("/api/lti/login")
        resp = limited_client.get("/api/lti/login")
        assert resp.status_code == 429
        assert resp.json()["error"] == "rate_limited"
        assert int(resp.headers["retry-after"]) >= 1

    def test_paths_counted_separately(self, limited_client):
        for _ in range(_limit_count()):
            limited_client.get("/api/lti/login")
        resp = limited_client.post("/api/lti/launch", data={"state": "s"})
        assert resp.status_code == 400

    def test_health_not_limited(self, limited_client):
        for _ in range(_limit_count() + 5):
            assert limited_client.get("/health").status_code == 200

    def test_disabled(self, make_client):
        with make_client(False) as c:
            statuses = {c.get("/api/lti/login").status_code for _ in range(_limit_count() + 5)}
        assert statuses == {400}


class TestLimiterIsolation:
    """Building a second app never changes the first app's limiting."""

    def test_later_app_does_not_disable_earlier(self, make_client):
        with make_client(True) as limited:
            with make_client(False) as unlimited:
                for _ in range(_limit_count()):
                    limited.get("/api/lti/login")
                assert limited.get("/api/lti/login").status_code == 429
                assert unlimited.get("/api/lti/login").status_code == 400

    def test_counters_not_shared_between_apps(self, make_client):
        with make_client(True) as first:
            for _ in range(_limit_count()):
                first.get("/api/lti/login")
            assert first.get("/api/lti/login").status_code == 429
            with make_client(True) as second:
                assert second.get("/api/lti/login").status_code == 400


class TestBearerParsing:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Bearer s3cret", "s3cret"),
            ("bearer s3cret", "s3cret"),
            ("  Bearer   s3cret  ", "s3cret"),
            ("Basic s3cret", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer_token(header) == expected
