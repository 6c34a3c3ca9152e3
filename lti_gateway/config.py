"""Gateway configuration, read from the environment."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from lti_gateway.errors import ConfigMissing


class Settings(BaseSettings):
    """Environment-driven settings for the LTI gateway.

    Required LTI and secret values default to empty strings and are
    checked with ``require()`` when a request first needs them.
    """

    # Platform registration
    lti_issuer: str = ""
    lti_client_id: str = ""
    lti_authorization_endpoint: str = ""
    lti_redirect_uri: str = ""
    lti_jwks_endpoint: str = ""

    # Tool signing key (PEM or private JWK) and published key set
    lti_tool_kid: str = ""
    lti_tool_private_key_pem: str = ""
    lti_tool_private_jwk: str = ""
    lti_tool_jwks: str = ""
    lti_tool_url: str = ""
    lti_resource_title: str = "IA English Journey"

    # Application tokens
    jwt_secret: str = ""

    # Quotas
    monthly_limit: int = Field(400, ge=1)
    quota_prefix: str = "quota"
    speaking_prefix: str = "speaking"
    speaking_monthly_limit_seconds: int = Field(0, ge=0)
    speaking_monthly_limit_minutes: int = Field(20, ge=1)

    # History
    history_prefix: str = "history"
    history_max: int = Field(40, ge=1)

    # Key-value store
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 5.0

    # Admin + upgrade packages
    admin_secret: str = ""
    checkout_url_50: str = ""
    checkout_url_100: str = ""
    checkout_url_200: str = ""

    # Language-model provider
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    transcribe_model: str = "gpt-4o-mini-transcribe"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"

    # Upstream behaviour
    upstream_timeout_seconds: float = 30.0
    jwks_cache_seconds: int = 300

    # HTTP surface
    cors_allowed_origins: list[str] = ["http://localhost:3000"]
    rate_limit_enabled: bool = True
    app_root_path: str = "/"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def speaking_limit_seconds(self) -> int:
        """Monthly speaking allowance; explicit seconds win over minutes."""
        if self.speaking_monthly_limit_seconds > 0:
            return self.speaking_monthly_limit_seconds
        return self.speaking_monthly_limit_minutes * 60

    def require(self, name: str) -> str:
        """Return a required setting or raise ConfigMissing."""
        value = getattr(self, name, "")
        if not value:
            raise ConfigMissing(f"{name.upper()} is not configured")
        return value

    def upgrade_packages(self) -> list[dict]:
        """Checkout links offered when the message quota runs out."""
        packages = []
        for amount, url in (
            (50, self.checkout_url_50),
            (100, self.checkout_url_100),
            (200, self.checkout_url_200),
        ):
            if url:
                packages.append({"label": f"+{amount} messages", "url": url, "amount": amount})
        return packages
