"""
Consent server configuration.

Settings are held in an explicit ``ConsentServerConfig`` object that is
passed into the application at construction time, rather than read from
module-level globals, so tests can build an app against any API host
without touching the process environment.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_EVENTS_API_URL = "https://api.tampa.dev"


class ConsentServerConfig(BaseModel):
    """Runtime configuration for the consent server."""

    events_api_url: str = Field(
        default=DEFAULT_EVENTS_API_URL,
        description="Base URL of the Tampa.dev events API"
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout applied to every events API call"
    )
    login_path: str = Field(default="/login", description="Where anonymous users sign in")
    home_path: str = Field(default="/", description="Fallback destination after approval")
    account_settings_path: str = Field(
        default="/profile?tab=accounts",
        description="Where users manage authorized apps"
    )
    completion_redirect_delay_seconds: int = Field(
        default=3,
        ge=0,
        description="Delay before leaving a page stuck after approval"
    )
    public_base_url: Optional[str] = Field(
        default=None,
        description="External origin of this server when behind a proxy"
    )
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)

    @field_validator("events_api_url", "public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        if v is None:
            return v
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("URL must not be empty")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ConsentServerConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            ConsentServerConfig: Validated configuration
        """
        env = os.environ if environ is None else environ
        mapping = {
            "EVENTS_API_URL": "events_api_url",
            "CONSENT_REQUEST_TIMEOUT": "request_timeout_seconds",
            "CONSENT_LOGIN_PATH": "login_path",
            "CONSENT_HOME_PATH": "home_path",
            "CONSENT_ACCOUNT_SETTINGS_PATH": "account_settings_path",
            "CONSENT_COMPLETION_DELAY": "completion_redirect_delay_seconds",
            "CONSENT_PUBLIC_BASE_URL": "public_base_url",
            "CONSENT_HOST": "host",
            "CONSENT_PORT": "port",
        }
        values = {
            field: env[var]
            for var, field in mapping.items()
            if env.get(var)
        }
        return cls(**values)
