"""
FreeAgent client configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from freeagent_api.exceptions import ConfigurationError

DEFAULT_API_URL = "https://api.freeagent.com/v2/"
SANDBOX_API_URL = "https://api.sandbox.freeagent.com/v2/"

# Environment variable -> config field
_ENV_FIELDS = {
    "FREEAGENT_APP_ID": "app_id",
    "FREEAGENT_APP_SECRET": "app_secret",
    "FREEAGENT_API_URL": "api_url",
    "FREEAGENT_TOKEN_FILE": "token_file",
}


class FreeAgentConfig(BaseModel):
    """Root configuration for the FreeAgent client."""

    app_id: str | None = Field(default=None, description="OAuth client id (FREEAGENT_APP_ID)")
    app_secret: str | None = Field(default=None, description="OAuth client secret (FREEAGENT_APP_SECRET)")
    api_url: str = Field(default=DEFAULT_API_URL, description="Base URL of the v2 API")
    authorize_path: str = Field(default="approve_app", description="Approval endpoint, relative to api_url")
    token_path: str = Field(default="token_endpoint", description="Token endpoint, relative to api_url")

    token_file: str = Field(default="./.token.yml", description="Where the OAuth token is persisted")
    encrypt_token: bool = Field(default=False, description="Encrypt the token file at rest")

    per_page: int = Field(default=100, ge=1, le=100)
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    max_retries: int = Field(default=5, ge=0, description="Retries for rate limited requests")

    callback_port: int = Field(default=0, ge=0, le=65535, description="Local OAuth listener port (0 = any)")
    callback_timeout: float = Field(default=300.0, gt=0)
    open_browser: bool = True

    @property
    def base_url(self) -> str:
        return self.api_url if self.api_url.endswith("/") else self.api_url + "/"

    @property
    def authorize_url(self) -> str:
        return self.base_url + self.authorize_path.lstrip("/")

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_path.lstrip("/")

    def require_credentials(self) -> tuple[str, str]:
        """Return ``(app_id, app_secret)`` or raise if either is unset."""
        if not self.app_id:
            raise ConfigurationError("FREEAGENT_APP_ID is unset")
        if not self.app_secret:
            raise ConfigurationError("FREEAGENT_APP_SECRET is unset")
        return self.app_id, self.app_secret

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> FreeAgentConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
                if not isinstance(data, dict):
                    raise ConfigurationError(f"{path} does not contain a mapping")

        # 2. Override from environment variables
        for env_name, field_name in _ENV_FIELDS.items():
            value = os.environ.get(env_name)
            if value:
                data[field_name] = value

        if os.environ.get("FREEAGENT_SANDBOX", "").lower() in ("1", "true", "yes"):
            data.setdefault("api_url", SANDBOX_API_URL)

        # 3. Apply keyword overrides
        data.update({k: v for k, v in overrides.items() if v is not None})

        return cls.model_validate(data)
