"""
qbbroker configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
The core components only ever receive a resolved :class:`BrokerConfig`.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from qbbroker.errors import ConfigurationError

_TRUTHY = ("1", "true", "yes")


class Environment(str, Enum):
    """QuickBooks deployment environment; partitions all stored credentials."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


class CallbackConfig(BaseModel):
    """Local redirect listener settings.

    Every port in ``[port_start, port_end]`` must be registered as a
    redirect URI on the Intuit developer app.
    """

    host: str = Field(default="127.0.0.1", description="Interface the listener binds to")
    port_start: int = Field(default=9741, ge=1, le=65535)
    port_end: int = Field(default=9745, ge=1, le=65535)
    use_https: bool = Field(default=False, description="Use the TLS loopback alias")
    https_host: str = Field(default="127-0-0-1.sslip.io")
    certfile: str | None = Field(default=None, description="PEM certificate for TLS")
    keyfile: str | None = Field(default=None, description="PEM private key for TLS")
    timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the redirect")
    expose_tokens: bool = Field(
        default=False,
        description="Serve the new tokens to the success page for manual configuration",
    )
    linger_seconds: float = Field(default=10.0, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> CallbackConfig:
        if self.port_end < self.port_start:
            raise ValueError("port_end must be >= port_start")
        return self


class BrokerConfig(BaseModel):
    """Root configuration for qbbroker."""

    client_id: str = Field(default="", description="Intuit app client id")
    client_secret: str = Field(default="", description="Intuit app client secret")
    environment: Environment = Field(default=Environment.SANDBOX)
    storage_dir: Path = Field(default_factory=lambda: Path.home() / ".qbbroker")
    encrypt_at_rest: bool = Field(default=True, description="Encrypt the credential store")
    refresh_buffer_seconds: int = Field(
        default=300, ge=0, description="Refresh access tokens this long before expiry"
    )
    network_timeout: float = Field(default=30.0, gt=0)
    open_browser: bool = Field(default=True, description="Open the consent page automatically")
    callback: CallbackConfig = Field(default_factory=CallbackConfig)

    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION

    def require_credentials(self) -> None:
        """Fail fast when the Intuit client credentials are missing."""
        if self.client_id and self.client_secret:
            return
        if self.is_production:
            names = (
                "INTUIT_CLIENT_ID_PRODUCTION and INTUIT_CLIENT_SECRET_PRODUCTION "
                "(or INTUIT_CLIENT_ID and INTUIT_CLIENT_SECRET)"
            )
        else:
            names = "INTUIT_CLIENT_ID and INTUIT_CLIENT_SECRET"
        raise ConfigurationError(
            f"Missing QuickBooks OAuth credentials for {self.environment.value} mode. "
            f"Please set {names}.",
            metadata={
                "has_client_id": bool(self.client_id),
                "has_client_secret": bool(self.client_secret),
                "environment": self.environment.value,
            },
        )

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> BrokerConfig:
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

        # 2. Override from environment variables
        env_production = os.environ.get("QB_PRODUCTION") or os.environ.get("QUICKBOOKS_PRODUCTION")
        if env_production is not None:
            data["environment"] = (
                Environment.PRODUCTION.value
                if env_production.lower() in _TRUTHY
                else Environment.SANDBOX.value
            )

        production = str(data.get("environment", "")).lower() == Environment.PRODUCTION.value
        client_id = _first_env(
            *(["INTUIT_CLIENT_ID_PRODUCTION"] if production else []),
            "INTUIT_CLIENT_ID",
            "QB_CLIENT_ID",
        )
        client_secret = _first_env(
            *(["INTUIT_CLIENT_SECRET_PRODUCTION"] if production else []),
            "INTUIT_CLIENT_SECRET",
            "QB_CLIENT_SECRET",
        )
        if client_id:
            data["client_id"] = client_id
        if client_secret:
            data["client_secret"] = client_secret

        storage_dir = os.environ.get("QB_STORAGE_DIR")
        if storage_dir:
            data["storage_dir"] = storage_dir

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None
