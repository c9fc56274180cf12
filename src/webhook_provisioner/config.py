"""Configuration models for the webhook provisioner."""

import os
import shlex
from collections.abc import Mapping
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError
from .utils import is_secure_public_url, normalize_path_slashes, validate_port

DEFAULT_TUNNEL_COMMAND = ["ngrok", "http", "{port}", "--log", "stdout"]
DEFAULT_CONTROL_API_URL = "http://127.0.0.1:4040"
DEFAULT_API_BASE = "https://api.telegram.org"

MAX_WEBHOOK_PATH_LENGTH = 200
MIN_PRINTABLE_CHAR = 32

# Environment variable -> dotted config key
ENV_VARS: dict[str, str] = {
    "TUNNEL_PORT": "local_port",
    "WEBHOOK_PATH": "webhook_path",
    "TELEGRAM_BOT_TOKEN": "credential",
    "TELEGRAM_WEBHOOK_SECRET": "registrar.secret_token",
    "TELEGRAM_API_BASE": "registrar.api_base",
    "NGROK_API_URL": "tunnel.control_api_url",
    "NGROK_AUTHTOKEN": "tunnel.auth_token",
    "TUNNEL_COMMAND": "tunnel.command",
    "DISCOVERY_TIMEOUT": "discovery.timeout",
    "DISCOVERY_POLL_INTERVAL": "discovery.poll_interval",
    "PROVISION_MAX_ATTEMPTS": "retry.max_attempts",
    "PROVISION_BACKOFF_STEP": "retry.backoff_step",
}


class _FrozenSettings(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True, extra="forbid")


class TunnelSettings(_FrozenSettings):
    """How the tunnel agent is launched and where its control plane listens."""

    command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TUNNEL_COMMAND),
        min_length=1,
        description="Tunnel command; '{port}' is replaced with the local port",
    )
    control_api_url: str = Field(
        default=DEFAULT_CONTROL_API_URL, description="Local control-plane API address"
    )
    auth_token: SecretStr | None = Field(
        default=None, description="Tunnel provider auth token, passed via env"
    )
    auth_token_env: str = Field(
        default="NGROK_AUTHTOKEN", min_length=1, description="Child env var for token"
    )
    startup_grace: float = Field(
        default=1.0, ge=0.0, le=30.0, description="Seconds a new process must survive"
    )
    probe_timeout: float = Field(
        default=2.0, gt=0.0, le=30.0, description="Control-plane probe timeout"
    )
    stop_timeout: float = Field(
        default=5.0, gt=0.0, le=60.0, description="Graceful termination timeout"
    )

    @field_validator("control_api_url")
    @classmethod
    def validate_control_api_url(cls, v: str) -> str:
        """Control plane must be an absolute http(s) URL."""
        if not (is_secure_public_url(v, "http") or is_secure_public_url(v, "https")):
            raise ValueError("Control API URL must be an absolute http(s) URL")
        return v.rstrip("/")

    def render_command(self, local_port: int) -> list[str]:
        """Substitute the local port into the command template."""
        return [part.replace("{port}", str(local_port)) for part in self.command]


class DiscoverySettings(_FrozenSettings):
    """Polling parameters for the tunnel control plane."""

    timeout: float = Field(
        default=20.0, gt=0.0, le=300.0, description="Overall discovery timeout"
    )
    poll_interval: float = Field(
        default=1.0, gt=0.0, le=30.0, description="Fixed delay between attempts"
    )
    tunnels_path: str = Field(default="/api/tunnels", min_length=1)
    required_scheme: str = Field(default="https", pattern="^[a-z][a-z0-9+.-]*$")
    request_timeout: float = Field(default=2.0, gt=0.0, le=30.0)

    @model_validator(mode="after")
    def validate_interval_within_timeout(self) -> "DiscoverySettings":
        if self.poll_interval > self.timeout:
            raise ValueError("poll_interval cannot exceed timeout")
        return self


class RegistrarSettings(_FrozenSettings):
    """Downstream webhook-registration API settings."""

    api_base: str = Field(default=DEFAULT_API_BASE)
    set_webhook_path: str = Field(default="/bot{credential}/setWebhook")
    webhook_info_path: str = Field(default="/bot{credential}/getWebhookInfo")
    delete_webhook_path: str = Field(default="/bot{credential}/deleteWebhook")
    request_timeout: float = Field(default=10.0, gt=0.0, le=120.0)
    secret_token: SecretStr | None = Field(
        default=None, description="Sent as secret_token on registration"
    )
    drop_pending_updates: bool = Field(default=False)
    verify: bool = Field(
        default=False, description="Confirm via webhook info after registering"
    )

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        if not (is_secure_public_url(v, "https") or is_secure_public_url(v, "http")):
            raise ValueError("API base must be an absolute http(s) URL")
        return v.rstrip("/")

    @field_validator("set_webhook_path", "webhook_info_path", "delete_webhook_path")
    @classmethod
    def validate_method_path(cls, v: str) -> str:
        """Method paths must embed the credential placeholder."""
        if "{credential}" not in v:
            raise ValueError("Method path must contain '{credential}'")
        return v


class RetrySettings(_FrozenSettings):
    """Orchestrator retry policy for transient failures."""

    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_step: float = Field(
        default=2.0, ge=0.0, le=60.0, description="Linear backoff increment"
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return self.backoff_step * attempt


class ProvisionerConfig(_FrozenSettings):
    """Complete configuration of one provisioning flow."""

    local_port: int = Field(ge=1, le=65535, description="Local service port")
    webhook_path: str = Field(default="/webhook", description="Webhook path suffix")
    credential: SecretStr = Field(description="Downstream API credential")
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    registrar: RegistrarSettings = Field(default_factory=RegistrarSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("webhook_path")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Validate path format and normalise it to a single leading slash."""
        if any(ord(char) < MIN_PRINTABLE_CHAR for char in v):
            raise ValueError("Webhook path cannot contain control characters")

        if len(v) > MAX_WEBHOOK_PATH_LENGTH:
            raise ValueError(
                f"Webhook path too long (maximum {MAX_WEBHOOK_PATH_LENGTH} characters)"
            )

        if "://" in v or "?" in v or "#" in v:
            raise ValueError("Webhook path must be a path, not a URL")

        segments = normalize_path_slashes(v).split("/")
        if ".." in segments or "." in segments:
            raise ValueError("Webhook path cannot contain '.' or '..' segments")

        return "/" + normalize_path_slashes(v)

    @field_validator("credential")
    @classmethod
    def validate_credential(cls, v: SecretStr) -> SecretStr:
        value = v.get_secret_value()
        if not value.strip():
            raise ValueError("Credential cannot be empty")
        if any(c.isspace() or c in "/?#" for c in value):
            raise ValueError("Credential contains characters not allowed in a path")
        return v

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: Any
    ) -> "ProvisionerConfig":
        """Build configuration from environment variables plus overrides.

        The environment is read once. Overrides use dotted keys for nested
        settings (``{"discovery.timeout": 5}``) or plain top-level names;
        ``None`` override values are ignored.

        Args:
            environ: Environment mapping (defaults to ``os.environ``)
            **overrides: Values that take precedence over the environment

        Returns:
            Validated, immutable configuration

        Raises:
            ConfigurationError: If a value is missing or invalid
        """
        environ = os.environ if environ is None else environ

        values: dict[str, Any] = {}
        for env_name, key in ENV_VARS.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            if key == "tunnel.command":
                values[key] = shlex.split(raw)
            else:
                values[key] = raw

        for key, value in overrides.items():
            if value is not None:
                values[key] = value

        if "local_port" in values:
            try:
                port = int(values["local_port"])
                validate_port(port, "Local port")
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid local port: {e}") from e
            values["local_port"] = port

        return cls.from_mapping(values)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ProvisionerConfig":
        """Validate a flat mapping with dotted keys into a config."""
        data: dict[str, Any] = {}
        for key, value in values.items():
            section, _, field = key.partition(".")
            if field:
                data.setdefault(section, {})[field] = value
            else:
                data[section] = value

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(_describe_validation_error(e)) from e


def _describe_validation_error(error: ValidationError) -> str:
    """Summarise validation errors without echoing input values."""
    problems = []
    for item in error.errors(include_input=False):
        location = ".".join(str(part) for part in item["loc"]) or "config"
        problems.append(f"{location}: {item['msg']}")
    return "Invalid configuration: " + "; ".join(problems)
