"""Webhook provisioner - expose a local webhook receiver and register its public URL."""

import threading

from .config import (
    DiscoverySettings,
    ProvisionerConfig,
    RegistrarSettings,
    RetrySettings,
    TunnelSettings,
)
from .discovery import TunnelDiscoveryPoller, extract_public_url
from .exceptions import (
    ConfigurationError,
    ControlPlaneUnresponsive,
    DiscoveryCancelled,
    DiscoveryTimeout,
    ProcessSpawnError,
    ProvisionerError,
    StaleEndpointError,
    TunnelProcessExited,
    WebhookAPIError,
)
from .logging import get_logger, setup_logging
from .models import (
    ExitCode,
    FailedStage,
    ProvisioningResult,
    ProvisioningState,
    RegistrationOutcome,
    RegistrationRequest,
    RegistrationStatus,
    TunnelEndpoint,
    TunnelProcessHandle,
)
from .orchestrator import ProvisioningOrchestrator
from .process import TunnelProcessManager
from .registrar import WebhookRegistrar
from .utils import join_url, mask_sensitive_data, sanitize_log_data

# Setup logging on package initialization
setup_logging(level="INFO")

# Package level logger
logger = get_logger(__name__)

__version__ = "0.1.0"


def provision(
    config: ProvisionerConfig, cancel_event: threading.Event | None = None
) -> ProvisioningResult:
    """Run one provisioning flow with default components.

    Example:
        >>> config = ProvisionerConfig(local_port=8000, credential="123:abc")
        >>> result = provision(config)
        >>> print(result.describe())
        done: webhook registered at https://abc.ngrok.app/webhook
    """
    return ProvisioningOrchestrator(config).run(cancel_event)


__all__ = [
    # High-level API
    "provision",
    "ProvisioningOrchestrator",
    # Components
    "TunnelProcessManager",
    "TunnelDiscoveryPoller",
    "WebhookRegistrar",
    "extract_public_url",
    # Configuration
    "ProvisionerConfig",
    "TunnelSettings",
    "DiscoverySettings",
    "RegistrarSettings",
    "RetrySettings",
    # Models
    "TunnelProcessHandle",
    "TunnelEndpoint",
    "RegistrationRequest",
    "RegistrationOutcome",
    "RegistrationStatus",
    "ProvisioningState",
    "ProvisioningResult",
    "FailedStage",
    "ExitCode",
    # Exceptions
    "ProvisionerError",
    "ConfigurationError",
    "ProcessSpawnError",
    "ControlPlaneUnresponsive",
    "TunnelProcessExited",
    "DiscoveryTimeout",
    "DiscoveryCancelled",
    "StaleEndpointError",
    "WebhookAPIError",
    # Utilities
    "get_logger",
    "setup_logging",
    "join_url",
    "mask_sensitive_data",
    "sanitize_log_data",
]
