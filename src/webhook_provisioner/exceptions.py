"""Custom exceptions for the webhook provisioner."""


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""
    pass


class ConfigurationError(ProvisionerError):
    """Raised when configuration is invalid."""
    pass


class ProcessSpawnError(ProvisionerError):
    """Raised when the tunnel process cannot be started."""
    pass


class ControlPlaneUnresponsive(ProvisionerError):
    """Raised when a listener on the control address does not answer in time."""
    pass


class TunnelProcessExited(ProvisionerError):
    """Raised when an owned tunnel process exits on its own."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class DiscoveryTimeout(ProvisionerError):
    """Raised when no secure public URL appears before the deadline."""

    def __init__(self, message: str, elapsed: float | None = None):
        super().__init__(message)
        self.elapsed = elapsed


class DiscoveryCancelled(ProvisionerError):
    """Raised when a cancellation signal interrupts polling."""
    pass


class StaleEndpointError(ProvisionerError):
    """Raised when a superseded endpoint is used to build a registration."""
    pass


class WebhookAPIError(ProvisionerError):
    """Raised when a webhook API query fails; never carries the credential."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient
