"""Data models for tunnels, endpoints and registration outcomes."""

import subprocess
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .exceptions import StaleEndpointError
from .logging import get_logger

logger = get_logger(__name__)


class TunnelProcessHandle(BaseModel):
    """A running tunnel agent and the control plane it exposes.

    Handles are created by :class:`~webhook_provisioner.process.TunnelProcessManager`.
    A handle for a process this program did not spawn (``owned=False``) never
    stops that process.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    local_port: int = Field(ge=1, le=65535, description="Forwarded local port")
    control_api_url: str = Field(min_length=1, description="Control-plane API address")
    pid: int | None = Field(default=None, description="Process id when owned")
    owned: bool = Field(default=False, description="Spawned by this program")
    started_at: datetime = Field(default_factory=datetime.now)
    process: Any = Field(
        default=None, exclude=True, repr=False, description="Owned child process"
    )
    stderr_log: Any = Field(
        default=None, exclude=True, repr=False, description="File holding child stderr"
    )

    @property
    def returncode(self) -> int | None:
        """Exit code of an owned process, None while it runs."""
        if self.process is None:
            return None
        return self.process.poll()

    def is_alive(self) -> bool:
        """Check whether the tunnel process is still running.

        External processes cannot be polled here; the manager re-probes
        their control plane instead.
        """
        if self.process is None:
            return not self.owned
        return self.process.poll() is None

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop an owned tunnel process gracefully, then forcefully.

        Args:
            timeout: Seconds to wait after SIGTERM before killing

        Returns:
            True if the process is gone (or was never ours to stop)
        """
        if not self.owned or self.process is None:
            logger.debug("Handle does not own a process, nothing to stop", pid=self.pid)
            return True

        if self.process.poll() is not None:
            logger.debug("Tunnel process already exited", pid=self.pid)
            self._close_stderr_log()
            return True

        logger.info("Stopping tunnel process", pid=self.pid)
        try:
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
                logger.info("Tunnel process terminated gracefully", pid=self.pid)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Process did not terminate gracefully, force killing", pid=self.pid
                )
                self.process.kill()
                self.process.wait(timeout=timeout)
            self._close_stderr_log()
            return True
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error("Error stopping tunnel process", pid=self.pid, error=str(e))
            return False

    def _close_stderr_log(self) -> None:
        if self.stderr_log is not None and not self.stderr_log.closed:
            self.stderr_log.close()


class TunnelEndpoint(BaseModel):
    """A public URL observed on the tunnel control plane."""

    model_config = ConfigDict(frozen=True)

    public_url: str = Field(min_length=1, description="Public URL of the tunnel")
    observed_at: datetime = Field(default_factory=datetime.now)
    fresh: bool = Field(default=True, description="False once superseded")
    tunnel_name: str | None = None
    local_addr: str | None = None

    def superseded(self) -> "TunnelEndpoint":
        """Return a stale copy of this endpoint (immutable pattern)."""
        return self.model_copy(update={"fresh": False})

    def same_url(self, other: "TunnelEndpoint") -> bool:
        return self.public_url.rstrip("/") == other.public_url.rstrip("/")


class RegistrationRequest(BaseModel):
    """One setWebhook call. Built right before sending, never stored."""

    model_config = ConfigDict(frozen=True)

    callback_url: str = Field(min_length=1)
    credential: SecretStr
    secret_token: SecretStr | None = None
    drop_pending_updates: bool = False

    @classmethod
    def build(
        cls,
        endpoint: TunnelEndpoint,
        callback_url: str,
        credential: SecretStr,
        **kwargs: Any,
    ) -> "RegistrationRequest":
        """Build a request, refusing superseded endpoints.

        Raises:
            StaleEndpointError: If ``endpoint`` has been superseded
        """
        if not endpoint.fresh:
            raise StaleEndpointError(
                f"Endpoint {endpoint.public_url} was superseded by a newer observation"
            )
        return cls(callback_url=callback_url, credential=credential, **kwargs)

    def form_data(self) -> dict[str, str]:
        """Form-encoded body of the registration call."""
        data = {"url": self.callback_url}
        if self.secret_token is not None:
            data["secret_token"] = self.secret_token.get_secret_value()
        if self.drop_pending_updates:
            data["drop_pending_updates"] = "true"
        return data


class RegistrationStatus(str, Enum):
    """Registration outcome enumeration."""

    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"


class RegistrationOutcome(BaseModel):
    """Terminal result of a single registration call."""

    model_config = ConfigDict(frozen=True)

    status: RegistrationStatus
    reason: str | None = None
    status_code: int | None = None

    @classmethod
    def confirmed(cls, status_code: int | None = None) -> "RegistrationOutcome":
        return cls(status=RegistrationStatus.CONFIRMED, status_code=status_code)

    @classmethod
    def rejected(
        cls, reason: str, status_code: int | None = None
    ) -> "RegistrationOutcome":
        return cls(
            status=RegistrationStatus.REJECTED, reason=reason, status_code=status_code
        )

    @classmethod
    def unreachable(
        cls, reason: str, status_code: int | None = None
    ) -> "RegistrationOutcome":
        return cls(
            status=RegistrationStatus.UNREACHABLE,
            reason=reason,
            status_code=status_code,
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == RegistrationStatus.CONFIRMED

    @property
    def retryable(self) -> bool:
        """Only transport-level failures are worth another attempt."""
        return self.status == RegistrationStatus.UNREACHABLE


class ProvisioningState(str, Enum):
    """Orchestrator state enumeration."""

    IDLE = "idle"
    STARTING = "starting"
    DISCOVERING = "discovering"
    REGISTERING = "registering"
    DONE = "done"
    FAILED = "failed"


class FailedStage(str, Enum):
    """Stage in which provisioning failed."""

    START = "start"
    DISCOVER = "discover"
    REGISTER = "register"


class ExitCode(int, Enum):
    """Process exit codes for scripting callers."""

    OK = 0
    CONFIG_ERROR = 1
    START_FAILED = 2
    DISCOVERY_FAILED = 3
    REJECTED = 4
    UNREACHABLE = 5
    CANCELLED = 130


CANCELLED_CAUSE = "cancelled"


class ProvisioningResult(BaseModel):
    """Final state of one orchestrator run."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    state: ProvisioningState
    failed_stage: FailedStage | None = None
    cause: str | None = None
    attempts: int = Field(default=0, ge=0)
    endpoint: TunnelEndpoint | None = None
    handle: TunnelProcessHandle | None = None
    callback_url: str | None = None
    outcome: RegistrationOutcome | None = None
    transitions: list[ProvisioningState] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == ProvisioningState.DONE

    @property
    def cancelled(self) -> bool:
        return self.state == ProvisioningState.FAILED and self.cause == CANCELLED_CAUSE

    @property
    def exit_code(self) -> ExitCode:
        """Distinct exit code per terminal state."""
        if self.succeeded:
            return ExitCode.OK
        if self.cancelled:
            return ExitCode.CANCELLED
        if self.failed_stage == FailedStage.START:
            return ExitCode.START_FAILED
        if self.failed_stage == FailedStage.DISCOVER:
            return ExitCode.DISCOVERY_FAILED
        if self.outcome is not None and self.outcome.retryable:
            return ExitCode.UNREACHABLE
        return ExitCode.REJECTED

    def describe(self) -> str:
        """One-line human summary of the final state and cause."""
        if self.succeeded:
            return f"done: webhook registered at {self.callback_url}"
        stage = self.failed_stage.value if self.failed_stage else "unknown"
        return f"failed({stage}): {self.cause}"
