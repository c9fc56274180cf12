"""Provisioning flow: start tunnel, discover URL, register webhook."""

import threading

from .config import ProvisionerConfig
from .discovery import TunnelDiscoveryPoller
from .exceptions import (
    ControlPlaneUnresponsive,
    DiscoveryCancelled,
    DiscoveryTimeout,
    ProcessSpawnError,
    StaleEndpointError,
    TunnelProcessExited,
)
from .logging import get_logger
from .models import (
    CANCELLED_CAUSE,
    FailedStage,
    ProvisioningResult,
    ProvisioningState,
    RegistrationOutcome,
    TunnelEndpoint,
    TunnelProcessHandle,
)
from .process import TunnelProcessManager
from .registrar import WebhookRegistrar
from .utils import join_url

logger = get_logger(__name__)


class _Cancelled(Exception):
    """Internal signal carrying the stage at which cancellation was seen."""

    def __init__(self, stage: FailedStage):
        super().__init__(stage.value)
        self.stage = stage


class _StageFailure(Exception):
    def __init__(
        self,
        stage: FailedStage,
        cause: str,
        outcome: RegistrationOutcome | None = None,
    ):
        super().__init__(cause)
        self.stage = stage
        self.cause = cause
        self.outcome = outcome


class _RetryableFailure(_StageFailure):
    pass


class _TerminalFailure(_StageFailure):
    pass


class ProvisioningOrchestrator:
    """Sequences tunnel start, discovery and registration with bounded retries.

    One orchestrator owns one flow: a single handle/endpoint pair for one
    local port. Flows for other ports use their own orchestrator.
    """

    def __init__(
        self,
        config: ProvisionerConfig,
        process_manager: TunnelProcessManager | None = None,
        poller: TunnelDiscoveryPoller | None = None,
        registrar: WebhookRegistrar | None = None,
    ):
        self.config = config
        self.process_manager = process_manager or TunnelProcessManager(
            tunnels_path=config.discovery.tunnels_path
        )
        self.poller = poller or TunnelDiscoveryPoller(config.discovery)
        self.registrar = registrar or WebhookRegistrar(config.registrar)

        self._state = ProvisioningState.IDLE
        self._transitions: list[ProvisioningState] = [ProvisioningState.IDLE]
        self._handle: TunnelProcessHandle | None = None
        self._endpoint: TunnelEndpoint | None = None
        self._log = logger.bind(local_port=config.local_port)

    @property
    def state(self) -> ProvisioningState:
        return self._state

    def run(self, cancel_event: threading.Event | None = None) -> ProvisioningResult:
        """Run the flow to a terminal state.

        Args:
            cancel_event: Set from another thread (or a signal handler) to stop

        Returns:
            Result in state DONE or FAILED
        """
        if self._state != ProvisioningState.IDLE:
            raise RuntimeError(f"Orchestrator already ran (state={self._state.value})")

        cancel_event = cancel_event or threading.Event()
        max_attempts = self.config.retry.max_attempts
        attempt = 0

        while True:
            attempt += 1
            self._log.info("Provisioning attempt", attempt=attempt, of=max_attempts)
            try:
                outcome = self._attempt(cancel_event)
            except _Cancelled as e:
                return self._fail(e.stage, CANCELLED_CAUSE, attempt)
            except _TerminalFailure as e:
                return self._fail(e.stage, e.cause, attempt, e.outcome)
            except _RetryableFailure as e:
                if attempt >= max_attempts:
                    self._log.error(
                        "Retries exhausted", attempts=attempt, stage=e.stage.value
                    )
                    return self._fail(e.stage, e.cause, attempt, e.outcome)

                delay = self.config.retry.delay_for(attempt)
                self._log.warning(
                    "Transient failure, retrying",
                    stage=e.stage.value,
                    cause=e.cause,
                    attempt=attempt,
                    delay=delay,
                )
                if cancel_event.wait(delay):
                    return self._fail(e.stage, CANCELLED_CAUSE, attempt, e.outcome)
                self._discard_tunnel()
                continue

            self._transition(ProvisioningState.DONE)
            return ProvisioningResult(
                state=ProvisioningState.DONE,
                attempts=attempt,
                endpoint=self._endpoint,
                handle=self._handle,
                callback_url=self._callback_url(),
                outcome=outcome,
                transitions=list(self._transitions),
            )

    def _attempt(self, cancel_event: threading.Event) -> RegistrationOutcome:
        """One Starting -> Discovering -> Registering pass."""
        self._transition(ProvisioningState.STARTING)
        if cancel_event.is_set():
            raise _Cancelled(FailedStage.START)
        try:
            self._handle = self.process_manager.ensure_running(
                self.config.local_port, self.config
            )
        except ProcessSpawnError as e:
            raise _TerminalFailure(FailedStage.START, str(e)) from e
        except ControlPlaneUnresponsive as e:
            raise _RetryableFailure(FailedStage.START, str(e)) from e

        self._transition(ProvisioningState.DISCOVERING)
        try:
            self._endpoint = self.poller.discover(
                self._handle,
                timeout=self.config.discovery.timeout,
                poll_interval=self.config.discovery.poll_interval,
                cancel_event=cancel_event,
            )
        except DiscoveryCancelled as e:
            raise _Cancelled(FailedStage.DISCOVER) from e
        except (DiscoveryTimeout, TunnelProcessExited) as e:
            raise _RetryableFailure(FailedStage.DISCOVER, str(e)) from e

        self._transition(ProvisioningState.REGISTERING)
        if cancel_event.is_set():
            raise _Cancelled(FailedStage.REGISTER)
        try:
            self._endpoint = self.poller.refresh(self._handle, self._endpoint)
        except DiscoveryTimeout as e:
            raise _RetryableFailure(FailedStage.DISCOVER, str(e)) from e

        try:
            outcome = self.registrar.register(
                self._endpoint, self.config.webhook_path, self.config.credential
            )
        except StaleEndpointError as e:
            raise _RetryableFailure(FailedStage.DISCOVER, str(e)) from e
        if outcome.is_confirmed:
            return outcome
        cause = outcome.reason or outcome.status.value
        if outcome.retryable:
            raise _RetryableFailure(FailedStage.REGISTER, cause, outcome)
        raise _TerminalFailure(FailedStage.REGISTER, cause, outcome)

    def _transition(self, state: ProvisioningState) -> None:
        self._log.debug("State transition", previous=self._state.value, state=state.value)
        self._state = state
        self._transitions.append(state)

    def _fail(
        self,
        stage: FailedStage,
        cause: str,
        attempts: int,
        outcome: RegistrationOutcome | None = None,
    ) -> ProvisioningResult:
        self._transition(ProvisioningState.FAILED)
        self._log.error(
            "Provisioning failed",
            stage=stage.value,
            cause=cause,
            attempts=attempts,
            tunnel_pid=self._handle.pid if self._handle else None,
        )
        # The tunnel is left running for inspection
        return ProvisioningResult(
            state=ProvisioningState.FAILED,
            failed_stage=stage,
            cause=cause,
            attempts=attempts,
            endpoint=self._endpoint,
            handle=self._handle,
            callback_url=self._callback_url(),
            outcome=outcome,
            transitions=list(self._transitions),
        )

    def _discard_tunnel(self) -> None:
        """Stop an owned tunnel so the next attempt starts a fresh one."""
        if self._handle is not None and self._handle.owned:
            self._log.info(
                "Stopping tunnel before retry",
                pid=self._handle.pid,
                timeout=self.config.tunnel.stop_timeout,
            )
            self.process_manager.stop(
                self._handle, timeout=self.config.tunnel.stop_timeout
            )
        self._handle = None
        self._endpoint = None

    def _callback_url(self) -> str | None:
        if self._endpoint is None:
            return None
        return join_url(self._endpoint.public_url, self.config.webhook_path)
