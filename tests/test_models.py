"""Tests for tunnel, endpoint and outcome models."""

import io
import subprocess

import pytest
from pydantic import SecretStr, ValidationError

from webhook_provisioner.exceptions import StaleEndpointError
from webhook_provisioner.models import (
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


class TestTunnelProcessHandle:
    def test_external_handle_never_stops_process(self, external_handle):
        assert external_handle.is_alive()
        assert external_handle.stop() is True
        assert external_handle.pid is None

    def test_owned_handle_detects_exit(self, owned_handle, mock_process):
        assert owned_handle.is_alive()
        mock_process.poll.return_value = 1
        assert not owned_handle.is_alive()
        assert owned_handle.returncode == 1

    def test_stop_terminates_gracefully(self, owned_handle, mock_process):
        assert owned_handle.stop(timeout=1.0) is True
        mock_process.terminate.assert_called_once()
        mock_process.wait.assert_called_once_with(timeout=1.0)
        mock_process.kill.assert_not_called()

    def test_stop_force_kills_unresponsive_process(self, owned_handle, mock_process):
        mock_process.wait.side_effect = [subprocess.TimeoutExpired("ngrok", 1), 0]

        assert owned_handle.stop(timeout=1.0) is True
        mock_process.kill.assert_called_once()

    def test_stop_skips_exited_process(self, owned_handle, mock_process):
        mock_process.poll.return_value = 0
        assert owned_handle.stop() is True
        mock_process.terminate.assert_not_called()

    @pytest.mark.parametrize("exited", [False, True])
    def test_stop_closes_stderr_file(self, owned_handle, mock_process, exited):
        if exited:
            mock_process.poll.return_value = 0
        handle = owned_handle.model_copy(update={"stderr_log": io.StringIO("log")})

        assert handle.stop() is True
        assert handle.stderr_log.closed

    def test_process_is_not_serialised(self, owned_handle):
        assert "process" not in owned_handle.model_dump()

    def test_handle_is_immutable(self, owned_handle):
        with pytest.raises(ValidationError):
            owned_handle.local_port = 9000


class TestTunnelEndpoint:
    def test_superseded_returns_stale_copy(self, endpoint):
        stale = endpoint.superseded()
        assert endpoint.fresh is True
        assert stale.fresh is False
        assert stale.public_url == endpoint.public_url

    def test_same_url_ignores_trailing_slash(self, endpoint):
        other = TunnelEndpoint(public_url=endpoint.public_url + "/")
        assert endpoint.same_url(other)


class TestRegistrationRequest:
    def test_build_refuses_stale_endpoint(self, endpoint):
        with pytest.raises(StaleEndpointError):
            RegistrationRequest.build(
                endpoint.superseded(),
                "https://abc123.ngrok.app/webhook",
                SecretStr("token"),
            )

    def test_form_data(self, endpoint):
        request = RegistrationRequest.build(
            endpoint,
            "https://abc123.ngrok.app/webhook",
            SecretStr("123:token"),
            secret_token=SecretStr("hook-secret"),
            drop_pending_updates=True,
        )

        assert request.form_data() == {
            "url": "https://abc123.ngrok.app/webhook",
            "secret_token": "hook-secret",
            "drop_pending_updates": "true",
        }
        assert "123:token" not in repr(request)


class TestRegistrationOutcome:
    def test_constructors(self):
        assert RegistrationOutcome.confirmed().is_confirmed
        rejected = RegistrationOutcome.rejected("bad url", 400)
        assert rejected.status == RegistrationStatus.REJECTED
        assert rejected.reason == "bad url"
        assert not rejected.retryable
        assert RegistrationOutcome.unreachable("refused").retryable


class TestProvisioningResult:
    @pytest.mark.parametrize(
        "kwargs,expected",
        [
            ({"state": ProvisioningState.DONE}, ExitCode.OK),
            (
                {
                    "state": ProvisioningState.FAILED,
                    "failed_stage": FailedStage.START,
                    "cause": "binary missing",
                },
                ExitCode.START_FAILED,
            ),
            (
                {
                    "state": ProvisioningState.FAILED,
                    "failed_stage": FailedStage.DISCOVER,
                    "cause": "timeout",
                },
                ExitCode.DISCOVERY_FAILED,
            ),
            (
                {
                    "state": ProvisioningState.FAILED,
                    "failed_stage": FailedStage.REGISTER,
                    "cause": "bad url",
                    "outcome": RegistrationOutcome.rejected("bad url"),
                },
                ExitCode.REJECTED,
            ),
            (
                {
                    "state": ProvisioningState.FAILED,
                    "failed_stage": FailedStage.REGISTER,
                    "cause": "refused",
                    "outcome": RegistrationOutcome.unreachable("refused"),
                },
                ExitCode.UNREACHABLE,
            ),
            (
                {
                    "state": ProvisioningState.FAILED,
                    "failed_stage": FailedStage.DISCOVER,
                    "cause": "cancelled",
                },
                ExitCode.CANCELLED,
            ),
        ],
    )
    def test_exit_codes(self, kwargs, expected):
        assert ProvisioningResult(**kwargs).exit_code == expected

    def test_describe_failure_verbatim(self):
        result = ProvisioningResult(
            state=ProvisioningState.FAILED,
            failed_stage=FailedStage.REGISTER,
            cause="bad url",
        )
        assert result.describe() == "failed(register): bad url"

    def test_keeps_handle_identity(self, owned_handle):
        result = ProvisioningResult(state=ProvisioningState.DONE, handle=owned_handle)
        assert result.handle is owned_handle
        assert isinstance(result.handle, TunnelProcessHandle)
