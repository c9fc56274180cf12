"""Shared pytest fixtures for webhook provisioner tests."""

import json
from collections.abc import Callable
from unittest.mock import Mock

import httpx
import pytest

from webhook_provisioner.config import ProvisionerConfig
from webhook_provisioner.models import TunnelEndpoint, TunnelProcessHandle

CONTROL_API = "http://127.0.0.1:4040"
BOT_TOKEN = "123456:ABC-secret-token-value"


def tunnels_payload(*entries: tuple[str, str | None]) -> dict:
    """Build an ``/api/tunnels`` listing from ``(public_url, addr)`` pairs."""
    tunnels = []
    for index, (public_url, addr) in enumerate(entries):
        tunnel = {"name": f"tunnel-{index}", "public_url": public_url, "proto": "https"}
        if addr is not None:
            tunnel["config"] = {"addr": addr, "inspect": True}
        tunnels.append(tunnel)
    return {"tunnels": tunnels, "uri": "/api/tunnels"}


def json_response(payload: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode())


@pytest.fixture
def config() -> ProvisionerConfig:
    """Configuration with short timings for fast tests."""
    return ProvisionerConfig(
        local_port=8000,
        webhook_path="/webhook",
        credential=BOT_TOKEN,
        discovery={"timeout": 0.5, "poll_interval": 0.05},
        retry={"max_attempts": 4, "backoff_step": 0.0},
        tunnel={"startup_grace": 0.0},
    )


@pytest.fixture
def external_handle() -> TunnelProcessHandle:
    """Handle for a tunnel agent that was already running."""
    return TunnelProcessHandle(local_port=8000, control_api_url=CONTROL_API)


@pytest.fixture
def mock_process():
    """Create a mock process object for testing.

    Returns:
        Mock: Mock process with common attributes
    """
    process = Mock()
    process.pid = 12345
    process.poll.return_value = None  # Process is running
    process.returncode = None
    process.terminate.return_value = None
    process.kill.return_value = None
    process.wait.return_value = 0
    return process


@pytest.fixture
def owned_handle(mock_process) -> TunnelProcessHandle:
    """Handle for a tunnel process spawned by the manager."""
    return TunnelProcessHandle(
        local_port=8000,
        control_api_url=CONTROL_API,
        pid=mock_process.pid,
        owned=True,
        process=mock_process,
    )


@pytest.fixture
def endpoint() -> TunnelEndpoint:
    return TunnelEndpoint(public_url="https://abc123.ngrok.app")


@pytest.fixture
def mock_subprocess(monkeypatch):
    """Mock subprocess.Popen for testing process management.

    Returns:
        Mock: Mocked Popen class
    """
    mock_popen = Mock()
    monkeypatch.setattr("subprocess.Popen", mock_popen)
    return mock_popen


@pytest.fixture
def which_ngrok(monkeypatch):
    """Pretend the ngrok binary is installed."""
    monkeypatch.setattr(
        "webhook_provisioner.process.shutil.which",
        lambda name: f"/usr/local/bin/{name}",
    )


@pytest.fixture
def transport_from() -> Callable[..., httpx.MockTransport]:
    """Build a MockTransport from a handler, recording every request."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
        requests: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        transport = httpx.MockTransport(recording)
        transport.requests = requests  # type: ignore[attr-defined]
        return transport

    return factory
