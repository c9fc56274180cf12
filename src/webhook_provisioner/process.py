"""Lifecycle management for the local tunnel agent process."""

import os
import shutil
import subprocess
import tempfile
import threading
import time
from enum import Enum
from typing import IO

import httpx

from .config import ProvisionerConfig, TunnelSettings
from .exceptions import ControlPlaneUnresponsive, ProcessSpawnError
from .logging import get_logger
from .models import TunnelProcessHandle
from .utils import validate_port

logger = get_logger(__name__)

STDERR_TAIL_CHARS = 500


class ControlPlaneState(str, Enum):
    """What answers on the configured control-plane address."""

    TUNNEL_AGENT = "tunnel_agent"
    NOTHING = "nothing"
    UNRELATED = "unrelated"
    UNRESPONSIVE = "unresponsive"


def probe_control_plane(
    control_api_url: str,
    tunnels_path: str = "/api/tunnels",
    timeout: float = 2.0,
    transport: httpx.BaseTransport | None = None,
) -> ControlPlaneState:
    """Identify what listens on the tunnel control-plane address.

    Args:
        control_api_url: Base URL of the control plane
        tunnels_path: Path of the tunnel listing resource
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests)

    Returns:
        TUNNEL_AGENT when the listing answers with a ``tunnels`` list,
        NOTHING when the connection fails, UNRESPONSIVE when a listener
        accepts the connection but does not answer in time, UNRELATED otherwise
    """
    url = control_api_url.rstrip("/") + tunnels_path
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            response = client.get(url)
    except (httpx.ConnectError, httpx.ConnectTimeout):
        return ControlPlaneState.NOTHING
    except httpx.TimeoutException as e:
        logger.debug("Control plane slow to answer", url=url, error=str(e))
        return ControlPlaneState.UNRESPONSIVE
    except httpx.HTTPError as e:
        logger.debug("Control plane probe failed", url=url, error=str(e))
        return ControlPlaneState.UNRELATED

    if response.status_code != httpx.codes.OK:
        return ControlPlaneState.UNRELATED
    try:
        payload = response.json()
    except ValueError:
        return ControlPlaneState.UNRELATED
    if isinstance(payload, dict) and isinstance(payload.get("tunnels"), list):
        return ControlPlaneState.TUNNEL_AGENT
    return ControlPlaneState.UNRELATED


class TunnelProcessManager:
    """Starts or discovers tunnel agents, one per local port."""

    def __init__(
        self,
        tunnels_path: str = "/api/tunnels",
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the manager.

        Args:
            tunnels_path: Control-plane path used to recognise a tunnel agent
            transport: Optional httpx transport for control-plane probes
        """
        self._tunnels_path = tunnels_path
        self._transport = transport
        self._handles: dict[int, TunnelProcessHandle] = {}
        self._lock = threading.Lock()

    def ensure_running(
        self, local_port: int, config: ProvisionerConfig | TunnelSettings
    ) -> TunnelProcessHandle:
        """Return a handle to a tunnel agent forwarding ``local_port``.

        A live handle already registered for the port is returned unchanged;
        a tunnel agent already answering on the control address is reused;
        otherwise a new process is spawned.

        Args:
            local_port: Local service port to expose
            config: Provisioner config or its tunnel settings

        Returns:
            Handle to the running tunnel agent

        Raises:
            ProcessSpawnError: If the process cannot be started
            ControlPlaneUnresponsive: If a listener on the control address is
                too slow to identify
            ValueError: If the port is out of range
        """
        validate_port(local_port, "Local port")
        settings = config.tunnel if isinstance(config, ProvisionerConfig) else config

        with self._lock:
            handle = self._handles.get(local_port)
            if handle is not None:
                if self._still_running(handle, settings):
                    logger.debug(
                        "Reusing registered tunnel handle",
                        local_port=local_port,
                        pid=handle.pid,
                    )
                    return handle
                logger.warning(
                    "Tunnel process exited independently",
                    local_port=local_port,
                    pid=handle.pid,
                    returncode=handle.returncode,
                )
                del self._handles[local_port]

            self._check_control_address_free(local_port, settings)

            state = self._probe(settings)
            if state == ControlPlaneState.TUNNEL_AGENT:
                handle = TunnelProcessHandle(
                    local_port=local_port,
                    control_api_url=settings.control_api_url,
                    owned=False,
                )
                logger.info(
                    "Existing tunnel agent found, reusing it",
                    control_api_url=settings.control_api_url,
                    local_port=local_port,
                )
            elif state == ControlPlaneState.UNRELATED:
                raise ProcessSpawnError(
                    f"Control address {settings.control_api_url} is in use "
                    "by a process that is not a tunnel agent"
                )
            elif state == ControlPlaneState.UNRESPONSIVE:
                raise ControlPlaneUnresponsive(
                    f"Control address {settings.control_api_url} accepted the "
                    f"connection but did not answer within {settings.probe_timeout}s"
                )
            else:
                handle = self._spawn(local_port, settings)

            self._handles[local_port] = handle
            return handle

    def get(self, local_port: int) -> TunnelProcessHandle | None:
        """Get the registered handle for a port, if any."""
        return self._handles.get(local_port)

    def stop(self, handle: TunnelProcessHandle, timeout: float | None = None) -> bool:
        """Stop an owned tunnel process and forget its handle.

        Args:
            handle: Handle returned by :meth:`ensure_running`
            timeout: Graceful termination timeout

        Returns:
            True if the process is gone
        """
        with self._lock:
            if self._handles.get(handle.local_port) is handle:
                del self._handles[handle.local_port]
        if timeout is None:
            return handle.stop()
        return handle.stop(timeout=timeout)

    def stop_all(self) -> bool:
        """Stop every owned tunnel process.

        Returns:
            True if all processes stopped successfully
        """
        success = True
        for handle in list(self._handles.values()):
            if not self.stop(handle):
                success = False
        return success

    @property
    def handle_count(self) -> int:
        return len(self._handles)

    def _check_control_address_free(
        self, local_port: int, settings: TunnelSettings
    ) -> None:
        """A second port cannot share the control address of another owned agent."""
        for port, other in self._handles.items():
            if (
                port != local_port
                and other.owned
                and other.control_api_url == settings.control_api_url
                and other.is_alive()
            ):
                raise ProcessSpawnError(
                    f"Control address {other.control_api_url} already belongs to "
                    f"the tunnel for port {port}"
                )

    def _still_running(
        self, handle: TunnelProcessHandle, settings: TunnelSettings
    ) -> bool:
        if handle.owned:
            return handle.is_alive()
        # A reused agent is only gone once nothing listens on its address
        return self._probe(settings) != ControlPlaneState.NOTHING

    def _probe(self, settings: TunnelSettings) -> ControlPlaneState:
        return probe_control_plane(
            settings.control_api_url,
            tunnels_path=self._tunnels_path,
            timeout=settings.probe_timeout,
            transport=self._transport,
        )

    def _spawn(self, local_port: int, settings: TunnelSettings) -> TunnelProcessHandle:
        """Start the tunnel command and wait out the startup grace period."""
        command = settings.render_command(local_port)
        binary = shutil.which(command[0])
        if binary is None:
            raise ProcessSpawnError(f"Tunnel binary not found: {command[0]}")

        env = os.environ.copy()
        if settings.auth_token is not None:
            env[settings.auth_token_env] = settings.auth_token.get_secret_value()

        logger.info("Starting tunnel process", command=command, local_port=local_port)
        # Child stderr is kept in a file, read back only if startup fails
        stderr_log = tempfile.TemporaryFile(mode="w+", prefix="tunnel-stderr-")
        try:
            process = subprocess.Popen(
                [binary, *command[1:]],
                stdout=subprocess.DEVNULL,
                stderr=stderr_log,
                text=True,
                env=env,
            )
        except OSError as e:
            stderr_log.close()
            logger.error("Failed to start tunnel process", error=str(e))
            raise ProcessSpawnError(f"Failed to start tunnel process: {e}") from e

        if not self._survives_startup(process, settings.startup_grace):
            detail = self._read_stderr(stderr_log)
            stderr_log.close()
            logger.error(
                "Tunnel process exited during startup",
                returncode=process.returncode,
                stderr=detail,
            )
            raise ProcessSpawnError(
                f"Tunnel process exited with code {process.returncode}"
                + (f": {detail}" if detail else "")
            )

        logger.info("Tunnel process started", pid=process.pid, local_port=local_port)
        return TunnelProcessHandle(
            local_port=local_port,
            control_api_url=settings.control_api_url,
            pid=process.pid,
            owned=True,
            process=process,
            stderr_log=stderr_log,
        )

    @staticmethod
    def _survives_startup(process: "subprocess.Popen[str]", grace: float) -> bool:
        """Check the process is still running after ``grace`` seconds."""
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if process.poll() is not None:
                return False
            time.sleep(0.05)
        return process.poll() is None

    @staticmethod
    def _read_stderr(stderr_log: IO[str]) -> str:
        """Tail of what the process wrote to its stderr file."""
        try:
            stderr_log.flush()
            stderr_log.seek(0)
            text = stderr_log.read()
        except (OSError, ValueError):
            return ""
        return text.strip()[-STDERR_TAIL_CHARS:]
