"""Polling of the tunnel control plane for the assigned public URL."""

import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from .config import DiscoverySettings
from .exceptions import DiscoveryCancelled, DiscoveryTimeout, TunnelProcessExited
from .logging import get_logger
from .models import TunnelEndpoint, TunnelProcessHandle
from .utils import addr_targets_port, is_secure_public_url

logger = get_logger(__name__)


def extract_public_url(
    payload: Any, local_port: int | None = None, scheme: str = "https"
) -> tuple[str, dict[str, Any]] | None:
    """Pick the public URL of the first secure tunnel in a control-plane listing.

    Entries whose ``config.addr`` forwards ``local_port`` win over entries
    without address information; entries forwarding another port are
    skipped. Insecure or malformed URLs are never returned.

    Args:
        payload: Decoded ``/api/tunnels`` response
        local_port: Local port the tunnel should forward
        scheme: Required URL scheme

    Returns:
        ``(public_url, entry)`` or None when no acceptable tunnel is listed
    """
    if not isinstance(payload, dict):
        return None
    tunnels = payload.get("tunnels")
    if not isinstance(tunnels, list):
        return None

    fallback: tuple[str, dict[str, Any]] | None = None
    for entry in tunnels:
        if not isinstance(entry, dict):
            continue
        public_url = entry.get("public_url")
        if not is_secure_public_url(public_url, scheme):
            continue

        config = entry.get("config")
        addr = config.get("addr") if isinstance(config, dict) else None
        if local_port is None or addr is None:
            if fallback is None:
                fallback = (public_url, entry)
            continue
        if addr_targets_port(addr, local_port):
            return public_url, entry

    return fallback


class TunnelDiscoveryPoller:
    """Queries the control plane until a secure public URL is assigned."""

    def __init__(
        self,
        settings: DiscoverySettings | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or DiscoverySettings()
        self._transport = transport
        self._clock = clock
        self._latest: TunnelEndpoint | None = None

    @property
    def latest(self) -> TunnelEndpoint | None:
        """Most recent observation; earlier ones are superseded."""
        return self._latest

    def discover(
        self,
        handle: TunnelProcessHandle,
        timeout: float | None = None,
        poll_interval: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TunnelEndpoint:
        """Poll until a secure public URL is reported.

        Args:
            handle: Tunnel agent to query
            timeout: Overall deadline in seconds (settings default)
            poll_interval: Fixed delay between attempts (settings default)
            cancel_event: Set to abandon polling between attempts

        Returns:
            Freshly observed endpoint

        Raises:
            DiscoveryTimeout: If nothing acceptable appears before ``timeout``
            DiscoveryCancelled: If ``cancel_event`` is set
            TunnelProcessExited: If the owned tunnel process exits
        """
        timeout = self.settings.timeout if timeout is None else timeout
        interval = self.settings.poll_interval if poll_interval is None else poll_interval
        if timeout <= 0 or interval <= 0:
            raise ValueError("timeout and poll_interval must be positive")

        cancel_event = cancel_event or threading.Event()
        started = self._clock()
        deadline = started + timeout
        attempt = 0

        logger.info(
            "Discovering tunnel public URL",
            control_api_url=handle.control_api_url,
            timeout=timeout,
            poll_interval=interval,
        )

        while True:
            if cancel_event.is_set():
                raise DiscoveryCancelled("Discovery cancelled")

            if handle.owned and not handle.is_alive():
                raise TunnelProcessExited(
                    f"Tunnel process {handle.pid} exited with code {handle.returncode}",
                    returncode=handle.returncode,
                )

            attempt += 1
            endpoint = self._query(handle)
            if endpoint is not None:
                logger.info(
                    "Tunnel public URL discovered",
                    public_url=endpoint.public_url,
                    attempts=attempt,
                )
                return endpoint

            remaining = deadline - self._clock()
            if remaining <= 0:
                elapsed = self._clock() - started
                logger.warning(
                    "Tunnel discovery timed out", attempts=attempt, elapsed=elapsed
                )
                raise DiscoveryTimeout(
                    f"No {self.settings.required_scheme} tunnel URL after "
                    f"{elapsed:.1f}s ({attempt} attempts)",
                    elapsed=elapsed,
                )

            if cancel_event.wait(min(interval, remaining)):
                raise DiscoveryCancelled("Discovery cancelled")

    def refresh(
        self, handle: TunnelProcessHandle, endpoint: TunnelEndpoint
    ) -> TunnelEndpoint:
        """Re-check an endpoint against the control plane right before use.

        This is where supersession takes effect for callers: an endpoint whose
        URL is no longer the one reported is replaced by the current
        observation, and a stale (``fresh=False``) endpoint is never handed
        back. Registration refuses stale endpoints on its own as well.

        Returns:
            ``endpoint`` if still reported, otherwise the newer observation

        Raises:
            DiscoveryTimeout: If no secure tunnel is reported anymore
        """
        current = self._query(handle)
        if current is None:
            raise DiscoveryTimeout(
                f"Tunnel URL {endpoint.public_url} is no longer reported"
            )
        if current.same_url(endpoint) and endpoint.fresh:
            self._latest = endpoint
            return endpoint
        return current

    def _query(self, handle: TunnelProcessHandle) -> TunnelEndpoint | None:
        """Single read-only listing request; None means not yet available."""
        url = handle.control_api_url.rstrip("/") + self.settings.tunnels_path
        try:
            with httpx.Client(
                timeout=self.settings.request_timeout, transport=self._transport
            ) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Control plane not answering yet", url=url, error=str(e))
            return None

        if response.status_code != httpx.codes.OK:
            logger.debug(
                "Control plane returned non-OK status", status_code=response.status_code
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.debug("Control plane returned invalid JSON", url=url)
            return None

        found = extract_public_url(
            payload, handle.local_port, self.settings.required_scheme
        )
        if found is None:
            return None

        public_url, entry = found
        config = entry.get("config")
        endpoint = TunnelEndpoint(
            public_url=public_url,
            observed_at=datetime.now(),
            tunnel_name=entry.get("name") if isinstance(entry.get("name"), str) else None,
            local_addr=(
                str(config.get("addr"))
                if isinstance(config, dict) and config.get("addr") is not None
                else None
            ),
        )
        return self._observe(endpoint)

    def _observe(self, endpoint: TunnelEndpoint) -> TunnelEndpoint:
        """Record an observation; a different URL supersedes the previous one."""
        previous = self._latest
        if previous is not None and not previous.same_url(endpoint):
            logger.info(
                "Tunnel URL changed, superseding previous observation",
                previous=previous.public_url,
                current=endpoint.public_url,
            )
        self._latest = endpoint
        return endpoint
