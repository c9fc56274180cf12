"""Utility functions for the webhook provisioner."""

import re
from typing import Any
from urllib.parse import urlsplit

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

SENSITIVE_FIELDS = {
    "auth_token",
    "token",
    "password",
    "secret",
    "credential",
    "api_key",
    "access_token",
    "bearer_token",
}


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if (
        isinstance(port, bool)
        or not isinstance(port, int)
        or not (MIN_PORT <= port <= MAX_PORT)
    ):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def normalize_path_slashes(path: str) -> str:
    """Collapse repeated slashes and strip leading/trailing ones."""
    path = path.strip("/")
    return re.sub(r"/+", "/", path)


def join_url(base: str, path: str) -> str:
    """Join a base URL and a path with exactly one separating slash.

    A trailing slash on ``base`` and a leading slash on ``path`` are merged,
    repeated slashes inside ``path`` are collapsed. An empty path returns the
    base without its trailing slash.

    Args:
        base: Absolute URL such as ``https://abc.ngrok.app/`` or ``https://h/prefix``
        path: Path suffix such as ``/webhook`` or ``telegram/webhook``

    Returns:
        Joined URL

    Example:
        >>> join_url("https://abc.ngrok.app/", "/webhook")
        'https://abc.ngrok.app/webhook'
    """
    base = base.rstrip("/")
    suffix = normalize_path_slashes(path)
    if not suffix:
        return base
    return f"{base}/{suffix}"


def is_secure_public_url(url: Any, scheme: str = "https") -> bool:
    """Check that ``url`` is a well-formed absolute URL using ``scheme``.

    Args:
        url: Candidate value reported by the tunnel control plane
        scheme: Required URL scheme

    Returns:
        True if the URL uses the scheme and names a host
    """
    if not isinstance(url, str) or not url or url != url.strip():
        return False

    try:
        parts = urlsplit(url)
        # Accessing port validates the netloc
        parts.port
    except ValueError:
        return False

    return parts.scheme.lower() == scheme.lower() and bool(parts.hostname)


def addr_targets_port(addr: Any, port: int) -> bool:
    """Check whether a tunnel ``config.addr`` value forwards to ``port``.

    The control plane reports addresses as ``http://localhost:8000``,
    ``localhost:8000`` or a bare ``8000``.
    """
    if isinstance(addr, int):
        return addr == port
    if not isinstance(addr, str) or not addr:
        return False
    match = re.search(r"(?:^|:)(\d{1,5})/?$", addr.strip())
    return match is not None and int(match.group(1)) == port


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., bot token, secret)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def redact_secret(text: str, secret: str | None) -> str:
    """Replace every occurrence of ``secret`` in ``text`` with a mask."""
    if not secret:
        return text
    return text.replace(secret, mask_sensitive_data(secret))


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized = {}
    for key, value in data.items():
        if any(sensitive_field in key.lower() for sensitive_field in SENSITIVE_FIELDS):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
