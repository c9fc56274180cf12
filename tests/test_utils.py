"""Tests for utility functions."""

import pytest

from webhook_provisioner.utils import (
    MAX_PORT,
    MIN_PORT,
    addr_targets_port,
    is_secure_public_url,
    join_url,
    mask_sensitive_data,
    normalize_path_slashes,
    redact_secret,
    sanitize_log_data,
    validate_port,
)


class TestValidatePort:
    """Test port validation function."""

    def test_valid_ports(self):
        """Test validation of valid ports."""
        validate_port(MIN_PORT, "Test port")
        validate_port(8000, "Local port")
        validate_port(MAX_PORT, "Max port")

    def test_invalid_ports(self):
        """Test validation of invalid ports."""
        with pytest.raises(ValueError, match="Test port must be between 1 and 65535"):
            validate_port(0, "Test port")

        with pytest.raises(ValueError, match="Test port must be between 1 and 65535"):
            validate_port(65536, "Test port")

    def test_non_integer_ports(self):
        """Test validation of non-integer ports."""
        with pytest.raises(ValueError):
            validate_port("80", "Test port")  # type: ignore

        with pytest.raises(ValueError):
            validate_port(True, "Test port")  # type: ignore


class TestJoinUrl:
    """Exactly one slash must separate base and path."""

    @pytest.mark.parametrize(
        "base,path",
        [
            ("https://abc.ngrok.app", "webhook"),
            ("https://abc.ngrok.app/", "webhook"),
            ("https://abc.ngrok.app", "/webhook"),
            ("https://abc.ngrok.app/", "/webhook"),
            ("https://abc.ngrok.app//", "//webhook"),
        ],
    )
    def test_single_separator(self, base, path):
        assert join_url(base, path) == "https://abc.ngrok.app/webhook"

    def test_nested_path_is_collapsed(self):
        assert (
            join_url("https://h.example/prefix/", "/bot//hook/")
            == "https://h.example/prefix/bot/hook"
        )

    def test_empty_path_returns_base(self):
        assert join_url("https://abc.ngrok.app/", "/") == "https://abc.ngrok.app"

    def test_normalize_path_slashes(self):
        assert normalize_path_slashes("//a///b/") == "a/b"


class TestIsSecurePublicUrl:
    def test_https_url_is_accepted(self):
        assert is_secure_public_url("https://abc.ngrok.app")
        assert is_secure_public_url("HTTPS://abc.ngrok.app:443/path")

    @pytest.mark.parametrize(
        "value",
        [
            "http://abc.ngrok.app",
            "tcp://0.tcp.ngrok.io:12345",
            "https://",
            "https://host:notaport",
            " https://abc.ngrok.app",
            "",
            None,
            42,
        ],
    )
    def test_insecure_or_malformed_is_rejected(self, value):
        assert not is_secure_public_url(value)

    def test_custom_scheme(self):
        assert is_secure_public_url("http://127.0.0.1:4040", "http")


class TestAddrTargetsPort:
    @pytest.mark.parametrize(
        "addr", ["http://localhost:8000", "localhost:8000", "8000", 8000]
    )
    def test_matching_forms(self, addr):
        assert addr_targets_port(addr, 8000)

    @pytest.mark.parametrize("addr", ["http://localhost:9000", "", None, "localhost"])
    def test_non_matching(self, addr):
        assert not addr_targets_port(addr, 8000)


class TestMaskSensitiveData:
    """Test sensitive data masking function."""

    def test_mask_normal_data(self):
        assert mask_sensitive_data("secret123456") == "********3456"

    def test_mask_short_and_empty(self):
        assert mask_sensitive_data("abc") == "***"
        assert mask_sensitive_data(None) == "<None>"

    def test_redact_secret_in_text(self):
        text = "POST https://api.telegram.org/bot123:SECRET/setWebhook failed"
        redacted = redact_secret(text, "123:SECRET")
        assert "123:SECRET" not in redacted
        assert "CRET" in redacted

    def test_redact_without_secret_is_identity(self):
        assert redact_secret("unchanged", None) == "unchanged"


class TestSanitizeLogData:
    def test_sensitive_keys_are_masked(self):
        data = {
            "credential": "123456:ABCDEFG",
            "secret_token": "s3cr3t-value",
            "callback_url": "https://abc.ngrok.app/webhook",
        }

        sanitized = sanitize_log_data(data)

        assert sanitized["credential"] == "**********DEFG"
        assert sanitized["secret_token"].endswith("alue")
        assert "s3cr3t" not in sanitized["secret_token"]
        assert sanitized["callback_url"] == data["callback_url"]
