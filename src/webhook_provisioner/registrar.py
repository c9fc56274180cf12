"""Registration of the public callback URL with the messaging API."""

from typing import Any

import httpx
from pydantic import SecretStr

from .config import RegistrarSettings
from .exceptions import WebhookAPIError
from .logging import get_logger
from .models import RegistrationOutcome, RegistrationRequest, TunnelEndpoint
from .utils import join_url, redact_secret

logger = get_logger(__name__)

# Statuses that signal a temporarily unavailable service, not a verdict
TRANSIENT_STATUS_CODES = {429, 502, 503, 504}


class WebhookRegistrar:
    """Calls setWebhook and classifies the answer.

    The registrar issues exactly one registration call per :meth:`register`;
    retrying is left to the caller.
    """

    def __init__(
        self,
        settings: RegistrarSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings or RegistrarSettings()
        self._transport = transport

    def callback_url(self, endpoint: TunnelEndpoint, webhook_path: str) -> str:
        return join_url(endpoint.public_url, webhook_path)

    def register(
        self,
        endpoint: TunnelEndpoint,
        webhook_path: str,
        credential: SecretStr | str,
    ) -> RegistrationOutcome:
        """Register ``endpoint`` + ``webhook_path`` as the webhook URL.

        Args:
            endpoint: Fresh tunnel endpoint
            webhook_path: Service-specific path suffix
            credential: Bot token embedded in the API path

        Returns:
            Confirmed, Rejected(reason) or Unreachable

        Raises:
            StaleEndpointError: If ``endpoint`` was superseded
        """
        request = RegistrationRequest.build(
            endpoint,
            self.callback_url(endpoint, webhook_path),
            _as_secret(credential),
            secret_token=self.settings.secret_token,
            drop_pending_updates=self.settings.drop_pending_updates,
        )

        logger.info("Registering webhook", callback_url=request.callback_url)
        outcome = self._send(request)

        if outcome.is_confirmed and self.settings.verify:
            outcome = self._verify(request)

        logger.info(
            "Webhook registration finished",
            callback_url=request.callback_url,
            status=outcome.status.value,
            reason=outcome.reason,
        )
        return outcome

    def webhook_info(self, credential: SecretStr | str) -> dict[str, Any]:
        """Fetch the webhook currently configured downstream (getWebhookInfo).

        Raises:
            WebhookAPIError: On transport failure or a non-``ok`` answer
        """
        secret = _as_secret(credential)
        try:
            response = self._call("GET", self.settings.webhook_info_path, secret)
        except httpx.HTTPError as e:
            raise WebhookAPIError(
                self._transport_reason(e, secret), transient=True
            ) from None

        outcome = self._classify(response)
        if not outcome.is_confirmed:
            raise WebhookAPIError(
                outcome.reason or "Webhook info request failed",
                transient=outcome.retryable,
            )
        result = _json_body(response).get("result")  # type: ignore[union-attr]
        return result if isinstance(result, dict) else {}


    def unregister(self, credential: SecretStr | str) -> RegistrationOutcome:
        """Remove the webhook downstream (deleteWebhook)."""
        secret = _as_secret(credential)
        try:
            response = self._call("POST", self.settings.delete_webhook_path, secret)
        except httpx.HTTPError as e:
            reason = self._transport_reason(e, secret)
            logger.warning("Webhook removal failed", reason=reason)
            return RegistrationOutcome.unreachable(reason)

        outcome = self._classify(response)
        logger.info("Webhook removal finished", status=outcome.status.value)
        return outcome

    def _send(self, request: RegistrationRequest) -> RegistrationOutcome:
        try:
            response = self._call(
                "POST",
                self.settings.set_webhook_path,
                request.credential,
                data=request.form_data(),
            )
        except httpx.HTTPError as e:
            reason = self._transport_reason(e, request.credential)
            logger.warning("Webhook API unreachable", reason=reason)
            return RegistrationOutcome.unreachable(reason)
        return self._classify(response)

    def _verify(self, request: RegistrationRequest) -> RegistrationOutcome:
        """Confirm the downstream service now reports our callback URL."""
        try:
            info = self.webhook_info(request.credential)
        except WebhookAPIError as e:
            if e.transient:
                return RegistrationOutcome.unreachable(str(e))
            return RegistrationOutcome.rejected(str(e))

        reported = info.get("url")
        if reported != request.callback_url:
            return RegistrationOutcome.rejected(
                f"Webhook info reports {reported!r} instead of {request.callback_url!r}"
            )
        logger.debug("Webhook registration verified", callback_url=reported)
        return RegistrationOutcome.confirmed()

    def _call(
        self,
        method: str,
        path_template: str,
        credential: SecretStr,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        path = path_template.replace("{credential}", credential.get_secret_value())
        url = self.settings.api_base + "/" + path.lstrip("/")
        with httpx.Client(
            timeout=self.settings.request_timeout, transport=self._transport
        ) as client:
            return client.request(method, url, data=data)

    @staticmethod
    def _classify(response: httpx.Response) -> RegistrationOutcome:
        """Map an HTTP answer onto a registration outcome."""
        body = _json_body(response)
        status = response.status_code

        if body is not None and "ok" in body:
            if body["ok"] is True and response.is_success:
                return RegistrationOutcome.confirmed(status)
            if status in TRANSIENT_STATUS_CODES:
                return RegistrationOutcome.unreachable(
                    _description(body, status), status
                )
            return RegistrationOutcome.rejected(_description(body, status), status)

        if status in TRANSIENT_STATUS_CODES or response.is_server_error:
            return RegistrationOutcome.unreachable(
                f"Webhook API answered HTTP {status}", status
            )
        return RegistrationOutcome.rejected(
            f"Unexpected response (HTTP {status}) without acknowledgment", status
        )

    @staticmethod
    def _redact(text: str, credential: SecretStr) -> str:
        return redact_secret(text, credential.get_secret_value())

    def _transport_reason(self, error: httpx.HTTPError, credential: SecretStr) -> str:
        detail = self._redact(str(error), credential) or "no detail"
        return f"{type(error).__name__}: {detail}"


def _as_secret(credential: SecretStr | str) -> SecretStr:
    return credential if isinstance(credential, SecretStr) else SecretStr(credential)


def _json_body(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _description(body: dict[str, Any], status: int) -> str:
    description = body.get("description")
    if isinstance(description, str) and description:
        return description
    return f"Request rejected (HTTP {status})"
