"""OTP delivery by email through the Mailtrap send API.

Delivery policy:
  - Token configured, API accepts  → Delivery(debug=False)
  - Token missing or API fails:
      non-production → Delivery(debug=True, code=...) and a WARNING log line
                       carrying the code, so local logins keep working
      production     → DeliveryError (HTTP 503 to the caller); never silent

The plaintext code only leaves this module inside the email body or, outside
production, in the debug Delivery.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx

from authproxy.config import MailConfig
from authproxy.errors import DeliveryError
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

_PLACEHOLDER_TOKENS: frozenset[str] = frozenset({"your_mailtrap_token", "<your-token-here>", "changeme"})


@dataclass(frozen=True)
class Delivery:
    debug: bool
    code: Optional[str] = None


@runtime_checkable
class Notifier(Protocol):
    async def send_code(self, to_email: str, code: str) -> Delivery:
        ...

    async def aclose(self) -> None:
        ...


def _is_placeholder(token: Optional[str]) -> bool:
    return not token or not token.strip() or token.strip().lower() in _PLACEHOLDER_TOKENS


def render_text(code: str, ttl_minutes: int) -> str:
    return f"Your login code is: {code}\nThis code expires in {ttl_minutes} minutes.\n"


def render_html(code: str, ttl_minutes: int, sender_name: str) -> str:
    return (
        "<!doctype html><html><body style=\"font-family:system-ui,sans-serif\">"
        f"<h2>{html.escape(sender_name)}</h2>"
        f"<p>Use the code below to complete your login. It expires in {ttl_minutes} minutes.</p>"
        f"<p style=\"font-size:28px;letter-spacing:4px;font-weight:700\">{html.escape(code)}</p>"
        "<p style=\"color:#64748b\">If you did not request this, you can ignore this email.</p>"
        "</body></html>"
    )


class MailtrapNotifier:
    """Sends login codes with one POST to the Mailtrap send endpoint.

    Usage:
        notifier = MailtrapNotifier(config.mail, production=config.is_production)
        delivery = await notifier.send_code("user@example.com", "123456")
        await notifier.aclose()
    """

    def __init__(
        self,
        config: MailConfig,
        *,
        production: bool,
        ttl_minutes: int = 10,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._production = production
        self._ttl_minutes = ttl_minutes
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_s))

    def _fallback(self, to_email: str, code: str, reason: str, cause: Optional[Exception] = None) -> Delivery:
        if self._production:
            logger.error("otp_delivery_failed", reason=reason)
            raise DeliveryError() from cause
        logger.warning("otp_debug_delivery", reason=reason, email=to_email, code=code)
        return Delivery(debug=True, code=code)

    async def send_code(self, to_email: str, code: str) -> Delivery:
        if _is_placeholder(self._config.token):
            return self._fallback(to_email, code, "token_not_configured")

        payload = {
            "from": {"email": self._config.sender_email, "name": self._config.sender_name},
            "to": [{"email": to_email}],
            "subject": f"Your {self._config.sender_name} login code",
            "text": render_text(code, self._ttl_minutes),
            "html": render_html(code, self._ttl_minutes, self._config.sender_name),
            "category": "otp",
        }
        try:
            response = await self._client.post(
                self._config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.token}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("mail_api_rejected", status_code=exc.response.status_code)
            return self._fallback(to_email, code, f"http_{exc.response.status_code}", exc)
        except httpx.HTTPError as exc:
            logger.warning("mail_api_unreachable", error_type=type(exc).__name__, error=str(exc))
            return self._fallback(to_email, code, type(exc).__name__, exc)

        logger.info("otp_email_sent")
        return Delivery(debug=False)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
