"""
Notifier Module

Delivers one-time codes to an address. The OTP authority only needs
``send(address, code) -> bool``; how the message travels (email via
SendGrid, a webhook, or just the log) is a provider detail. Providers
report failure by returning False and never raise to the caller.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import requests

from .config import SyncConfig
from .errors import DeliveryFailure
from .logging_config import get_logger, log_action


OTP_EMAIL_TEMPLATE = """\
<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
      <h2>Security Verification</h2>
      <p>Your one-time password is:</p>
      <p style="font-size: 36px; font-weight: bold; letter-spacing: 8px;">{code}</p>
      <p>This code will expire in <strong>{minutes} minutes</strong>.</p>
      <p>Never share this code with anyone, including bank staff.</p>
      <p style="font-size: 12px; color: #999;">If you didn't request this code, please ignore this email.</p>
    </div>
  </body>
</html>
"""


class Notifier(ABC):
    """Abstract base class for code delivery providers"""

    @abstractmethod
    async def send(self, address: str, code: str) -> bool:
        """Deliver code to address. Returns True if the provider accepted it."""
        pass

    async def close(self) -> None:
        """Release provider resources (default no-op)"""
        pass


class LogNotifier(Notifier):
    """Development provider: writes the delivery to the log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("banking_sync.notifier.log")

    async def send(self, address: str, code: str) -> bool:
        log_action(
            self.logger, "info", f"OTP delivery to {address} (log provider)",
            action="otp_delivery", resource=f"otp:{address}"
        )
        return True


class SendGridNotifier(Notifier):
    """Email provider using the SendGrid v3 mail API"""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        subject: str = "Your verification code",
        expiry_minutes: int = 10,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.subject = subject
        self.expiry_minutes = expiry_minutes
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger("banking_sync.notifier.sendgrid")

    def _build_message(self, address: str, code: str) -> dict:
        return {
            "personalizations": [{"to": [{"email": address}]}],
            "from": {"email": self.from_email},
            "subject": self.subject,
            "content": [{
                "type": "text/html",
                "value": OTP_EMAIL_TEMPLATE.format(code=code, minutes=self.expiry_minutes),
            }],
        }

    async def send(self, address: str, code: str) -> bool:
        if not self.api_key or not self.from_email:
            self.logger.warning("SendGrid is not configured; OTP email not sent")
            return False

        try:
            response = await self._client.post(
                self.api_url,
                json=self._build_message(address, code),
                headers={"Authorization": f"Bearer {self.api_key}"}
            )
        except httpx.HTTPError as e:
            self.logger.error(f"SendGrid request failed for {address}: {e}")
            return False

        # SendGrid answers 202 Accepted on success
        if response.status_code in (200, 202):
            log_action(
                self.logger, "info", f"Email delivered to {address}",
                action="otp_delivery", resource=f"otp:{address}",
                extra={"message_id": response.headers.get("x-message-id")}
            )
            return True

        self.logger.warning(f"SendGrid returned {response.status_code} for {address}: {response.text}")
        return False

    async def close(self) -> None:
        await self._client.aclose()


class WebhookNotifier(Notifier):
    """Posts the code to an external delivery webhook (SMS gateway, push relay)"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("banking_sync.notifier.webhook")

    def _post(self, address: str, code: str) -> None:
        response = requests.post(
            self.url,
            json={"address": address, "code": code},
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        if not 200 <= response.status_code < 300:
            raise DeliveryFailure(f"webhook answered {response.status_code}")

    async def send(self, address: str, code: str) -> bool:
        try:
            # requests is blocking; keep it off the event loop
            await asyncio.to_thread(self._post, address, code)
        except requests.RequestException as e:
            self.logger.error(f"Webhook delivery failed for {address}: {e}")
            return False
        except DeliveryFailure as e:
            self.logger.warning(f"Webhook rejected delivery for {address}: {e.message}")
            return False
        return True


def create_notifier(config: SyncConfig) -> Notifier:
    """Create notifier based on configuration"""
    provider = config.notifier_provider.lower()
    if provider == "sendgrid":
        return SendGridNotifier(
            api_key=config.sendgrid_api_key,
            from_email=config.sendgrid_from_email,
            api_url=config.sendgrid_api_url,
            subject=config.otp_email_subject,
            expiry_minutes=max(1, config.otp_expiry_seconds // 60),
            timeout=config.notifier_timeout
        )
    if provider == "webhook":
        if not config.notifier_webhook_url:
            raise ValueError("notifier_webhook_url is required for the webhook provider")
        return WebhookNotifier(config.notifier_webhook_url, timeout=config.notifier_timeout)
    if provider == "log":
        return LogNotifier()
    raise ValueError(f"Unknown notifier provider: {config.notifier_provider}")
