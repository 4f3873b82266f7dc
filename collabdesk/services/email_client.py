"""
Transactional email via the Resend HTTP API.

Callers only rely on the success/failure signal; ``send_email`` never raises
for provider or transport problems.
"""
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from collabdesk.core.config import settings
from collabdesk.core.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_PLACEHOLDER_KEYS = {"", "your_resend_api_key_here"}


@dataclass
class EmailResult:
    success: bool
    email_id: Optional[str] = None
    error: Optional[str] = None


def is_valid_email(address: Optional[str]) -> bool:
    return bool(address) and bool(EMAIL_PATTERN.match(address))


class EmailClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        from_address: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_address = from_address or settings.EMAIL_FROM
        self.api_url = api_url or settings.RESEND_API_URL
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self._transport = transport

    def send_email(self, to: str, subject: str, html: str) -> EmailResult:
        if not self.api_key or self.api_key.strip() in _PLACEHOLDER_KEYS:
            logger.error("Email API key not configured")
            return EmailResult(success=False, error="Resend API key is not configured")

        if not is_valid_email(to):
            return EmailResult(success=False, error="Invalid email address format")

        payload = {
            "from": self.from_address,
            "to": to,
            "subject": subject,
            "html": html,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                transport=self._transport,
            ) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"Email request failed: {e}")
            return EmailResult(success=False, error=f"Email request failed: {e}")

        if response.status_code >= 400:
            error = _describe_error(response)
            logger.error(f"Email API error {response.status_code}: {error}")
            return EmailResult(success=False, error=error)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if data.get("id"):
            logger.info(f"Email sent: {data['id']}")
            return EmailResult(success=True, email_id=data["id"])

        message = (data.get("error") or {}).get("message") if isinstance(data.get("error"), dict) else None
        return EmailResult(success=False, error=message or "Email API returned no message id")


def _describe_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    provider_message = body.get("message") if isinstance(body, dict) else None

    if response.status_code == 401:
        return "Resend API authentication failed. Please check your RESEND_API_KEY"
    if response.status_code == 403:
        return "Resend API access forbidden. Please check your API key permissions."
    if response.status_code == 422 and provider_message:
        return f"Resend API validation error: {provider_message}"
    if provider_message:
        return f"Resend API error: {provider_message}"
    return f"Resend API error: {response.status_code} {response.reason_phrase}"
