"""Brevo (Sendinblue) transactional email client for dunning notices.

This module provides a client for sending transactional emails with
optional attachments via the Brevo API.
"""

import base64
import logging
from dataclasses import dataclass

import httpx

from backend.core.config import settings


@dataclass
class BrevoAttachment:
    """File attached to a transactional email."""

    name: str
    content: bytes

    def to_payload(self) -> dict[str, str]:
        return {"name": self.name, "content": base64.b64encode(self.content).decode("ascii")}


@dataclass
class BrevoResponse:
    """Response from Brevo API."""

    success: bool
    message_id: str | None = None
    provider_message_id: str | None = None
    status_code: int | None = None
    error: str | None = None


class BrevoClient:
    """Brevo API client for transactional emails."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize Brevo client.

        Args:
            api_key: Brevo API key of the tenant
            base_url: API base URL, defaults to settings.BREVO_BASE_URL
            timeout: Request timeout in seconds
        """
        self.logger = logging.getLogger(__name__)
        self.api_key = api_key
        self.base_url = base_url or settings.BREVO_BASE_URL

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout if timeout is not None else settings.BREVO_TIMEOUT_SEC,
        )

    def send_transactional(
        self,
        to: str,
        subject: str,
        html: str,
        tenant_id: str,
        sender_email: str,
        sender_name: str = "No Reply",
        attachments: list[BrevoAttachment] | None = None,
        message_id: str | None = None,
    ) -> BrevoResponse:
        """Send transactional email via Brevo API.

        Args:
            to: Recipient email address
            subject: Email subject
            html: HTML content
            tenant_id: Tenant identifier for tracking
            sender_email: Sender address
            sender_name: Sender display name
            attachments: Optional file attachments
            message_id: Optional deterministic message ID for correlation

        Returns:
            BrevoResponse with success status and details
        """
        email_data = {
            "sender": {"name": sender_name, "email": sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html,
            "headers": {"X-Tenant-ID": tenant_id},
        }
        if message_id:
            email_data["headers"]["X-Message-ID"] = message_id
        if attachments:
            email_data["attachment"] = [a.to_payload() for a in attachments]

        log_extra = {
            "tenant_id": tenant_id,
            "to": to,
            "message_id": message_id,
            "subject": subject[:50] + "..." if len(subject) > 50 else subject,
        }

        try:
            response = self._client.post("/smtp/email", json=email_data)
        except httpx.HTTPError as e:
            error_msg = f"Network error sending email: {e}"
            self.logger.error(error_msg, extra={**log_extra, "error": str(e)})
            return BrevoResponse(success=False, message_id=message_id, error=error_msg)

        if response.status_code in (200, 201, 202):
            try:
                provider_id = response.json().get("messageId")
            except ValueError:
                provider_id = None

            self.logger.info(
                "Email sent successfully via Brevo",
                extra={**log_extra, "provider_message_id": provider_id},
            )
            return BrevoResponse(
                success=True,
                message_id=message_id,
                provider_message_id=provider_id,
                status_code=response.status_code,
            )

        error_msg = f"Brevo API error: {response.status_code} - {response.text}"
        self.logger.error(
            "Failed to send email via Brevo",
            extra={**log_extra, "status_code": response.status_code, "error": error_msg},
        )
        return BrevoResponse(
            success=False,
            message_id=message_id,
            status_code=response.status_code,
            error=error_msg,
        )

    def close(self):
        """Close HTTP client connection."""
        self._client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
