import logging
from typing import Optional

import resend

from app import config
from app.services.errors import NotificationFailure

logger = logging.getLogger(__name__)


class EmailSender:
    """Transactional email through Resend. A missing API key turns sending into a no-op."""

    def __init__(self, api_key: str, from_address: str):
        self._api_key = api_key
        self._from_address = from_address

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def send(self, to: str, subject: str, html: str) -> Optional[str]:
        if not self._api_key:
            logger.info("RESEND_API_KEY not configured, skipping email to %s", to)
            return None
        resend.api_key = self._api_key
        try:
            response = resend.Emails.send(
                {
                    "from": self._from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                }
            )
        except Exception as exc:
            raise NotificationFailure(f"Failed to send email to {to}: {exc}") from exc
        email_id = response.get("id") if isinstance(response, dict) else None
        logger.info("Email sent via Resend to=%s id=%s", to, email_id)
        return email_id


email_sender = EmailSender(api_key=config.RESEND_API_KEY, from_address=config.EMAIL_FROM_ADDRESS)
