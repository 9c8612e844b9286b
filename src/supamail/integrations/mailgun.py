"""Mailgun integration: webhook verification and outbound forwarding."""

import hashlib
import hmac
import logging

import requests

from supamail.config import MailgunConfig
from supamail.errors import ForwardError

logger = logging.getLogger(__name__)


def compute_signature(signing_key: str, timestamp: str, token: str) -> str:
    """HMAC-SHA256 hex digest of timestamp + token, as Mailgun signs webhooks."""
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(signing_key: str, timestamp: str | None, token: str | None, signature: str | None) -> bool:
    """Check a webhook signature.

    Returns False when any field is missing or no signing key is configured.
    """
    if not signing_key:
        logger.warning("No Mailgun signing key configured; rejecting webhook")
        return False
    if not (timestamp and token and signature):
        return False
    expected = compute_signature(signing_key, timestamp, token)
    return hmac.compare_digest(expected, signature)


def parse_recipient(address: str, domain: str) -> str | None:
    """Local part of a masked address, or None if it is not under ``domain``.

    "alice@supamail.example" with domain "supamail.example" -> "alice"
    """
    address = (address or "").strip().lower()
    suffix = f"@{domain.lower()}"
    if not domain or not address.endswith(suffix):
        return None
    local = address[: -len(suffix)]
    return local or None


class MailgunForwarder:
    """Sends forwarded messages through the Mailgun messages API."""

    def __init__(self, config: MailgunConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def messages_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/v3/{self.config.domain}/messages"

    def forward(self, to: str, from_sender: str, subject: str, html: str, text: str) -> str:
        """Send one message and return the relay's message id.

        Raises:
            ForwardError: The relay is not configured or rejected the message.
        """
        if not self.config.api_key:
            raise ForwardError("Mailgun API key not configured")

        data = {"from": from_sender, "to": [to], "subject": subject}
        if text:
            data["text"] = text
        if html:
            data["html"] = html

        try:
            response = self.session.post(
                self.messages_url,
                auth=("api", self.config.api_key),
                data=data,
                timeout=self.config.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ForwardError(f"Mailgun send failed: {e}") from e

        try:
            message_id = response.json().get("id", "")
        except ValueError:
            message_id = ""
        logger.debug(f"Forwarded to {to} (mailgun id {message_id or 'unknown'})")
        return message_id
