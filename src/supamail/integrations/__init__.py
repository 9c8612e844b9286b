"""External integrations (mail relay)."""

from .mailgun import MailgunForwarder, parse_recipient, verify_signature

__all__ = ["MailgunForwarder", "parse_recipient", "verify_signature"]
