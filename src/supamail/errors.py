"""Exceptions raised by the gateway."""


class GatewayError(Exception):
    """Base class for gateway errors."""


class SignatureError(GatewayError):
    """Webhook signature did not verify."""


class RecipientNotFoundError(GatewayError):
    """No user owns the target masked address."""


class ForwardError(GatewayError):
    """The mail relay refused or failed to send a forwarded message."""


class LogNotFoundError(GatewayError):
    """Activity log entry does not exist or belongs to another user."""


class UsernameTakenError(GatewayError):
    """Another user already owns the requested Supamail ID."""
