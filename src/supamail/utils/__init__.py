"""Utility modules for message content."""

from supamail.utils.text import (
    html_to_text,
    prepare_body,
    sender_address,
    sender_domain,
    smart_truncate,
)

__all__ = [
    "html_to_text",
    "prepare_body",
    "sender_address",
    "sender_domain",
    "smart_truncate",
]
