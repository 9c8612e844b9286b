"""Core data models for inbound email processing."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RuleType(str, Enum):
    """What a rule's pattern is compared against.

    Listed from most to least specific; the disposition engine relies on
    this ordering.
    """

    EMAIL = "email"
    DOMAIN = "domain"
    CATEGORY = "category"


class RuleAction(str, Enum):
    """Disposition a matching rule asks for."""

    ALLOW = "allow"
    BLOCK = "block"


class LogStatus(str, Enum):
    """Final status of a processed message."""

    FORWARDED = "forwarded"
    BLOCKED = "blocked"


class User(BaseModel):
    """Owner of a masked (Supamail) address."""

    id: str
    email: str  # Real mailbox that receives forwarded mail
    username: str | None = None  # Local part of the masked address
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Rule(BaseModel):
    """User-authored allow/block rule.

    Rules are created and deleted, never edited in place.
    """

    id: str
    user_id: str
    pattern: str
    type: RuleType
    action: RuleAction
    created_at: datetime = Field(default_factory=datetime.now)


class Classification(BaseModel):
    """AI-derived summary and category for one message."""

    summary: str
    category: str
    fallback: bool = False  # True when the classifier returned its defaults

    def subject_line(self, subject: str) -> str:
        """Subject used when forwarding, prefixed with the summary."""
        prefix = "AI" if self.fallback else self.summary
        return f"[{prefix}] {subject}"


class InboundMessage(BaseModel):
    """A message received from the mail relay. Lives for one processing pass."""

    message_id: str  # Idempotency key
    sender: str
    recipient: str
    subject: str = ""
    body_html: str = ""
    body_plain: str = ""
    received_at: datetime = Field(default_factory=datetime.now)

    @property
    def body(self) -> str:
        """Body text handed to the classifier."""
        return self.body_plain or self.body_html


class Disposition(BaseModel):
    """Allow/block decision for one message."""

    action: RuleAction
    matched_rule: Rule | None = None

    @property
    def reason(self) -> str:
        """Human-readable explanation of the decision."""
        if self.matched_rule is None:
            return "default"
        return f"{self.matched_rule.type.value}:{self.matched_rule.pattern}"


class ActivityEntry(BaseModel):
    """Activity log record for one processed message."""

    id: str  # UUID
    user_id: str
    message_id: str
    sender: str
    subject: str = ""
    ai_summary: str | None = None
    category: str | None = None
    body_html: str = ""
    body_plain: str = ""
    status: LogStatus
    rule_id: str | None = None  # Rule that decided the disposition, if any
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime | None = None
    delivered_at: datetime | None = None  # Set once the forward succeeded


class ProcessingResult(BaseModel):
    """Outcome of running one inbound message through the pipeline."""

    message_id: str
    user_id: str
    status: LogStatus
    log_id: str
    summary: str = ""
    category: str = ""
    rule_id: str | None = None
    forwarded: bool = False
    duplicate: bool = False  # Message was already logged by an earlier run
    errors: list[str] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=datetime.now)
