"""Inbound message processing pipeline.

Each inbound webhook runs through a fixed sequence:

1) Verify the relay signature (fail: SignatureError, nothing persisted)
2) Resolve the masked recipient to its owner (fail: RecipientNotFoundError)
3) Classify subject + body (never fails; falls back to defaults)
4) Decide allow/block from the owner's current rules
5) Write the activity log entry
6) On allow, forward to the owner's real mailbox and mark it delivered

Logging comes before forwarding so an entry exists even if the relay is
down. Both steps are keyed by the message id: re-running a message that
was already logged skips steps 3-5, and only retries the forward if an
allowed message was never delivered. A delivery claim on the entry
makes sure overlapping runs of the same message forward it once.
"""

import asyncio
import hashlib
import logging
import sqlite3
from collections.abc import Mapping
from typing import Protocol

from ..activity import ActivityLog
from ..config import Settings
from ..errors import ForwardError, LogNotFoundError, RecipientNotFoundError, SignatureError
from ..integrations.mailgun import MailgunForwarder, verify_signature
from ..models import (
    ActivityEntry,
    Classification,
    InboundMessage,
    LogStatus,
    ProcessingResult,
    Rule,
    RuleAction,
    RuleType,
    User,
)
from ..processors.llm import Classifier, LLMClient, create_llm_client
from ..processors.rules import DispositionEngine
from ..store import RuleStore
from ..utils.text import sender_domain

logger = logging.getLogger(__name__)


class Forwarder(Protocol):
    """Outbound mail contract used by the pipeline."""

    def forward(self, to: str, from_sender: str, subject: str, html: str, text: str) -> str:
        ...


def message_key(timestamp: str, token: str) -> str:
    """Fallback idempotency key when the relay sends no Message-Id."""
    return hashlib.sha256(f"{timestamp}:{token}".encode()).hexdigest()


def message_from_form(form: Mapping[str, str]) -> InboundMessage:
    """Build an InboundMessage from the relay's form-encoded webhook fields."""
    message_id = (form.get("Message-Id") or form.get("message-id") or "").strip()
    if not message_id:
        message_id = message_key(form.get("timestamp") or "", form.get("token") or "")
    return InboundMessage(
        message_id=message_id,
        sender=form.get("from") or "",
        recipient=form.get("recipient") or "",
        subject=form.get("subject") or "",
        body_html=form.get("body-html") or "",
        body_plain=form.get("body-plain") or "",
    )


class InboundPipeline:
    """Runs inbound messages from webhook to forward-or-block."""

    def __init__(
        self,
        store: RuleStore,
        activity: ActivityLog,
        classifier: Classifier,
        forwarder: Forwarder,
        *,
        domain: str,
        signing_key: str,
        engine: DispositionEngine | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Users, rules and categories.
            activity: Activity log the outcome is written to.
            classifier: Summarizes and categorizes each message.
            forwarder: Sends allowed mail to the owner's real mailbox.
            domain: Domain suffix of masked addresses.
            signing_key: Relay webhook signing key.
            engine: Disposition engine; the default is fail-open.
        """
        self.store = store
        self.activity = activity
        self.classifier = classifier
        self.forwarder = forwarder
        self.domain = domain
        self.signing_key = signing_key
        self.engine = engine or DispositionEngine()

    @classmethod
    def from_settings(cls, settings: Settings) -> "InboundPipeline":
        """Wire the pipeline and its collaborators from application settings."""
        settings.ensure_dirs()
        db_path = settings.get_db_path()

        client: LLMClient | None = None
        if settings.classifier.enabled:
            try:
                client = create_llm_client(settings.llm, settings.llm_api_key())
            except Exception as e:
                logger.warning(f"Could not initialize LLM client, classifier will use defaults: {e}")

        return cls(
            store=RuleStore(db_path),
            activity=ActivityLog(db_path),
            classifier=Classifier(settings.llm, settings.classifier, client),
            forwarder=MailgunForwarder(settings.mailgun),
            domain=settings.mailgun.domain,
            signing_key=settings.mailgun.signing_key,
        )

    def verify(self, timestamp: str | None, token: str | None, signature: str | None) -> None:
        """Raise SignatureError unless the webhook signature is valid."""
        if not verify_signature(self.signing_key, timestamp, token, signature):
            raise SignatureError("Invalid signature")

    def resolve_recipient(self, recipient: str) -> User:
        """Find the owner of a masked address."""
        user = self.store.get_user_by_address(recipient, self.domain)
        if user is None:
            raise RecipientNotFoundError(recipient)
        return user

    async def handle_webhook(self, form: Mapping[str, str]) -> ProcessingResult:
        """Verify and process one webhook delivery."""
        self.verify(form.get("timestamp"), form.get("token"), form.get("signature"))
        return await self.process(message_from_form(form))

    async def process(self, message: InboundMessage) -> ProcessingResult:
        """Process an already-authenticated message.

        Store, log and relay calls block, so they run in worker threads to
        keep the event loop free for other webhooks.

        Raises:
            RecipientNotFoundError: No user owns the recipient address.
            ForwardError: The message was allowed and logged but the relay
                          failed; a retry of the same message re-attempts
                          delivery only.
        """
        user = await asyncio.to_thread(self.resolve_recipient, message.recipient)

        existing = await asyncio.to_thread(self.activity.get_by_message_id, user.id, message.message_id)
        if existing is not None:
            logger.info(f"Message {message.message_id} already processed ({existing.status.value})")
            return await asyncio.to_thread(self._finish, existing, user, duplicate=True)

        classification = await self.classifier.classify(message.subject, message.body)
        entry, created = await asyncio.to_thread(self._dispose, message, user, classification)
        return await asyncio.to_thread(
            self._finish,
            entry,
            user,
            duplicate=not created,
            subject=classification.subject_line(message.subject),
        )

    def _dispose(
        self,
        message: InboundMessage,
        user: User,
        classification: Classification,
    ) -> tuple[ActivityEntry, bool]:
        """Decide against the owner's current rules and log the outcome."""
        self._record_category(classification.category)

        rules = self.store.get_rules_for_user(user.id)
        disposition = self.engine.decide(message.sender, classification.category, rules)
        status = LogStatus.FORWARDED if disposition.action == RuleAction.ALLOW else LogStatus.BLOCKED

        logger.info(
            f"{message.sender} -> {user.username or user.id}: {disposition.action.value} "
            f"({disposition.reason}, category={classification.category})"
        )

        return self.activity.log_activity(
            user_id=user.id,
            message_id=message.message_id,
            sender=message.sender,
            subject=message.subject,
            status=status,
            ai_summary=classification.summary,
            category=classification.category,
            body_html=message.body_html,
            body_plain=message.body_plain,
            rule_id=disposition.matched_rule.id if disposition.matched_rule else None,
        )

    def _finish(
        self,
        entry: ActivityEntry,
        user: User,
        *,
        duplicate: bool,
        subject: str | None = None,
    ) -> ProcessingResult:
        """Deliver the entry if it is allowed and not yet delivered.

        Only the run that wins the delivery claim sends; an overlapping run
        for the same message returns without forwarding.
        """
        result = ProcessingResult(
            message_id=entry.message_id,
            user_id=user.id,
            status=entry.status,
            log_id=entry.id,
            summary=entry.ai_summary or "",
            category=entry.category or "",
            rule_id=entry.rule_id,
            duplicate=duplicate,
        )

        if entry.status != LogStatus.FORWARDED:
            return result

        if entry.delivered_at is not None:
            result.forwarded = True
            return result

        if not self.activity.claim_delivery(entry.id):
            logger.info(f"Delivery of {entry.message_id} is already in progress or done")
            return result

        try:
            self.forwarder.forward(
                user.email,
                entry.sender,
                subject or self._forward_subject(entry),
                entry.body_html,
                entry.body_plain,
            )
        except ForwardError as e:
            self.activity.release_delivery(entry.id)
            logger.warning(f"Forward of {entry.message_id} to {user.id} failed; activity entry {entry.id} kept: {e}")
            raise

        self.activity.mark_delivered(entry.id)
        result.forwarded = True
        return result

    def _forward_subject(self, entry: ActivityEntry) -> str:
        summary = entry.ai_summary
        if not summary or summary == self.classifier.config.default_summary:
            return f"[AI] {entry.subject}"
        return f"[{summary}] {entry.subject}"

    def _record_category(self, category: str) -> None:
        try:
            self.store.get_or_create_category(category)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Could not record category {category!r}: {e}")

    # ========== Dashboard actions ==========

    def _owned_entry(self, user_id: str, log_id: str) -> ActivityEntry:
        entry = self.activity.get_entry(log_id)
        if entry is None or entry.user_id != user_id:
            raise LogNotFoundError(log_id)
        return entry

    def reforward(self, user_id: str, log_id: str) -> tuple[ActivityEntry, bool]:
        """Manually forward a blocked message.

        Returns:
            (entry, forwarded). ``forwarded`` is False when the entry was
            already forwarded, or another request is forwarding it, and
            nothing was sent.

        Raises:
            LogNotFoundError: Unknown entry or owned by another user.
            ForwardError: The relay failed; the entry stays blocked.
        """
        entry = self._owned_entry(user_id, log_id)
        if entry.status == LogStatus.FORWARDED:
            return entry, False

        user = self.store.get_user(user_id)
        if user is None:
            raise LogNotFoundError(log_id)

        if not self.activity.claim_delivery(entry.id):
            logger.info(f"Re-forward of {entry.message_id} is already in progress or done")
            return entry, False

        try:
            self.forwarder.forward(
                user.email,
                entry.sender,
                f"[Resend] {entry.subject}",
                entry.body_html,
                entry.body_plain,
            )
        except ForwardError:
            self.activity.release_delivery(entry.id)
            raise
        entry = self.activity.mark_forwarded(entry.id)
        self.activity.mark_delivered(entry.id)
        logger.info(f"Re-forwarded {entry.message_id} for {user_id}")
        return entry, True

    def whitelist(self, user_id: str, log_id: str, rule_type: RuleType = RuleType.EMAIL) -> tuple[Rule, ActivityEntry]:
        """Allow the entry's sender (or domain, or category) and release the entry.

        A failed re-forward is logged and leaves the entry blocked; the rule
        is kept either way.
        """
        entry = self._owned_entry(user_id, log_id)

        if rule_type == RuleType.DOMAIN:
            pattern = sender_domain(entry.sender)
        elif rule_type == RuleType.CATEGORY:
            pattern = entry.category
        else:
            pattern = entry.sender.strip()
        if not pattern:
            raise ValueError(f"Entry {log_id} has no {rule_type.value} to whitelist")

        rule = self.store.add_rule(user_id, pattern, rule_type, RuleAction.ALLOW)

        if entry.status == LogStatus.BLOCKED:
            try:
                entry, _ = self.reforward(user_id, log_id)
            except ForwardError as e:
                logger.error(f"Auto-forward after whitelist failed for {log_id}: {e}")
        return rule, entry
