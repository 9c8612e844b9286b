"""Shared fixtures for pipeline and API tests."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from supamail.activity import ActivityLog
from supamail.config import ClassifierConfig, LLMConfig, Settings
from supamail.errors import ForwardError
from supamail.integrations.mailgun import compute_signature
from supamail.processors.llm import Classifier
from supamail.service.pipeline import InboundPipeline
from supamail.store import RuleStore

DOMAIN = "supamail.test"
SIGNING_KEY = "test-signing-key"


class FakeForwarder:
    """Records forwarded messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    def forward(self, to: str, from_sender: str, subject: str, html: str, text: str) -> str:
        if self.fail:
            raise ForwardError("relay down")
        self.sent.append({"to": to, "from": from_sender, "subject": subject, "html": html, "text": text})
        return f"<fake-{len(self.sent)}@{DOMAIN}>"


def webhook_form(message_id: str = "<m1@sender.test>", sender: str = "bad@spam.com", **overrides) -> dict[str, str]:
    """A signed inbound webhook payload."""
    form = {
        "timestamp": "1700000000",
        "token": f"token-{message_id}",
        "Message-Id": message_id,
        "recipient": f"alice@{DOMAIN}",
        "from": sender,
        "subject": "Hello",
        "body-plain": "Plain body",
        "body-html": "<p>Html body</p>",
    }
    form.update(overrides)
    form["signature"] = compute_signature(SIGNING_KEY, form["timestamp"], form["token"])
    return form


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    """Create test settings."""
    return Settings(
        config_dir=temp_dir / "config",
        data_dir=temp_dir / "data",
        db_path=temp_dir / "test.db",
        mailgun={"domain": DOMAIN, "signing_key": SIGNING_KEY},
    )


@pytest.fixture
def llm_client() -> MagicMock:
    client = MagicMock()
    client.chat.return_value = '{"summary": "Discount offer", "category": "Promotions"}'
    return client


@pytest.fixture
def forwarder() -> FakeForwarder:
    return FakeForwarder()


@pytest.fixture
def pipeline(settings: Settings, llm_client: MagicMock, forwarder: FakeForwarder) -> InboundPipeline:
    return InboundPipeline(
        store=RuleStore(settings.db_path),
        activity=ActivityLog(settings.db_path),
        classifier=Classifier(LLMConfig(), ClassifierConfig(), llm_client),
        forwarder=forwarder,
        domain=DOMAIN,
        signing_key=SIGNING_KEY,
    )


@pytest.fixture
def user(pipeline: InboundPipeline):
    return pipeline.store.create_user("alice.real@example.com", "alice")
