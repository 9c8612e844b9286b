"""Tests for the LLM classifier."""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from supamail.config import ClassifierConfig, LLMConfig
from supamail.models import Classification
from supamail.processors.llm import Classifier, create_llm_client, parse_json_object


def _classifier(response: str | Exception | None = None) -> tuple[Classifier, MagicMock | None]:
    if response is None:
        return Classifier(LLMConfig(), ClassifierConfig()), None
    client = MagicMock()
    if isinstance(response, Exception):
        client.chat.side_effect = response
    else:
        client.chat.return_value = response
    return Classifier(LLMConfig(), ClassifierConfig(), client), client


class TestClassify:
    @pytest.mark.asyncio
    async def test_parses_summary_and_category(self) -> None:
        classifier, client = _classifier('{"summary": "Team lunch plan", "category": "Personal"}')

        result = await classifier.classify("Lunch?", "Shall we meet at noon?")

        assert result == Classification(summary="Team lunch plan", category="Personal")
        messages = client.chat.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert '"Promotions"' in messages[0]["content"]
        assert "Subject: Lunch?" in messages[1]["content"]

    @pytest.mark.asyncio
    async def test_code_fenced_json(self) -> None:
        classifier, _ = _classifier('```json\n{"summary": "Sale", "category": "Promotions"}\n```')
        result = await classifier.classify("50% off", "")
        assert result.category == "Promotions"

    @pytest.mark.asyncio
    async def test_missing_fields_use_defaults(self) -> None:
        classifier, _ = _classifier("{}")
        result = await classifier.classify("Hi", "")
        assert result.summary == "Summary"
        assert result.category == "Updates"
        assert not result.fallback

    @pytest.mark.asyncio
    async def test_client_error_falls_back(self) -> None:
        classifier, _ = _classifier(TimeoutError("timed out"))
        result = await classifier.classify("Hi", "body")
        assert result.summary == "Summary unavailable"
        assert result.category == "Updates"
        assert result.fallback

    @pytest.mark.asyncio
    async def test_garbage_response_falls_back(self) -> None:
        classifier, _ = _classifier("I cannot help with that.")
        result = await classifier.classify("Hi", "body")
        assert result.fallback

    @pytest.mark.asyncio
    async def test_no_client_falls_back(self) -> None:
        classifier, _ = _classifier(None)
        result = await classifier.classify("Hi", "body")
        assert result.fallback
        assert result.category == "Updates"

    @pytest.mark.asyncio
    async def test_disabled_classifier_skips_client(self) -> None:
        client = MagicMock()
        classifier = Classifier(LLMConfig(), ClassifierConfig(enabled=False), client)
        result = await classifier.classify("Hi", "body")
        assert result.fallback
        client.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_custom_fallback_values(self) -> None:
        config = ClassifierConfig(default_summary="n/a", default_category="Inbox")
        classifier = Classifier(LLMConfig(), config, None)
        result = await classifier.classify("Hi", "")
        assert (result.summary, result.category) == ("n/a", "Inbox")


class TestSubjectLine:
    def test_summary_prefix(self) -> None:
        assert Classification(summary="Invoice due", category="Updates").subject_line("Bill") == "[Invoice due] Bill"

    def test_fallback_prefix(self) -> None:
        result = Classification(summary="Summary unavailable", category="Updates", fallback=True)
        assert result.subject_line("Bill") == "[AI] Bill"


class TestHelpers:
    def test_parse_json_object_rejects_arrays(self) -> None:
        with pytest.raises(ValueError):
            parse_json_object("[1, 2]")

    def test_parse_json_object_embedded(self) -> None:
        assert parse_json_object('Sure! {"summary": "x"} done') == {"summary": "x"}

    def test_openai_requires_key(self) -> None:
        with pytest.raises(ValueError):
            create_llm_client(LLMConfig(provider="openai"), None)

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError):
            create_llm_client(LLMConfig(provider="nope"), "key")


class TestEventLoop:
    @pytest.mark.asyncio
    async def test_slow_client_does_not_block_loop(self) -> None:
        client = MagicMock()

        def slow_chat(*args, **kwargs):
            time.sleep(0.3)
            return '{"summary": "Slow", "category": "Updates"}'

        client.chat.side_effect = slow_chat
        classifier = Classifier(LLMConfig(), ClassifierConfig(), client)
        start = time.monotonic()

        async def tick() -> float:
            await asyncio.sleep(0.01)
            return time.monotonic() - start

        result, elapsed = await asyncio.gather(classifier.classify("Hi", "body"), tick())

        assert result.summary == "Slow"
        assert elapsed < 0.2
