"""LLM-based message classification."""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

from supamail.config import ClassifierConfig, LLMConfig
from supamail.models import Classification
from supamail.utils.text import prepare_body

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an email assistant. Analyze the email and return a JSON object with two "
    'fields: "summary" (a 3-5 word summary for a subject line prefix) and "category" '
    "(choose one: {categories})."
)


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        """Send a chat completion request and return the response text."""
        ...


class OpenAIClient(LLMClient):
    """OpenAI chat completions client, asking for a JSON object response."""

    def __init__(self, api_key: str, model: str, timeout: float = 15.0) -> None:
        from openai import OpenAI

        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model

    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,  # type: ignore
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


class AnthropicClient(LLMClient):
    """Anthropic API client."""

    def __init__(self, api_key: str, model: str, timeout: float = 15.0) -> None:
        import anthropic

        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model

    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        # Anthropic takes the system prompt separately
        system = "\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=turns,  # type: ignore
        )
        return response.content[0].text


class OllamaClient(LLMClient):
    """Ollama client using native ollama library."""

    def __init__(self, base_url: str, model: str, timeout: float = 15.0) -> None:
        import ollama

        self.client = ollama.Client(host=base_url, timeout=timeout)
        self.model = model

    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        response = self.client.chat(
            model=self.model,
            messages=messages,  # type: ignore
            format="json",
            options={"num_predict": max_tokens, "temperature": temperature},
        )
        return response["message"]["content"] or ""


def create_llm_client(config: LLMConfig, api_key: str | None = None) -> LLMClient:
    """Factory function to create the appropriate LLM client."""
    if config.provider == "openai":
        if not api_key:
            raise ValueError("OpenAI API key required")
        return OpenAIClient(api_key=api_key, model=config.model, timeout=config.timeout)
    elif config.provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic API key required")
        return AnthropicClient(api_key=api_key, model=config.model, timeout=config.timeout)
    elif config.provider == "ollama":
        return OllamaClient(base_url=config.ollama_base_url, model=config.model, timeout=config.timeout)
    else:
        raise ValueError(f"Unknown LLM provider: {config.provider}")


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM response, tolerating code fences."""
    candidates = [text]
    code_block = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if code_block:
        candidates.append(code_block.group(1))
    braces = re.search(r"\{[\s\S]*\}", text)
    if braces:
        candidates.append(braces.group(0))

    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            return result

    raise ValueError(f"Could not parse JSON object from response: {text[:200]}")


class Classifier:
    """Summarize and categorize inbound messages.

    ``classify`` never raises. Any failure (no client, timeout, quota,
    malformed response) yields the configured default summary and category,
    so the disposition step always has a category to match against.
    """

    def __init__(
        self,
        llm_config: LLMConfig,
        config: ClassifierConfig | None = None,
        client: LLMClient | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            llm_config: LLM settings (token budget, temperature).
            config: Fallback values and category vocabulary.
            client: LLM client to use. Without one every message gets the
                    fallback classification.
        """
        self.llm_config = llm_config
        self.config = config or ClassifierConfig()
        self.client = client

    @property
    def fallback(self) -> Classification:
        return Classification(
            summary=self.config.default_summary,
            category=self.config.default_category,
            fallback=True,
        )

    def _build_messages(self, subject: str, body: str) -> list[dict[str, str]]:
        categories = ", ".join(f'"{c}"' for c in self.config.categories)
        return [
            {"role": "system", "content": SYSTEM_PROMPT.format(categories=categories)},
            {"role": "user", "content": f"Subject: {subject}\n\nBody: {prepare_body(body)}"},
        ]

    async def classify(self, subject: str, body: str) -> Classification:
        """Return a summary and category for a message."""
        if self.client is None or not self.config.enabled:
            return self.fallback

        try:
            # Provider SDK calls are blocking
            response = await asyncio.to_thread(
                self.client.chat,
                self._build_messages(subject, body),
                max_tokens=self.llm_config.max_tokens,
                temperature=self.llm_config.temperature,
            )
            result = parse_json_object(response)
        except Exception as e:
            logger.warning(f"Classification failed, using defaults: {e}")
            return self.fallback

        summary = str(result.get("summary") or "").strip()
        category = str(result.get("category") or "").strip()
        return Classification(
            summary=summary or "Summary",
            category=category or self.config.default_category,
        )
