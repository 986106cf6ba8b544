"""
Tool Hire Advisor — Text-Completion Gateway
=============================================
Thin wrapper over the Anthropic Messages API. Two operations:

  generate(prompt_or_turns)         -> full text
  generate_stream(prompt_or_turns)  -> async iterator of text fragments

The gateway holds no conversation state; callers pass the whole history on
every call. Each call tries the primary model and then the fallback model,
the same way the consultation flow always has. A stream only falls back if
the failing model has not produced any text yet, since fragments already
handed to the caller cannot be taken back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

import anthropic

from toolhire import config
from toolhire.conversation import normalize
from toolhire.models import Turn

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """The completion provider failed or returned nothing usable."""


@dataclass
class GenerationSettings:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None

    def as_params(self) -> dict:
        params = {"temperature": self.temperature, "top_p": self.top_p, "top_k": self.top_k}
        return {k: v for k, v in params.items() if v is not None}


def to_messages(prompt_or_turns: str | Iterable[Turn | dict]) -> list[dict]:
    """Map a bare prompt or a turn history onto provider messages."""
    if isinstance(prompt_or_turns, str):
        return [{"role": "user", "content": prompt_or_turns}]
    return [
        {"role": "assistant" if turn.role == "model" else "user", "content": turn.text}
        for turn in normalize(prompt_or_turns)
    ]


class CompletionGateway:
    def __init__(
        self,
        client: anthropic.AsyncAnthropic | None = None,
        models: list[str] | None = None,
        settings: GenerationSettings | None = None,
    ):
        self._client = client
        models = models or [config.ADVISOR_MODEL, config.FALLBACK_MODEL]
        self.models = list(dict.fromkeys(models))
        self.settings = settings or GenerationSettings(
            temperature=config.TEMPERATURE,
            top_p=config.TOP_P,
            top_k=config.TOP_K,
        )

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not config.ANTHROPIC_API_KEY:
                raise UpstreamError("ANTHROPIC_API_KEY not set. Add it to your .env file.")
            self._client = anthropic.AsyncAnthropic(api_key=config.ANTHROPIC_API_KEY)
        return self._client

    def _params(self, model: str, system: str | None, messages: list[dict], max_tokens: int) -> dict:
        params = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
            **self.settings.as_params(),
        }
        if system:
            params["system"] = system
        return params

    @staticmethod
    def _log_usage(response, mode: str) -> None:
        logger.info(
            f"[gateway] {mode} model={response.model} "
            f"stop_reason={response.stop_reason} "
            f"input_tokens={response.usage.input_tokens} "
            f"output_tokens={response.usage.output_tokens}"
        )

    async def generate(
        self,
        prompt_or_turns: str | Iterable[Turn | dict],
        system: str | None = None,
        max_tokens: int = 4000,
    ) -> str:
        client = self._get_client()
        messages = to_messages(prompt_or_turns)
        last_error = "Unable to generate a response."

        for model in self.models:
            try:
                response = await client.messages.create(**self._params(model, system, messages, max_tokens))
            except anthropic.APIError as e:
                logger.error(f"[gateway] API error with {model}: {e}")
                last_error = f"An error occurred generating the response: {e}"
                continue

            self._log_usage(response, "generate")

            if response.stop_reason == "refusal":
                logger.warning(f"[gateway] {model} refused.")
                last_error = "Unable to generate a response. Please try rephrasing."
                continue

            text = "".join(
                block.text for block in response.content if getattr(block, "type", None) == "text"
            )
            if not text:
                logger.warning(f"[gateway] {model} returned no text content.")
                last_error = "The model returned a response but no text content."
                continue
            return text

        raise UpstreamError(last_error)

    async def generate_stream(
        self,
        prompt_or_turns: str | Iterable[Turn | dict],
        system: str | None = None,
        max_tokens: int = 4000,
    ) -> AsyncIterator[str]:
        client = self._get_client()
        messages = to_messages(prompt_or_turns)
        last_error = "Unable to generate a response."

        for model in self.models:
            yielded = False
            try:
                async with client.messages.stream(**self._params(model, system, messages, max_tokens)) as stream:
                    async for text in stream.text_stream:
                        if text:
                            yielded = True
                            yield text
                    response = await stream.get_final_message()
            except anthropic.APIError as e:
                logger.error(f"[gateway] stream API error with {model}: {e}")
                if yielded:
                    raise UpstreamError(f"The response stream failed part-way: {e}") from e
                last_error = f"An error occurred generating the response: {e}"
                continue

            self._log_usage(response, "stream")

            if yielded:
                return
            if response.stop_reason == "refusal":
                logger.warning(f"[gateway] {model} refused.")
                last_error = "Unable to generate a response. Please try rephrasing."
            else:
                last_error = "The model returned a response but no text content."

        raise UpstreamError(last_error)


# ---------------------------------------------------------------------------
# Shared instance
# ---------------------------------------------------------------------------
_gateway: CompletionGateway | None = None


def get_gateway() -> CompletionGateway:
    global _gateway
    if _gateway is None:
        _gateway = CompletionGateway()
    return _gateway


def set_gateway(gateway) -> None:
    """Install a different gateway (tests, other providers). None resets to default."""
    global _gateway
    _gateway = gateway
