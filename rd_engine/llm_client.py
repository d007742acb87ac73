"""Anthropic client factory and the language-model adapter used by L0 and L3."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from rd_engine.config import settings
from rd_engine.exceptions import AdapterStatusError, AdapterTransportError
from rd_engine.services import logger as log_service


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _first_text_block(response: Any) -> str:
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "text":
            text = getattr(block, "text", None)
            if isinstance(text, str):
                return text
    return ""


class LanguageModelAdapter:
    """Single prompt/response round trip with an extended-thinking budget.

    SDK-level retries are disabled: retry policy belongs to the workflow step
    that issued the call, so failures surface as ``AdapterTransportError`` or
    ``AdapterStatusError``.
    """

    provider = "anthropic"

    def __init__(self, anthropic_client: Any, model: str):
        self._client = anthropic_client
        self.model = model

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        thinking_budget: int = 0,
        caller: str = "llm",
    ) -> Completion:
        import anthropic

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if thinking_budget > 0:
            # The API requires the thinking budget to stay below max_tokens.
            kwargs["thinking"] = {
                "type": "enabled",
                "budget_tokens": min(thinking_budget, max(max_tokens - 1, 1)),
            }

        t0 = time.monotonic()
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=f"HTTP {exc.status_code}",
            )
            raise AdapterStatusError(
                self.provider, str(exc), status_code=exc.status_code
            ) from exc
        except anthropic.APIConnectionError as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc) or exc.__class__.__name__,
            )
            raise AdapterTransportError(self.provider, str(exc)) from exc

        usage = getattr(response, "usage", None)
        completion = Completion(
            text=_first_text_block(response),
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            model=self.model,
        )
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return completion


def get_client() -> LanguageModelAdapter:
    """Build the Anthropic-backed adapter from settings."""
    import anthropic

    anthropic_client = anthropic.AsyncAnthropic(
        api_key=settings.anthropic_api_key,
        timeout=settings.llm_timeout_seconds,
        max_retries=0,
    )
    return LanguageModelAdapter(anthropic_client, get_model())


def get_model() -> str:
    return settings.anthropic_model


_client: LanguageModelAdapter | None = None


def client() -> LanguageModelAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
