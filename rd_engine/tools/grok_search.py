"""Knowledge/search adapter backed by xAI's OpenAI-compatible chat API."""
from __future__ import annotations

import time
from typing import Any

from rd_engine.config import settings
from rd_engine.exceptions import AdapterStatusError, AdapterTransportError
from rd_engine.llm_client import Completion
from rd_engine.services import logger as log_service


class GrokSearchClient:
    provider = "xai"

    def __init__(self, openai_client: Any, model: str, *, temperature: float = 0.7):
        self._client = openai_client
        self.model = model
        self.temperature = temperature

    async def query(
        self,
        text: str,
        *,
        system_prompt: str,
        max_tokens: int,
        caller: str = "discovery",
    ) -> Completion:
        import openai

        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
                max_tokens=max_tokens,
                temperature=self.temperature,
            )
        except openai.APIStatusError as exc:
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
        except openai.APIConnectionError as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc) or exc.__class__.__name__,
            )
            raise AdapterTransportError(self.provider, str(exc)) from exc

        choices = getattr(response, "choices", None) or []
        content = ""
        if choices:
            message = getattr(choices[0], "message", None)
            content = getattr(message, "content", None) or ""
        usage = getattr(response, "usage", None)
        completion = Completion(
            text=content or "[]",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
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


def get_client() -> GrokSearchClient:
    from openai import AsyncOpenAI

    base_url = settings.xai_base_url.strip() or "https://api.x.ai/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.xai_api_key,
        base_url=base_url,
        timeout=settings.discovery_agent_timeout_seconds,
        max_retries=0,
    )
    return GrokSearchClient(
        openai_client,
        settings.xai_model,
        temperature=settings.discovery_temperature,
    )


_client: GrokSearchClient | None = None


def client() -> GrokSearchClient:
    global _client
    if _client is None:
        _client = get_client()
    return _client
