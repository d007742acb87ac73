from __future__ import annotations

from typing import Any

import httpx

from rd_engine.config import settings
from rd_engine.exceptions import AdapterStatusError, AdapterTransportError


class VoyageEmbeddingClient:
    """Batch text embeddings from the Voyage API."""

    provider = "voyage"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.voyageai.com/v1",
        model: str = "voyage-3-lite",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json={"model": self.model, "input": texts, "input_type": "document"},
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {self.api_key}",
                    },
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise AdapterStatusError(
                self.provider, str(exc), status_code=exc.response.status_code
            ) from exc
        except httpx.TransportError as exc:
            raise AdapterTransportError(self.provider, str(exc) or exc.__class__.__name__) from exc

        return _vectors_from_payload(payload)


def _vectors_from_payload(payload: Any) -> list[list[float]]:
    rows = payload.get("data", []) if isinstance(payload, dict) else []
    # Voyage echoes an index per row; keep input order even if rows arrive shuffled.
    ordered = sorted(
        (row for row in rows if isinstance(row, dict)),
        key=lambda row: int(row.get("index", 0) or 0),
    )
    return [[float(x) for x in row.get("embedding", [])] for row in ordered]


def get_embedding_provider() -> VoyageEmbeddingClient | None:
    """Return the configured provider, or None when no key is set."""
    api_key = settings.voyage_api_key.strip()
    if not api_key:
        return None
    return VoyageEmbeddingClient(
        api_key,
        base_url=settings.voyage_base_url,
        model=settings.voyage_model,
        timeout=settings.embedding_timeout_seconds,
    )
