from __future__ import annotations

import hashlib
import math
import re
from typing import Protocol

from loguru import logger

HASHED_VOCAB_SIZE = 1000
HASHED_NGRAM = 3

_NON_ALNUM = re.compile(r"[^a-z0-9 ]")


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingService:
    """Embeds texts with the configured provider, falling back to hashed trigrams.

    The fallback is deterministic and local, so a missing credential or a
    provider outage degrades deduplication quality instead of failing the run.
    """

    def __init__(self, provider: EmbeddingProvider | None = None):
        self.provider = provider
        self.last_backend = "hashed"

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self.provider is None:
            self.last_backend = "hashed"
            return [hashed_trigram_embedding(text) for text in texts]

        try:
            vectors = await self.provider.embed(texts)
        except Exception as exc:
            logger.warning(f"Embedding provider failed, using hashed embeddings: {exc}")
            self.last_backend = "hashed"
            return [hashed_trigram_embedding(text) for text in texts]

        if len(vectors) != len(texts) or any(not vector for vector in vectors):
            logger.warning(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts, "
                "using hashed embeddings"
            )
            self.last_backend = "hashed"
            return [hashed_trigram_embedding(text) for text in texts]

        self.last_backend = getattr(self.provider, "provider", "provider")
        return vectors


def _bucket(gram: str, vocab_size: int) -> int:
    digest = hashlib.sha256(gram.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % vocab_size


def hashed_trigram_embedding(
    text: str,
    dim: int = HASHED_VOCAB_SIZE,
    ngram: int = HASHED_NGRAM,
) -> list[float]:
    normalized = _NON_ALNUM.sub("", text.lower())
    values = [0.0] * dim
    for i in range(len(normalized) - ngram + 1):
        values[_bucket(normalized[i : i + ngram], dim)] += 1.0
    norm = math.sqrt(sum(v * v for v in values))
    if norm <= 0:
        return values
    return [v / norm for v in values]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
