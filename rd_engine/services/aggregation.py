from __future__ import annotations

import time

from loguru import logger

from rd_engine.models.research import AggregationResult, Finding
from rd_engine.services.embeddings import EmbeddingService, cosine_similarity


def embedding_text(finding: Finding, max_chars: int) -> str:
    return f"{finding.claim} {finding.evidence}"[:max_chars]


def greedy_deduplicate(
    findings: list[Finding],
    vectors: list[list[float]],
    threshold: float,
) -> tuple[list[int], list[int]]:
    """Single-pass greedy clustering; the first-seen finding represents its cluster.

    Returns (kept indices, removed indices), both in input order.
    """
    kept: list[int] = []
    removed: list[int] = []
    for idx in range(len(findings)):
        if any(cosine_similarity(vectors[idx], vectors[k]) >= threshold for k in kept):
            removed.append(idx)
        else:
            kept.append(idx)
    return kept, removed


async def aggregate_findings(
    findings: list[Finding],
    *,
    embedder: EmbeddingService,
    threshold: float = 0.85,
    max_findings: int = 30,
    text_max_chars: int = 1000,
) -> AggregationResult:
    """Embed, deduplicate and cap the findings gathered by discovery."""
    started = time.monotonic()
    if not findings:
        return AggregationResult(original_count=0, deduplicated_count=0)

    vectors = await embedder.embed_texts(
        [embedding_text(finding, text_max_chars) for finding in findings]
    )
    embedded = [
        finding.model_copy(update={"embedding": vector})
        for finding, vector in zip(findings, vectors)
    ]

    kept_idx, removed_idx = greedy_deduplicate(embedded, vectors, threshold)
    unique = [embedded[i] for i in kept_idx]

    if len(unique) > max_findings:
        # sorted() is stable, so equal confidences keep input order.
        unique = sorted(unique, key=lambda f: f.confidence, reverse=True)[: max(max_findings, 0)]

    kept = [finding.model_copy(update={"embedding": None}) for finding in unique]
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Aggregation: {len(findings)} findings -> {len(kept)} kept, "
        f"{len(removed_idx)} duplicates removed ({embedder.last_backend} embeddings, {elapsed_ms}ms)"
    )
    return AggregationResult(
        original_count=len(findings),
        deduplicated_count=len(kept),
        findings=kept,
        duplicates_removed=len(removed_idx),
        processing_time_ms=elapsed_ms,
        embedding_backend=embedder.last_backend,
    )
