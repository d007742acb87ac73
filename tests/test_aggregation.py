from __future__ import annotations

import itertools

import pytest

from rd_engine.models.research import Finding
from rd_engine.services.aggregation import aggregate_findings, embedding_text
from rd_engine.services.embeddings import (
    EmbeddingService,
    cosine_similarity,
    hashed_trigram_embedding,
)
from tests.fakes import FailingEmbedder


class OneHotProvider:
    """Gives finding ``n`` (claim ``c<n>``) the n-th unit vector."""

    provider = "one-hot"

    def __init__(self, dim: int):
        self.dim = dim
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            n = int(text.split()[0][1:])
            vectors.append([1.0 if i == n else 0.0 for i in range(self.dim)])
        return vectors


def _finding(idx: int, claim: str, *, source: str = "src", confidence: float = 0.7) -> Finding:
    return Finding(
        id=f"f{idx}", claim=claim, evidence="", source=source, confidence=confidence
    )


VARIED_CLAIMS = [
    "Superconducting qubit counts doubled across vendor roadmaps",
    "Trapped ion systems report record two-qubit gate fidelity",
    "Error correction experiments crossed the surface code threshold",
    "Photonic startups raised large funding rounds for modular machines",
    "Post-quantum cryptography standards were finalized",
    "Superconducting qubit counts doubled across vendor roadmaps!",
    "Neutral atom arrays reached thousands of trapped atoms",
]


@pytest.mark.asyncio
async def test_empty_input_returns_immediately_without_embedding():
    provider = OneHotProvider(dim=4)
    result = await aggregate_findings([], embedder=EmbeddingService(provider))

    assert result.original_count == 0
    assert result.deduplicated_count == 0
    assert result.duplicates_removed == 0
    assert result.findings == []
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_identical_claims_keep_the_earlier_finding():
    findings = [
        _finding(1, "Google announced a new quantum chip", source="Reuters"),
        _finding(2, "Google announced a new quantum chip", source="Bloomberg"),
    ]

    result = await aggregate_findings(findings, embedder=EmbeddingService(), threshold=0.85)

    assert result.deduplicated_count == 1
    assert result.duplicates_removed == 1
    assert result.findings[0].id == "f1"
    assert result.findings[0].source == "Reuters"
    assert result.embedding_backend == "hashed"


@pytest.mark.asyncio
async def test_truncation_sorts_by_confidence_and_keeps_input_order_on_ties():
    findings = [
        _finding(i, f"c{i}", confidence=0.9 if i % 2 else 0.5) for i in range(40)
    ]

    result = await aggregate_findings(
        findings, embedder=EmbeddingService(OneHotProvider(dim=40)), max_findings=30
    )

    assert result.original_count == 40
    assert result.deduplicated_count == 30
    assert result.duplicates_removed == 0
    ids = [f.id for f in result.findings]
    assert ids[:20] == [f"f{i}" for i in range(1, 40, 2)]
    assert ids[20:] == [f"f{i}" for i in range(0, 20, 2)]
    assert result.embedding_backend == "one-hot"


@pytest.mark.asyncio
async def test_kept_findings_are_pairwise_dissimilar_and_rerun_removes_nothing():
    findings = [_finding(i, claim) for i, claim in enumerate(VARIED_CLAIMS)]
    embedder = EmbeddingService()

    first = await aggregate_findings(findings, embedder=embedder, threshold=0.85)
    assert first.deduplicated_count <= min(first.original_count, 30)
    assert first.duplicates_removed >= 1

    vectors = [hashed_trigram_embedding(embedding_text(f, 1000)) for f in first.findings]
    for a, b in itertools.combinations(vectors, 2):
        assert cosine_similarity(a, b) < 0.85

    second = await aggregate_findings(first.findings, embedder=embedder, threshold=0.85)
    assert second.duplicates_removed == 0
    assert [f.id for f in second.findings] == [f.id for f in first.findings]


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_hashed_embeddings():
    findings = [
        _finding(1, "Same claim about qubits"),
        _finding(2, "Same claim about qubits"),
        _finding(3, "A completely different observation on funding"),
    ]

    result = await aggregate_findings(findings, embedder=EmbeddingService(FailingEmbedder()))

    assert result.embedding_backend == "hashed"
    assert [f.id for f in result.findings] == ["f1", "f3"]


@pytest.mark.asyncio
async def test_embeddings_never_leak_into_returned_findings():
    findings = [_finding(i, claim) for i, claim in enumerate(VARIED_CLAIMS[:3])]

    result = await aggregate_findings(findings, embedder=EmbeddingService())

    assert all(f.embedding is None for f in result.findings)
    assert "embedding" not in result.model_dump()["findings"][0]


def test_hashed_embedding_is_deterministic_and_unit_length():
    first = hashed_trigram_embedding("Quantum advantage, 2025!")
    second = hashed_trigram_embedding("quantum advantage 2025")

    assert len(first) == 1000
    assert first == second
    assert sum(v * v for v in first) == pytest.approx(1.0)
    assert hashed_trigram_embedding("") == [0.0] * 1000
