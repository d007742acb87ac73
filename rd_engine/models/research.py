from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class Persona(StrEnum):
    """Fixed discovery angles; every run covers each one exactly once."""

    TECH = "tech"
    NEWS = "news"
    CONTRARIAN = "contrarian"
    ACADEMIC = "academic"
    PRACTICAL = "practical"


REQUIRED_PERSONAS: tuple[Persona, ...] = tuple(Persona)


class Verdict(StrEnum):
    PASS = "PASS"
    CONDITIONAL_PASS = "CONDITIONAL_PASS"
    FAIL = "FAIL"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AttackStrategy(StrEnum):
    STEEL_MAN = "steel_man"
    SOURCE_RELIABILITY = "source_reliability"
    TEMPORAL_VALIDITY = "temporal_validity"
    SCOPE_LIMITATION = "scope_limitation"
    BIAS_DETECTION = "bias_detection"
    CONTRADICTION = "contradiction"
    MISSING_EVIDENCE = "missing_evidence"


class ResearchStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    DISCOVERING = "discovering"
    AGGREGATING = "aggregating"
    SYNTHESIZING = "synthesizing"
    FORMATTING = "formatting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# --- L0 ---


class AgentConfig(BaseModel):
    id: str
    persona: Persona
    query: str
    priority: int = 1  # 1 = highest


class ResearchPlan(BaseModel):
    clarified_query: str
    goal_objective: str
    goal_hash: str
    clarity_score: int = 7
    agents: list[AgentConfig]
    search_queries: dict[str, list[str]] = Field(default_factory=dict)
    tokens_used: int = 0


# --- L1 ---


class Finding(BaseModel):
    id: str
    claim: str
    evidence: str = ""
    source: str = "Unknown"
    source_url: Optional[str] = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    relevance: float = Field(default=0.7, ge=0.0, le=1.0)
    # Transient; attached during aggregation and never serialized.
    embedding: Optional[list[float]] = Field(default=None, exclude=True)


class FieldReport(BaseModel):
    agent_id: str
    agent_name: str
    persona: Persona
    findings: list[Finding] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    tokens_used: int = 0
    duration_ms: int = 0


# --- L2 ---


class AggregationResult(BaseModel):
    original_count: int
    deduplicated_count: int
    findings: list[Finding] = Field(default_factory=list)
    duplicates_removed: int = 0
    processing_time_ms: int = 0
    embedding_backend: str = "none"


# --- L3 ---


class Theme(BaseModel):
    name: str
    description: str = ""
    supporting_findings: list[str] = Field(default_factory=list)
    confidence: float = 0.7


class Contradiction(BaseModel):
    claim_a: str
    claim_b: str
    source_a: str = ""
    source_b: str = ""
    resolution: str = ""


class OpenQuestion(BaseModel):
    question: str
    reason: str = ""
    research_needed: bool = True


class SynthesisResult(BaseModel):
    executive_summary: str = ""
    detailed_analysis: str = ""
    themes: list[Theme] = Field(default_factory=list)
    contradictions: list[Contradiction] = Field(default_factory=list)
    open_questions: list[OpenQuestion] = Field(default_factory=list)
    confidence: float = 0.7
    tokens_used: int = 0
    iterations_used: int = 0
    feedback_applied: list[str] = Field(default_factory=list)


class Vulnerability(BaseModel):
    id: str
    severity: Severity
    strategy: str = AttackStrategy.MISSING_EVIDENCE.value
    finding: str = ""
    evidence: str = ""
    impact: str = ""
    suggested_fix: str = ""


class VerificationReport(BaseModel):
    verdict: Verdict = Verdict.PASS
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)
    original_confidence: float = 0.7
    adjusted_confidence: float = 0.7
    confidence_reason: str = ""
    steel_man_assessment: str = ""
    alternative_conclusions: list[str] = Field(default_factory=list)
    recommendations: dict[str, str] = Field(default_factory=dict)
    tokens_used: int = 0

    @property
    def critical_vulnerabilities(self) -> list[Vulnerability]:
        return [v for v in self.vulnerabilities if v.severity == Severity.CRITICAL]


class SynthesisOutcome(BaseModel):
    synthesis: SynthesisResult
    verification: VerificationReport


# --- Output / state ---


class OutputMetadata(BaseModel):
    duration_seconds: float
    tokens_used: int
    layer_timings: dict[str, int] = Field(default_factory=dict)
    agent_contributions: dict[str, int] = Field(default_factory=dict)
    confidence: float
    iterations_used: int


class FinalOutput(BaseModel):
    request_id: str
    query: str
    goal: str
    executive_summary: str
    detailed_analysis: str = ""
    themes: list[Theme] = Field(default_factory=list)
    contradictions: list[Contradiction] = Field(default_factory=list)
    open_questions: list[OpenQuestion] = Field(default_factory=list)
    verification: VerificationReport
    sources: list[Finding] = Field(default_factory=list)
    metadata: OutputMetadata


class ResearchRunResult(BaseModel):
    request_id: str
    output: FinalOutput
    stages_completed: list[str]
    duration_seconds: float
    tokens_used: int


class ResearchState(BaseModel):
    """In-flight record of one run; owned by a single orchestrator invocation."""

    request_id: str
    query: str
    session_id: Optional[str] = None
    status: ResearchStatus = ResearchStatus.PENDING
    plan: Optional[ResearchPlan] = None
    field_reports: list[FieldReport] = Field(default_factory=list)
    aggregation: Optional[AggregationResult] = None
    synthesis: Optional[SynthesisResult] = None
    verification: Optional[VerificationReport] = None
    output: Optional[FinalOutput] = None
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    layer_timings: dict[str, int] = Field(default_factory=dict)
    tokens_used: int = 0
    stages_completed: list[str] = Field(default_factory=list)


class RunStatus(BaseModel):
    """Persisted progress of one run, read back from its checkpoint journal."""

    request_id: str
    query: str = ""
    session_id: Optional[str] = None
    status: ResearchStatus = ResearchStatus.PENDING
    stages_completed: list[str] = Field(default_factory=list)
    layer_timings: dict[str, int] = Field(default_factory=dict)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    updated_at: Optional[str] = None
