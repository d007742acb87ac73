from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from rd_engine.config import settings
from rd_engine.llm_client import LanguageModelAdapter, client as llm_client
from rd_engine.models.research import (
    AttackStrategy,
    Contradiction,
    Finding,
    OpenQuestion,
    Severity,
    SynthesisOutcome,
    SynthesisResult,
    Theme,
    VerificationReport,
    Verdict,
    Vulnerability,
)
from rd_engine.services.json_payload import (
    clean_text,
    extract_json_object,
    normalize_text_list,
    unit_float,
)
from rd_engine.services.prompt_store import render_prompt

T = TypeVar("T")

VERIFY_FINDINGS_PREVIEW = 10
STAGE = "L3_synthesis"


class LoopPhase(StrEnum):
    GENERATE = "generate"
    VERIFY = "verify"
    DONE = "done"


class StepRunner(Protocol):
    async def run(
        self,
        step: str,
        action: Callable[[], Awaitable[T]],
        result_type: Any,
        *,
        max_attempts: int | None = None,
    ) -> T: ...


class SynthesisLoop:
    """L3: generate a report, attack it, and repair it while critical issues remain.

    The loop is bounded by ``max_iterations`` generate/verify cycles. When a
    step runner is supplied every phase is checkpointed under
    ``L3_synthesis/<phase>/<iteration>``, so an interrupted run resumes at the
    iteration it reached instead of starting over.
    """

    name = "synthesis"

    def __init__(
        self,
        llm: LanguageModelAdapter | None = None,
        *,
        max_iterations: int | None = None,
    ):
        self.llm = llm
        self.max_iterations = max(
            max_iterations if max_iterations is not None else settings.max_synthesis_iterations,
            1,
        )

    def _llm(self) -> LanguageModelAdapter:
        return self.llm or llm_client()

    async def synthesize_and_verify(
        self,
        findings: list[Finding],
        goal: str,
        *,
        steps: StepRunner | None = None,
    ) -> SynthesisOutcome:
        phase = LoopPhase.GENERATE
        iteration = 1
        feedback: str | None = None
        feedback_applied: list[str] = []
        tokens_used = 0
        synthesis: SynthesisResult | None = None
        verification: VerificationReport | None = None

        while phase is not LoopPhase.DONE:
            if phase is LoopPhase.GENERATE:
                pending_feedback = feedback
                synthesis = await self._phase(
                    steps,
                    f"{STAGE}/generate/{iteration}",
                    lambda: self.generate(findings, goal, pending_feedback),
                    SynthesisResult,
                )
                tokens_used += synthesis.tokens_used
                phase = LoopPhase.VERIFY
                continue

            current = synthesis
            verification = await self._phase(
                steps,
                f"{STAGE}/verify/{iteration}",
                lambda: self.verify(current, findings, iteration=iteration),
                VerificationReport,
            )
            tokens_used += verification.tokens_used
            critical = verification.critical_vulnerabilities
            logger.info(
                f"Synthesis iteration {iteration}: verdict {verification.verdict.value}, "
                f"{len(critical)} critical vulnerabilities"
            )
            if not critical or iteration >= self.max_iterations:
                phase = LoopPhase.DONE
                continue

            feedback = build_feedback(critical)
            feedback_applied.extend(v.id for v in critical)
            iteration += 1
            phase = LoopPhase.GENERATE

        assert synthesis is not None and verification is not None
        final = synthesis.model_copy(
            update={
                "iterations_used": iteration,
                "feedback_applied": feedback_applied,
                "tokens_used": tokens_used,
            }
        )
        return SynthesisOutcome(synthesis=final, verification=verification)

    @staticmethod
    async def _phase(
        steps: StepRunner | None,
        step: str,
        action: Callable[[], Awaitable[T]],
        result_type: Any,
    ) -> T:
        if steps is None:
            return await action()
        return await steps.run(step, action, result_type)

    async def generate(
        self,
        findings: list[Finding],
        goal: str,
        feedback: str | None = None,
    ) -> SynthesisResult:
        prompt = render_prompt(
            "synthesis.user",
            instructions=render_prompt("synthesis.instructions"),
            goal=goal,
            findings=format_findings(findings),
        )
        if feedback:
            prompt += render_prompt("synthesis.feedback", feedback=feedback)

        completion = await self._llm().complete(
            prompt,
            max_tokens=settings.synthesis_max_tokens,
            thinking_budget=settings.synthesis_thinking_budget,
            caller=f"{self.name}.generate",
        )
        result = parse_synthesis(completion.text)
        result.tokens_used = completion.total_tokens
        return result

    async def verify(
        self,
        synthesis: SynthesisResult,
        findings: list[Finding],
        iteration: int = 1,
    ) -> VerificationReport:
        preview = "\n".join(
            f"[{f.id}] {f.claim}" for f in findings[:VERIFY_FINDINGS_PREVIEW]
        )
        prompt = render_prompt(
            "verification.user",
            instructions=render_prompt("verification.instructions"),
            synthesis=format_synthesis(synthesis),
            finding_count=len(findings),
            findings=preview,
        )
        completion = await self._llm().complete(
            prompt,
            max_tokens=settings.verification_max_tokens,
            thinking_budget=settings.verification_thinking_budget,
            caller=f"{self.name}.verify",
        )
        report = parse_verification(completion.text, synthesis.confidence, iteration=iteration)
        report.tokens_used = completion.total_tokens
        return report


def format_findings(findings: list[Finding]) -> str:
    return "\n\n".join(
        f"[{f.id}] {f.claim}\nEvidence: {f.evidence}\nSource: {f.source} (confidence: {f.confidence})"
        for f in findings
    )


def format_synthesis(synthesis: SynthesisResult) -> str:
    themes = "\n".join(f"- {t.name}: {t.description}" for t in synthesis.themes)
    contradictions = "\n".join(f"- {c.claim_a} vs {c.claim_b}" for c in synthesis.contradictions)
    return (
        f"Executive Summary: {synthesis.executive_summary}\n\n"
        f"Themes: {themes}\n\n"
        f"Contradictions: {contradictions}\n\n"
        f"Confidence: {synthesis.confidence}"
    )


def build_feedback(critical: list[Vulnerability]) -> str:
    return "\n\n".join(f"CRITICAL: {v.finding}\nFix: {v.suggested_fix}" for v in critical)


def parse_synthesis(text: str) -> SynthesisResult:
    try:
        payload = extract_json_object(text)
    except json.JSONDecodeError:
        logger.warning("Synthesis response was not valid JSON; keeping raw text as the report")
        raw = text.strip()
        return SynthesisResult(
            executive_summary=raw[:2000],
            detailed_analysis=raw,
            confidence=0.5,
        )

    return SynthesisResult(
        executive_summary=clean_text(payload.get("executive_summary")),
        detailed_analysis=clean_text(payload.get("detailed_analysis")),
        themes=_parse_themes(payload.get("themes")),
        contradictions=_parse_contradictions(payload.get("contradictions")),
        open_questions=_parse_open_questions(payload.get("open_questions")),
        confidence=unit_float(payload.get("confidence"), 0.7),
    )


def _dict_items(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _parse_themes(raw: Any) -> list[Theme]:
    themes: list[Theme] = []
    for item in _dict_items(raw):
        name = clean_text(item.get("name"))
        if not name:
            continue
        themes.append(
            Theme(
                name=name,
                description=clean_text(item.get("description")),
                supporting_findings=normalize_text_list(item.get("supporting_findings")),
                confidence=unit_float(item.get("confidence"), 0.7),
            )
        )
    return themes


def _parse_contradictions(raw: Any) -> list[Contradiction]:
    contradictions: list[Contradiction] = []
    for item in _dict_items(raw):
        claim_a = clean_text(item.get("claim_a"))
        claim_b = clean_text(item.get("claim_b"))
        if not claim_a or not claim_b:
            continue
        contradictions.append(
            Contradiction(
                claim_a=claim_a,
                claim_b=claim_b,
                source_a=clean_text(item.get("source_a")),
                source_b=clean_text(item.get("source_b")),
                resolution=clean_text(item.get("resolution")),
            )
        )
    return contradictions


def _parse_open_questions(raw: Any) -> list[OpenQuestion]:
    questions: list[OpenQuestion] = []
    for item in _dict_items(raw):
        question = clean_text(item.get("question"))
        if not question:
            continue
        research_needed = item.get("research_needed")
        questions.append(
            OpenQuestion(
                question=question,
                reason=clean_text(item.get("reason")),
                research_needed=research_needed if isinstance(research_needed, bool) else True,
            )
        )
    return questions


def parse_verification(
    text: str, synthesis_confidence: float, *, iteration: int = 1
) -> VerificationReport:
    try:
        payload = extract_json_object(text)
    except json.JSONDecodeError:
        logger.warning("Verification response was not valid JSON; returning a conditional pass")
        return VerificationReport(
            verdict=Verdict.CONDITIONAL_PASS,
            original_confidence=synthesis_confidence,
            adjusted_confidence=synthesis_confidence,
            confidence_reason="Verifier response could not be parsed.",
        )

    original = unit_float(payload.get("original_confidence"), synthesis_confidence)
    return VerificationReport(
        verdict=_parse_verdict(payload.get("verdict")),
        vulnerabilities=_parse_vulnerabilities(payload.get("vulnerabilities"), iteration),
        original_confidence=original,
        adjusted_confidence=unit_float(payload.get("adjusted_confidence"), original),
        confidence_reason=clean_text(payload.get("confidence_reason")),
        steel_man_assessment=clean_text(payload.get("steel_man_assessment")),
        alternative_conclusions=normalize_text_list(payload.get("alternative_conclusions")),
        recommendations=_parse_recommendations(payload.get("recommendations")),
    )


def _parse_verdict(raw: Any) -> Verdict:
    if raw is None:
        return Verdict.PASS
    value = str(raw).strip().upper().replace(" ", "_")
    try:
        return Verdict(value)
    except ValueError:
        return Verdict.CONDITIONAL_PASS


def _parse_vulnerabilities(raw: Any, iteration: int) -> list[Vulnerability]:
    # Unnamed issues get ids scoped to the verify pass.
    vulnerabilities: list[Vulnerability] = []
    for idx, item in enumerate(_dict_items(raw)):
        try:
            severity = Severity(str(item.get("severity", "")).strip().lower())
        except ValueError:
            severity = Severity.MEDIUM
        vulnerabilities.append(
            Vulnerability(
                id=clean_text(item.get("id")) or f"v{iteration}_{idx + 1}",
                severity=severity,
                strategy=clean_text(item.get("strategy")) or AttackStrategy.MISSING_EVIDENCE.value,
                finding=clean_text(item.get("finding")),
                evidence=clean_text(item.get("evidence")),
                impact=clean_text(item.get("impact")),
                suggested_fix=clean_text(item.get("suggested_fix")),
            )
        )
    return vulnerabilities


def _parse_recommendations(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    recommendations: dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, list):
            value = "; ".join(str(v) for v in value)
        if isinstance(key, str) and value is not None:
            recommendations[key] = str(value).strip()
    return recommendations
