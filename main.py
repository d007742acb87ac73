"""RD Engine - multi-stage research pipeline

Simple CLI for running research queries.
"""

import argparse
import asyncio
import sys

from rd_engine.exceptions import ResearchEngineError
from rd_engine.models.research import ResearchRunResult
from rd_engine.services.session_store import get_session_manager
from rd_engine.workflow.orchestrator import get_engine


def print_report(result: ResearchRunResult) -> None:
    output = result.output
    meta = output.metadata
    print(f"\n[*] Research Complete! ({result.request_id})")
    print(f"   Runtime: {result.duration_seconds:.1f}s")
    print(f"   Tokens: {result.tokens_used}")
    print(f"   Sources: {len(output.sources)}")
    print(f"   Iterations: {meta.iterations_used}")
    print(f"   Verdict: {output.verification.verdict.value} (confidence {meta.confidence:.2f})")
    print(f"   Stages: {', '.join(result.stages_completed)}")

    print(f"\n{'='*50}")
    print("REPORT:")
    print(f"{'='*50}")
    print(f"Goal: {output.goal}\n")
    print(output.executive_summary)
    if output.detailed_analysis:
        print(f"\n{output.detailed_analysis}")

    if output.themes:
        print("\nThemes:")
        for theme in output.themes:
            print(f"  - {theme.name}: {theme.description}")
    if output.contradictions:
        print("\nContradictions:")
        for item in output.contradictions:
            print(f"  - {item.claim_a} vs {item.claim_b}")
    if output.open_questions:
        print("\nOpen questions:")
        for item in output.open_questions:
            print(f"  - {item.question}")
    if output.verification.vulnerabilities:
        print("\nVerifier findings:")
        for vuln in output.verification.vulnerabilities:
            print(f"  [{vuln.severity.value}] {vuln.finding}")


async def run_research(query: str, session_id: str | None, request_id: str | None) -> int:
    print(f"Research query: {query}")
    print("-" * 50)
    try:
        result = await get_engine().run_research(
            query, session_id=session_id, request_id=request_id
        )
    except ResearchEngineError as exc:
        stage = getattr(exc, "stage", None)
        print(f"\n[!] Error{f' in {stage}' if stage else ''}: {exc}")
        return 1
    finally:
        await get_session_manager().close()

    print_report(result)
    return 0


def main():
    parser = argparse.ArgumentParser(description="RD Engine research pipeline")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument("--session-id", "-s", help="Record the run against this session")
    parser.add_argument(
        "--request-id", "-r", help="Resume (or name) a run; defaults to a new id"
    )

    args = parser.parse_args()

    sys.exit(asyncio.run(run_research(args.query, args.session_id, args.request_id)))


if __name__ == "__main__":
    main()
