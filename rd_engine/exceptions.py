"""Error taxonomy for the research pipeline.

Terminal errors are surfaced to the caller immediately and never retried.
Retryable errors are eligible for the workflow's step-level retry policy;
when the policy is exhausted the step raises ``StageFailedError`` naming the
stage that failed so the run can be diagnosed or resumed.
"""
from __future__ import annotations


class ResearchEngineError(Exception):
    """Base class for every error raised by the engine."""


class TerminalError(ResearchEngineError):
    """Invalid input or request; retrying cannot help."""


class InvalidQueryError(TerminalError):
    pass


class RequestConflictError(TerminalError):
    """A request id was reused for a different query."""


class RetryableError(ResearchEngineError):
    """Transient failure; the step may be attempted again."""


class AdapterError(RetryableError):
    def __init__(self, provider: str, message: str, *, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class AdapterTransportError(AdapterError):
    """Network failure or timeout talking to a provider."""


class AdapterStatusError(AdapterError):
    """Provider answered with a non-2xx status."""


class PlanningError(RetryableError):
    """The planner response could not be parsed into a research plan."""


class StageFailedError(ResearchEngineError):
    retryable = True

    def __init__(self, stage: str, attempts: int, cause: BaseException):
        super().__init__(f"Stage {stage} failed after {attempts} attempt(s): {cause}")
        self.stage = stage
        self.attempts = attempts
        self.cause = cause


class ResearchTimeoutError(ResearchEngineError):
    def __init__(self, request_id: str, deadline_seconds: float, stage: str | None = None):
        where = f" during {stage}" if stage else ""
        super().__init__(
            f"Research {request_id} exceeded the {deadline_seconds:.0f}s deadline{where}"
        )
        self.request_id = request_id
        self.deadline_seconds = deadline_seconds
        self.stage = stage
