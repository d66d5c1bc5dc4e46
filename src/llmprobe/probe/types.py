"""Value types shared by the boundary searcher and the probes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable


class EvidenceSource(Enum):
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"  # API stated the limit itself
    MAX_OUTPUT_INCOMPLETE = "max_output_incomplete"  # finish_reason == "length"
    API_ERROR = "api_error"  # Rejected without a readable limit
    ERROR = "error"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class NeedlePosition(Enum):
    END = "end"
    MIDDLE = "middle"
    PERCENT80 = "80pct"


@dataclass(frozen=True)
class ProbeOutcome:
    """What one oracle call said about one candidate value."""

    candidate: int
    succeeded: bool
    error_text: str = ""
    evidence_source: EvidenceSource = EvidenceSource.SUCCESS
    trials_consumed: int = 1
    estimated_tokens: int = 0
    duration: float = 0.0  # seconds spent in the call
    comprehension: bool | None = None  # needle probes only


# The oracle the searcher drives: candidate in, outcome out.
# Raising TransportError aborts the search.
ProbeOracle = Callable[[int], Awaitable[ProbeOutcome]]


@dataclass(frozen=True)
class SearchResult:
    """Outcome of one exponential or binary search call."""

    value: int
    succeeded: bool
    error_text: str = ""
    evidence_source: EvidenceSource = EvidenceSource.ERROR
    trials: int = 0
    estimated_tokens: int = 0
    failure_value: int | None = None  # lowest candidate seen to fail
    history: tuple[ProbeOutcome, ...] = ()
    inconsistencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class NeedleTestResult:
    """Per-position result of an all-positions needle run."""

    position: NeedlePosition
    comprehension: bool
    token_count: int
    confidence: Confidence = Confidence.LOW
    trials: int = 0
    error: str = ""


@dataclass(frozen=True)
class ContextWindowResult:
    """Estimated input context window of a model."""

    model: str
    max_context_tokens: int
    confidence: Confidence
    trials: int
    duration: float
    success: bool = True
    evidence_source: EvidenceSource = EvidenceSource.SUCCESS
    error_message: str = ""
    max_input_at_success: int = 0  # largest prompt_tokens the API reported accepting
    trial_history: tuple[ProbeOutcome, ...] = ()
    inconsistencies: tuple[str, ...] = ()

    needle_position: NeedlePosition | None = None
    needle_fact: str = ""
    needle_answer: str = ""
    needle_comprehension: bool | None = None
    needle_tests: tuple[NeedleTestResult, ...] = ()
    comprehension_rate: float | None = None

    @property
    def estimated_limit(self) -> int:
        return self.max_context_tokens

    def to_dict(self, include_history: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if not include_history:
            data.pop("trial_history")
        return _jsonable(data)


@dataclass(frozen=True)
class MaxOutputResult:
    """Estimated per-response output token limit of a model."""

    model: str
    max_output_tokens: int
    confidence: Confidence
    trials: int
    duration: float
    success: bool = True
    evidence_source: EvidenceSource = EvidenceSource.SUCCESS
    error_message: str = ""
    input_tokens_used: int = 0
    max_successfully_generated: int = 0
    trial_history: tuple[ProbeOutcome, ...] = ()
    inconsistencies: tuple[str, ...] = ()

    @property
    def estimated_limit(self) -> int:
        return self.max_output_tokens

    def to_dict(self, include_history: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if not include_history:
            data.pop("trial_history")
        return _jsonable(data)


def _jsonable(value: Any) -> Any:
    """Convert enums and tuples from ``asdict`` output into JSON types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
