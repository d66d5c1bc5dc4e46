"""Boundary search over a black-box accept/reject oracle.

Finds the largest integer T the oracle still accepts, assuming it accepts every
x <= T and rejects every x > T. Two phases:

1. ``exponential_search`` doubles a candidate from ``initial_value`` until the
   oracle rejects one, bracketing T between the last success and the first
   failure.
2. ``search`` binary-refines a bracket down to ``tolerance``.

The oracle is any async callable ``candidate -> ProbeOutcome``. A
``TransportError`` raised by it aborts the search; every other rejection is an
ordinary negative answer.

Error text is mined with ordered regex lists (``ErrorPatterns``) so that a
server which states its own limit ends the search early.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache

from llmprobe.probe.types import (
    Confidence,
    EvidenceSource,
    ProbeOracle,
    ProbeOutcome,
    SearchResult,
)

logger = logging.getLogger(__name__)

# Bumped whenever the built-in pattern lists change, so logged estimates can be
# traced back to the wording they were matched against.
PATTERNS_VERSION = 2

DEFAULT_CONTEXT_PATTERNS: tuple[str, ...] = (
    r"maximum context length is (\d+) tokens",  # OpenAI, vLLM
    r"prompt tokens must be less than (\d+)",
    r"prompt is too long: \d+ tokens > (\d+) maximum",  # Anthropic
    r"`inputs` tokens \+ `max_new_tokens` must be <= (\d+)",  # TGI
    r"exceeds the available context size \((\d+) tokens\)",  # llama.cpp server
)

DEFAULT_MAX_OUTPUT_PATTERNS: tuple[str, ...] = (
    r"max_output_tokens must be <= (\d+)",
    r"maximum output tokens is (\d+)",
    r"the value of max_output_tokens should be <= (\d+)",
    r"supports at most (\d+) completion tokens",  # OpenAI
    r"max_tokens: \d+ > (\d+), which is the maximum allowed",  # Anthropic
    r"max_tokens.*must be.*<= (\d+)",
)

# trials / log2(value) above this means the search sampled the range densely
_HIGH_CONFIDENCE_EFFICIENCY = 0.8


@dataclass(frozen=True)
class ErrorPatterns:
    """Ordered regex lists used to read limits out of error messages.

    Each pattern must have one capture group holding the limit. The first
    pattern that matches wins, so more specific wording goes first.
    """

    context: tuple[str, ...] = DEFAULT_CONTEXT_PATTERNS
    max_output: tuple[str, ...] = DEFAULT_MAX_OUTPUT_PATTERNS
    version: int = PATTERNS_VERSION

    def extended(
        self,
        context: list[str] | tuple[str, ...] = (),
        max_output: list[str] | tuple[str, ...] = (),
    ) -> ErrorPatterns:
        """Return a copy with extra patterns appended after the built-in ones."""
        for pattern in (*context, *max_output):
            compiled = _compile(pattern)
            if compiled.groups < 1:
                raise ValueError(f"Error pattern has no capture group: {pattern!r}")
        return ErrorPatterns(
            context=self.context + tuple(context),
            max_output=self.max_output + tuple(max_output),
            version=self.version,
        )


@dataclass(frozen=True)
class SearchSettings:
    """Tunable constants of the search."""

    max_trials: int = 40  # hard cap on oracle calls per search call
    initial_value: int = 4096  # first candidate of the exponential phase
    tolerance: int = 128  # binary refinement stops at this bracket width
    pacing_seconds: float = 1.0  # sleep between binary refinement calls
    refine_window: int = 1024  # half-width of the context refinement window

    def __post_init__(self) -> None:
        if self.max_trials < 1:
            raise ValueError(f"max_trials must be >= 1, got {self.max_trials}")
        if self.initial_value < 1:
            raise ValueError(f"initial_value must be >= 1, got {self.initial_value}")


@dataclass
class _SearchState:
    lower: int
    upper: int
    max_trials: int
    initial_value: int
    trials_used: int = 0
    history: list[ProbeOutcome] = field(default_factory=list)

    def record(self, outcome: ProbeOutcome) -> None:
        self.trials_used += 1
        self.history.append(outcome)


@lru_cache(maxsize=128)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def extract_token_limit(
    error_text: str,
    patterns: tuple[str, ...] | list[str] = DEFAULT_CONTEXT_PATTERNS,
) -> int | None:
    """Return the first limit captured by *patterns* in *error_text*, or None.

    >>> extract_token_limit("This model's maximum context length is 8192 tokens.")
    8192
    >>> extract_token_limit("rate limit exceeded") is None
    True
    """
    if not error_text:
        return None
    for pattern in patterns:
        match = _compile(pattern).search(error_text)
        if match:
            try:
                return int(match.group(1))
            except (IndexError, ValueError):
                continue
    return None


def calculate_confidence(
    trials: int, evidence_source: EvidenceSource, value: int
) -> Confidence:
    """Classify how far an estimate can be trusted.

    A limit the API stated itself is always high confidence. Otherwise the
    estimate is high confidence when the number of trials is large relative to
    the ``log2(value)`` a plain binary search would need, medium when not.
    ``LOW`` is never returned here; callers use it when no bound was found.
    """
    if evidence_source is EvidenceSource.VALIDATION_ERROR:
        return Confidence.HIGH
    if value > 1 and trials / math.log2(value) > _HIGH_CONFIDENCE_EFFICIENCY:
        return Confidence.HIGH
    return Confidence.MEDIUM


def find_inconsistencies(history: tuple[ProbeOutcome, ...] | list[ProbeOutcome]) -> list[str]:
    """Return a note for every answer that contradicts a monotonic oracle.

    A rejection at or below an earlier accepted value, or an acceptance at or
    above an earlier rejected value, means the endpoint is not answering
    consistently (load shedding, routing between replicas, flaky limits).
    """
    notes: list[str] = []
    max_success: int | None = None
    min_failure: int | None = None
    for outcome in history:
        x = outcome.candidate
        if outcome.succeeded:
            if min_failure is not None and x >= min_failure:
                notes.append(f"{x} accepted after {min_failure} was rejected")
            max_success = x if max_success is None else max(max_success, x)
        else:
            if max_success is not None and x <= max_success:
                notes.append(f"{x} rejected after {max_success} was accepted")
            min_failure = x if min_failure is None else min(min_failure, x)
    return notes


def stated_limit(history: tuple[ProbeOutcome, ...] | list[ProbeOutcome]) -> ProbeOutcome | None:
    """Return the first rejection whose error text stated the limit, if any.

    Such outcomes carry ``VALIDATION_ERROR`` with the stated limit in
    ``estimated_tokens``.
    """
    for outcome in history:
        if not outcome.succeeded and outcome.evidence_source is EvidenceSource.VALIDATION_ERROR:
            return outcome
    return None


class BoundarySearcher:
    """Two-phase integer boundary search driven by a probe oracle."""

    def __init__(
        self,
        settings: SearchSettings | None = None,
        patterns: ErrorPatterns | None = None,
    ) -> None:
        self.settings = settings or SearchSettings()
        self.patterns = patterns or ErrorPatterns()

    # ── phase 1 ──────────────────────────────────────────────────────

    async def exponential_search(self, probe: ProbeOracle) -> SearchResult:
        """Double the candidate until the oracle rejects one.

        Returns the last accepted candidate with ``succeeded=True``, carrying the
        first rejection's text and value. If the very first candidate is
        rejected the result is unsuccessful and carries that rejection, so the
        caller can still mine its text for a stated limit.
        """
        s = self.settings
        state = _SearchState(
            lower=0, upper=0, max_trials=s.max_trials, initial_value=s.initial_value
        )
        value = s.initial_value
        last_success: ProbeOutcome | None = None

        logger.info("Exponential search from %d (max %d trials)", value, s.max_trials)
        while state.trials_used < state.max_trials:
            outcome = await self._call(probe, value, state)
            if outcome.succeeded:
                last_success = outcome
                state.lower = value
                # The doubled candidate is the look-ahead: a rejection there
                # brackets the boundary without a separate phase.
                value *= 2
                continue

            state.upper = value
            if last_success is None:
                logger.info("First candidate %d rejected: %s", value, outcome.error_text)
                return self._result(
                    state,
                    value=value,
                    succeeded=False,
                    error_text=outcome.error_text,
                    evidence_source=outcome.evidence_source,
                    estimated_tokens=outcome.estimated_tokens,
                    failure_value=value,
                )
            logger.info("Boundary bracketed in [%d, %d)", last_success.candidate, value)
            return self._result(
                state,
                value=last_success.candidate,
                succeeded=True,
                error_text=outcome.error_text,
                evidence_source=EvidenceSource.SUCCESS,
                estimated_tokens=last_success.estimated_tokens,
                failure_value=value,
            )

        # Every rejection returns above, so running out of trials means every
        # candidate was accepted (max_trials >= 1 is enforced by SearchSettings).
        logger.info("Exponential search used all %d trials", s.max_trials)
        return self._result(
            state,
            value=last_success.candidate,
            succeeded=True,
            error_text="max_trials_reached",
            evidence_source=EvidenceSource.SUCCESS,
            estimated_tokens=last_success.estimated_tokens,
        )

    # ── phase 2 ──────────────────────────────────────────────────────

    async def search(self, lower: int, upper: int, probe: ProbeOracle) -> SearchResult:
        """Binary-refine the boundary inside ``[lower, upper]``.

        Stops once the bracket is no wider than ``tolerance`` or the trial
        budget is spent, then reports the oracle's answer at the final lower
        bound (probing it if this call has not already done so).
        """
        if lower > upper:
            raise ValueError(f"Invalid search range: lower {lower} > upper {upper}")
        s = self.settings
        state = _SearchState(
            lower=max(0, lower),
            upper=max(0, upper),
            max_trials=s.max_trials,
            initial_value=s.initial_value,
        )
        seen: dict[int, ProbeOutcome] = {}
        failure_value: int | None = None

        logger.info("Binary search in [%d, %d]", state.lower, state.upper)
        # One trial stays reserved for confirming the final lower bound.
        while (
            state.upper - state.lower > s.tolerance
            and state.trials_used < state.max_trials - 1
        ):
            mid = (state.lower + state.upper) // 2
            outcome = await self._call(probe, mid, state)
            seen[mid] = outcome
            if outcome.succeeded:
                state.lower = mid
            else:
                state.upper = mid
                failure_value = mid if failure_value is None else min(failure_value, mid)

            if s.pacing_seconds > 0:
                await asyncio.sleep(s.pacing_seconds)

        final = seen.get(state.lower)
        if final is None and state.trials_used < state.max_trials:
            final = await self._call(probe, state.lower, state)
            if not final.succeeded:
                failure_value = (
                    state.lower if failure_value is None else min(failure_value, state.lower)
                )
        if final is None:
            return self._result(
                state,
                value=state.lower,
                succeeded=False,
                error_text="max_trials_reached",
                evidence_source=EvidenceSource.ERROR,
                failure_value=failure_value,
            )

        logger.info(
            "Binary search settled on %d after %d trials (bracket width %d)",
            state.lower, state.trials_used, state.upper - state.lower,
        )
        return self._result(
            state,
            value=state.lower,
            succeeded=final.succeeded,
            error_text=final.error_text,
            evidence_source=final.evidence_source,
            estimated_tokens=final.estimated_tokens,
            failure_value=failure_value,
        )

    # ── helpers ──────────────────────────────────────────────────────

    def extract_token_limit_from_error(self, error_text: str) -> int | None:
        """Read a context limit out of *error_text* using this searcher's patterns."""
        return extract_token_limit(error_text, self.patterns.context)

    def extract_output_limit_from_error(self, error_text: str) -> int | None:
        """Read a max-output limit out of *error_text* using this searcher's patterns."""
        return extract_token_limit(error_text, self.patterns.max_output)

    @staticmethod
    def calculate_confidence(
        trials: int, evidence_source: EvidenceSource, value: int
    ) -> Confidence:
        return calculate_confidence(trials, evidence_source, value)

    @staticmethod
    async def _call(probe: ProbeOracle, candidate: int, state: _SearchState) -> ProbeOutcome:
        outcome = await probe(candidate)
        state.record(outcome)
        logger.debug(
            "Trial %d/%d: %d -> %s (%s)%s",
            state.trials_used,
            state.max_trials,
            candidate,
            "accepted" if outcome.succeeded else "rejected",
            outcome.evidence_source.value,
            f": {outcome.error_text}" if outcome.error_text else "",
        )
        return outcome

    @staticmethod
    def _result(state: _SearchState, **fields) -> SearchResult:
        return SearchResult(
            trials=state.trials_used,
            history=tuple(state.history),
            inconsistencies=tuple(find_inconsistencies(state.history)),
            **fields,
        )
