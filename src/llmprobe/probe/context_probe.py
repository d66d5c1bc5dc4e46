"""Context window probing — how many prompt tokens does the endpoint accept?

Each trial sends one synthetic prompt of a candidate size and asks for a tiny
completion. The endpoint's acceptance or rejection drives the boundary search;
a rejection that states the limit outright ends it early.

Needle variants embed a fact at a chosen position and grade the answer, so the
result also says whether the model could retrieve information from a full
window, not merely accept it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from llmprobe.inference.engine import ProbeClient, ProbeReply
from llmprobe.probe.comprehension import check_comprehension
from llmprobe.probe.data_generator import (
    DEFAULT_NEEDLE,
    DEFAULT_NEEDLE_ANSWER,
    DEFAULT_QUESTION,
    GENERIC_QUESTION,
    TestDataGenerator,
)
from llmprobe.probe.searcher import BoundarySearcher, find_inconsistencies, stated_limit
from llmprobe.probe.types import (
    Confidence,
    ContextWindowResult,
    EvidenceSource,
    NeedlePosition,
    NeedleTestResult,
    ProbeOracle,
    ProbeOutcome,
    SearchResult,
)

logger = logging.getLogger(__name__)

MISSING_USAGE = "missing usage information"

# Completion budget per trial; the prompt is what is being measured.
_RESPONSE_TOKENS = 16
# Enough room for the model to state the needle back.
_NEEDLE_RESPONSE_TOKENS = 64


class ContextWindowProbe:
    """Estimates the maximum input context of a model behind *client*."""

    def __init__(
        self,
        client: ProbeClient,
        searcher: BoundarySearcher | None = None,
        generator: TestDataGenerator | None = None,
    ) -> None:
        self.client = client
        self.searcher = searcher or BoundarySearcher()
        self.generator = generator or TestDataGenerator()

    # ── public API ────────────────────────────────────────────────────

    async def probe(self, model: str) -> ContextWindowResult:
        """Estimate the context window of *model* with plain filler prompts."""
        start = time.monotonic()
        logger.info("Probing context window of %s", model)
        oracle = self._make_oracle(model)
        return await self._run(model, oracle, start)

    async def probe_with_needle(
        self,
        model: str,
        position: NeedlePosition,
        needle_fact: str = "",
        expected_answer: str = "",
        question: str = "",
    ) -> ContextWindowResult:
        """Estimate the context window with a needle at *position*.

        Acceptance still drives the search; every accepted reply is also graded
        for whether it contains *expected_answer*.
        """
        needle_fact, expected_answer, question = _needle_defaults(
            needle_fact, expected_answer, question
        )
        start = time.monotonic()
        logger.info("Probing context window of %s with needle at %s", model, position.value)
        oracle = self._make_oracle(
            model,
            position=position,
            needle=needle_fact,
            question=question,
            expected_answer=expected_answer,
        )
        result = await self._run(
            model,
            oracle,
            start,
            needle_position=position,
            needle_fact=needle_fact,
            needle_answer=expected_answer,
        )
        comprehension = _comprehension_at(result.trial_history, result.max_context_tokens)
        return replace(result, needle_comprehension=comprehension)

    async def probe_all_needle_positions(
        self,
        model: str,
        needle_fact: str = "",
        expected_answer: str = "",
        question: str = "",
    ) -> ContextWindowResult:
        """Run an independent needle probe per position and aggregate them."""
        needle_fact, expected_answer, question = _needle_defaults(
            needle_fact, expected_answer, question
        )
        start = time.monotonic()
        runs: list[ContextWindowResult] = []
        tests: list[NeedleTestResult] = []

        for position in NeedlePosition:
            run = await self.probe_with_needle(
                model, position, needle_fact, expected_answer, question
            )
            runs.append(run)
            tests.append(
                NeedleTestResult(
                    position=position,
                    comprehension=bool(run.needle_comprehension),
                    token_count=run.max_context_tokens if run.success else 0,
                    confidence=run.confidence,
                    trials=run.trials,
                    error="" if run.success else run.error_message,
                )
            )

        best = max(runs, key=lambda r: r.max_context_tokens if r.success else -1)
        max_tokens = best.max_context_tokens if best.success else 0
        succeeded = [r for r in runs if r.success]
        confidence = (
            min((r.confidence for r in succeeded), key=lambda c: c.rank)
            if succeeded
            else Confidence.LOW
        )
        rate = sum(t.comprehension for t in tests) / len(tests)
        errors = [f"{t.position.value}: {t.error}" for t in tests if t.error]

        return ContextWindowResult(
            model=model,
            max_context_tokens=max_tokens,
            confidence=confidence,
            trials=sum(r.trials for r in runs),
            duration=time.monotonic() - start,
            success=max_tokens > 0,
            evidence_source=best.evidence_source,
            error_message="; ".join(errors),
            max_input_at_success=max(r.max_input_at_success for r in runs),
            trial_history=tuple(o for r in runs for o in r.trial_history),
            inconsistencies=tuple(n for r in runs for n in r.inconsistencies),
            needle_fact=needle_fact,
            needle_answer=expected_answer,
            needle_comprehension=(rate > 0) if succeeded else None,
            needle_tests=tuple(tests),
            comprehension_rate=rate,
        )

    # ── search orchestration ─────────────────────────────────────────

    async def _run(
        self,
        model: str,
        oracle: ProbeOracle,
        start: float,
        **needle_fields: Any,
    ) -> ContextWindowResult:
        searcher = self.searcher
        upper = await searcher.exponential_search(oracle)

        stated = searcher.extract_token_limit_from_error(upper.error_text)
        if stated is not None:
            logger.info("Endpoint stated its context limit: %d", stated)
            return self._result(
                model,
                start,
                [upper],
                max_context_tokens=stated,
                confidence=searcher.calculate_confidence(
                    upper.trials, EvidenceSource.VALIDATION_ERROR, stated
                ),
                evidence_source=EvidenceSource.VALIDATION_ERROR,
                error_message=upper.error_text,
                **needle_fields,
            )

        if not upper.succeeded:
            logger.info("No accepted prompt size found for %s", model)
            return self._result(
                model,
                start,
                [upper],
                max_context_tokens=upper.value,
                confidence=Confidence.LOW,
                success=False,
                evidence_source=upper.evidence_source,
                error_message=upper.error_text,
                **needle_fields,
            )

        window = searcher.settings.refine_window
        lower_bound = max(0, upper.value - window)
        upper_bound = max(upper.value + window, upper.failure_value or 0)
        boundary = await searcher.search(lower_bound, upper_bound, oracle)
        trials = upper.trials + boundary.trials

        readout = stated_limit(boundary.history)
        if readout is not None:
            logger.info("Endpoint stated its context limit: %d", readout.estimated_tokens)
            return self._result(
                model,
                start,
                [upper, boundary],
                max_context_tokens=readout.estimated_tokens,
                confidence=Confidence.HIGH,
                evidence_source=EvidenceSource.VALIDATION_ERROR,
                error_message=readout.error_text,
                **needle_fields,
            )


        if not boundary.succeeded:
            # The refined lower bound was rejected although a larger prompt was
            # accepted earlier; keep the bound the exponential phase proved.
            logger.warning(
                "Refined bound %d rejected; falling back to %d", boundary.value, upper.value
            )
            return self._result(
                model,
                start,
                [upper, boundary],
                max_context_tokens=upper.value,
                confidence=Confidence.MEDIUM,
                error_message=boundary.error_text,
                **needle_fields,
            )

        return self._result(
            model,
            start,
            [upper, boundary],
            max_context_tokens=boundary.value,
            confidence=searcher.calculate_confidence(
                trials, boundary.evidence_source, boundary.value
            ),
            evidence_source=boundary.evidence_source,
            **needle_fields,
        )

    @staticmethod
    def _result(
        model: str,
        start: float,
        searches: list[SearchResult],
        **fields: Any,
    ) -> ContextWindowResult:
        history = tuple(o for s in searches for o in s.history)
        accepted = [o.estimated_tokens for o in history if o.succeeded]
        return ContextWindowResult(
            model=model,
            trials=sum(s.trials for s in searches),
            duration=time.monotonic() - start,
            max_input_at_success=max(accepted, default=0),
            trial_history=history,
            inconsistencies=_inconsistencies(history),
            **fields,
        )

    # ── oracle ───────────────────────────────────────────────────────

    def _make_oracle(
        self,
        model: str,
        position: NeedlePosition | None = None,
        needle: str = DEFAULT_NEEDLE,
        question: str = DEFAULT_QUESTION,
        expected_answer: str | None = None,
    ) -> ProbeOracle:
        generator = self.generator
        max_tokens = _RESPONSE_TOKENS if position is None else _NEEDLE_RESPONSE_TOKENS

        async def oracle(tokens: int) -> ProbeOutcome:
            if position is None:
                prompt = generator.generate(tokens)
            else:
                prompt = generator.generate_with_needle(tokens, position, needle, question)
            started = time.monotonic()
            reply = await self.client.probe_once(
                model,
                [{"role": "user", "content": prompt.text}],
                max_tokens=max_tokens,
            )
            return self._classify(tokens, reply, time.monotonic() - started, expected_answer)

        return oracle

    def _classify(
        self,
        tokens: int,
        reply: ProbeReply,
        elapsed: float,
        expected_answer: str | None,
    ) -> ProbeOutcome:
        if not reply.success:
            stated = self.searcher.extract_token_limit_from_error(reply.error_text)
            if stated is not None:
                return ProbeOutcome(
                    candidate=tokens,
                    succeeded=False,
                    error_text=reply.error_text,
                    evidence_source=EvidenceSource.VALIDATION_ERROR,
                    estimated_tokens=stated,
                    duration=elapsed,
                )
            return ProbeOutcome(
                candidate=tokens,
                succeeded=False,
                error_text=reply.error_text,
                evidence_source=EvidenceSource.API_ERROR,
                duration=elapsed,
            )

        if not reply.prompt_tokens:
            return ProbeOutcome(
                candidate=tokens,
                succeeded=False,
                error_text=MISSING_USAGE,
                evidence_source=EvidenceSource.API_ERROR,
                duration=elapsed,
            )

        comprehension = None
        if expected_answer is not None:
            comprehension = check_comprehension(reply.content, expected_answer).correct
        return ProbeOutcome(
            candidate=tokens,
            succeeded=True,
            evidence_source=EvidenceSource.SUCCESS,
            estimated_tokens=reply.prompt_tokens,
            duration=elapsed,
            comprehension=comprehension,
        )


def _needle_defaults(fact: str, answer: str, question: str) -> tuple[str, str, str]:
    """Fill in the built-in needle for whatever the caller left empty."""
    if not fact:
        fact = DEFAULT_NEEDLE
        answer = answer or DEFAULT_NEEDLE_ANSWER
        question = question or DEFAULT_QUESTION
    if not answer:
        answer = fact
    if not question:
        question = GENERIC_QUESTION
    return fact, answer, question


def _comprehension_at(history: tuple[ProbeOutcome, ...], value: int) -> bool | None:
    """Comprehension verdict at *value*, else at the last accepted trial."""
    graded = [o for o in history if o.succeeded and o.comprehension is not None]
    for outcome in reversed(graded):
        if outcome.candidate == value:
            return outcome.comprehension
    return graded[-1].comprehension if graded else None

def _inconsistencies(history: tuple[ProbeOutcome, ...]) -> tuple[str, ...]:
    notes = find_inconsistencies(history)
    for note in notes:
        logger.warning("Inconsistent answer from endpoint: %s", note)
    return tuple(notes)
