"""Max output token probing — how large a ``max_tokens`` will the endpoint honour?

The input is a fixed request for a very long answer, so the requested output
budget is the only thing that changes between trials. Three answers are
possible per trial:

* the API rejects the value, sometimes naming the real limit;
* the completion stops with ``finish_reason == "length"`` short of the
  requested budget (truncated, and the token count is an observed ceiling);
* the completion finishes on its own, or fills the whole budget (accepted).
"""

from __future__ import annotations

import logging
import time
from typing import Any

from llmprobe.inference.engine import ProbeClient, ProbeReply
from llmprobe.probe.data_generator import TestDataGenerator
from llmprobe.probe.searcher import BoundarySearcher, find_inconsistencies, stated_limit
from llmprobe.probe.types import (
    Confidence,
    EvidenceSource,
    MaxOutputResult,
    ProbeOracle,
    ProbeOutcome,
    SearchResult,
)

logger = logging.getLogger(__name__)

TRUNCATED = "response truncated at max_tokens"

# Evidence sources whose estimated_tokens are tokens the model really generated
_GENERATED = (EvidenceSource.SUCCESS, EvidenceSource.MAX_OUTPUT_INCOMPLETE)


class MaxOutputTokensProbe:
    """Estimates the per-response output token limit of a model behind *client*."""

    def __init__(
        self,
        client: ProbeClient,
        searcher: BoundarySearcher | None = None,
        generator: TestDataGenerator | None = None,
        input_tokens: int = 1000,
    ) -> None:
        self.client = client
        self.searcher = searcher or BoundarySearcher()
        self.generator = generator or TestDataGenerator()
        self.input_tokens = input_tokens

    async def probe(self, model: str) -> MaxOutputResult:
        """Estimate the max output tokens of *model*."""
        start = time.monotonic()
        logger.info(
            "Probing max output tokens of %s (input ~%d tokens)", model, self.input_tokens
        )
        searcher = self.searcher
        oracle = self._make_oracle(model, self.generator.generate_output_prompt(self.input_tokens))

        upper = await searcher.exponential_search(oracle)

        stated = searcher.extract_output_limit_from_error(upper.error_text)
        if stated is not None:
            logger.info("Endpoint stated its output limit: %d", stated)
            return self._result(
                model,
                start,
                [upper],
                max_output_tokens=stated,
                confidence=searcher.calculate_confidence(
                    upper.trials, EvidenceSource.VALIDATION_ERROR, stated
                ),
                evidence_source=EvidenceSource.VALIDATION_ERROR,
                error_message=upper.error_text,
            )

        ceiling = _observed_ceiling(upper.history)
        if not upper.succeeded and ceiling is None:
            logger.info("No accepted max_tokens value found for %s", model)
            return self._result(
                model,
                start,
                [upper],
                max_output_tokens=upper.value,
                confidence=Confidence.LOW,
                success=False,
                evidence_source=upper.evidence_source,
                error_message=upper.error_text,
            )

        top = upper.failure_value or upper.value * 2
        lower = top // 2
        if ceiling is not None:
            # The endpoint already stopped short at this many tokens
            top = min(top, ceiling + 1)
            lower = min(lower, ceiling)
        boundary = await searcher.search(lower, top, oracle)
        trials = upper.trials + boundary.trials

        readout = stated_limit(boundary.history)
        if readout is not None:
            logger.info("Endpoint stated its output limit: %d", readout.estimated_tokens)
            return self._result(
                model,
                start,
                [upper, boundary],
                max_output_tokens=readout.estimated_tokens,
                confidence=Confidence.HIGH,
                evidence_source=EvidenceSource.VALIDATION_ERROR,
                error_message=readout.error_text,
            )

        if not boundary.succeeded:
            if not upper.succeeded:
                logger.info("No accepted max_tokens value found for %s", model)
                return self._result(
                    model,
                    start,
                    [upper, boundary],
                    max_output_tokens=ceiling,
                    confidence=Confidence.LOW,
                    success=False,
                    evidence_source=EvidenceSource.MAX_OUTPUT_INCOMPLETE,
                    error_message=boundary.error_text,
                )
            logger.warning(
                "Refined bound %d rejected; falling back to %d", boundary.value, upper.value
            )
            return self._result(
                model,
                start,
                [upper, boundary],
                max_output_tokens=upper.value,
                confidence=Confidence.MEDIUM,
                error_message=boundary.error_text,
            )

        return self._result(
            model,
            start,
            [upper, boundary],
            max_output_tokens=boundary.value,
            confidence=searcher.calculate_confidence(
                trials, boundary.evidence_source, boundary.value
            ),
            evidence_source=boundary.evidence_source,
        )

    def _result(
        self,
        model: str,
        start: float,
        searches: list[SearchResult],
        **fields: Any,
    ) -> MaxOutputResult:
        history = tuple(o for s in searches for o in s.history)
        generated = [o.estimated_tokens for o in history if o.evidence_source in _GENERATED]
        return MaxOutputResult(
            model=model,
            trials=sum(s.trials for s in searches),
            duration=time.monotonic() - start,
            input_tokens_used=self.input_tokens,
            max_successfully_generated=max(generated, default=0),
            trial_history=history,
            inconsistencies=_inconsistencies(history),
            **fields,
        )

    def _make_oracle(self, model: str, prompt: str) -> ProbeOracle:
        messages = [{"role": "user", "content": prompt}]

        async def oracle(max_tokens: int) -> ProbeOutcome:
            started = time.monotonic()
            reply = await self.client.probe_once(model, messages, max_tokens=max_tokens)
            return self._classify(max_tokens, reply, time.monotonic() - started)

        return oracle

    def _classify(self, max_tokens: int, reply: ProbeReply, elapsed: float) -> ProbeOutcome:
        if not reply.success:
            stated = self.searcher.extract_output_limit_from_error(reply.error_text)
            if stated is not None:
                return ProbeOutcome(
                    candidate=max_tokens,
                    succeeded=False,
                    error_text=reply.error_text,
                    evidence_source=EvidenceSource.VALIDATION_ERROR,
                    estimated_tokens=stated,
                    duration=elapsed,
                )
            return ProbeOutcome(
                candidate=max_tokens,
                succeeded=False,
                error_text=reply.error_text,
                evidence_source=EvidenceSource.API_ERROR,
                duration=elapsed,
            )

        generated = reply.completion_tokens
        if reply.finish_reason == "length" and (generated is None or generated < max_tokens):
            return ProbeOutcome(
                candidate=max_tokens,
                succeeded=False,
                error_text=TRUNCATED,
                evidence_source=EvidenceSource.MAX_OUTPUT_INCOMPLETE,
                estimated_tokens=generated or 0,
                duration=elapsed,
            )

        # Finished on its own, or delivered the whole budget
        return ProbeOutcome(
            candidate=max_tokens,
            succeeded=True,
            evidence_source=EvidenceSource.SUCCESS,
            estimated_tokens=max_tokens if generated is None else generated,
            duration=elapsed,
        )


def _inconsistencies(history: tuple[ProbeOutcome, ...]) -> tuple[str, ...]:
    notes = find_inconsistencies(history)
    for note in notes:
        logger.warning("Inconsistent answer from endpoint: %s", note)
    return tuple(notes)


def _observed_ceiling(history: tuple[ProbeOutcome, ...]) -> int | None:
    """Smallest token count at which a completion was cut short of its budget."""
    cut = [
        o.estimated_tokens
        for o in history
        if o.evidence_source is EvidenceSource.MAX_OUTPUT_INCOMPLETE
        and 0 < o.estimated_tokens < o.candidate
    ]
    return min(cut, default=None)
