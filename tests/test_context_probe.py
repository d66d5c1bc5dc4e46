"""Tests for the context window probe."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from llmprobe.inference.engine import GatewayInfo, ProbeReply, TransportError
from llmprobe.probe.context_probe import MISSING_USAGE, ContextWindowProbe
from llmprobe.probe.data_generator import DEFAULT_NEEDLE, DEFAULT_NEEDLE_ANSWER
from llmprobe.probe.searcher import BoundarySearcher, SearchSettings
from llmprobe.probe.types import Confidence, EvidenceSource, NeedlePosition

FAST = SearchSettings(pacing_seconds=0)


class FakeContextClient:
    """Accepts prompts of up to *limit* characters (one character per token)."""

    def __init__(
        self,
        limit: int,
        error_text: str = "request too large",
        answer: str = "",
        usage: bool = True,
        accept_first: int = 0,
    ):
        self.limit = limit
        self.error_text = error_text
        self.answer = answer
        self.usage = usage
        self.accept_first = accept_first
        self.calls: list[int] = []

    async def probe_once(self, model, messages, max_tokens=16, temperature=0.0):
        size = len(messages[-1]["content"])
        self.calls.append(size)
        accepted = size <= self.limit
        if self.accept_first:
            accepted = len(self.calls) <= self.accept_first
        if not accepted:
            return ProbeReply(success=False, error_text=self.error_text, status_code=400)
        return ProbeReply(
            success=True,
            prompt_tokens=size if self.usage else None,
            completion_tokens=5,
            finish_reason="stop",
            content=self.answer,
            status_code=200,
        )

    def gateway_info(self):
        return GatewayInfo(base_url="http://fake", name="fake")


def _probe(client) -> ContextWindowProbe:
    return ContextWindowProbe(client, BoundarySearcher(FAST))


# ─── plain probe ────────────────────────────────────────────────────────────


class TestContextProbe:
    async def test_finds_limit_by_search(self):
        result = await _probe(FakeContextClient(127999)).probe("m")
        assert result.success is True
        assert 127999 - 128 <= result.max_context_tokens <= 127999
        assert result.confidence == Confidence.HIGH
        assert result.evidence_source == EvidenceSource.SUCCESS
        assert result.trials <= 25
        assert result.estimated_limit == result.max_context_tokens
        assert result.max_input_at_success == result.max_context_tokens
        assert result.inconsistencies == ()

    async def test_trials_match_history(self):
        result = await _probe(FakeContextClient(50000)).probe("m")
        assert result.trials == len(result.trial_history)

    async def test_stated_limit_short_circuits(self):
        client = FakeContextClient(
            10000,
            error_text="This model's maximum context length is 10000 tokens. However, "
            "you requested 16384 tokens.",
        )
        result = await _probe(client).probe("m")
        assert result.max_context_tokens == 10000
        assert result.evidence_source == EvidenceSource.VALIDATION_ERROR
        assert result.confidence == Confidence.HIGH
        # 4096, 8192 accepted, 16384 rejected with the stated limit
        assert result.trials == 3

    async def test_stated_limit_on_first_probe(self):
        client = FakeContextClient(
            2048, error_text="prompt is too long: 4096 tokens > 2048 maximum"
        )
        result = await _probe(client).probe("m")
        assert result.max_context_tokens == 2048
        assert result.evidence_source == EvidenceSource.VALIDATION_ERROR
        assert result.trials == 1

    async def test_limit_stated_during_refinement(self):
        class StatingClient(FakeContextClient):
            async def probe_once(self, model, messages, max_tokens=16, temperature=0.0):
                size = len(messages[-1]["content"])
                self.error_text = (
                    "request too large"
                    if size >= 16384
                    else "This model's maximum context length is 10000 tokens."
                )
                return await super().probe_once(model, messages, max_tokens, temperature)

        result = await _probe(StatingClient(10000)).probe("m")
        assert result.max_context_tokens == 10000
        assert result.evidence_source == EvidenceSource.VALIDATION_ERROR
        assert result.confidence == Confidence.HIGH
        assert result.trials > 3

    async def test_no_success_is_low_confidence(self):
        result = await _probe(FakeContextClient(100, error_text="bad request")).probe("m")
        assert result.success is False
        assert result.confidence == Confidence.LOW
        assert result.max_context_tokens == 4096
        assert result.error_message == "bad request"
        assert result.evidence_source == EvidenceSource.API_ERROR

    async def test_missing_usage_counts_as_failure(self):
        result = await _probe(FakeContextClient(10**6, usage=False)).probe("m")
        assert result.success is False
        assert result.error_message == MISSING_USAGE
        assert result.trial_history[0].evidence_source == EvidenceSource.API_ERROR

    async def test_transport_error_propagates(self):
        client = FakeContextClient(10**6)
        client.probe_once = AsyncMock(side_effect=TransportError("connection refused"))
        with pytest.raises(TransportError):
            await _probe(client).probe("m")

    async def test_inconsistent_endpoint_falls_back(self):
        # accepts 4096 and 8192, then rejects everything
        result = await _probe(FakeContextClient(0, accept_first=2)).probe("m")
        assert result.success is True
        assert result.max_context_tokens == 8192
        assert result.confidence == Confidence.MEDIUM
        assert result.inconsistencies

    async def test_to_dict_is_json_safe(self):
        result = await _probe(FakeContextClient(20000)).probe("m")
        data = result.to_dict()
        assert data["confidence"] == result.confidence.value
        assert data["evidence_source"] == "success"
        assert isinstance(data["trial_history"], list)
        assert "trial_history" not in result.to_dict(include_history=False)


# ─── needle probes ──────────────────────────────────────────────────────────


class TestNeedleProbe:
    async def test_needle_retrieved(self):
        client = FakeContextClient(30000, answer=f"答えは{DEFAULT_NEEDLE_ANSWER}です")
        result = await _probe(client).probe_with_needle("m", NeedlePosition.MIDDLE)
        assert result.success is True
        assert result.needle_position is NeedlePosition.MIDDLE
        assert result.needle_fact == DEFAULT_NEEDLE
        assert result.needle_answer == DEFAULT_NEEDLE_ANSWER
        assert result.needle_comprehension is True

    async def test_needle_missed(self):
        client = FakeContextClient(30000, answer="わかりません")
        result = await _probe(client).probe_with_needle("m", NeedlePosition.END)
        assert result.success is True
        assert result.needle_comprehension is False

    async def test_custom_fact_defaults_answer_to_fact(self):
        client = FakeContextClient(30000, answer="The code word is tangerine.")
        result = await _probe(client).probe_with_needle(
            "m", NeedlePosition.PERCENT80, needle_fact="The code word is tangerine."
        )
        assert result.needle_answer == "The code word is tangerine."
        assert result.needle_comprehension is True

    async def test_comprehension_does_not_drive_search(self):
        client = FakeContextClient(30000, answer="")
        result = await _probe(client).probe_with_needle("m", NeedlePosition.END)
        assert 30000 - 128 <= result.max_context_tokens <= 30000

    async def test_no_success_has_no_verdict(self):
        client = FakeContextClient(100)
        result = await _probe(client).probe_with_needle("m", NeedlePosition.END)
        assert result.success is False
        assert result.needle_comprehension is None

    async def test_all_positions_aggregate(self):
        client = FakeContextClient(20000, answer=DEFAULT_NEEDLE_ANSWER)
        result = await _probe(client).probe_all_needle_positions("m")
        assert [t.position for t in result.needle_tests] == list(NeedlePosition)
        assert result.comprehension_rate == 1.0
        assert result.needle_comprehension is True
        assert result.trials == sum(t.trials for t in result.needle_tests)
        assert result.max_context_tokens == max(t.token_count for t in result.needle_tests)
        assert result.success is True

    async def test_all_positions_none_retrieved(self):
        client = FakeContextClient(20000, answer="?")
        result = await _probe(client).probe_all_needle_positions("m")
        assert result.comprehension_rate == 0.0
        assert result.needle_comprehension is False

    async def test_all_positions_without_success_has_no_verdict(self):
        client = FakeContextClient(100, answer=DEFAULT_NEEDLE_ANSWER)
        result = await _probe(client).probe_all_needle_positions("m")
        assert result.success is False
        assert result.comprehension_rate == 0.0
        assert result.needle_comprehension is None

    async def test_all_positions_weakest_confidence(self):
        client = FakeContextClient(20000, answer=DEFAULT_NEEDLE_ANSWER)
        result = await _probe(client).probe_all_needle_positions("m")
        ranks = [t.confidence.rank for t in result.needle_tests]
        assert result.confidence.rank == min(ranks)

    async def test_all_positions_transport_error_propagates(self):
        client = FakeContextClient(10**6)
        client.probe_once = AsyncMock(side_effect=TransportError("timed out"))
        with pytest.raises(TransportError):
            await _probe(client).probe_all_needle_positions("m")
