"""Probe execution — runs the requested probes and reports the results.

Results go to stdout (pipeable), diagnostics to stderr.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

from llmprobe.config import LLMProbeConfig
from llmprobe.inference.engine import ProbeClient, TransportError
from llmprobe.probe.context_probe import ContextWindowProbe
from llmprobe.probe.data_generator import TestDataGenerator
from llmprobe.probe.max_output_probe import MaxOutputTokensProbe
from llmprobe.probe.searcher import BoundarySearcher
from llmprobe.probe.types import ContextWindowResult, MaxOutputResult, NeedlePosition
from llmprobe.report import format_context_result, format_max_output_result, to_json
from llmprobe.storage import ResultStorage, provider_from_url
from llmprobe.trial_log import TrialLogger

logger = logging.getLogger(__name__)

NEEDLE_ALL = "all"


@dataclass
class ProbeRequest:
    """What the user asked to probe and how to report it."""

    model: str
    context: bool = True
    max_output: bool = True
    needle: str | None = None  # a NeedlePosition value, "all", or None for plain filler
    needle_fact: str = ""
    needle_answer: str = ""
    json_output: bool = False
    verbose: bool = False
    save_result: bool = False


async def run_probes(
    client: ProbeClient,
    config: LLMProbeConfig,
    request: ProbeRequest,
    trial_logger: TrialLogger | None = None,
    storage: ResultStorage | None = None,
) -> int:
    """Run the requested probes against *client*.

    Returns:
        Exit code (0 = every probe found an accepted bound, 1 otherwise).
    """
    searcher = BoundarySearcher(config.search_settings(), config.error_patterns())
    generator = TestDataGenerator(chars_per_token=config.probe.chars_per_token)
    gateway = client.gateway_info()
    gateway_label = gateway.name or gateway.base_url
    results: list[ContextWindowResult | MaxOutputResult] = []

    try:
        if request.context:
            _err(f"[probing] context window of {request.model}")
            probe = ContextWindowProbe(client, searcher, generator)
            result = await _probe_context(probe, config, request)
            results.append(result)
            _emit(result, request)
            _record(result, "context", gateway_label, gateway.base_url, request,
                    trial_logger, storage)

        if request.max_output:
            _err(f"[probing] max output tokens of {request.model}")
            output_probe = MaxOutputTokensProbe(
                client, searcher, generator, input_tokens=config.probe.input_tokens
            )
            output_result = await output_probe.probe(request.model)
            results.append(output_result)
            _emit(output_result, request)
            _record(output_result, "max_output", gateway_label, gateway.base_url, request,
                    trial_logger, storage)
    except TransportError as e:
        _err(f"[error] {e}")
        if request.json_output and results:
            # Keep the results that finished before the connection failed
            print(to_json(results, include_history=request.verbose), flush=True)
        return 1

    if request.json_output:
        print(to_json(results, include_history=request.verbose), flush=True)

    return 0 if results and all(r.success for r in results) else 1


async def _probe_context(
    probe: ContextWindowProbe, config: LLMProbeConfig, request: ProbeRequest
) -> ContextWindowResult:
    fact = request.needle_fact or config.probe.needle_fact
    answer = request.needle_answer or config.probe.needle_answer
    if request.needle is None:
        return await probe.probe(request.model)
    if request.needle == NEEDLE_ALL:
        return await probe.probe_all_needle_positions(request.model, fact, answer)
    return await probe.probe_with_needle(
        request.model, NeedlePosition(request.needle), fact, answer
    )


def _emit(result: ContextWindowResult | MaxOutputResult, request: ProbeRequest) -> None:
    if request.json_output:
        return
    if isinstance(result, ContextWindowResult):
        text = format_context_result(result, verbose=request.verbose)
    else:
        text = format_max_output_result(result, verbose=request.verbose)
    print(text + "\n", flush=True)


def _record(
    result: ContextWindowResult | MaxOutputResult,
    probe_type: str,
    gateway_label: str,
    base_url: str,
    request: ProbeRequest,
    trial_logger: TrialLogger | None,
    storage: ResultStorage | None,
) -> None:
    """Write trial log and saved estimate; failures here never fail the run."""
    if trial_logger is not None:
        try:
            trial_logger.log_result(request.model, gateway_label, probe_type, result)
        except OSError as e:
            logger.warning("Failed to write trial log: %s", e)

    if request.save_result and storage is not None:
        provider = provider_from_url(base_url)
        try:
            if isinstance(result, ContextWindowResult):
                path = storage.save_context_result(provider, request.model, result)
            else:
                path = storage.save_max_output_result(provider, request.model, result)
        except OSError as e:
            logger.warning("Failed to save result: %s", e)
        else:
            _err(f"[saved] {path}")


def describe_plan(config: LLMProbeConfig, request: ProbeRequest) -> str:
    """Human-readable execution plan for --dry-run."""
    s = config.search
    probes = []
    if request.context:
        needle = f" (needle: {request.needle})" if request.needle else ""
        probes.append(f"context window{needle}")
    if request.max_output:
        probes.append(f"max output tokens (input ~{config.probe.input_tokens} tokens)")
    key = "set" if config.gateway.api_key else "not set"
    lines = [
        "Execution plan",
        f"  Model:        {request.model}",
        f"  Gateway:      {config.gateway.url or '(not configured)'}",
        f"  API key:      {key}",
        f"  Timeout:      {config.gateway.timeout:.0f}s",
        f"  Probes:       {', '.join(probes)}",
        f"  Search:       start {s.initial_value}, x2 until rejected, then binary search "
        f"to within {s.tolerance}",
        f"  Trial cap:    {s.max_trials} per search phase, {s.pacing_seconds:g}s between "
        f"binary search calls",
        f"  Trial log:    {config.log.dir if config.log.enabled else 'disabled'}",
        f"  Save result:  {config.result.dir if request.save_result else 'no'}",
    ]
    return "\n".join(lines)


def _err(msg: str) -> None:
    """Print a message to stderr."""
    print(msg, file=sys.stderr, flush=True)
