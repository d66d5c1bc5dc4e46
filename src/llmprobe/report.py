"""Plain-text and JSON rendering of probe results."""

from __future__ import annotations

import json

from llmprobe.probe.types import ContextWindowResult, MaxOutputResult, ProbeOutcome


def format_context_result(result: ContextWindowResult, verbose: bool = False) -> str:
    lines = [
        f"Model:               {result.model}",
        f"Max Context Tokens:  {result.max_context_tokens}",
        f"Method Confidence:   {result.confidence.value}",
        f"Evidence:            {result.evidence_source.value}",
        f"Trials:              {result.trials}",
        f"Duration:            {result.duration:.0f}s",
    ]
    if result.max_input_at_success:
        lines.append(f"Max Input Accepted:  {result.max_input_at_success} (reported prompt tokens)")
    if result.needle_position is not None:
        lines.append(f"Needle Position:     {result.needle_position.value}")
    if result.needle_comprehension is not None:
        verdict = "yes" if result.needle_comprehension else "no"
        lines.append(f"Needle Retrieved:    {verdict} (expected {result.needle_answer!r})")
    if result.needle_tests:
        lines.append(f"Comprehension Rate:  {result.comprehension_rate:.0%}")
        lines.append("")
        lines.append(f"  {'POSITION':<8} {'TOKENS':>8} {'RETRIEVED':<9} {'CONF':<6} TRIALS")
        for test in result.needle_tests:
            lines.append(
                f"  {test.position.value:<8} {test.token_count:>8} "
                f"{'yes' if test.comprehension else 'no':<9} "
                f"{test.confidence.value:<6} {test.trials}"
            )
    lines.extend(_footer(result.success, result.error_message, result.inconsistencies))
    if verbose:
        lines.extend(format_history(result.trial_history))
    return "\n".join(lines)


def format_max_output_result(result: MaxOutputResult, verbose: bool = False) -> str:
    lines = [
        f"Model:               {result.model}",
        f"Max Output Tokens:   {result.max_output_tokens}",
        f"Method Confidence:   {result.confidence.value}",
        f"Evidence:            {result.evidence_source.value}",
        f"Trials:              {result.trials}",
        f"Duration:            {result.duration:.0f}s",
        f"Input Tokens Used:   {result.input_tokens_used}",
        f"Max Generated:       {result.max_successfully_generated}",
    ]
    lines.extend(_footer(result.success, result.error_message, result.inconsistencies))
    if verbose:
        lines.extend(format_history(result.trial_history))
    return "\n".join(lines)


def format_history(history: tuple[ProbeOutcome, ...]) -> list[str]:
    """One line per trial, in call order."""
    if not history:
        return []
    lines = ["", "Trial history:"]
    for i, outcome in enumerate(history, 1):
        mark = "ok  " if outcome.succeeded else "FAIL"
        detail = f"  {outcome.error_text[:80]}" if outcome.error_text else ""
        lines.append(
            f"  {i:>3}. {outcome.candidate:>9} {mark} "
            f"{outcome.evidence_source.value:<22} {outcome.duration:6.1f}s{detail}"
        )
    return lines


def to_json(
    results: list[ContextWindowResult | MaxOutputResult], include_history: bool = False
) -> str:
    """Serialize results keyed by probe type."""
    payload: dict[str, object] = {}
    for result in results:
        key = "context_window" if isinstance(result, ContextWindowResult) else "max_output"
        payload[key] = result.to_dict(include_history=include_history)
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _footer(success: bool, error_message: str, inconsistencies: tuple[str, ...]) -> list[str]:
    lines = []
    if not success:
        lines.append("Status:              no accepted value found (estimate is the last candidate tried)")
    if error_message:
        lines.append(f"Last Error:          {error_message}")
    for note in inconsistencies:
        lines.append(f"Inconsistent:        {note}")
    return lines
