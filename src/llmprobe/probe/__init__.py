"""Limit discovery: boundary search and the probes built on it."""

from llmprobe.probe.context_probe import ContextWindowProbe
from llmprobe.probe.max_output_probe import MaxOutputTokensProbe
from llmprobe.probe.searcher import BoundarySearcher, ErrorPatterns, SearchSettings
from llmprobe.probe.types import (
    Confidence,
    ContextWindowResult,
    EvidenceSource,
    MaxOutputResult,
    NeedlePosition,
    ProbeOutcome,
)

__all__ = [
    "BoundarySearcher",
    "Confidence",
    "ContextWindowProbe",
    "ContextWindowResult",
    "ErrorPatterns",
    "EvidenceSource",
    "MaxOutputResult",
    "MaxOutputTokensProbe",
    "NeedlePosition",
    "ProbeOutcome",
    "SearchSettings",
]
