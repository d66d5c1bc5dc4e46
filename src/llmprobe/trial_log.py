"""Per-trial probe logging — one JSON object per line.

Log files are named ``{YYYY-MM-DD}-{model}-{probe_type}.log`` inside the log
directory and are only ever appended to. Every record written by one
``TrialLogger`` shares an execution id, so several runs on the same day can be
told apart::

    {
        "timestamp": "<ISO-8601>",
        "model": "<model id>",
        "gateway": "<gateway name or URL>",
        "probe_type": "context" | "max_output",
        "trial": {index, token_count, success, evidence_source, duration, ...},
        "metadata": {version, execution_id, patterns_version}
    }

The final result is written as a trial with index -1 and the serialized
result under ``trial.result``.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from llmprobe import __version__
from llmprobe.probe.searcher import PATTERNS_VERSION
from llmprobe.probe.types import ContextWindowResult, MaxOutputResult, ProbeOutcome

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r'[/\\:*?<>|"\s]+')


def sanitize_name(name: str) -> str:
    """Make a model or provider name safe to use in a file name.

    >>> sanitize_name("meta-llama/Llama-3.1-8B:instruct")
    'meta-llama-Llama-3.1-8B-instruct'
    """
    return _UNSAFE_CHARS_RE.sub("-", name.strip()).strip("-") or "unknown"


class TrialLogger:
    """Append probe trials and results to JSON-lines files."""

    def __init__(self, log_dir: str | Path, enabled: bool = True) -> None:
        self.enabled = enabled
        self._dir = Path(log_dir).expanduser()
        self.execution_id = uuid.uuid4().hex

    def log_file(self, model: str, probe_type: str, when: datetime | None = None) -> Path:
        date = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        return self._dir / f"{date}-{sanitize_name(model)}-{probe_type}.log"

    def log_trial(
        self,
        model: str,
        gateway: str,
        probe_type: str,
        index: int,
        outcome: ProbeOutcome,
    ) -> None:
        """Append one trial record."""
        trial = {
            "index": index,
            "token_count": outcome.candidate,
            "success": outcome.succeeded,
            "evidence_source": outcome.evidence_source.value,
            "estimated_tokens": outcome.estimated_tokens,
            "duration": round(outcome.duration, 3),
        }
        if outcome.error_text:
            trial["error_message"] = outcome.error_text
        if outcome.comprehension is not None:
            trial["comprehension"] = outcome.comprehension
        self._append(model, gateway, probe_type, trial)

    def log_result(
        self,
        model: str,
        gateway: str,
        probe_type: str,
        result: ContextWindowResult | MaxOutputResult,
    ) -> None:
        """Append every trial of *result* followed by the result itself."""
        if not self.enabled:
            return
        for index, outcome in enumerate(result.trial_history):
            self.log_trial(model, gateway, probe_type, index, outcome)
        self._append(
            model,
            gateway,
            probe_type,
            {
                "index": -1,
                "success": result.success,
                "message": "Probe completed",
                "duration": round(result.duration, 3),
                "result": result.to_dict(include_history=False),
            },
        )

    def _append(self, model: str, gateway: str, probe_type: str, trial: dict[str, Any]) -> None:
        if not self.enabled:
            return
        self._dir.mkdir(parents=True, exist_ok=True)
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "gateway": gateway,
            "probe_type": probe_type,
            "trial": trial,
            "metadata": {
                "version": __version__,
                "execution_id": self.execution_id,
                "patterns_version": PATTERNS_VERSION,
            },
        }
        path = self.log_file(model, probe_type)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        logger.debug("Trial logged to %s", path)
