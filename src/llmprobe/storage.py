"""Estimate persistence — keep the latest probe results per provider and model."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from llmprobe import __version__
from llmprobe.probe.types import ContextWindowResult, MaxOutputResult
from llmprobe.trial_log import sanitize_name

logger = logging.getLogger(__name__)

_CONTEXT_KEY = "context_window"
_MAX_OUTPUT_KEY = "max_output"


def provider_from_url(url: str) -> str:
    """Derive a provider label from a gateway URL.

    >>> provider_from_url("https://api.openai.com/v1")
    'api.openai.com'
    >>> provider_from_url("http://localhost:8000/v1")
    'localhost-8000'
    """
    parsed = urlparse(url if "://" in url else f"http://{url}")
    host = parsed.hostname or "unknown"
    return f"{host}-{parsed.port}" if parsed.port else host


class ResultStorage:
    """Store estimates as ``{provider}-{model}.json`` files.

    Each file has the schema::

        {
            "context_window": {...} | absent,
            "max_output": {...} | absent,
            "estimated_at": "<ISO-8601>",
            "llmprobe_version": "<version>"
        }

    Saving one probe type leaves the other one untouched.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._dir = Path(base_dir).expanduser()

    def path_for(self, provider: str, model: str) -> Path:
        return self._dir / f"{sanitize_name(provider)}-{sanitize_name(model)}.json"

    # ── public API ────────────────────────────────────────────────────

    def save_context_result(self, provider: str, model: str, result: ContextWindowResult) -> Path:
        return self._save(provider, model, _CONTEXT_KEY, result.to_dict(include_history=False))

    def save_max_output_result(self, provider: str, model: str, result: MaxOutputResult) -> Path:
        return self._save(provider, model, _MAX_OUTPUT_KEY, result.to_dict(include_history=False))

    def load_context_result(self, provider: str, model: str) -> dict[str, Any] | None:
        """Return the saved context window estimate, or ``None``."""
        return self._load(provider, model).get(_CONTEXT_KEY)

    def load_max_output_result(self, provider: str, model: str) -> dict[str, Any] | None:
        """Return the saved max output estimate, or ``None``."""
        return self._load(provider, model).get(_MAX_OUTPUT_KEY)

    # ── helpers ────────────────────────────────────────────────────────

    def _load(self, provider: str, model: str) -> dict[str, Any]:
        path = self.path_for(provider, model)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable result file %s: %s", path.name, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, provider: str, model: str, key: str, payload: dict[str, Any]) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(provider, model)

        data = self._load(provider, model)
        data[key] = payload
        data["estimated_at"] = datetime.now(timezone.utc).isoformat()
        data["llmprobe_version"] = __version__

        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        logger.info("Saved %s estimate to %s", key, path)
        return path
