"""Remote probe client — single, unretried requests to an OpenAI-compatible API."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlparse

import httpx

from llmprobe.inference.engine import GatewayInfo, ProbeReply, TransportError

logger = logging.getLogger(__name__)

# Longest error body kept on a reply; vendor messages carrying limits are short.
_MAX_ERROR_TEXT = 2000


def normalize_base_url(url: str) -> str:
    """Add a scheme if missing and strip the trailing slash.

    >>> normalize_base_url("localhost:8000/v1/")
    'http://localhost:8000/v1'
    >>> normalize_base_url("https://gateway.example.com/v1")
    'https://gateway.example.com/v1'
    """
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


class RemoteProbeClient:
    """Probe transport over a remote OpenAI-compatible chat completions API.

    Exactly one HTTP request per ``probe_once`` call. A request the server
    answered (any status) becomes a ``ProbeReply``; a request that never got an
    answer raises ``TransportError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        name: str = "",
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.api_key = api_key
        self.timeout = timeout
        self.name = name
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 30.0)),
        )
        logger.info("Probe client: %s (timeout %.0fs)", self.base_url, timeout)

        if api_key:
            parsed = urlparse(self.base_url)
            if parsed.scheme == "http" and parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
                logger.warning(
                    "API key configured over HTTP (not HTTPS) to %s — "
                    "credentials will be sent in plaintext.",
                    self.base_url,
                )

    async def probe_once(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 16,
        temperature: float = 0.0,
    ) -> ProbeReply:
        """Send one chat completion request and classify the answer."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.base_url}/chat/completions"
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.ConnectError as e:
            raise TransportError(
                f"Cannot connect to {self.base_url} — is the gateway reachable?"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request to {self.base_url} timed out after {self.timeout:.0f}s "
                f"({type(e).__name__})."
            ) from e
        except httpx.TransportError as e:
            raise TransportError(f"Request to {self.base_url} failed: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> ProbeReply:
        """Turn an HTTP response into a ProbeReply without raising."""
        status = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = None

        if status >= 400:
            return ProbeReply(
                success=False,
                error_text=_error_text(data, response.text),
                status_code=status,
            )
        if not isinstance(data, dict):
            return ProbeReply(
                success=False,
                error_text=f"Invalid JSON in response: {response.text[:200]}",
                status_code=status,
            )
        # Some gateways answer 200 with an error object instead of choices
        if data.get("error"):
            return ProbeReply(
                success=False,
                error_text=_error_text(data, response.text),
                status_code=status,
            )

        choices = data.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""
        # Reasoning models wrap their scratchpad in <think> tags
        content = re.sub(r"<think>.*?</think>", "", content, flags=re.DOTALL).strip()

        usage = data.get("usage")
        prompt_tokens = completion_tokens = None
        if isinstance(usage, dict):
            prompt_tokens = usage.get("prompt_tokens")
            completion_tokens = usage.get("completion_tokens")

        return ProbeReply(
            success=True,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            finish_reason=choice.get("finish_reason") or "",
            content=content,
            status_code=status,
        )

    def gateway_info(self) -> GatewayInfo:
        return GatewayInfo(base_url=self.base_url, name=self.name, timeout=self.timeout)

    async def close(self) -> None:
        await self.client.aclose()


def _error_text(data: Any, raw: str) -> str:
    """Pull the human-readable message out of an error body."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:_MAX_ERROR_TEXT]
        if isinstance(error, str) and error:
            return error[:_MAX_ERROR_TEXT]
        if data.get("message"):
            return str(data["message"])[:_MAX_ERROR_TEXT]
        if data.get("detail"):
            return str(data["detail"])[:_MAX_ERROR_TEXT]
    return raw[:_MAX_ERROR_TEXT]
