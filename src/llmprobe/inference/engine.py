"""Probe transport abstraction — protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class TransportError(ConnectionError):
    """The request never got an answer from the API (network, DNS, timeout).

    Unlike a rejected request, this says nothing about the limit being probed,
    so it aborts the search instead of feeding back into it.
    """


@dataclass(frozen=True)
class ProbeReply:
    """Result of one chat completion request made for probing."""

    success: bool
    prompt_tokens: int | None = None  # None when the response has no usage block
    completion_tokens: int | None = None
    finish_reason: str = ""
    error_text: str = ""
    content: str = ""
    status_code: int = 0


@dataclass
class GatewayInfo:
    """Metadata about the endpoint being probed."""

    base_url: str = ""
    name: str = ""
    timeout: float = 30.0


class ProbeClient(Protocol):
    """Protocol for the single call the probes need from the API layer."""

    async def probe_once(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 16,
        temperature: float = 0.0,
    ) -> ProbeReply: ...

    def gateway_info(self) -> GatewayInfo: ...
