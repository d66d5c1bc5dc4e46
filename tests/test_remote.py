"""Tests for the remote OpenAI-compatible probe client."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import httpx
import pytest

from llmprobe.inference.engine import TransportError
from llmprobe.inference.remote import RemoteProbeClient, normalize_base_url

MESSAGES = [{"role": "user", "content": "hello"}]


def _client(response=None, side_effect=None, **kwargs) -> RemoteProbeClient:
    client = RemoteProbeClient("https://gateway.example.com/v1", **kwargs)
    client.client.post = AsyncMock(return_value=response, side_effect=side_effect)
    return client


def _ok(content: str = "hi", finish_reason: str = "stop", usage: dict | None = None) -> httpx.Response:
    body = {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
    }
    if usage is not None:
        body["usage"] = usage
    return httpx.Response(200, json=body)


# ─── normalize_base_url ─────────────────────────────────────────────────────


class TestNormalizeBaseUrl:
    def test_keeps_v1_suffix(self):
        assert normalize_base_url("http://localhost:8000/v1") == "http://localhost:8000/v1"

    def test_strips_trailing_slash(self):
        assert normalize_base_url("https://gw.example.com/v1/") == "https://gw.example.com/v1"

    def test_adds_scheme(self):
        assert normalize_base_url("localhost:8000/v1") == "http://localhost:8000/v1"

    def test_strips_whitespace(self):
        assert normalize_base_url("  https://gw.example.com  ") == "https://gw.example.com"


# ─── request ────────────────────────────────────────────────────────────────


class TestRequest:
    async def test_posts_chat_completion(self):
        client = _client(_ok(usage={"prompt_tokens": 5, "completion_tokens": 1}), api_key="sk-test")
        await client.probe_once("my-model", MESSAGES, max_tokens=32)
        args, kwargs = client.client.post.call_args
        assert args[0] == "https://gateway.example.com/v1/chat/completions"
        assert kwargs["json"] == {
            "model": "my-model",
            "messages": MESSAGES,
            "temperature": 0.0,
            "max_tokens": 32,
            "stream": False,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    async def test_no_auth_header_without_key(self):
        client = _client(_ok(usage={"prompt_tokens": 5, "completion_tokens": 1}))
        await client.probe_once("m", MESSAGES)
        _, kwargs = client.client.post.call_args
        assert "Authorization" not in kwargs["headers"]

    def test_warns_on_plaintext_key(self, caplog):
        with caplog.at_level(logging.WARNING, logger="llmprobe.inference.remote"):
            RemoteProbeClient("http://gateway.example.com/v1", api_key="sk-test")
        assert "plaintext" in caplog.text

    def test_no_warning_for_localhost(self, caplog):
        with caplog.at_level(logging.WARNING, logger="llmprobe.inference.remote"):
            RemoteProbeClient("http://localhost:8000/v1", api_key="sk-test")
        assert "plaintext" not in caplog.text

    def test_gateway_info(self):
        client = RemoteProbeClient("gw.example.com/v1/", name="corp", timeout=12.0)
        info = client.gateway_info()
        assert info.base_url == "http://gw.example.com/v1"
        assert info.name == "corp"
        assert info.timeout == 12.0


# ─── response parsing ───────────────────────────────────────────────────────


class TestResponse:
    async def test_success_with_usage(self):
        client = _client(_ok("hello", usage={"prompt_tokens": 4096, "completion_tokens": 3}))
        reply = await client.probe_once("m", MESSAGES)
        assert reply.success is True
        assert reply.prompt_tokens == 4096
        assert reply.completion_tokens == 3
        assert reply.finish_reason == "stop"
        assert reply.content == "hello"
        assert reply.status_code == 200

    async def test_success_without_usage(self):
        reply = await _client(_ok()).probe_once("m", MESSAGES)
        assert reply.success is True
        assert reply.prompt_tokens is None
        assert reply.completion_tokens is None

    async def test_length_finish_reason(self):
        reply = await _client(
            _ok(finish_reason="length", usage={"prompt_tokens": 10, "completion_tokens": 64})
        ).probe_once("m", MESSAGES)
        assert reply.success is True
        assert reply.finish_reason == "length"

    async def test_think_tags_stripped(self):
        reply = await _client(_ok("<think>hmm</think>青色です")).probe_once("m", MESSAGES)
        assert reply.content == "青色です"

    async def test_openai_error_body(self):
        response = httpx.Response(
            400,
            json={
                "error": {
                    "message": "This model's maximum context length is 8192 tokens.",
                    "type": "invalid_request_error",
                }
            },
        )
        reply = await _client(response).probe_once("m", MESSAGES)
        assert reply.success is False
        assert reply.status_code == 400
        assert reply.error_text == "This model's maximum context length is 8192 tokens."

    async def test_detail_error_body(self):
        response = httpx.Response(422, json={"detail": "max_tokens must be <= 4096"})
        reply = await _client(response).probe_once("m", MESSAGES)
        assert reply.error_text == "max_tokens must be <= 4096"

    async def test_plain_text_error_body(self):
        response = httpx.Response(502, text="Bad Gateway")
        reply = await _client(response).probe_once("m", MESSAGES)
        assert reply.success is False
        assert reply.status_code == 502
        assert reply.error_text == "Bad Gateway"

    async def test_rate_limit_is_negative_reply(self):
        response = httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})
        reply = await _client(response).probe_once("m", MESSAGES)
        assert reply.success is False
        assert reply.status_code == 429

    async def test_error_object_with_200(self):
        response = httpx.Response(200, json={"error": "prompt tokens must be less than 4096"})
        reply = await _client(response).probe_once("m", MESSAGES)
        assert reply.success is False
        assert reply.error_text == "prompt tokens must be less than 4096"

    async def test_invalid_json_with_200(self):
        reply = await _client(httpx.Response(200, text="<html>")).probe_once("m", MESSAGES)
        assert reply.success is False
        assert reply.error_text.startswith("Invalid JSON in response")

    async def test_long_error_truncated(self):
        response = httpx.Response(400, text="x" * 5000)
        reply = await _client(response).probe_once("m", MESSAGES)
        assert len(reply.error_text) == 2000


# ─── transport errors ───────────────────────────────────────────────────────


class TestTransportErrors:
    async def test_connect_error(self):
        client = _client(side_effect=httpx.ConnectError("connection refused"))
        with pytest.raises(TransportError, match="Cannot connect"):
            await client.probe_once("m", MESSAGES)

    async def test_timeout(self):
        client = _client(side_effect=httpx.ReadTimeout("read timed out"), timeout=5.0)
        with pytest.raises(TransportError, match="timed out after 5s"):
            await client.probe_once("m", MESSAGES)

    async def test_other_transport_error(self):
        client = _client(side_effect=httpx.RemoteProtocolError("server disconnected"))
        with pytest.raises(TransportError, match="server disconnected"):
            await client.probe_once("m", MESSAGES)

    async def test_transport_error_is_connection_error(self):
        client = _client(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ConnectionError):
            await client.probe_once("m", MESSAGES)

    async def test_close(self):
        client = RemoteProbeClient("https://gateway.example.com/v1")
        await client.close()
        assert client.client.is_closed
