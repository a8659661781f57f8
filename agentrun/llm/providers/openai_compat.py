"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.

HTTP failures are mapped onto the engine's provider errors; retries are
left to the orchestrator's ``RetryPolicy``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from agentrun.errors import ProviderError, ProviderRateLimited, ProviderTimeout
from agentrun.llm.providers.base import CallOptions, Provider
from agentrun.llm.types import (
    Message,
    RawToolDelta,
    StreamChunk,
    ToolCall,
    Usage,
    assistant_message,
    new_tool_call_id,
)

logger = logging.getLogger(__name__)


class OpenAICompatProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"`` or
        ``"http://localhost:8080/v1"``.
    model:
        Default model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    timeout:
        HTTP request timeout in seconds.
    temperature, max_tokens:
        Defaults applied when the call options leave them unset.
    client:
        Optional pre-built ``httpx.AsyncClient``.  A client created by the
        provider is closed by ``dispose``; an injected one is not.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str = "",
        timeout: float = 120.0,
        temperature: float | None = None,
        max_tokens: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = client
        self._owns_client = client is None

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "openai-compat"

    def validate_config(self) -> bool:
        return bool(self._url) and bool(self._model)

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        options: CallOptions | None = None,
    ) -> Message:
        body = self._build_body(messages, tools, options, stream=False)
        client = self._get_client()
        try:
            resp = await client.post(
                f"{self._url}/chat/completions",
                json=body,
                headers=self._build_headers(),
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.name, self._timeout) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Transport error: {exc}", provider=self.name, transient=True, cause=exc
            ) from exc

        self._raise_for_status(resp.status_code, resp.text, resp.headers)
        return self._parse_non_stream(resp.json())

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        options: CallOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        body = self._build_body(messages, tools, options, stream=True)
        client = self._get_client()
        try:
            async with client.stream(
                "POST",
                f"{self._url}/chat/completions",
                json=body,
                headers=self._build_headers(),
            ) as response:
                if response.status_code >= 400:
                    # Read the body so the connection is released.
                    raw = await response.aread()
                    self._raise_for_status(
                        response.status_code,
                        raw.decode("utf-8", errors="replace"),
                        response.headers,
                    )
                async for chunk in self._parse_sse_stream(response):
                    yield chunk
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.name, self._timeout) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Transport error: {exc}", provider=self.name, transient=True, cause=exc
            ) from exc

    async def dispose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict] | None,
        options: CallOptions | None,
        stream: bool,
    ) -> dict:
        wire_messages = []
        for msg in messages:
            m: dict = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                m["content"] = msg.content or None
                m["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments or "{}",
                        },
                    }
                    for tc in msg.tool_calls
                ]
            if msg.tool_call_id:
                m["tool_call_id"] = msg.tool_call_id
            wire_messages.append(m)

        opts = options or CallOptions()
        body: dict = {
            "model": opts.model or self._model,
            "messages": wire_messages,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        temperature = opts.temperature if opts.temperature is not None else self._temperature
        if temperature is not None:
            body["temperature"] = temperature
        max_tokens = opts.max_tokens if opts.max_tokens is not None else self._max_tokens
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t.get("parameters", {}),
                    },
                }
                for t in tools
            ]
            body["tool_choice"] = "auto"
        body.update(opts.extra)
        logger.debug(
            "REQUEST: model=%s tools=%d messages=%d stream=%s",
            body["model"],
            len(tools) if tools else 0,
            len(wire_messages),
            stream,
        )
        return body

    def _raise_for_status(
        self, status_code: int, text: str, headers: httpx.Headers
    ) -> None:
        if status_code < 400:
            return
        if status_code == 429:
            retry_after: float | None = None
            raw = headers.get("retry-after")
            if raw:
                try:
                    retry_after = float(raw)
                except ValueError:
                    retry_after = None
            raise ProviderRateLimited(self.name, retry_after)
        raise ProviderError(
            f"HTTP {status_code}: {text[:200]}",
            provider=self.name,
            transient=status_code >= 500,
            status_code=status_code,
        )

    # ------------------------------------------------------------------
    # Streaming response
    # ------------------------------------------------------------------

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamChunk]:
        """
        Parse Server-Sent Events from the response byte stream.

        Each SSE event has the form::

            data: {json}\\n\\n

        The sentinel ``data: [DONE]`` terminates the stream.  The completion
        marker is emitted at ``[DONE]`` so a trailing usage-only event is
        still picked up.  A stream that ends without ``[DONE]`` simply stops;
        the aggregator reports it as incomplete.
        """
        finish_reason: str | None = None
        usage: Usage | None = None
        buffer = ""
        async for raw_bytes in response.aiter_bytes():
            buffer += raw_bytes.decode("utf-8", errors="replace")

            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                line = line.rstrip("\r")

                if not line or not line.startswith("data:"):
                    continue

                data_str = line[len("data:"):].strip()
                if data_str == "[DONE]":
                    yield StreamChunk(done=True, finish_reason=finish_reason, usage=usage)
                    return

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning("Failed to parse SSE data: %s", data_str[:200])
                    continue

                if data.get("usage"):
                    usage = _parse_usage(data["usage"])

                chunk, reason = self._sse_data_to_chunk(data)
                if reason is not None:
                    finish_reason = reason
                if chunk is not None:
                    yield chunk

    def _sse_data_to_chunk(self, data: dict) -> tuple[StreamChunk | None, str | None]:
        """Convert a parsed SSE ``data`` payload into a ``StreamChunk``."""
        choices = data.get("choices")
        if not choices:
            return None, None

        choice = choices[0]
        delta = choice.get("delta", {})
        finish_reason = choice.get("finish_reason")

        text_delta = delta.get("content") or ""

        tool_deltas: list[RawToolDelta] | None = None
        raw_tcs = delta.get("tool_calls")
        if raw_tcs:
            tool_deltas = []
            for raw_tc in raw_tcs:
                func = raw_tc.get("function", {})
                tool_deltas.append(
                    RawToolDelta(
                        call_index=raw_tc.get("index", 0),
                        id=raw_tc.get("id"),
                        name_delta=func.get("name", "") or "",
                        args_delta=func.get("arguments", "") or "",
                    )
                )

        if not text_delta and not tool_deltas:
            return None, finish_reason
        return StreamChunk(delta=text_delta, tool_deltas=tool_deltas), finish_reason

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def _parse_non_stream(self, data: dict) -> Message:
        """Convert a non-streaming response into an assistant ``Message``."""
        choices = data.get("choices", [])
        usage = _parse_usage(data["usage"]) if data.get("usage") else None
        if not choices:
            return assistant_message(usage=usage)

        choice = choices[0]
        message = choice.get("message", {})
        content = message.get("content") or ""

        calls: list[ToolCall] = []
        for raw_tc in message.get("tool_calls") or []:
            func = raw_tc.get("function", {})
            calls.append(
                ToolCall(
                    id=raw_tc.get("id") or new_tool_call_id(),
                    name=func.get("name", ""),
                    arguments=func.get("arguments", "") or "",
                )
            )

        metadata: dict = {}
        if choice.get("finish_reason"):
            metadata["finish_reason"] = choice["finish_reason"]
        return assistant_message(
            content=content, tool_calls=calls, usage=usage, metadata=metadata
        )


def _parse_usage(raw: dict) -> Usage:
    prompt = int(raw.get("prompt_tokens", 0) or 0)
    completion = int(raw.get("completion_tokens", 0) or 0)
    total = int(raw.get("total_tokens", 0) or (prompt + completion))
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
