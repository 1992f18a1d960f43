"""OpenAI-compatible chat-completions provider with token streaming."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from quill.config import EndpointConfig, ProviderConfig
from quill.exceptions import LLMError, ProviderConnectError, ProviderStreamError
from quill.logging import get_logger

log = get_logger(__name__)


@dataclass
class Message:
    """A message sent to the provider."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass
class ToolCall:
    """A complete tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMResponse:
    """Non-streaming response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class ToolCallDelta:
    """Fragment of a native tool call, keyed by its index in the response."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamDelta:
    """One increment of a streamed completion."""

    text: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, int] | None = None


@dataclass(frozen=True)
class ResolvedEndpoint:
    base_url: str
    api_key: str
    model: str
    native_tools: bool


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: list[Message],
        params: dict[str, Any] | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: list[Message],
        params: dict[str, Any] | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Open a single-consumer, forward-only delta stream.

        Raises ``ProviderConnectError`` before the first delta when the
        request is refused, and ``ProviderStreamError`` when the transport
        fails after deltas started flowing.
        """
        pass

    def supports_native_tools(self, model: str) -> bool:
        return False

    def count_tokens(self, text: str) -> int:
        """Rough estimate: ~1 token per 4 characters for English."""
        return len(text or "") // 4

    async def close(self) -> None:
        return None


class ChatCompletionsProvider(LLMProvider):
    """Provider speaking the OpenAI chat-completions protocol (OpenRouter, Groq, ...)."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            timeout=config.timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _key_from(explicit: str, env_name: str) -> str:
        return (explicit or "").strip() or str(os.environ.get(env_name, "") if env_name else "").strip()

    def _resolve_endpoint(self, model: str) -> ResolvedEndpoint:
        """Pick the endpoint whose prefix matches the model id."""
        endpoint: EndpointConfig | None = None
        for candidate in self.config.endpoints:
            if candidate.prefix and model.startswith(candidate.prefix):
                endpoint = candidate
                break

        if endpoint is None:
            return ResolvedEndpoint(
                base_url=self.config.base_url.rstrip("/"),
                api_key=self._key_from(self.config.api_key, self.config.api_key_env),
                model=model,
                native_tools=self.config.native_tools,
            )

        actual_model = model[len(endpoint.prefix):] if endpoint.strip_prefix else model
        return ResolvedEndpoint(
            base_url=endpoint.base_url.rstrip("/"),
            api_key=self._key_from(endpoint.api_key, endpoint.api_key_env),
            model=actual_model,
            native_tools=endpoint.native_tools,
        )

    def supports_native_tools(self, model: str) -> bool:
        return self._resolve_endpoint(model).native_tools

    def _headers(self, endpoint: ResolvedEndpoint) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        if self.config.referer:
            headers["HTTP-Referer"] = self.config.referer
        if self.config.title:
            headers["X-Title"] = self.config.title
        return headers

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "tool" and msg.tool_call_id:
                entry["tool_call_id"] = msg.tool_call_id
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        endpoint: ResolvedEndpoint,
        messages: list[Message],
        params: dict[str, Any] | None,
        tools: list[ToolDefinition] | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": endpoint.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
        }
        for key in ("temperature", "max_tokens", "top_p"):
            if params and params.get(key) is not None:
                body[key] = params[key]
        if tools and endpoint.native_tools:
            body["tools"] = self._convert_tools(tools)
            body["tool_choice"] = "auto"
        return body

    async def complete(
        self,
        model: str,
        messages: list[Message],
        params: dict[str, Any] | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Generate a completion without streaming."""
        endpoint = self._resolve_endpoint(model)
        url = f"{endpoint.base_url}/chat/completions"
        body = self._build_body(endpoint, messages, params, tools, stream=False)

        try:
            log.debug("Calling provider", model=model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers(endpoint))
        except httpx.HTTPError as e:
            raise ProviderConnectError(model, None, str(e)) from e

        if not response.is_success:
            raise ProviderConnectError(model, response.status_code, response.text)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Provider response decode error: {e}") from e

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls: list[ToolCall] = []
        for idx, tc in enumerate(message.get("tool_calls") or []):
            function = tc.get("function") or {}
            raw_args = function.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except (json.JSONDecodeError, TypeError, ValueError):
                arguments = {"raw": raw_args}
            tool_calls.append(ToolCall(
                id=str(tc.get("id") or f"call_{idx}"),
                name=str(function.get("name") or ""),
                arguments=arguments,
            ))

        return LLMResponse(
            content=str(message.get("content") or ""),
            tool_calls=tool_calls,
            model=str(data.get("model") or model),
            usage=dict(data.get("usage") or {}),
            finish_reason=choice.get("finish_reason"),
        )

    async def stream(
        self,
        model: str,
        messages: list[Message],
        params: dict[str, Any] | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion as parsed deltas."""
        endpoint = self._resolve_endpoint(model)
        url = f"{endpoint.base_url}/chat/completions"
        body = self._build_body(endpoint, messages, params, tools, stream=True)

        opened = False
        try:
            async with self.client.stream(
                "POST", url, json=body, headers=self._headers(endpoint)
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderConnectError(model, response.status_code, error_text)

                opened = True
                log.debug("Provider stream opened", model=model)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data_str = line[5:].strip()
                    if data_str == "[DONE]":
                        break
                    delta = self._parse_chunk(model, data_str)
                    if delta is not None:
                        yield delta
        except httpx.HTTPError as e:
            if not opened:
                raise ProviderConnectError(model, None, str(e)) from e
            raise ProviderStreamError(model, str(e)) from e

    @staticmethod
    def _tool_deltas(raw: Any) -> list[ToolCallDelta]:
        """Tool-call fragments of one delta; entries of the wrong shape are dropped."""
        deltas: list[ToolCallDelta] = []
        if not isinstance(raw, list):
            return deltas
        for position, tc in enumerate(raw):
            if not isinstance(tc, dict):
                continue
            function = tc.get("function")
            if not isinstance(function, dict):
                function = {}
            try:
                index = int(tc.get("index", position))
            except (TypeError, ValueError):
                index = position
            name = function.get("name")
            arguments = function.get("arguments")
            deltas.append(ToolCallDelta(
                index=index,
                id=tc.get("id") if isinstance(tc.get("id"), str) else None,
                name=name if isinstance(name, str) else None,
                arguments=arguments if isinstance(arguments, str) else "",
            ))
        return deltas

    @classmethod
    def _parse_chunk(cls, model: str, data_str: str) -> StreamDelta | None:
        """Parse one SSE data frame; malformed frames are skipped."""
        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError:
            log.debug("Skipping malformed stream frame", model=model, frame=data_str[:120])
            return None
        if not isinstance(chunk, dict):
            return None

        if chunk.get("error"):
            err = chunk["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise ProviderStreamError(model, str(message)[:300])

        raw_usage = chunk.get("usage")
        usage = None
        if isinstance(raw_usage, dict):
            usage = {k: v for k, v in raw_usage.items() if isinstance(v, int) and not isinstance(v, bool)} or None
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return StreamDelta(usage=usage) if usage else None

        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            log.debug("Skipping stream frame with malformed delta", model=model, frame=data_str[:120])
            delta = {}
        tool_deltas = cls._tool_deltas(delta.get("tool_calls"))

        text = delta.get("content")
        if not isinstance(text, str):
            text = None
        finish_reason = choice.get("finish_reason")
        if not isinstance(finish_reason, str):
            finish_reason = None
        if not text and not tool_deltas and not finish_reason and not usage:
            return None
        return StreamDelta(
            text=text or None,
            tool_calls=tool_deltas,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: ProviderConfig, client: httpx.AsyncClient | None = None) -> LLMProvider:
    """Create the chat-completions provider for a provider config section."""
    return ChatCompletionsProvider(config, client=client)
