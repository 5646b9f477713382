"""Model client boundary and the Ollama provider (direct HTTP calls)."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator

import httpx

from claw_lite.exceptions import LLMAPIError, LLMError, NoResponseError
from claw_lite.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass
class Message:
    """A message in a run transcript."""

    role: str  # "system", "user", "assistant"
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    token_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_call(self) -> bool:
        return bool(self.metadata.get("has_tool_call"))


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class StreamDelta:
    """One streamed chunk: a content fragment and/or structured tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse | None:
        pass

    @abstractmethod
    def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamDelta]:
        pass


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Normalize tool-call arguments that may arrive as a JSON string."""
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return {"input": text}
        return parsed if isinstance(parsed, dict) else {"input": parsed}
    return {"input": raw}


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2:latest",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message], system_prompt: str = "") -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in messages:
            if isinstance(msg, dict):
                role = msg.get("role")
                content = msg.get("content")
            else:
                role = getattr(msg, "role", None)
                content = getattr(msg, "content", None)
            if role in ("system", "user", "assistant"):
                result.append({"role": role, "content": content or ""})

        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        result = []
        for tool in tools:
            if isinstance(tool, dict):
                name = tool.get("name")
                description = tool.get("description", "")
                parameters = tool.get("parameters", {})
            else:
                name = getattr(tool, "name", None)
                description = getattr(tool, "description", "") or ""
                parameters = getattr(tool, "parameters", None) or {}

            if name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": description or "",
                        "parameters": parameters or {},
                    },
                })
        return result

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]] | None) -> list[ToolCall]:
        tool_calls: list[ToolCall] = []
        for idx, tc in enumerate(raw_calls or []):
            function = tc.get("function", {}) or {}
            name = str(function.get("name", "")).strip()
            if not name:
                continue
            tool_calls.append(ToolCall(
                id=str(tc.get("id") or f"ollama_call_{idx}"),
                name=name,
                arguments=parse_tool_arguments(function.get("arguments")),
            ))
        return tool_calls

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        system_prompt: str,
        model: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": stream,
            "options": options,
        }
        ollama_tools = self._convert_tools(tools) if tools else None
        if ollama_tools:
            body["tools"] = ollama_tools
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, system_prompt, model, stream=False)

        try:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))

            response = await self.client.post(
                url,
                json=body,
                headers=self._headers(),
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )

            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            message = data.get("message")
            if not isinstance(message, dict):
                raise NoResponseError()

            usage = {
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
                "total_tokens": (data.get("prompt_eval_count", 0) + data.get("eval_count", 0)),
            }

            return LLMResponse(
                content=message.get("content", "") or "",
                tool_calls=self._parse_tool_calls(message.get("tool_calls")),
                model=body["model"],
                usage=usage,
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion as content deltas and structured tool calls."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, system_prompt, model, stream=True)

        try:
            async with self.client.stream(
                "POST",
                url,
                json=body,
                headers=self._headers(),
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if chunk.get("error"):
                        raise LLMAPIError(f"Ollama stream error: {chunk['error']}")
                    message = chunk.get("message", {}) or {}
                    content = message.get("content") or ""
                    tool_calls = self._parse_tool_calls(message.get("tool_calls"))
                    if content or tool_calls:
                        yield StreamDelta(content=content, tool_calls=tool_calls)
                    if chunk.get("done"):
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2:latest",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only "ollama" is built in)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")

