"""LLM client: chat completions with tools, and embeddings.

The engines depend on the LLM protocol:

    async def chat(self, messages, tools=None) -> ChatResponse: ...
    async def embed(self, text) -> list[float]: ...

OpenAIClient is the production implementation. It speaks the OpenAI
chat-completions and embeddings wire formats:

    POST /v1/chat/completions  {"model", "messages", "tools"?, "parallel_tool_calls"?}
    POST /v1/embeddings        {"input", "model"}

Tests use StubLLM (defined in conftest.py) instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from aiaday.errors import DecodeError, LLMError

logger = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    role: Role
    content: str


# ---------------------------------------------------------------------------
# Tool declarations
# ---------------------------------------------------------------------------

ParameterKind = Literal["string", "string_enum", "integer", "string_array"]


class ToolParameter(BaseModel):
    name: str
    description: str
    kind: ParameterKind = "string"
    required: bool = True
    enum: list[str] = Field(default_factory=list)

    def schema(self) -> dict[str, Any]:
        if self.kind == "string":
            return {"type": "string", "description": self.description}
        if self.kind == "string_enum":
            return {"type": "string", "description": self.description, "enum": list(self.enum)}
        if self.kind == "integer":
            return {"type": "integer", "description": self.description}
        return {
            "type": "array",
            "description": self.description,
            "items": {"type": "string"},
        }


class ToolDeclaration(BaseModel):
    """A function the model may call, serialised in the provider's tool format."""

    name: str
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.schema() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


class ToolCall(BaseModel):
    name: str
    arguments: dict[str, Any]


# ---------------------------------------------------------------------------
# ChatResponse: accessors over the raw completion body
# ---------------------------------------------------------------------------

class ChatResponse:
    """Wraps a chat-completion response body.

    The body is kept as received; the accessors decode only what they need
    and raise DecodeError when the shape is wrong.
    """

    def __init__(self, data: Any) -> None:
        self.data = data

    def _message(self) -> dict[str, Any]:
        if not isinstance(self.data, dict):
            raise DecodeError("not_object", "response body is not an object")
        choices = self.data.get("choices")
        if choices is None:
            raise DecodeError("missing_field", "choices")
        if not isinstance(choices, list):
            raise DecodeError("not_array", "choices")
        if not choices:
            raise DecodeError("empty_array", "choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise DecodeError("not_object", "choices[0]")
        message = first.get("message")
        if message is None:
            raise DecodeError("missing_field", "choices[0].message")
        if not isinstance(message, dict):
            raise DecodeError("not_object", "choices[0].message")
        return message

    def as_message(self) -> str:
        content = self._message().get("content")
        if content is None:
            raise DecodeError("missing_field", "choices[0].message.content")
        if not isinstance(content, str):
            raise DecodeError("not_string", "choices[0].message.content")
        return content

    def maybe_tool_calls(self) -> list[ToolCall] | None:
        if self._message().get("tool_calls") is None:
            return None
        return self.as_tool_calls()

    def as_tool_calls(self) -> list[ToolCall]:
        raw = self._message().get("tool_calls")
        if raw is None:
            raise DecodeError("missing_field", "choices[0].message.tool_calls")
        if not isinstance(raw, list):
            raise DecodeError("not_array", "choices[0].message.tool_calls")
        return [_decode_tool_call(i, item) for i, item in enumerate(raw)]


def _decode_tool_call(index: int, item: Any) -> ToolCall:
    path = f"tool_calls[{index}]"
    if not isinstance(item, dict):
        raise DecodeError("not_object", path)
    function = item.get("function")
    if function is None:
        raise DecodeError("missing_field", f"{path}.function")
    if not isinstance(function, dict):
        raise DecodeError("not_object", f"{path}.function")

    name = function.get("name")
    if name is None:
        raise DecodeError("missing_field", f"{path}.function.name")
    if not isinstance(name, str):
        raise DecodeError("not_string", f"{path}.function.name")

    raw_args = function.get("arguments")
    if raw_args is None:
        raise DecodeError("missing_field", f"{path}.function.arguments")
    if not isinstance(raw_args, str):
        raise DecodeError("not_string", f"{path}.function.arguments")
    try:
        arguments = json.loads(raw_args) if raw_args.strip() else {}
    except json.JSONDecodeError as e:
        raise DecodeError("unparseable_arguments", f"{path}.function.arguments: {e}") from e
    if not isinstance(arguments, dict):
        raise DecodeError("not_object", f"{path}.function.arguments")

    return ToolCall(name=name, arguments=arguments)


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def chat(
        self, messages: list[ChatMessage], tools: list[ToolDeclaration] | None = None
    ) -> ChatResponse: ...

    async def embed(self, text: str) -> list[float]: ...


# ---------------------------------------------------------------------------
# OpenAIClient: connects to the real provider
# ---------------------------------------------------------------------------

class OpenAIClient:
    """Async HTTP client for the OpenAI chat-completions and embeddings APIs.

    Args:
        api_key:         Bearer token, loaded once at process start.
        base_url:        Provider root, e.g. "https://api.openai.com".
        chat_model:      Model id sent with every chat completion.
        embedding_model: Model id sent with every embedding request.
        timeout:         Per-request HTTP timeout in seconds. Defaults to 60.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        chat_model: str = "gpt-4o-2024-08-06",
        embedding_model: str = "text-embedding-3-small",
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._chat_model = chat_model
        self._embedding_model = embedding_model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_chat_request(
        self, messages: list[ChatMessage], tools: list[ToolDeclaration] | None
    ) -> tuple[str, dict]:
        body: dict[str, Any] = {
            "model": self._chat_model,
            "messages": [m.model_dump() for m in messages],
        }
        if tools:
            body["tools"] = [t.to_json() for t in tools]
            body["parallel_tool_calls"] = False
        return f"{self._base_url}/v1/chat/completions", body

    def _build_embedding_request(self, text: str) -> tuple[str, dict]:
        return f"{self._base_url}/v1/embeddings", {"input": text, "model": self._embedding_model}

    async def _post(self, url: str, body: dict) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM provider at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM provider returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM provider timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request failed: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            raise LLMError(f"LLM provider returned malformed JSON: {e}") from e

    async def chat(
        self, messages: list[ChatMessage], tools: list[ToolDeclaration] | None = None
    ) -> ChatResponse:
        url, body = self._build_chat_request(messages, tools)
        logger.debug(
            "chat completion model=%s messages=%d tools=%d",
            self._chat_model, len(messages), len(tools or []),
        )
        return ChatResponse(await self._post(url, body))

    async def embed(self, text: str) -> list[float]:
        url, body = self._build_embedding_request(text)
        logger.debug("embedding model=%s input_len=%d", self._embedding_model, len(text))
        return _parse_embedding(await self._post(url, body))


def _parse_embedding(data: Any) -> list[float]:
    if not isinstance(data, dict):
        raise DecodeError("not_object", "embedding response body is not an object")
    items = data.get("data")
    if items is None:
        raise DecodeError("missing_field", "data")
    if not isinstance(items, list):
        raise DecodeError("not_array", "data")
    if not items:
        raise DecodeError("empty_array", "data")
    first = items[0]
    if not isinstance(first, dict):
        raise DecodeError("not_object", "data[0]")
    values = first.get("embedding")
    if values is None:
        raise DecodeError("missing_field", "data[0].embedding")
    if not isinstance(values, list):
        raise DecodeError("not_array", "data[0].embedding")
    out: list[float] = []
    for i, v in enumerate(values):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise DecodeError("not_number", f"data[0].embedding[{i}]")
        out.append(float(v))
    return out
