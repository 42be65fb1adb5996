import logging
import time
from typing import Dict, Any, List, AsyncIterator, Optional, Union

from openai import AsyncAzureOpenAI, AsyncOpenAI

from .base import BaseLLMProvider, ProviderCapabilities
from ..config import AzureOpenAIConfig, OpenAIConfig
from ..errors import SerializationError
from ..types import (
    ChunkDelta, CompletionChunk, CompletionRequest, CompletionResponse, Message, ToolCall
)
from ..utils import message_text, normalize_tool_choice

log = logging.getLogger(__name__)

# Sampling and output fields copied to the wire body when set.
PASSTHROUGH_FIELDS = (
    "temperature",
    "top_p",
    "max_tokens",
    "stop",
    "n",
    "presence_penalty",
    "frequency_penalty",
    "seed",
    "user",
    "response_format",
    "logprobs",
)

# Per-provider capability presets; anything not listed gets the defaults.
PROVIDER_CAPABILITIES = {
    "deepseek": ProviderCapabilities(vision=False),
}


class OpenAIProvider(BaseLLMProvider):
    """
    Provider for OpenAI-compatible Chat Completions APIs (OpenAI, Azure OpenAI,
    Gemini's OpenAI endpoint, DeepSeek).

    The canonical model is the Chat Completions shape, so translation is
    mostly a filtered copy.
    """

    def __init__(
        self,
        config: Union[OpenAIConfig, AzureOpenAIConfig],
        *,
        client: Optional[Union[AsyncOpenAI, AsyncAzureOpenAI]] = None,
        capabilities: Optional[ProviderCapabilities] = None,
    ):
        self.config = config
        self.name = config.provider
        self.capabilities = capabilities or PROVIDER_CAPABILITIES.get(self.name, ProviderCapabilities())
        self.client = client or self._create_client(config)

    @staticmethod
    def _create_client(config: Union[OpenAIConfig, AzureOpenAIConfig]) -> Union[AsyncOpenAI, AsyncAzureOpenAI]:
        if isinstance(config, AzureOpenAIConfig):
            return AsyncAzureOpenAI(
                api_key=config.api_key,
                azure_endpoint=config.azure_endpoint,
                api_version=config.api_version,
                timeout=config.timeout,
            )
        return AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            organization=config.organization,
            timeout=config.timeout,
        )

    def resolve_model(self, request: CompletionRequest) -> str:
        model = request.get("model")
        if not model and isinstance(self.config, AzureOpenAIConfig):
            model = self.config.deployment_id
        if not model:
            raise SerializationError("A model is required", provider=self.name)
        return model

    # =========================================================================
    # Translation
    # =========================================================================

    def to_wire_request(self, request: CompletionRequest) -> Dict[str, Any]:
        """
        Build the Chat Completions request body.

        Roles map 1:1, tool-call ids and `tool_call_id` are kept, image parts
        keep their `detail`. A `tool_choice` of "auto" or "none" without tools
        is dropped; forced choices were rejected by `check_request`.

        Args:
            request (CompletionRequest): Canonical request.

        Returns:
            Dict[str, Any]: JSON-ready body for POST /chat/completions.
        """
        self.check_request(request)

        body: Dict[str, Any] = {
            "model": self.resolve_model(request),
            "messages": [self._convert_message(m) for m in request["messages"]],
        }
        body.update({k: request[k] for k in PASSTHROUGH_FIELDS if request.get(k) is not None})

        tools = request.get("tools")
        if tools:
            body["tools"] = tools
            choice = normalize_tool_choice(request.get("tool_choice"))
            if choice is not None:
                body["tool_choice"] = choice
            if request.get("parallel_tool_calls") is not None:
                body["parallel_tool_calls"] = request["parallel_tool_calls"]

        if request.get("stream"):
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _convert_message(msg: Message) -> Dict[str, Any]:
        """
        Copy a canonical message into its wire form.

        Handles:
        - Tool results (role "tool" with `tool_call_id`).
        - Assistant messages with tool calls (content may be null).
        - Multimodal content (text + image parts).
        """
        role = msg.get("role", "user")
        content = msg.get("content")
        converted: Dict[str, Any] = {"role": role}

        if role == "tool":
            converted["tool_call_id"] = msg.get("tool_call_id", "")
            converted["content"] = message_text(msg)
            return converted

        if isinstance(content, list):
            parts = []
            for part in content:
                if part.get("type") == "text":
                    parts.append({"type": "text", "text": part.get("text", "")})
                elif part.get("type") == "image_url":
                    image_url = part.get("image_url", {})
                    wire_url = {"url": image_url.get("url", "")}
                    if image_url.get("detail"):
                        wire_url["detail"] = image_url["detail"]
                    parts.append({"type": "image_url", "image_url": wire_url})
            converted["content"] = parts
        else:
            converted["content"] = content

        if role == "assistant" and msg.get("tool_calls"):
            converted["tool_calls"] = [
                {
                    "id": tc.get("id"),
                    "type": "function",
                    "function": {
                        "name": tc["function"]["name"],
                        "arguments": tc["function"].get("arguments") or "{}",
                    },
                }
                for tc in msg["tool_calls"]
            ]
        elif converted["content"] is None:
            converted["content"] = ""

        if msg.get("name"):
            converted["name"] = msg["name"]
        return converted

    def from_wire_response(self, payload: Dict[str, Any]) -> CompletionResponse:
        """
        Translate a chat.completion body into a canonical response.

        Missing usage yields zero counts.
        """
        choices = payload.get("choices")
        if not isinstance(choices, list):
            raise SerializationError(
                "Response has no choices", provider=self.name, model=payload.get("model"), raw_error=str(payload)[:500]
            )

        canonical_choices = []
        for position, choice in enumerate(choices):
            message = choice.get("message") or {}
            out: Message = {"role": "assistant", "content": message.get("content")}
            tool_calls = self._parse_tool_calls(message.get("tool_calls"))
            if tool_calls:
                out["tool_calls"] = tool_calls
            canonical_choices.append({
                "index": choice.get("index", position),
                "message": out,
                "finish_reason": choice.get("finish_reason"),
            })

        usage = payload.get("usage") or {}
        return {
            "id": payload.get("id", ""),
            "object": "chat.completion",
            "created": payload.get("created") or int(time.time()),
            "model": payload.get("model", ""),
            "provider": self.name,
            "choices": canonical_choices,
            "usage": self.normalize_usage(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
        }

    @staticmethod
    def _parse_tool_calls(raw_calls: Optional[List[Dict[str, Any]]]) -> List[ToolCall]:
        """
        Copy tool calls from a response message.

        Arguments stay raw JSON text; parsing is left to the caller.
        """
        tool_calls = []
        for tc in raw_calls or []:
            function = tc.get("function") or {}
            tool_calls.append({
                "id": tc.get("id"),
                "type": "function",
                "function": {
                    "name": function.get("name"),
                    "arguments": function.get("arguments") or "",
                },
            })
        return tool_calls

    def from_wire_stream_event(self, event: Dict[str, Any], model: Optional[str] = None) -> List[CompletionChunk]:
        """
        Translate one chat.completion.chunk into at most one canonical chunk.

        Events carrying neither choices nor usage produce nothing.
        """
        choices = event.get("choices") or []
        usage = event.get("usage")
        if not choices and not usage:
            return []

        chunk_choices = []
        for position, choice in enumerate(choices):
            raw_delta = choice.get("delta") or {}
            delta: ChunkDelta = {}
            if raw_delta.get("role"):
                delta["role"] = raw_delta["role"]
            if raw_delta.get("content") is not None:
                delta["content"] = raw_delta["content"]
            if raw_delta.get("tool_calls"):
                delta["tool_calls"] = [self._tool_call_delta(tc) for tc in raw_delta["tool_calls"]]
            chunk_choices.append({
                "index": choice.get("index", position),
                "delta": delta,
                "finish_reason": choice.get("finish_reason"),
            })

        chunk: CompletionChunk = {
            "id": event.get("id", ""),
            "object": "chat.completion.chunk",
            "created": event.get("created") or int(time.time()),
            "model": event.get("model") or model or "",
            "choices": chunk_choices,
        }
        if usage:
            chunk["usage"] = self.normalize_usage(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            )
        return [chunk]

    @staticmethod
    def _tool_call_delta(raw: Dict[str, Any]) -> ToolCall:
        function = raw.get("function") or {}
        delta: ToolCall = {
            "index": raw.get("index", 0),
            "type": "function",
            "function": {
                "name": function.get("name"),
                "arguments": function.get("arguments") or "",
            },
        }
        if raw.get("id"):
            delta["id"] = raw["id"]
        return delta

    # =========================================================================
    # Transport
    # =========================================================================

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send a chat request using the OpenAI-compatible API.

        Args:
            request (CompletionRequest): Canonical request.

        Returns:
            CompletionResponse: Canonical response.
        """
        model = self.resolve_model(request)
        body = self.to_wire_request({**request, "stream": False})

        start = time.perf_counter()
        try:
            resp = await self.client.chat.completions.create(**body)
            result = self.from_wire_response(resp.model_dump())
        except Exception as e:
            raise self.wrap_error(e, model)
        latency_ms = (time.perf_counter() - start) * 1000.0

        log.debug("%s chat completed in %.0f ms (model=%s)", self.name, latency_ms, model)
        return result

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Stream a chat response using the OpenAI-compatible API.

        Usage is requested on the final chunk via `stream_options`.

        Yields:
            CompletionChunk: One canonical chunk per SSE event that carries data.
        """
        model = self.resolve_model(request)
        body = self.to_wire_request({**request, "stream": True})

        start = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(**body)
            async with response:
                async for event in response:
                    for chunk in self.from_wire_stream_event(event.model_dump(), model):
                        yield chunk
        except Exception as e:
            raise self.wrap_error(e, model)

        log.debug("%s stream finished in %.0f ms (model=%s)", self.name, (time.perf_counter() - start) * 1000.0, model)

    async def get_models(self) -> List[str]:
        """
        Get list of available models from the provider API.

        Returns:
            List[str]: List of model ids.
        """
        try:
            models = await self.client.models.list()
            return [m.id for m in models.data]
        except Exception as e:
            raise self.wrap_error(e, None)

