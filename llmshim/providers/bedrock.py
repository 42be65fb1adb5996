import asyncio
import json
import logging
import time
import uuid
from typing import Dict, Any, List, AsyncIterator, Optional, Tuple

import boto3
from anthropic import AsyncAnthropicBedrock
from botocore.config import Config as BotoConfig

from .base import BaseLLMProvider, ProviderCapabilities
from .bedrock_models import BedrockModelFamily, model_family
from ..config import BedrockConfig
from ..errors import SerializationError, UnsupportedCapabilityError, UpstreamError
from ..images import is_data_uri, parse_data_uri
from ..types import CompletionChunk, CompletionRequest, CompletionResponse, Message, Tool, ToolCall
from ..utils import message_text, normalize_tool_choice

log = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_MAX_TOKENS = 4096
MAX_IMAGE_DIMENSION = 8000

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

# Bedrock has no model listing endpoint for InvokeModel.
KNOWN_MODELS = [
    "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "anthropic.claude-3-5-haiku-20241022-v1:0",
    "anthropic.claude-3-opus-20240229-v1:0",
    "anthropic.claude-3-sonnet-20240229-v1:0",
    "anthropic.claude-3-haiku-20240307-v1:0",
    "meta.llama2-13b-chat-v1",
    "meta.llama2-70b-chat-v1",
    "amazon.titan-text-express-v1",
    "amazon.titan-text-lite-v1",
    "cohere.command-text-v14",
    "cohere.command-r-v1:0",
    "ai21.j2-ultra-v1",
]

CLAUDE_CAPABILITIES = ProviderCapabilities(
    tool_call_attribution="latest",
    requires_embedded_images=True,
    max_image_dimension=MAX_IMAGE_DIMENSION,
)

# Titan, Llama, Cohere and Jurassic take a text prompt only.
PROMPT_MODEL_CAPABILITIES = ProviderCapabilities(
    tools=False,
    vision=False,
    forced_tool_choice=False,
    required_tool_choice=False,
    tool_call_attribution="latest",
)


class BedrockProvider(BaseLLMProvider):
    """
    Provider for models on AWS Bedrock.

    Claude models are called with the Claude Messages body through the
    Anthropic SDK's Bedrock client. Titan, Llama, Cohere and Jurassic models
    are called through boto3's `bedrock-runtime` InvokeModel with the body
    their family expects (see `bedrock_models`). Static credentials from the
    config are used when present, otherwise the default AWS credential chain.
    """

    name = "bedrock"
    capabilities = CLAUDE_CAPABILITIES

    def __init__(
        self,
        config: BedrockConfig,
        *,
        client: Optional[AsyncAnthropicBedrock] = None,
        runtime_client: Optional[Any] = None,
    ):
        self.config = config
        self.client = client or AsyncAnthropicBedrock(
            aws_region=config.region,
            aws_access_key=config.access_key_id,
            aws_secret_key=config.secret_access_key,
            aws_session_token=config.session_token,
            timeout=config.timeout,
        )
        self._runtime_client = runtime_client
        self.family = model_family(config.model_id)
        if self.family is not None:
            self.capabilities = PROMPT_MODEL_CAPABILITIES

    @property
    def runtime(self) -> Any:
        """
        boto3 `bedrock-runtime` client, created on first use.
        """
        if self._runtime_client is None:
            self._runtime_client = boto3.client(
                "bedrock-runtime",
                region_name=self.config.region,
                aws_access_key_id=self.config.access_key_id,
                aws_secret_access_key=self.config.secret_access_key,
                aws_session_token=self.config.session_token,
                config=BotoConfig(read_timeout=self.config.timeout),
            )
        return self._runtime_client

    def resolve_model(self, request: CompletionRequest) -> str:
        return request.get("model") or self.config.model_id

    def check_request(self, request: CompletionRequest) -> None:
        # Errors name the configured model when the request names none.
        super().check_request({**request, "model": self.resolve_model(request)})

    # =========================================================================
    # Translation
    # =========================================================================

    def to_wire_request(self, request: CompletionRequest) -> Dict[str, Any]:
        """
        Build the InvokeModel body for the request's model.

        For Claude this handles:
        - System prompt extraction (sent as a separate `system` field).
        - Assistant tool calls as `tool_use` blocks, tool results as
          `tool_result` blocks with consecutive results merged into one user turn.
        - Embedded images as base64 `image` blocks.
        - Tool definitions (`input_schema`) and tool choice.

        Titan, Llama, Cohere and Jurassic models get their family's
        prompt-based body instead.

        `user` has no Bedrock equivalent and is not forwarded.

        Raises:
            UnsupportedCapabilityError: For `n > 1`, `seed`, `response_format`,
                `logprobs`, out-of-range temperature/top_p, penalties the model
                does not take, remote image URLs (Claude), or tools and images
                (prompt-based models).
        """
        self.check_request(request)
        model = self.resolve_model(request)
        family = model_family(model)
        if family is not None:
            return self._family_body(family, request, model)

        self._check_sampling(request, model)

        system_text, messages = self._convert_messages(request["messages"], model)
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": request.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_text:
            body["system"] = system_text
        for key in ("temperature", "top_p"):
            if request.get(key) is not None:
                body[key] = request[key]

        stop = request.get("stop")
        if stop:
            body["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)

        tools = request.get("tools")
        if tools:
            body["tools"] = self._convert_tools(tools)
            tool_choice = self._convert_tool_choice(request)
            if tool_choice:
                body["tool_choice"] = tool_choice

        if request.get("user"):
            log.debug("Dropping 'user' field for Bedrock request (model=%s)", model)
        return body

    def _check_sampling(
        self,
        request: CompletionRequest,
        model: str,
        family: Optional[BedrockModelFamily] = None,
    ) -> None:
        label = family.name.capitalize() if family else "Claude"
        max_temperature = family.max_temperature if family else 1.0
        keys = ["seed", "response_format"]
        if not (family and family.accepts_penalties):
            keys[:0] = ["presence_penalty", "frequency_penalty"]

        unsupported = []
        if (request.get("n") or 1) > 1:
            unsupported.append("n > 1")
        for key in keys:
            if request.get(key) is not None:
                unsupported.append(key)
        if request.get("logprobs"):
            unsupported.append("logprobs")
        if family and not family.accepts_stop and request.get("stop"):
            unsupported.append("stop")
        if unsupported:
            raise UnsupportedCapabilityError(
                f"Not supported by {label} on Bedrock: {', '.join(unsupported)}",
                provider=self.name, model=model,
            )
        for key, upper in (("temperature", max_temperature), ("top_p", 1.0)):
            value = request.get(key)
            if value is not None and not 0.0 <= value <= upper:
                raise UnsupportedCapabilityError(
                    f"{key} must be between 0 and {upper:g} for {label}, got {value}",
                    provider=self.name, model=model,
                )

    def _family_body(
        self,
        family: BedrockModelFamily,
        request: CompletionRequest,
        model: str,
        stream: bool = False,
    ) -> Dict[str, Any]:
        """
        Build a prompt-based model's body after rejecting what a flat prompt
        cannot carry: tools, tool turns and images.
        """
        messages = request["messages"]
        unsupported = []
        if request.get("tools"):
            unsupported.append("tools")
        if any(msg.get("role") == "tool" or msg.get("tool_calls") for msg in messages):
            unsupported.append("tool call messages")
        if any(
            isinstance(msg.get("content"), list)
            and any(part.get("type") == "image_url" for part in msg["content"])
            for msg in messages
        ):
            unsupported.append("images")
        if unsupported:
            raise UnsupportedCapabilityError(
                f"Not supported by {family.name.capitalize()} on Bedrock: {', '.join(unsupported)}",
                provider=self.name, model=model,
            )
        self._check_sampling(request, model, family)
        if request.get("user"):
            log.debug("Dropping 'user' field for Bedrock request (model=%s)", model)
        return family.build_body(request, model, stream=stream)

    def _convert_messages(self, messages: List[Message], model: str):
        """
        Convert canonical messages to Claude format.

        Returns:
            Tuple of (joined system text or None, Claude message list).
        """
        system_parts = []
        converted: List[Dict[str, Any]] = []
        merging_tool_results = False

        for msg in messages:
            role = msg.get("role", "user")

            if role == "system":
                system_parts.append(message_text(msg))
                continue

            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id", ""),
                    "content": message_text(msg),
                }
                if merging_tool_results:
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
                    merging_tool_results = True
                continue

            merging_tool_results = False
            blocks = self._content_blocks(msg.get("content"), model)
            if role == "assistant":
                for tc in msg.get("tool_calls") or []:
                    blocks.append(self._tool_use_block(tc, model))
            if blocks:
                converted.append({"role": role, "content": blocks})

        system_text = "\n\n".join(p for p in system_parts if p) or None
        return system_text, converted

    def _content_blocks(self, content: Any, model: str) -> List[Dict[str, Any]]:
        if content is None:
            return []
        if isinstance(content, str):
            return [{"type": "text", "text": content}] if content else []

        blocks = []
        for part in content:
            if part.get("type") == "text":
                if part.get("text"):
                    blocks.append({"type": "text", "text": part["text"]})
            elif part.get("type") == "image_url":
                url = part.get("image_url", {}).get("url", "")
                if not is_data_uri(url):
                    raise UnsupportedCapabilityError(
                        "Claude on Bedrock needs embedded (data URI) images",
                        provider=self.name, model=model,
                    )
                image = parse_data_uri(url)
                blocks.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": image.mime_type, "data": image.data},
                })
        return blocks

    def _tool_use_block(self, tool_call: ToolCall, model: str) -> Dict[str, Any]:
        function = tool_call.get("function") or {}
        raw = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Tool call {tool_call.get('id')} has invalid JSON arguments",
                provider=self.name, model=model, raw_error=raw,
            ) from e
        return {
            "type": "tool_use",
            "id": tool_call.get("id"),
            "name": function.get("name"),
            "input": arguments,
        }

    @staticmethod
    def _convert_tools(tools: List[Tool]) -> List[Dict[str, Any]]:
        """
        Convert OpenAI-format tools to Claude format.

        Claude uses 'input_schema' instead of 'parameters'.
        """
        claude_tools = []
        for tool in tools:
            func = tool.get("function", {})
            claude_tool = {
                "name": func.get("name", ""),
                "input_schema": func.get("parameters") or {"type": "object", "properties": {}},
            }
            if func.get("description"):
                claude_tool["description"] = func["description"]
            claude_tools.append(claude_tool)
        return claude_tools

    @staticmethod
    def _convert_tool_choice(request: CompletionRequest) -> Optional[Dict[str, Any]]:
        choice = normalize_tool_choice(request.get("tool_choice"))
        parallel = request.get("parallel_tool_calls")

        if choice == "none":
            return {"type": "none"}
        if choice == "required":
            converted = {"type": "any"}
        elif isinstance(choice, dict):
            converted = {"type": "tool", "name": choice["function"]["name"]}
        elif choice == "auto" or parallel is False:
            converted = {"type": "auto"}
        else:
            return None

        if parallel is False:
            converted["disable_parallel_tool_use"] = True
        return converted

    def from_wire_response(self, payload: Dict[str, Any]) -> CompletionResponse:
        """
        Translate a Claude Messages response into a canonical response.

        Text blocks are concatenated; `tool_use` blocks become tool calls with
        JSON-serialized input.
        """
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise SerializationError(
                "Response has no content blocks",
                provider=self.name, model=payload.get("model"), raw_error=str(payload)[:500],
            )

        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        tool_calls = [
            {
                "id": block.get("id"),
                "type": "function",
                "function": {"name": block.get("name"), "arguments": json.dumps(block.get("input") or {})},
            }
            for block in blocks
            if block.get("type") == "tool_use"
        ]

        message: Message = {"role": "assistant", "content": text}
        if tool_calls:
            message["tool_calls"] = tool_calls

        usage = payload.get("usage") or {}
        return {
            "id": payload.get("id", ""),
            "object": "chat.completion",
            "created": int(time.time()),
            "model": payload.get("model") or self.config.model_id,
            "provider": self.name,
            "choices": [{
                "index": 0,
                "message": message,
                "finish_reason": map_stop_reason(payload.get("stop_reason")),
            }],
            "usage": self.normalize_usage(usage.get("input_tokens"), usage.get("output_tokens")),
        }

    def from_family_response(
        self,
        family: BedrockModelFamily,
        payload: Dict[str, Any],
        model: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> CompletionResponse:
        """
        Translate a prompt-based model's response body into a canonical response.

        Token counts missing from the body are taken from Bedrock's
        `x-amzn-bedrock-*-token-count` response headers when present.
        """
        output = family.parse_response(payload)
        headers = headers or {}
        prompt_tokens = output.prompt_tokens
        if prompt_tokens is None and headers.get("x-amzn-bedrock-input-token-count"):
            prompt_tokens = int(headers["x-amzn-bedrock-input-token-count"])
        completion_tokens = output.completion_tokens
        if completion_tokens is None and headers.get("x-amzn-bedrock-output-token-count"):
            completion_tokens = int(headers["x-amzn-bedrock-output-token-count"])

        return {
            "id": f"chatcmpl-{uuid.uuid4()}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model,
            "provider": self.name,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": output.text},
                "finish_reason": output.finish_reason or "stop",
            }],
            "usage": self.normalize_usage(prompt_tokens, completion_tokens),
        }

    def from_wire_stream_event(self, event: Dict[str, Any], model: Optional[str] = None) -> List[CompletionChunk]:
        """
        Translate one Claude stream event into canonical chunks.

        - message_start: role and prompt-token usage.
        - content_block_start (tool_use): a tool-call delta with id, name and
          the block index; arguments empty.
        - content_block_delta: text_delta becomes content; input_json_delta
          becomes an id-less tool-call delta carrying `partial_json`.
        - message_delta: finish reason and output-token usage.
        - content_block_stop, ping, message_stop: nothing.

        Chunks carry `model` (the configured model when not given) unless the
        event names its own.

        Raises:
            UpstreamError: On an `error` event.
        """
        model = model or self.config.model_id
        event_type = event.get("type")

        if event_type == "message_start":
            message = event.get("message") or {}
            usage = message.get("usage") or {}
            return [self._chunk(
                {"role": "assistant"},
                message.get("model") or model,
                chunk_id=message.get("id"),
                usage=self.normalize_usage(usage.get("input_tokens"), usage.get("output_tokens")),
            )]

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [self._chunk({"tool_calls": [{
                    "index": event.get("index", 0),
                    "id": block.get("id"),
                    "type": "function",
                    "function": {"name": block.get("name"), "arguments": ""},
                }]}, model)]
            if block.get("type") == "text" and block.get("text"):
                return [self._chunk({"content": block["text"]}, model)]
            return []

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [self._chunk({"content": delta["text"]}, model)]
            if delta.get("type") == "input_json_delta" and delta.get("partial_json"):
                return [self._chunk({"tool_calls": [{
                    "index": event.get("index", 0),
                    "type": "function",
                    "function": {"arguments": delta["partial_json"]},
                }]}, model)]
            return []

        if event_type == "message_delta":
            delta = event.get("delta") or {}
            usage = event.get("usage") or {}
            return [self._chunk(
                {},
                model,
                finish_reason=map_stop_reason(delta.get("stop_reason")),
                usage=self.normalize_usage(usage.get("input_tokens"), usage.get("output_tokens")),
            )]

        if event_type == "error":
            error = event.get("error") or {}
            raise UpstreamError(
                error.get("message") or "Stream error",
                provider=self.name,
                model=model,
                error_type=error.get("type"),
                raw_error=json.dumps(event),
            )

        return []

    def from_family_stream_chunk(
        self,
        family: BedrockModelFamily,
        payload: Dict[str, Any],
        model: str,
    ) -> List[CompletionChunk]:
        """
        Translate one decoded prompt-based model stream chunk.

        Chunks with no text, finish reason or token counts produce nothing.
        """
        output = family.parse_stream_chunk(payload)
        delta = {"content": output.text} if output.text else {}
        usage = None
        if output.prompt_tokens is not None or output.completion_tokens is not None:
            usage = self.normalize_usage(output.prompt_tokens, output.completion_tokens)
        if not delta and output.finish_reason is None and usage is None:
            return []
        return [self._chunk(delta, model, finish_reason=output.finish_reason, usage=usage)]

    def _chunk(
        self,
        delta: Dict[str, Any],
        model: str,
        *,
        chunk_id: Optional[str] = None,
        finish_reason: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> CompletionChunk:
        chunk: CompletionChunk = {
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if chunk_id:
            chunk["id"] = chunk_id
        if usage:
            chunk["usage"] = usage
        return chunk

    # =========================================================================
    # Transport
    # =========================================================================

    def _call_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        body = self.to_wire_request(request)
        # The SDK sets anthropic_version itself.
        body.pop("anthropic_version", None)
        body["model"] = self.resolve_model(request)
        return body

    def _invoke_model(self, model: str, body: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        response = self.runtime.invoke_model(
            modelId=model,
            body=json.dumps(body),
            contentType="application/json",
            accept="application/json",
        )
        headers = (response.get("ResponseMetadata") or {}).get("HTTPHeaders") or {}
        return json.loads(response["body"].read()), headers

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send a chat request to a Bedrock model (InvokeModel).

        Args:
            request (CompletionRequest): Canonical request.

        Returns:
            CompletionResponse: Canonical response.
        """
        model = self.resolve_model(request)
        family = model_family(model)
        if family is not None:
            return await self._chat_family(family, request, model)
        kwargs = self._call_kwargs(request)

        start = time.perf_counter()
        try:
            resp = await self.client.messages.create(**kwargs)
            result = self.from_wire_response(resp.model_dump())
        except Exception as e:
            raise self.wrap_error(e, model)
        latency_ms = (time.perf_counter() - start) * 1000.0

        log.debug("bedrock chat completed in %.0f ms (model=%s)", latency_ms, model)
        return result

    async def _chat_family(
        self,
        family: BedrockModelFamily,
        request: CompletionRequest,
        model: str,
    ) -> CompletionResponse:
        body = self.to_wire_request(request)

        start = time.perf_counter()
        try:
            payload, headers = await asyncio.to_thread(self._invoke_model, model, body)
            result = self.from_family_response(family, payload, model, headers)
        except Exception as e:
            raise self.wrap_error(e, model)
        latency_ms = (time.perf_counter() - start) * 1000.0

        log.debug("bedrock %s chat completed in %.0f ms (model=%s)", family.name, latency_ms, model)
        return result

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Stream a chat response from a Bedrock model (InvokeModelWithResponseStream).

        Yields:
            CompletionChunk: Canonical chunks; see `from_wire_stream_event` and
                `from_family_stream_chunk`.

        Raises:
            UnsupportedCapabilityError: The model's family does not stream
                (Llama, Jurassic).
        """
        model = self.resolve_model(request)
        family = model_family(model)
        start = time.perf_counter()

        if family is not None:
            async for chunk in self._stream_family(family, request, model):
                yield chunk
        else:
            kwargs = self._call_kwargs(request)
            try:
                response = await self.client.messages.create(**kwargs, stream=True)
                async with response:
                    async for event in response:
                        for chunk in self.from_wire_stream_event(event.model_dump(), model):
                            yield chunk
            except Exception as e:
                raise self.wrap_error(e, model)

        log.debug("bedrock stream finished in %.0f ms (model=%s)", (time.perf_counter() - start) * 1000.0, model)

    async def _stream_family(
        self,
        family: BedrockModelFamily,
        request: CompletionRequest,
        model: str,
    ) -> AsyncIterator[CompletionChunk]:
        if not family.supports_streaming:
            raise UnsupportedCapabilityError(
                f"{family.name.capitalize()} models on Bedrock do not support streaming",
                provider=self.name, model=model,
            )
        self.check_request(request)
        body = self._family_body(family, request, model, stream=True)

        try:
            response = await asyncio.to_thread(
                self.runtime.invoke_model_with_response_stream,
                modelId=model,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            event_stream = response["body"]
            events = iter(event_stream)
            try:
                while True:
                    event = await asyncio.to_thread(next, events, None)
                    if event is None:
                        break
                    part = event.get("chunk")
                    if not part:
                        continue
                    payload = json.loads(part["bytes"])
                    for chunk in self.from_family_stream_chunk(family, payload, model):
                        yield chunk
            finally:
                close = getattr(event_stream, "close", None)
                if close is not None:
                    close()
        except Exception as e:
            raise self.wrap_error(e, model)

    async def get_models(self) -> List[str]:
        """
        Get the model ids usable through this provider.

        The configured model comes first.

        Returns:
            List[str]: List of model identifiers.
        """
        models = [self.config.model_id]
        models.extend(m for m in KNOWN_MODELS if m != self.config.model_id)
        return models


def map_stop_reason(stop_reason: Optional[str]) -> Optional[str]:
    """
    Map a Claude stop reason to a canonical finish reason.
    """
    if stop_reason is None:
        return None
    return STOP_REASONS.get(stop_reason, stop_reason)
