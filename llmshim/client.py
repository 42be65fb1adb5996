import asyncio
import logging
from typing import Optional, Dict, List, Any, Callable, AsyncIterator, Literal, Union

from .cache import ImageCache
from .config import AzureOpenAIConfig, BedrockConfig, DeepSeekConfig, GeminiConfig, OpenAIConfig
from .errors import LLMShimError, is_benign_stream_closure, wrap_provider_error
from .images import ImageResolver
from .reassembler import StreamReassembler
from .types import (
    CompletionChunk, CompletionRequest, CompletionResponse, ContentPart, ImageContent, Message, Tool, ToolCall
)
from .utils import (
    create_message, create_image_content, create_tool, create_tool_call,
    create_tool_result, create_assistant_message_with_tool_calls
)
from .providers.base import BaseLLMProvider, ProviderCapabilities
from .providers.openai import OpenAIProvider
from .providers.bedrock import BedrockProvider

log = logging.getLogger(__name__)

ProviderConfig = Union[OpenAIConfig, AzureOpenAIConfig, BedrockConfig]
ChunkCallback = Callable[[CompletionChunk], Any]
CompleteCallback = Callable[[CompletionResponse], Any]
ErrorCallback = Callable[[LLMShimError], Any]


async def _maybe_await(result: Any) -> Any:
    if asyncio.iscoroutine(result):
        return await result
    return result


class UnifiedChatClient:
    """
    Unified client for one LLM provider.

    The provider is fixed at construction; build one client per provider.
    Every request goes through the same steps: validation against the
    provider's capabilities, image embedding through the injected
    `ImageResolver`, then the provider adapter.

    Example:
        >>> client = UnifiedChatClient.bedrock(region="us-east-1", model_id="anthropic.claude-3-haiku-20240307-v1:0")
        >>> response = await client.chat({"messages": [{"role": "user", "content": "Hi"}]})
    """

    def __init__(
        self,
        provider: BaseLLMProvider,
        *,
        image_resolver: Optional[ImageResolver] = None,
        image_cache: Optional[ImageCache] = None,
    ):
        """
        Initialize the client around a provider adapter.

        Args:
            provider: The adapter every request is sent through.
            image_resolver: Resolver for image references. Defaults to one
                honouring the provider's image size limit.
            image_cache: Cache for the default resolver; ignored when
                `image_resolver` is given.
        """
        self.provider = provider
        self.images = image_resolver or ImageResolver(
            image_cache,
            max_dimension=provider.capabilities.max_image_dimension,
        )

    # ==========================================================================
    # Construction
    # ==========================================================================

    @classmethod
    def from_config(cls, config: ProviderConfig, **kwargs) -> "UnifiedChatClient":
        """
        Build a client for whichever provider `config` describes.
        """
        if isinstance(config, BedrockConfig):
            return cls(BedrockProvider(config), **kwargs)
        return cls(OpenAIProvider(config), **kwargs)

    @classmethod
    def openai(
        cls,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        **kwargs,
    ) -> "UnifiedChatClient":
        """
        Client for OpenAI or any OpenAI-compatible endpoint.

        Without `api_key`, configuration is read from the environment
        (OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_ORG_ID).
        """
        if api_key is None:
            config = OpenAIConfig.from_env()
        else:
            config = OpenAIConfig(api_key=api_key, organization=organization)
        if base_url:
            config = OpenAIConfig(api_key=config.api_key, base_url=base_url, organization=config.organization)
        return cls.from_config(config, **kwargs)

    @classmethod
    def azure(
        cls,
        api_key: Optional[str] = None,
        *,
        deployment_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        api_version: Optional[str] = None,
        **kwargs,
    ) -> "UnifiedChatClient":
        """
        Client for an Azure OpenAI deployment.

        Without `api_key`, configuration is read from the AZURE_OPENAI_* variables.
        """
        if api_key is None:
            config = AzureOpenAIConfig.from_env()
        else:
            options = {"api_version": api_version} if api_version else {}
            config = AzureOpenAIConfig(
                api_key=api_key,
                deployment_id=deployment_id,
                resource_name=resource_name,
                endpoint=endpoint,
                **options,
            )
        return cls.from_config(config, **kwargs)

    @classmethod
    def gemini(cls, api_key: Optional[str] = None, **kwargs) -> "UnifiedChatClient":
        """
        Client for Gemini through Google's OpenAI-compatible endpoint (GOOGLE_API_KEY).
        """
        config = GeminiConfig(api_key=api_key) if api_key else GeminiConfig.from_env()
        return cls.from_config(config, **kwargs)

    @classmethod
    def deepseek(cls, api_key: Optional[str] = None, **kwargs) -> "UnifiedChatClient":
        """
        Client for DeepSeek (DEEPSEEK_API_KEY). DeepSeek models do not accept images.
        """
        config = DeepSeekConfig(api_key=api_key) if api_key else DeepSeekConfig.from_env()
        return cls.from_config(config, **kwargs)

    @classmethod
    def bedrock(
        cls,
        region: Optional[str] = None,
        model_id: Optional[str] = None,
        *,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        session_token: Optional[str] = None,
        **kwargs,
    ) -> "UnifiedChatClient":
        """
        Client for models on AWS Bedrock (Claude, Titan, Llama, Cohere, Jurassic).

        Without `region`, configuration is read from AWS_REGION, BEDROCK_MODEL_ID
        and the AWS_* credential variables. Omitted credentials fall back to
        the default AWS credential chain.
        """
        if region is None:
            config = BedrockConfig.from_env()
        else:
            config = BedrockConfig(
                region=region,
                model_id=model_id,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                session_token=session_token,
            )
        return cls.from_config(config, **kwargs)

    @property
    def provider_name(self) -> str:
        return self.provider.name

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.provider.capabilities

    # ==========================================================================
    # Message Helpers - Re-exported from utils
    # ==========================================================================

    @staticmethod
    def create_image_content(
        source: str,
        *,
        mime_type: Optional[str] = None,
        detail: Optional[Literal["auto", "low", "high"]] = None
    ) -> ImageContent:
        return create_image_content(source, mime_type=mime_type, detail=detail)

    @classmethod
    def create_message(
        cls,
        role: Literal["system", "user", "assistant"],
        content: Union[str, List[Union[str, ContentPart]]],
    ) -> Message:
        return create_message(role, content)

    @staticmethod
    def create_tool(
        name: str,
        description: str,
        parameters: Dict[str, Any],
        required: Optional[List[str]] = None,
    ) -> Tool:
        return create_tool(name, description, parameters, required)

    @staticmethod
    def create_tool_call(call_id: str, name: str, arguments: Union[str, Dict[str, Any]]) -> ToolCall:
        return create_tool_call(call_id, name, arguments)

    @staticmethod
    def create_tool_result(tool_call_id: str, content: str) -> Message:
        return create_tool_result(tool_call_id, content)

    @staticmethod
    def create_assistant_message_with_tool_calls(
        content: str,
        tool_calls: List[ToolCall],
    ) -> Message:
        return create_assistant_message_with_tool_calls(content, tool_calls)

    # ==========================================================================
    # Unified Chat Methods
    # ==========================================================================

    async def list_models(self) -> List[str]:
        """
        Get the list of available models for this client's provider.

        Returns:
            List[str]: Model identifiers.
        """
        return await self.provider.get_models()

    async def _prepare(self, request: CompletionRequest) -> CompletionRequest:
        """
        Validate `request` and embed its images.

        Validation runs first so a request the provider cannot honour
        never triggers downloads.
        """
        model = self.provider.resolve_model(request)
        try:
            self.provider.check_request(request)
            return await self.images.embed_request_images(
                request,
                require_embedded=self.capabilities.requires_embedded_images,
            )
        except Exception as e:
            raise wrap_provider_error(e, provider=self.provider_name, model=model)

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send a non-streaming chat request.

        Args:
            request (CompletionRequest): Canonical request. `stream` is ignored.

        Returns:
            CompletionResponse: The provider's answer in canonical form.

        Raises:
            LLMShimError: Any failure, normalized with provider and model context.
        """
        prepared = await self._prepare(request)
        log.debug(
            "chat: provider=%s model=%s messages=%d",
            self.provider_name, self.provider.resolve_model(request), len(prepared.get("messages", [])),
        )
        return await self.provider.chat(prepared)

    def _reassembler(self, request: CompletionRequest) -> StreamReassembler:
        return StreamReassembler(
            self.capabilities.tool_call_attribution,
            provider=self.provider_name,
            model=self.provider.resolve_model(request),
        )

    async def _stream_into(
        self,
        request: CompletionRequest,
        reassembler: StreamReassembler,
    ) -> AsyncIterator[CompletionChunk]:
        """
        Stream chunks while folding each into `reassembler`.

        A benign transport closure ends the stream as if it had finished.
        """
        model = reassembler.model
        prepared = await self._prepare(request)
        chunks = self.provider.stream(prepared)
        try:
            async for chunk in chunks:
                reassembler.add(chunk)
                yield chunk
        except Exception as e:
            if is_benign_stream_closure(e):
                log.debug("%s stream closed by transport, treating as complete: %s", self.provider_name, e)
                return
            raise wrap_provider_error(e, provider=self.provider_name, model=model)
        finally:
            await chunks.aclose()

    async def astream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Stream a response in real-time.

        Chunks are yielded in arrival order. Tool-call deltas are checked as
        they arrive, so a delta that cannot be attributed to a call raises
        StreamProtocolError mid-stream. Closing the generator closes the
        upstream stream.

        Args:
            request (CompletionRequest): Canonical request.

        Yields:
            CompletionChunk: Canonical chunks.

        Raises:
            LLMShimError: Any failure other than a benign transport closure.
        """
        async for chunk in self._stream_into(request, self._reassembler(request)):
            yield chunk

    async def collect(self, request: CompletionRequest) -> CompletionResponse:
        """
        Stream a response and return it reassembled.

        Returns:
            CompletionResponse: Accumulated text, tool calls in first-seen
            order, finish reason and usage.
        """
        reassembler = self._reassembler(request)
        async for _ in self._stream_into(request, reassembler):
            pass
        return reassembler.finish()

    async def stream(
        self,
        request: CompletionRequest,
        on_chunk: ChunkCallback,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Optional[CompletionResponse]:
        """
        Stream a response into callbacks.

        `on_chunk` receives every chunk. Exactly one of `on_complete` (with the
        reassembled response) or `on_error` (with the normalized error) is
        then called, including after partial delivery. Callbacks may be plain
        functions or coroutines. Cancellation propagates without a callback.

        Args:
            request (CompletionRequest): Canonical request.
            on_chunk: Called with each chunk.
            on_complete: Called once with the final response.
            on_error: Called once with the error. When omitted, the error is raised.

        Returns:
            Optional[CompletionResponse]: The final response, or None after an error.
        """
        reassembler = self._reassembler(request)
        try:
            async for chunk in self._stream_into(request, reassembler):
                await _maybe_await(on_chunk(chunk))
            response = reassembler.finish()
        except Exception as e:
            error = wrap_provider_error(e, provider=self.provider_name, model=reassembler.model)
            log.warning("Stream failed: %s", error.formatted_message())
            if on_error is None:
                raise error
            await _maybe_await(on_error(error))
            return None

        if on_complete is not None:
            await _maybe_await(on_complete(response))
        return response
