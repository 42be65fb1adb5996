import logging

from .cache import ImageCache
from .client import UnifiedChatClient
from .config import AzureOpenAIConfig, BedrockConfig, DeepSeekConfig, GeminiConfig, OpenAIConfig
from .errors import (
    LLMShimError,
    ConfigurationError,
    SerializationError,
    TransportError,
    UpstreamError,
    UnsupportedCapabilityError,
    SizeExceededError,
    StreamProtocolError,
)
from .images import EmbeddedImage, ImageResolver
from .reassembler import StreamReassembler, ToolCallState
from .rich_llm_printer import RichPrinter, RichStreamPrinter
from .types import (
    CompletionChunk, CompletionRequest, CompletionResponse, ContentPart, ImageContent,
    Message, Provider, TextContent, Tool, ToolCall,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "UnifiedChatClient",
    "OpenAIConfig",
    "AzureOpenAIConfig",
    "GeminiConfig",
    "DeepSeekConfig",
    "BedrockConfig",
    "ImageCache",
    "ImageResolver",
    "EmbeddedImage",
    "StreamReassembler",
    "ToolCallState",
    "RichPrinter",
    "RichStreamPrinter",
    "LLMShimError",
    "ConfigurationError",
    "SerializationError",
    "TransportError",
    "UpstreamError",
    "UnsupportedCapabilityError",
    "SizeExceededError",
    "StreamProtocolError",
    "CompletionRequest",
    "CompletionResponse",
    "CompletionChunk",
    "Message",
    "Tool",
    "ToolCall",
    "ContentPart",
    "ImageContent",
    "TextContent",
    "Provider",
]
