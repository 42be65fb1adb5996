from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, List, AsyncIterator, Optional

from ..errors import LLMShimError, SerializationError, UnsupportedCapabilityError, wrap_provider_error
from ..reassembler import ToolCallAttribution
from ..types import CompletionChunk, CompletionRequest, CompletionResponse, Usage
from ..utils import normalize_tool_choice, tool_names, validate_conversation


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    What a provider can honour.

    Attributes:
        tools: Function calling is available.
        vision: Image parts are accepted.
        forced_tool_choice: A named tool choice is honoured.
        required_tool_choice: tool_choice="required" is honoured.
        tool_call_attribution: How id-less streamed tool-call deltas are attributed.
        requires_embedded_images: Images must be sent inline as base64.
        max_image_dimension: Largest accepted image side in pixels, if limited.
    """
    tools: bool = True
    vision: bool = True
    forced_tool_choice: bool = True
    required_tool_choice: bool = True
    tool_call_attribution: ToolCallAttribution = "index"
    requires_embedded_images: bool = False
    max_image_dimension: Optional[int] = None


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    An adapter is split in two: pure translation between the canonical model
    and the provider's wire format (`to_wire_request`, `from_wire_response`,
    `from_wire_stream_event`), and the async transport calls built on it
    (`chat`, `stream`, `get_models`).
    """

    name: str = "base"
    capabilities: ProviderCapabilities = ProviderCapabilities()

    # =========================================================================
    # Translation
    # =========================================================================

    @abstractmethod
    def to_wire_request(self, request: CompletionRequest) -> Dict[str, Any]:
        """
        Translate a canonical request into the provider's request body.

        Raises:
            UnsupportedCapabilityError: The request uses a feature this provider cannot honour.
            SerializationError: The request cannot be encoded.
        """

    @abstractmethod
    def from_wire_response(self, payload: Dict[str, Any]) -> CompletionResponse:
        """
        Translate a provider response body into a canonical response.
        """

    @abstractmethod
    def from_wire_stream_event(self, event: Dict[str, Any], model: Optional[str] = None) -> List[CompletionChunk]:
        """
        Translate one provider stream event into zero or more canonical chunks.

        `model` is the id the request was sent with. It stands in wherever
        the event does not name a model.
        """

    # =========================================================================
    # Transport
    # =========================================================================

    @abstractmethod
    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send a chat request to the provider.

        Args:
            request (CompletionRequest): Canonical request.

        Returns:
            CompletionResponse: Canonical response.

        Raises:
            LLMShimError: Any failure, normalized with provider and model context.
        """

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Stream a chat response from the provider.

        Implemented as an async generator; closing it closes the upstream stream.

        Args:
            request (CompletionRequest): Canonical request.

        Yields:
            CompletionChunk: Canonical chunks in arrival order.
        """

    @abstractmethod
    async def get_models(self) -> List[str]:
        """
        Get list of available models from the provider.

        Returns:
            List[str]: List of model identifiers.
        """

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def resolve_model(self, request: CompletionRequest) -> Optional[str]:
        """
        Return the model id a request will be sent with.
        """
        return request.get("model")

    def check_request(self, request: CompletionRequest) -> None:
        """
        Validate a request against this provider's capabilities.

        Checks conversation structure, tool declarations and tool choice,
        and image use. A forced choice the provider cannot honour is an
        error, never a silent downgrade to "auto".

        Raises:
            SerializationError: The request is malformed.
            UnsupportedCapabilityError: The request needs a missing capability.
        """
        model = request.get("model")
        if not request.get("messages"):
            raise SerializationError("A request needs at least one message", provider=self.name, model=model)
        try:
            validate_conversation(request["messages"])
            names = tool_names(request.get("tools"))
            choice = normalize_tool_choice(request.get("tool_choice"))
        except ValueError as e:
            raise SerializationError(str(e), provider=self.name, model=model) from e

        if names and not self.capabilities.tools:
            raise UnsupportedCapabilityError("Tools are not supported", provider=self.name, model=model)

        if isinstance(choice, dict):
            tool_name = choice["function"]["name"]
            if not names:
                raise UnsupportedCapabilityError(
                    f"tool_choice names '{tool_name}' but no tools were provided",
                    provider=self.name, model=model,
                )
            if tool_name not in names:
                raise UnsupportedCapabilityError(
                    f"tool_choice names unknown tool '{tool_name}'",
                    provider=self.name, model=model,
                )
            if not self.capabilities.forced_tool_choice:
                raise UnsupportedCapabilityError(
                    "Forcing a specific tool is not supported", provider=self.name, model=model
                )
        elif choice == "required":
            if not names:
                raise UnsupportedCapabilityError(
                    "tool_choice 'required' needs at least one tool", provider=self.name, model=model
                )
            if not self.capabilities.required_tool_choice:
                raise UnsupportedCapabilityError(
                    "tool_choice 'required' is not supported", provider=self.name, model=model
                )

        if not self.capabilities.vision and _has_images(request):
            raise UnsupportedCapabilityError("Image input is not supported", provider=self.name, model=model)

    def wrap_error(self, exc: BaseException, model: Optional[str]) -> LLMShimError:
        return wrap_provider_error(exc, provider=self.name, model=model)

    @staticmethod
    def normalize_usage(
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
        total_tokens: Optional[int] = None,
    ) -> Usage:
        """
        Normalize token usage information across providers.

        Missing counts become zero; the total is computed when not provided.

        Args:
            prompt_tokens (int, optional): Number of prompt tokens.
            completion_tokens (int, optional): Number of generated tokens.
            total_tokens (int, optional): Total token count.

        Returns:
            Usage: Standardized usage dictionary.
        """
        prompt_tokens = prompt_tokens or 0
        completion_tokens = completion_tokens or 0
        if total_tokens is None:
            total_tokens = prompt_tokens + completion_tokens
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": total_tokens,
        }


def _has_images(request: CompletionRequest) -> bool:
    for message in request.get("messages", []):
        content = message.get("content")
        if isinstance(content, list) and any(part.get("type") == "image_url" for part in content):
            return True
    return False
