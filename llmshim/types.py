from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Type Definitions
# =============================================================================

# Supported upstream providers. The first four speak the OpenAI Chat
# Completions protocol; "bedrock" serves Claude and prompt-based models through AWS Bedrock.
Provider = Literal["openai", "azure", "gemini", "deepseek", "bedrock"]

Role = Literal["system", "user", "assistant", "tool"]


class TextContent(TypedDict, total=False):
    """
    Text content part for multimodal messages.
    """
    type: Literal["text"]
    text: str


class ImageUrlDetail(TypedDict, total=False):
    """
    Image URL specification with optional detail level.

    `url` is either an http(s) URL or a `data:<mime>;base64,<payload>` URI.
    """
    url: str
    detail: Literal["auto", "low", "high"]  # OpenAI-specific


class ImageContent(TypedDict, total=False):
    """
    Image content part for multimodal messages (OpenAI format).
    """
    type: Literal["image_url"]
    image_url: ImageUrlDetail


# Content can be a simple string or a list of content parts (text + images)
ContentPart = Union[TextContent, ImageContent]
MessageContent = Union[str, List[ContentPart]]


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class FunctionParameters(TypedDict, total=False):
    """
    JSON Schema for function parameters.
    """
    type: Literal["object"]
    properties: Dict[str, Any]
    required: List[str]


class FunctionDefinition(TypedDict, total=False):
    """
    Function definition for tools.
    """
    name: str
    description: str
    parameters: FunctionParameters


class Tool(TypedDict):
    """
    Tool definition in OpenAI format.
    """
    type: Literal["function"]
    function: FunctionDefinition


class FunctionCall(TypedDict, total=False):
    """
    Function invocation inside a tool call.

    `arguments` is raw JSON text. While streaming it is an append-only
    fragment and only parses once the stream has finished.
    """
    name: Optional[str]
    arguments: str


class ToolCall(TypedDict, total=False):
    """
    Tool call emitted by the model.

    On stream deltas `id` and `function.name` may be None; `index` is
    always present there.
    """
    id: Optional[str]
    type: Literal["function"]
    index: int
    function: FunctionCall


class NamedToolChoice(TypedDict):
    type: Literal["function"]
    function: Dict[str, str]


# "none" disables calls, "auto" defers to the provider, "required" forces
# some call, a named choice pins exactly one tool.
ToolChoice = Union[Literal["none", "auto", "required"], NamedToolChoice, str]


# =============================================================================
# Message Type (depends on ToolCall)
# =============================================================================

class Message(TypedDict, total=False):
    """
    Chat message with optional multimodal content and tool support.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response
    - "tool": Tool execution result
    """
    role: Role
    content: Optional[MessageContent]
    name: str
    tool_call_id: str  # For tool result messages
    tool_calls: List[ToolCall]  # For assistant messages with tool calls


# =============================================================================
# Request / Response Types
# =============================================================================

class CompletionRequest(TypedDict, total=False):
    """
    Canonical chat completion request.

    Only `model` and `messages` are required. Adapters reject fields their
    provider cannot honour instead of dropping them.
    """
    model: str
    messages: List[Message]
    tools: List[Tool]
    tool_choice: ToolChoice
    stream: bool
    temperature: float
    top_p: float
    max_tokens: int
    stop: Union[str, List[str]]
    n: int
    presence_penalty: float
    frequency_penalty: float
    seed: int
    user: str
    response_format: Dict[str, Any]
    logprobs: bool
    parallel_tool_calls: bool


class Usage(TypedDict):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class Choice(TypedDict, total=False):
    index: int
    message: Message
    finish_reason: Optional[str]


class CompletionResponse(TypedDict, total=False):
    """
    Canonical non-streaming response (OpenAI chat.completion shape).
    """
    id: str
    object: Literal["chat.completion"]
    created: int
    model: str
    provider: str
    choices: List[Choice]
    usage: Usage


class ChunkDelta(TypedDict, total=False):
    role: Literal["assistant"]
    content: Optional[str]
    tool_calls: List[ToolCall]


class ChunkChoice(TypedDict, total=False):
    index: int
    delta: ChunkDelta
    finish_reason: Optional[str]


class CompletionChunk(TypedDict, total=False):
    """
    One incremental unit of a streaming completion.

    `usage` is only present on the chunks that carry totals; some
    providers send it on the terminal chunk only.
    """
    id: str
    object: Literal["chat.completion.chunk"]
    created: int
    model: str
    choices: List[ChunkChoice]
    usage: Optional[Usage]
