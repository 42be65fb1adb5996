import base64
import json
from pathlib import Path
from typing import Union, List, Optional, Dict, Any, Literal, Tuple

from .types import (
    Message, ContentPart, TextContent, ImageContent, Tool,
    ToolCall, ToolChoice, NamedToolChoice, ImageUrlDetail
)

TOOL_CHOICE_MODES = ("none", "auto", "required")

# =============================================================================
# Image Helpers
# =============================================================================

def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64 for LLM usage.

    Reads the file from the given path, determines its MIME type based on extension,
    and returns a tuple of the base64-encoded data and the MIME type.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: A tuple containing:
            - b64_data (str): The base64-encoded string of the image content.
            - mime_type (str): The MIME type (e.g., 'image/png').

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    mime_types = {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".webp": "image/webp",
        ".bmp": "image/bmp",
        ".tif": "image/tiff",
        ".tiff": "image/tiff",
    }
    mime_type = mime_types.get(path.suffix.lower(), "image/jpeg")

    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")

    return b64_data, mime_type


def create_image_content(
    source: str,
    *,
    mime_type: Optional[str] = None,
    detail: Optional[Literal["auto", "low", "high"]] = None,
) -> ImageContent:
    """
    Create an image content part for multimodal messages.

    Args:
        source (str): Can be:
            - A local file path (e.g., "/path/to/image.png")
            - A remote URL (e.g., "https://example.com/image.jpg")
            - A data URI (e.g., "data:image/png;base64,...")
            - Raw base64 data (requires `mime_type` kwarg)
        mime_type (str, optional): Required if `source` is raw base64 data.
        detail (str, optional): Detail level for OpenAI vision ('auto', 'low', 'high').

    Returns:
        ImageContent: {"type": "image_url", "image_url": {...}}

    Raises:
        ValueError: If the source type cannot be determined.
    """
    if source.startswith("data:"):
        url = source
    # Remote URLs are resolved by the client's ImageResolver before sending
    elif source.startswith(("http://", "https://")):
        url = source
    elif mime_type:
        url = f"data:{mime_type};base64,{source}"
    elif len(source) < 260 and Path(source).exists():
        b64_data, detected_mime = encode_image_file(source)
        url = f"data:{detected_mime};base64,{b64_data}"
    else:
        raise ValueError(
            f"Cannot determine image source type for: {source[:50]}... "
            "Provide mime_type for raw base64 data."
        )

    image_url: ImageUrlDetail = {"url": url}
    if detail:
        image_url["detail"] = detail

    return {"type": "image_url", "image_url": image_url}


def create_text_content(text: str) -> TextContent:
    """
    Create a simple text content part.
    """
    return {"type": "text", "text": text}


def create_message(
    role: Literal["system", "user", "assistant"],
    content: Union[str, List[Union[str, ContentPart]]],
) -> Message:
    """
    Create a Message, normalizing bare strings inside a content list to text parts.

    Args:
        role (str): The role of the message sender ('system', 'user', 'assistant').
        content (Union[str, List]): The content of the message.

    Returns:
        Message: A dictionary matching the Message type definition.
    """
    if isinstance(content, str):
        return {"role": role, "content": content}

    normalized: List[ContentPart] = []
    for item in content:
        if isinstance(item, str):
            normalized.append(create_text_content(item))
        else:
            normalized.append(item)

    return {"role": role, "content": normalized}


def message_text(message: Message) -> str:
    """
    Concatenate the text parts of a message, ignoring images.
    """
    content = message.get("content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(part.get("text", "") for part in content if part.get("type") == "text")


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> Tool:
    """
    Create a Tool definition for function calling.

    Args:
        name (str): The name of the function/tool to be called.
        description (str): A clear description of what the tool does.
        parameters (Dict): JSON Schema properties of the expected arguments.
        required (List[str], optional): A list of parameter names that are required.

    Returns:
        Tool: A dictionary representing the tool definition.
    """
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": parameters,
                "required": required or [],
            },
        },
    }


def create_tool_call(
    call_id: str,
    name: str,
    arguments: Union[str, Dict[str, Any]],
) -> ToolCall:
    """
    Create a tool call as it appears on an assistant message.

    `arguments` may be a mapping; it is serialized to JSON text.
    """
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def create_tool_result(tool_call_id: str, content: str) -> Message:
    """
    Create a tool result message to send back to the LLM.

    Args:
        tool_call_id (str): The ID of the tool call this result corresponds to.
        content (str): The stringified result of the tool execution.

    Returns:
        Message: A message dictionary with role='tool'.
    """
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": content,
    }


def create_assistant_message_with_tool_calls(
    content: str,
    tool_calls: List[ToolCall],
) -> Message:
    """
    Create an assistant message that includes tool calls.

    Args:
        content (str): Optional text content accompanying the tool calls (can be empty).
        tool_calls (List[ToolCall]): List of tool call objects.

    Returns:
        Message: A message dictionary with role='assistant'.
    """
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": tool_calls,
    }


def parse_tool_arguments(tool_call: ToolCall) -> Dict[str, Any]:
    """
    Parse a completed tool call's JSON arguments.

    Empty arguments parse to an empty dict.

    Raises:
        ValueError: If the arguments are not a JSON object.
    """
    raw = (tool_call.get("function") or {}).get("arguments") or ""
    if not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"Tool call arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def normalize_tool_choice(choice: Optional[ToolChoice]) -> Optional[Union[str, NamedToolChoice]]:
    """
    Bring a tool choice into canonical form.

    "none", "auto" and "required" stay as they are. Any other string is
    treated as a tool name and becomes a named choice.

    Raises:
        ValueError: If the choice is neither a mode, a name nor a named choice.
    """
    if choice is None:
        return None
    if isinstance(choice, str):
        if choice in TOOL_CHOICE_MODES:
            return choice
        return {"type": "function", "function": {"name": choice}}
    if isinstance(choice, dict):
        name = (choice.get("function") or {}).get("name")
        if choice.get("type") == "function" and name:
            return {"type": "function", "function": {"name": name}}
    raise ValueError(f"Invalid tool_choice: {choice!r}")


def tool_names(tools: Optional[List[Tool]]) -> List[str]:
    """
    Return the declared tool names in order.

    Raises:
        ValueError: If a tool has no name or a name is declared twice.
    """
    names: List[str] = []
    for tool in tools or []:
        name = (tool.get("function") or {}).get("name")
        if not name:
            raise ValueError("Every tool needs a function name")
        if name in names:
            raise ValueError(f"Duplicate tool name: {name}")
        names.append(name)
    return names


def validate_conversation(messages: List[Message]) -> None:
    """
    Check that every tool message answers an earlier assistant tool call.

    Raises:
        ValueError: On an unknown role, a tool message without `tool_call_id`,
            or one whose id was never issued by an assistant message before it.
    """
    issued = set()
    for position, message in enumerate(messages):
        role = message.get("role")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Message {position} has unknown role {role!r}")
        if role == "assistant":
            for call in message.get("tool_calls") or []:
                if call.get("id"):
                    issued.add(call["id"])
        elif role == "tool":
            call_id = message.get("tool_call_id")
            if not call_id:
                raise ValueError(f"Tool message {position} has no tool_call_id")
            if call_id not in issued:
                raise ValueError(
                    f"Tool message {position} answers unknown tool call {call_id!r}"
                )
