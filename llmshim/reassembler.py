"""
Folds a stream of canonical chunks into a complete assistant turn.

Tool calls arrive as fragments: the first delta of a call usually carries its
id and name, later deltas carry argument text and identify the call either by
id or by index. How an id-less delta is attributed is a per-provider trait:

- "index": the delta's index is the call's position in first-seen order
  (OpenAI-compatible streams).
- "latest": the delta continues the most recently started call. Used where
  the index space also counts non-tool entries such as text blocks (Claude
  content blocks).

Arguments are concatenated verbatim. Nothing is parsed until the stream ends.
"""
import enum
import time
import uuid
from typing import Dict, List, Literal, Optional

from .errors import StreamProtocolError
from .types import CompletionChunk, CompletionResponse, ToolCall, Usage

ToolCallAttribution = Literal["index", "latest"]


class ToolCallState(enum.Enum):
    NOT_STARTED = "not_started"
    NAME_KNOWN = "name_known"
    ACCUMULATING = "accumulating"
    COMPLETE = "complete"


class ToolCallAccumulator:
    """
    Mutable state of one tool call while its stream is open.
    """

    def __init__(self, call_id: Optional[str], position: int):
        self.id = call_id
        self.position = position
        self.name: Optional[str] = None
        self.parts: List[str] = []
        self.state = ToolCallState.NOT_STARTED

    @property
    def arguments(self) -> str:
        return "".join(self.parts)

    def apply(self, delta: ToolCall) -> None:
        function = delta.get("function") or {}
        name = function.get("name")
        if name and self.name is None:
            self.name = name
            if self.state is ToolCallState.NOT_STARTED:
                self.state = ToolCallState.NAME_KNOWN
        fragment = function.get("arguments")
        if fragment:
            self.parts.append(fragment)
            self.state = ToolCallState.ACCUMULATING

    def complete(self) -> None:
        self.state = ToolCallState.COMPLETE

    def to_tool_call(self) -> ToolCall:
        arguments = self.arguments
        if not arguments and self.state is ToolCallState.COMPLETE:
            # A call that ended without argument text takes no arguments.
            arguments = "{}"
        return {
            "id": self.id,
            "type": "function",
            "index": self.position,
            "function": {"name": self.name, "arguments": arguments},
        }


class StreamReassembler:
    """
    Accumulates one stream's chunks into a CompletionResponse.

    One instance per stream, fed only by the task consuming that stream.

    Args:
        attribution: How id-less tool-call deltas are attributed.
        provider (str, optional): Provider name, used in errors and the response.
        model (str, optional): Model id, used in errors and the response.
    """

    def __init__(
        self,
        attribution: ToolCallAttribution = "index",
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        if attribution not in ("index", "latest"):
            raise ValueError(f"Unknown tool call attribution: {attribution!r}")
        self.attribution = attribution
        self.provider = provider
        self.model = model
        self._calls: List[ToolCallAccumulator] = []
        self._by_id: Dict[str, ToolCallAccumulator] = {}
        self._content: List[str] = []
        self._finish_reason: Optional[str] = None
        self._usage: Optional[Usage] = None
        self._response_id: Optional[str] = None
        self._finished = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [call.to_tool_call() for call in self._calls]

    @property
    def states(self) -> List[ToolCallState]:
        return [call.state for call in self._calls]

    @property
    def finish_reason(self) -> Optional[str]:
        return self._finish_reason

    @property
    def usage(self) -> Optional[Usage]:
        return self._usage

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def add(self, chunk: CompletionChunk) -> None:
        """
        Fold one chunk into the stream state.

        Raises:
            StreamProtocolError: The stream already finished, or a tool-call
                delta cannot be attributed to any call.
        """
        if self._finished:
            raise self._violation("Chunk received after the stream finished")

        if chunk.get("id") and self._response_id is None:
            self._response_id = chunk["id"]
        if chunk.get("usage"):
            self._merge_usage(chunk["usage"])

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                self._content.append(content)
            for tool_delta in delta.get("tool_calls") or []:
                self._route(tool_delta).apply(tool_delta)
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]

    def _route(self, delta: ToolCall) -> ToolCallAccumulator:
        call_id = delta.get("id")
        if call_id:
            call = self._by_id.get(call_id)
            if call is None:
                call = ToolCallAccumulator(call_id, len(self._calls))
                self._calls.append(call)
                self._by_id[call_id] = call
            return call

        index = delta.get("index")
        if self.attribution == "latest":
            if self._calls:
                return self._calls[-1]
            raise self._violation(f"Tool call delta (index={index}) arrived before any tool call started")

        if isinstance(index, int) and 0 <= index < len(self._calls):
            return self._calls[index]
        raise self._violation(f"Tool call delta references unknown index {index!r}")

    def _merge_usage(self, usage: Usage) -> None:
        merged = dict(self._usage or {})
        for key in ("prompt_tokens", "completion_tokens"):
            if usage.get(key):
                merged[key] = usage[key]
        prompt = merged.get("prompt_tokens", 0)
        completion = merged.get("completion_tokens", 0)
        total = usage.get("total_tokens") or 0
        merged["prompt_tokens"] = prompt
        merged["completion_tokens"] = completion
        merged["total_tokens"] = max(total, prompt + completion)
        self._usage = merged

    def finish(self) -> CompletionResponse:
        """
        Apply the terminal signal and return the assembled response.

        Every tool call becomes complete and is listed in first-seen order.
        """
        if not self._finished:
            self._finished = True
            for call in self._calls:
                call.complete()

        message = {"role": "assistant", "content": self.content}
        tool_calls = []
        for call in self._calls:
            tool_call = call.to_tool_call()
            del tool_call["index"]
            tool_calls.append(tool_call)
        if tool_calls:
            message["tool_calls"] = tool_calls

        finish_reason = self._finish_reason or ("tool_calls" if tool_calls else "stop")
        return {
            "id": self._response_id or f"chatcmpl-{uuid.uuid4()}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model or "",
            "provider": self.provider or "",
            "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
            "usage": self._usage or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }

    def _violation(self, message: str) -> StreamProtocolError:
        return StreamProtocolError(message, provider=self.provider, model=self.model)
