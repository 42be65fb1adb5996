"""
Prompt-based model families on AWS Bedrock.

Titan, Llama, Cohere and Jurassic models do not take the Claude Messages
body. Each expects its own JSON body built around a flattened prompt and
answers with its own response (and, for some, stream chunk) shape. A family
builds the body for a canonical request and reduces replies to `FamilyOutput`.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple

from ..errors import SerializationError, UnsupportedCapabilityError
from ..types import CompletionRequest, Message
from ..utils import message_text

DEFAULT_MAX_TOKENS = 512

# Bedrock attaches these to the final chunk of every response stream.
INVOCATION_METRICS_KEY = "amazon-bedrock-invocationMetrics"

ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


@dataclass
class FamilyOutput:
    """
    A response body or stream chunk reduced to canonical terms.
    """
    text: str = ""
    finish_reason: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class BedrockModelFamily(ABC):
    """
    Body format of one family of prompt-based Bedrock models.

    Attributes:
        name: Family name used in errors.
        markers: Substrings that identify the family's model ids.
        supports_streaming: InvokeModelWithResponseStream is available.
        accepts_penalties: presence/frequency penalties can be sent.
        accepts_stop: Stop sequences can be sent.
        max_temperature: Upper bound of the accepted temperature.
        finish_reasons: Native completion reasons mapped to canonical ones.
    """

    name: str = "base"
    markers: Tuple[str, ...] = ()
    supports_streaming: bool = True
    accepts_penalties: bool = False
    accepts_stop: bool = True
    max_temperature: float = 1.0
    finish_reasons: Dict[str, str] = {}

    def matches(self, model_id: str) -> bool:
        return any(marker in model_id for marker in self.markers)

    @abstractmethod
    def build_body(self, request: CompletionRequest, model_id: str, stream: bool = False) -> Dict[str, Any]:
        """
        Build the InvokeModel body for a canonical request.
        """

    @abstractmethod
    def parse_response(self, payload: Dict[str, Any]) -> FamilyOutput:
        """
        Reduce an InvokeModel response body.

        Raises:
            SerializationError: The body lacks the family's output field.
        """

    def parse_stream_chunk(self, payload: Dict[str, Any]) -> FamilyOutput:
        """
        Reduce one decoded stream chunk.

        Token counts come from the invocation metrics on the final chunk.
        """
        if not self.supports_streaming:
            raise UnsupportedCapabilityError(f"{self.name} models on Bedrock do not stream")
        output = self._parse_chunk(payload)
        metrics = payload.get(INVOCATION_METRICS_KEY)
        if metrics:
            output.prompt_tokens = metrics.get("inputTokenCount")
            output.completion_tokens = metrics.get("outputTokenCount")
        return output

    def _parse_chunk(self, payload: Dict[str, Any]) -> FamilyOutput:
        raise NotImplementedError

    def map_finish_reason(self, reason: Optional[str]) -> Optional[str]:
        if not reason:
            return None
        return self.finish_reasons.get(reason, reason.lower())

    def _missing(self, field: str, payload: Dict[str, Any]) -> SerializationError:
        return SerializationError(f"{self.name} response has no '{field}'", raw_error=str(payload)[:500])


# =============================================================================
# Prompt builders
# =============================================================================

def stop_sequences(request: CompletionRequest) -> List[str]:
    stop = request.get("stop")
    if not stop:
        return []
    return [stop] if isinstance(stop, str) else list(stop)


def role_transcript(messages: List[Message]) -> str:
    """
    Flatten messages into "Role: text" paragraphs, one per message.
    """
    return "".join(
        f"{ROLE_LABELS[msg['role']]}: {message_text(msg)}\n\n"
        for msg in messages
        if msg.get("role") in ROLE_LABELS
    )


def llama_prompt(messages: List[Message]) -> str:
    """
    Build a Llama 2 chat prompt with `[INST]` and `<<SYS>>` markers.
    """
    prompt = ""
    for msg in messages:
        role = msg.get("role")
        text = message_text(msg)
        if role == "system":
            prompt += f"<s>[INST] <<SYS>>\n{text}\n<</SYS>>\n\n"
        elif role == "user":
            if not prompt:
                prompt = "<s>[INST] "
            prompt += f"{text} [/INST]"
        elif role == "assistant":
            prompt += f" {text} </s><s>[INST] "
    return prompt


# =============================================================================
# Families
# =============================================================================

class TitanFamily(BedrockModelFamily):
    name = "titan"
    markers = ("amazon.titan",)
    finish_reasons = {"FINISH": "stop", "LENGTH": "length", "CONTENT_FILTERED": "content_filter"}

    def build_body(self, request: CompletionRequest, model_id: str, stream: bool = False) -> Dict[str, Any]:
        config: Dict[str, Any] = {"maxTokenCount": request.get("max_tokens") or DEFAULT_MAX_TOKENS}
        if request.get("temperature") is not None:
            config["temperature"] = request["temperature"]
        if request.get("top_p") is not None:
            config["topP"] = request["top_p"]
        stops = stop_sequences(request)
        if stops:
            config["stopSequences"] = stops
        return {
            "inputText": role_transcript(request["messages"]) + "Assistant: ",
            "textGenerationConfig": config,
        }

    def parse_response(self, payload: Dict[str, Any]) -> FamilyOutput:
        results = payload.get("results")
        if not results:
            raise self._missing("results", payload)
        first = results[0]
        return FamilyOutput(
            text=first.get("outputText") or "",
            finish_reason=self.map_finish_reason(first.get("completionReason")),
            prompt_tokens=payload.get("inputTextTokenCount"),
            completion_tokens=first.get("tokenCount"),
        )

    def _parse_chunk(self, payload: Dict[str, Any]) -> FamilyOutput:
        return FamilyOutput(
            text=payload.get("outputText") or "",
            finish_reason=self.map_finish_reason(payload.get("completionReason")),
        )


class LlamaFamily(BedrockModelFamily):
    """
    Llama 2 chat models. Bedrock's Llama body has no stop sequences.
    """

    name = "llama"
    markers = ("meta.llama",)
    supports_streaming = False
    accepts_stop = False

    def build_body(self, request: CompletionRequest, model_id: str, stream: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "prompt": llama_prompt(request["messages"]),
            "max_gen_len": request.get("max_tokens") or DEFAULT_MAX_TOKENS,
        }
        if request.get("temperature") is not None:
            body["temperature"] = request["temperature"]
        if request.get("top_p") is not None:
            body["top_p"] = request["top_p"]
        return body

    def parse_response(self, payload: Dict[str, Any]) -> FamilyOutput:
        if "generation" not in payload:
            raise self._missing("generation", payload)
        return FamilyOutput(
            text=payload.get("generation") or "",
            finish_reason=self.map_finish_reason(payload.get("stop_reason")) or "stop",
            prompt_tokens=payload.get("prompt_token_count"),
            completion_tokens=payload.get("generation_token_count"),
        )


class CohereFamily(BedrockModelFamily):
    """
    Cohere Command models.

    Command R models take the transcript as `message`; older Command models
    take it as `prompt` and need `stream: true` in a streaming body.
    """

    name = "cohere"
    markers = ("cohere.",)
    max_temperature = 5.0
    finish_reasons = {
        "COMPLETE": "stop",
        "END_TURN": "stop",
        "STOP_SEQUENCE": "stop",
        "MAX_TOKENS": "length",
        "ERROR_TOXIC": "content_filter",
    }

    @staticmethod
    def is_command_r(model_id: str) -> bool:
        return "command-r" in model_id or "commandr" in model_id

    def build_body(self, request: CompletionRequest, model_id: str, stream: bool = False) -> Dict[str, Any]:
        transcript = role_transcript(request["messages"])
        if self.is_command_r(model_id):
            body: Dict[str, Any] = {"message": transcript.strip()}
        else:
            body = {"prompt": transcript}
        body["max_tokens"] = request.get("max_tokens") or DEFAULT_MAX_TOKENS
        if request.get("temperature") is not None:
            body["temperature"] = request["temperature"]
        if request.get("top_p") is not None:
            body["p"] = request["top_p"]
        stops = stop_sequences(request)
        if stops:
            body["stop_sequences"] = stops
        if stream and not self.is_command_r(model_id):
            body["stream"] = True
        return body

    def parse_response(self, payload: Dict[str, Any]) -> FamilyOutput:
        if "text" in payload:
            text, reason = payload.get("text"), payload.get("finish_reason")
        elif payload.get("generations"):
            first = payload["generations"][0]
            text, reason = first.get("text"), first.get("finish_reason")
        else:
            raise self._missing("text", payload)
        return FamilyOutput(text=text or "", finish_reason=self.map_finish_reason(reason))

    def _parse_chunk(self, payload: Dict[str, Any]) -> FamilyOutput:
        reason = self.map_finish_reason(payload.get("finish_reason"))
        if reason is None and payload.get("is_finished"):
            reason = "stop"
        return FamilyOutput(text=payload.get("text") or "", finish_reason=reason)


class JurassicFamily(BedrockModelFamily):
    """
    AI21 Jurassic-2 models.

    Penalties are sent as `{"scale": value}` objects, zero when unset.
    """

    name = "jurassic"
    markers = ("ai21.j2",)
    supports_streaming = False
    accepts_penalties = True
    finish_reasons = {"endoftext": "stop", "endOfText": "stop", "stop": "stop", "length": "length"}

    def build_body(self, request: CompletionRequest, model_id: str, stream: bool = False) -> Dict[str, Any]:
        messages = request["messages"]
        prompt = role_transcript(messages)
        if messages and messages[-1].get("role") == "user":
            prompt += "Assistant: "

        body: Dict[str, Any] = {
            "prompt": prompt,
            "maxTokens": request.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "temperature": 0.7 if request.get("temperature") is None else request["temperature"],
            "topP": 1.0 if request.get("top_p") is None else request["top_p"],
        }
        stops = stop_sequences(request)
        if stops:
            body["stopSequences"] = stops
        body["countPenalty"] = {"scale": 0}
        body["presencePenalty"] = {"scale": request.get("presence_penalty") or 0}
        body["frequencyPenalty"] = {"scale": request.get("frequency_penalty") or 0}
        return body

    def parse_response(self, payload: Dict[str, Any]) -> FamilyOutput:
        completions = payload.get("completions")
        if not completions:
            raise self._missing("completions", payload)
        first = completions[0]
        data = first.get("data") or {}
        text = data.get("text") or ""
        if text.startswith("\n"):
            text = text[1:]
        reason = first.get("finishReason")
        if isinstance(reason, dict):
            reason = reason.get("reason")
        prompt_tokens = (payload.get("prompt") or {}).get("tokens")
        return FamilyOutput(
            text=text,
            finish_reason=self.map_finish_reason(reason) or "stop",
            prompt_tokens=len(prompt_tokens) if prompt_tokens is not None else None,
            completion_tokens=len(data["tokens"]) if data.get("tokens") is not None else None,
        )


MODEL_FAMILIES: List[BedrockModelFamily] = [TitanFamily(), LlamaFamily(), CohereFamily(), JurassicFamily()]


def model_family(model_id: str) -> Optional[BedrockModelFamily]:
    """
    Return the prompt-based family serving `model_id`, or None if no family
    claims it (Claude ids and unknown ids).
    """
    for family in MODEL_FAMILIES:
        if family.matches(model_id):
            return family
    return None
