"""
Error taxonomy and normalization for llmshim.

Every failure surfaced by an adapter, the image pipeline or the client is an
`LLMShimError` subclass carrying the provider, the requested model id, the
HTTP status (when there is one), the provider's error type/code and the raw
upstream error text. Callers decide whether to retry.
"""
import asyncio
import json
from typing import Any, Dict, Iterator, Optional, Union

import anthropic
import botocore.exceptions
import httpx
import openai


class LLMShimError(Exception):
    """
    Base exception for all llmshim errors.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        error_code: Optional[str] = None,
        raw_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.error_type = error_type
        self.error_code = error_code
        self.raw_error = raw_error

    def formatted_message(self) -> str:
        """
        Render a single-line description suitable for logs.

        Format: ``[provider] message | model: m | statusCode: n | rawError: r``
        """
        parts = []
        head = f"[{self.provider}] {self.message}" if self.provider else self.message
        parts.append(head)
        if self.model:
            parts.append(f"model: {self.model}")
        if self.status_code:
            parts.append(f"statusCode: {self.status_code}")
        if self.raw_error and self.raw_error != self.message:
            parts.append(f"rawError: {self.raw_error}")
        return " | ".join(parts)

    def __repr__(self) -> str:
        fields = [f"message={self.message!r}"]
        for name in ("provider", "model", "status_code", "error_type", "error_code", "raw_error"):
            value = getattr(self, name)
            if value is not None:
                fields.append(f"{name}={value!r}")
        return f"{type(self).__name__}({', '.join(fields)})"


class ConfigurationError(LLMShimError):
    """Provider configuration is missing or inconsistent."""


class SerializationError(LLMShimError):
    """A request could not be encoded or a response could not be decoded."""


class TransportError(LLMShimError):
    """The network exchange itself failed (connect, read, timeout, non-2xx fetch)."""


class UpstreamError(LLMShimError):
    """The provider answered with a non-success status and an error body."""


class UnsupportedCapabilityError(LLMShimError):
    """The request uses a feature the target provider cannot honour."""


class SizeExceededError(LLMShimError):
    """A download exceeded its hard size cap."""


class StreamProtocolError(LLMShimError):
    """A stream delivered an event that cannot be attributed or ordered."""


class BenignStreamClosure(LLMShimError):
    """
    The transport closed an open stream in a way that means "done".

    Never surfaced to callers; streams that end this way complete normally.
    """


# Substrings of transport messages that mean the stream was closed on purpose.
BENIGN_CLOSURE_SIGNATURES = (
    "socket closed",
    "stream was reset: cancel",
    "canceled",
    "cancelled",
    "stream closed",
)


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen = set()
    stack = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur
        if isinstance(cur.__cause__, BaseException):
            stack.append(cur.__cause__)
        if isinstance(cur.__context__, BaseException):
            stack.append(cur.__context__)


def parse_error_body(
    status_code: int,
    body: Union[str, bytes, Dict[str, Any], None],
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> UpstreamError:
    """
    Build an UpstreamError from an HTTP status and its (JSON) error body.

    Understands the OpenAI/Anthropic envelope ``{"error": {"message", "type", "code"}}``.
    Bodies that are not JSON keep a status-based message and the raw text.

    Args:
        status_code (int): HTTP status of the response.
        body: Raw response text, bytes, or an already parsed mapping.
        provider (str, optional): Provider name for context.
        model (str, optional): Requested model id for context.

    Returns:
        UpstreamError: The normalized error.
    """
    message = f"Request failed with status code {status_code}"
    error_type = None
    error_code = None

    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    raw_error = body if isinstance(body, str) else (json.dumps(body) if body is not None else None)

    parsed: Any = body
    if isinstance(body, str):
        try:
            parsed = json.loads(body) if body.strip() else None
        except json.JSONDecodeError:
            parsed = None

    if isinstance(parsed, dict):
        error = parsed.get("error", parsed)
        if isinstance(error, dict):
            if error.get("message"):
                message = str(error["message"])
            if error.get("type") is not None:
                error_type = str(error["type"])
            if error.get("code") is not None:
                error_code = str(error["code"])
        elif isinstance(error, str) and error:
            message = error

    return UpstreamError(
        message,
        provider=provider,
        model=model,
        status_code=status_code,
        error_type=error_type,
        error_code=error_code,
        raw_error=raw_error,
    )


def is_benign_stream_closure(exc: BaseException) -> bool:
    """
    Return True when *exc* is a transport closure that should end a stream normally.

    Only transport-level exceptions qualify; the message must match one of the
    known socket/stream-closed signatures.
    """
    if isinstance(exc, BenignStreamClosure):
        return True
    transport_types = (
        OSError,
        httpx.StreamError,
        httpx.ReadError,
        httpx.RemoteProtocolError,
        openai.APIConnectionError,
        anthropic.APIConnectionError,
    )
    for e in _walk_exception_chain(exc):
        if not isinstance(e, transport_types):
            continue
        text = str(e).lower()
        if any(signature in text for signature in BENIGN_CLOSURE_SIGNATURES):
            return True
    return False


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: Optional[str],
    model: Optional[str],
) -> LLMShimError:
    """
    Map an arbitrary failure into the llmshim taxonomy.

    - llmshim errors pass through with missing context filled in.
    - SDK status errors and httpx status errors become UpstreamError.
    - SDK connection/timeout errors and httpx transport errors become TransportError.
    - botocore client errors (InvokeModel) become UpstreamError, missing AWS
      credentials ConfigurationError, other botocore failures TransportError.
    - Decode/encode failures become SerializationError.
    - Everything else (cloud SDK exceptions) becomes LLMShimError with the raw text.

    asyncio.CancelledError is never wrapped.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, LLMShimError):
        if exc.provider is None:
            exc.provider = provider
        if exc.model is None:
            exc.model = model
        return exc

    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError, httpx.HTTPStatusError)):
        response = exc.response
        try:
            body = response.text
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            body = None
        err = parse_error_body(response.status_code, body, provider=provider, model=model)
        err.__cause__ = exc
        return err

    if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError, httpx.TransportError)):
        err = TransportError(
            f"Transport failure: {exc}",
            provider=provider,
            model=model,
            raw_error=str(exc),
        )
        err.__cause__ = exc
        return err

    if isinstance(exc, botocore.exceptions.ClientError):
        error = exc.response.get("Error") or {}
        metadata = exc.response.get("ResponseMetadata") or {}
        err = UpstreamError(
            error.get("Message") or str(exc),
            provider=provider,
            model=model,
            status_code=metadata.get("HTTPStatusCode"),
            error_type=error.get("Code"),
            raw_error=str(exc),
        )
        err.__cause__ = exc
        return err

    if isinstance(exc, botocore.exceptions.NoCredentialsError):
        err = ConfigurationError(
            "No AWS credentials found", provider=provider, model=model, raw_error=str(exc)
        )
        err.__cause__ = exc
        return err

    if isinstance(exc, botocore.exceptions.BotoCoreError):
        err = TransportError(
            f"Transport failure: {exc}",
            provider=provider,
            model=model,
            raw_error=str(exc),
        )
        err.__cause__ = exc
        return err

    if isinstance(exc, (json.JSONDecodeError, ValueError, TypeError, KeyError)):
        err = SerializationError(
            f"Could not translate payload: {exc}",
            provider=provider,
            model=model,
            raw_error=str(exc),
        )
        err.__cause__ = exc
        return err

    status_code = None
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            status_code = value
            break

    err = LLMShimError(
        f"{type(exc).__name__}: {exc}",
        provider=provider,
        model=model,
        status_code=status_code,
        raw_error=str(exc),
    )
    err.__cause__ = exc
    return err
