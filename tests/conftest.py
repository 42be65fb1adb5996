import io
import os

import pytest
from PIL import Image

from llmshim.config import BedrockConfig, OpenAIConfig


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for provider credentials."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "azure-test-key")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-deploy")
    monkeypatch.setenv("AZURE_OPENAI_RESOURCE", "my-resource")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("BEDROCK_MODEL_ID", "anthropic.claude-3-haiku-20240307-v1:0")


@pytest.fixture
def openai_config():
    return OpenAIConfig(api_key="sk-test-openai")


@pytest.fixture
def bedrock_config():
    return BedrockConfig(
        region="us-east-1",
        model_id="anthropic.claude-3-haiku-20240307-v1:0",
        access_key_id="AKIATEST",
        secret_access_key="secret",
    )


@pytest.fixture
def make_image():
    """Factory for encoded test images; `noise=True` makes them hard to compress."""

    def _make(fmt: str = "PNG", size=(32, 32), color=(200, 30, 30), noise: bool = False, **save_kwargs) -> bytes:
        if noise:
            image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
        else:
            image = Image.new("RGB", size, color)
        buf = io.BytesIO()
        image.save(buf, format=fmt, **save_kwargs)
        return buf.getvalue()

    return _make


@pytest.fixture
def user_request():
    return {
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "You are terse."},
            {"role": "user", "content": "Hello"},
        ],
    }


@pytest.fixture
def weather_tool():
    return {
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Get the weather for a city",
            "parameters": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
        },
    }


class Dumped:
    """Stand-in for an SDK model object: only `model_dump()` is used."""

    def __init__(self, payload):
        self.payload = payload

    def model_dump(self):
        return self.payload


class FakeSDKStream:
    """Async stream of SDK events; optionally fails after the events run out."""

    def __init__(self, events, error=None):
        self.events = [Dumped(e) for e in events]
        self.error = error
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event
        if self.error is not None:
            raise self.error


@pytest.fixture
def sdk_response():
    return Dumped


@pytest.fixture
def sdk_stream():
    return FakeSDKStream
