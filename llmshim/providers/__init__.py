from .base import BaseLLMProvider, ProviderCapabilities
from .openai import OpenAIProvider
from .bedrock import BedrockProvider

__all__ = ["BaseLLMProvider", "ProviderCapabilities", "OpenAIProvider", "BedrockProvider"]
