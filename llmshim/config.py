"""
Provider configuration.

Each config is a frozen dataclass; `from_env()` reads the usual environment
variables after loading a `.env` file (python-dotenv), so the client can be
built from explicit values in code or from the environment.
"""
import os
from dataclasses import dataclass
from typing import Optional

import dotenv

from .errors import ConfigurationError

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_DEEPSEEK_BASE_URL = "https://api.deepseek.com"
DEFAULT_AZURE_API_VERSION = "2024-10-21"
DEFAULT_TIMEOUT = 600.0


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value or None


def _load_env() -> None:
    # Existing process variables win over the .env file.
    dotenv.load_dotenv(override=False)


def _redact(secret: Optional[str]) -> str:
    if not secret:
        return "None"
    return f"'{secret[:4]}...'" if len(secret) > 8 else "'***'"


@dataclass(frozen=True)
class OpenAIConfig:
    """
    Configuration for an OpenAI-compatible Chat Completions endpoint.
    """
    api_key: str
    base_url: str = DEFAULT_OPENAI_BASE_URL
    organization: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if not self.api_key:
            raise ConfigurationError("An API key is required", provider=self.provider)

    @property
    def provider(self) -> str:
        return "openai"

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        _load_env()
        api_key = _env("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set", provider="openai")
        return cls(
            api_key=api_key,
            base_url=_env("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL,
            organization=_env("OPENAI_ORG_ID"),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(api_key={_redact(self.api_key)}, base_url={self.base_url!r})"


@dataclass(frozen=True, repr=False)
class GeminiConfig(OpenAIConfig):
    """
    Gemini through Google's OpenAI-compatible endpoint.
    """
    base_url: str = DEFAULT_GEMINI_BASE_URL

    @property
    def provider(self) -> str:
        return "gemini"

    @classmethod
    def from_env(cls) -> "GeminiConfig":
        _load_env()
        api_key = _env("GOOGLE_API_KEY") or _env("GEMINI_API_KEY")
        if not api_key:
            raise ConfigurationError("GOOGLE_API_KEY is not set", provider="gemini")
        return cls(api_key=api_key, base_url=_env("GEMINI_BASE_URL") or DEFAULT_GEMINI_BASE_URL)


@dataclass(frozen=True, repr=False)
class DeepSeekConfig(OpenAIConfig):
    """
    DeepSeek's OpenAI-compatible endpoint.
    """
    base_url: str = DEFAULT_DEEPSEEK_BASE_URL

    @property
    def provider(self) -> str:
        return "deepseek"

    @classmethod
    def from_env(cls) -> "DeepSeekConfig":
        _load_env()
        api_key = _env("DEEPSEEK_API_KEY")
        if not api_key:
            raise ConfigurationError("DEEPSEEK_API_KEY is not set", provider="deepseek")
        return cls(api_key=api_key)


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """
    Azure OpenAI deployment.

    Either `endpoint` (https://<resource>.openai.azure.com) or `resource_name`
    must be given. The deployment id doubles as the model when a request
    does not name one.
    """
    api_key: str
    deployment_id: str
    resource_name: Optional[str] = None
    endpoint: Optional[str] = None
    api_version: str = DEFAULT_AZURE_API_VERSION
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if not self.api_key:
            raise ConfigurationError("An API key is required", provider="azure")
        if not self.deployment_id:
            raise ConfigurationError("A deployment id is required", provider="azure")
        if not (self.endpoint or self.resource_name):
            raise ConfigurationError("Either endpoint or resource_name is required", provider="azure")

    @property
    def provider(self) -> str:
        return "azure"

    @property
    def azure_endpoint(self) -> str:
        if self.endpoint:
            return self.endpoint.rstrip("/")
        return f"https://{self.resource_name}.openai.azure.com"

    @classmethod
    def from_env(cls) -> "AzureOpenAIConfig":
        _load_env()
        api_key = _env("AZURE_OPENAI_API_KEY")
        deployment_id = _env("AZURE_OPENAI_DEPLOYMENT")
        if not api_key or not deployment_id:
            raise ConfigurationError(
                "AZURE_OPENAI_API_KEY and AZURE_OPENAI_DEPLOYMENT must be set", provider="azure"
            )
        return cls(
            api_key=api_key,
            deployment_id=deployment_id,
            resource_name=_env("AZURE_OPENAI_RESOURCE"),
            endpoint=_env("AZURE_OPENAI_ENDPOINT"),
            api_version=_env("AZURE_OPENAI_API_VERSION") or DEFAULT_AZURE_API_VERSION,
        )

    def __repr__(self) -> str:
        return (
            f"AzureOpenAIConfig(api_key={_redact(self.api_key)}, "
            f"endpoint={self.azure_endpoint!r}, deployment_id={self.deployment_id!r})"
        )


@dataclass(frozen=True)
class BedrockConfig:
    """
    Models on AWS Bedrock (Claude, Titan, Llama, Cohere or Jurassic).

    Static credentials are used when given (access key and secret must come
    together); otherwise the default AWS credential chain resolves them.
    """
    region: str
    model_id: str
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if not self.region:
            raise ConfigurationError("A region is required", provider="bedrock")
        if not self.model_id:
            raise ConfigurationError("A model id is required", provider="bedrock")
        if bool(self.access_key_id) != bool(self.secret_access_key):
            raise ConfigurationError(
                "access_key_id and secret_access_key must be provided together",
                provider="bedrock",
                model=self.model_id,
            )

    @property
    def provider(self) -> str:
        return "bedrock"

    @property
    def uses_static_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    @classmethod
    def from_env(cls) -> "BedrockConfig":
        _load_env()
        region = _env("AWS_REGION") or _env("AWS_DEFAULT_REGION")
        model_id = _env("BEDROCK_MODEL_ID")
        if not region or not model_id:
            raise ConfigurationError("AWS_REGION and BEDROCK_MODEL_ID must be set", provider="bedrock")
        return cls(
            region=region,
            model_id=model_id,
            access_key_id=_env("AWS_ACCESS_KEY_ID"),
            secret_access_key=_env("AWS_SECRET_ACCESS_KEY"),
            session_token=_env("AWS_SESSION_TOKEN"),
        )

    def __repr__(self) -> str:
        return (
            f"BedrockConfig(region={self.region!r}, model_id={self.model_id!r}, "
            f"access_key_id={_redact(self.access_key_id)})"
        )
