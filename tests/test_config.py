import pytest
from unittest.mock import patch

from llmshim.config import (
    AzureOpenAIConfig,
    BedrockConfig,
    DeepSeekConfig,
    GeminiConfig,
    OpenAIConfig,
)
from llmshim.errors import ConfigurationError


@pytest.fixture
def no_dotenv():
    with patch("llmshim.config.dotenv.load_dotenv") as load:
        yield load


class TestFromEnv:
    def test_openai(self, mock_env, no_dotenv):
        config = OpenAIConfig.from_env()

        assert config.api_key == "sk-test-openai"
        assert config.base_url == "https://api.openai.com/v1"
        assert config.provider == "openai"
        no_dotenv.assert_called_once_with(override=False)

    def test_gemini_and_deepseek_defaults(self, mock_env, no_dotenv):
        gemini = GeminiConfig.from_env()
        deepseek = DeepSeekConfig.from_env()

        assert gemini.provider == "gemini"
        assert gemini.base_url.startswith("https://generativelanguage.googleapis.com")
        assert deepseek.provider == "deepseek"
        assert deepseek.base_url == "https://api.deepseek.com"

    def test_azure(self, mock_env, no_dotenv):
        config = AzureOpenAIConfig.from_env()

        assert config.deployment_id == "gpt-4o-deploy"
        assert config.azure_endpoint == "https://my-resource.openai.azure.com"

    def test_bedrock_without_static_credentials(self, mock_env, no_dotenv, monkeypatch):
        monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
        monkeypatch.delenv("AWS_SECRET_ACCESS_KEY", raising=False)

        config = BedrockConfig.from_env()

        assert config.region == "us-east-1"
        assert config.model_id == "anthropic.claude-3-haiku-20240307-v1:0"
        assert not config.uses_static_credentials

    def test_missing_key(self, monkeypatch, no_dotenv):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigurationError) as exc_info:
            OpenAIConfig.from_env()
        assert exc_info.value.provider == "openai"


class TestValidation:
    def test_empty_api_key(self):
        with pytest.raises(ConfigurationError):
            OpenAIConfig(api_key="")

    def test_azure_needs_endpoint_or_resource(self):
        with pytest.raises(ConfigurationError):
            AzureOpenAIConfig(api_key="key", deployment_id="deploy")

    def test_azure_explicit_endpoint_wins(self):
        config = AzureOpenAIConfig(
            api_key="key", deployment_id="deploy", resource_name="ignored", endpoint="https://proxy.example.com/"
        )
        assert config.azure_endpoint == "https://proxy.example.com"

    def test_bedrock_credentials_come_in_pairs(self):
        with pytest.raises(ConfigurationError):
            BedrockConfig(region="us-east-1", model_id="m", access_key_id="AKIATEST")

    def test_repr_hides_secrets(self):
        assert "sk-live-123456789" not in repr(OpenAIConfig(api_key="sk-live-123456789"))
        assert "secret" not in repr(
            BedrockConfig(region="us-east-1", model_id="m", access_key_id="AKIATEST", secret_access_key="secret")
        )
