"""Tests for chat-completion providers."""

from unittest.mock import MagicMock

import pytest
import requests

from testimpact_cli.config import AnalyzerConfig
from testimpact_cli.llm import (
    LocalChatProvider,
    ProviderError,
    RemoteChatProvider,
    chat_completions_url,
    extract_message_text,
    resolve_provider,
    user_messages,
)


class TestResolveProvider:
    """Strict local > remote > none priority."""

    def test_local_wins_over_remote(self):
        config = AnalyzerConfig(
            local_provider="openai", local_base_url="http://localhost:11434/v1", local_model="qwen2.5-coder",
            remote_api_key="sk-or-123",
        )
        provider = resolve_provider(config)

        assert isinstance(provider, LocalChatProvider)
        assert provider.endpoint == "http://localhost:11434/v1/chat/completions"

    def test_remote_when_only_key(self):
        provider = resolve_provider(AnalyzerConfig(remote_api_key="sk-or-123"))

        assert isinstance(provider, RemoteChatProvider)
        assert provider.model == "meta-llama/llama-3.3-8b-instruct:free"
        assert provider.timeout == (20.0, 120.0)

    def test_incomplete_local_config_is_ignored(self):
        config = AnalyzerConfig(local_provider="openai", local_base_url="http://localhost:11434")
        assert resolve_provider(config) is None

    def test_none_configured(self):
        assert resolve_provider(AnalyzerConfig()) is None


class TestChatCompletionsUrl:
    @pytest.mark.parametrize("base, expected", [
        ("http://h:1/v1", "http://h:1/v1/chat/completions"),
        ("http://h:1/v1/", "http://h:1/v1/chat/completions"),
        ("http://h:1", "http://h:1/v1/chat/completions"),
        ("http://h:1/v1/chat/completions", "http://h:1/v1/chat/completions"),
    ])
    def test_normalises(self, base, expected):
        assert chat_completions_url(base) == expected


class TestComplete:
    """HTTP behaviour with a mocked session."""

    def test_sends_payload_and_headers(self, mock_session):
        provider = RemoteChatProvider("m", api_key="sk-or-123", endpoint="https://x/api", session=mock_session)

        text = provider.complete(user_messages("why?"), max_tokens=800, temperature=0.2)

        assert text.startswith("Likely cause")
        _, kwargs = mock_session.post.call_args
        assert kwargs["json"]["max_tokens"] == 800
        assert kwargs["json"]["temperature"] == 0.2
        assert kwargs["json"]["messages"][0]["role"] == "system"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-or-123"
        assert kwargs["headers"]["X-Title"] == "PR Targeted Test Analyzer"
        assert kwargs["timeout"] == (20.0, 120.0)

    def test_local_without_key_sends_no_auth(self, mock_session):
        provider = LocalChatProvider("m", base_url="http://localhost:11434/v1", session=mock_session)
        provider.generate("hi")

        _, kwargs = mock_session.post.call_args
        assert "Authorization" not in kwargs["headers"]

    @pytest.mark.parametrize("status", [401, 404, 429, 500])
    def test_http_error_carries_status(self, mock_session, chat_reply, status):
        mock_session.post.return_value = chat_reply("denied", status_code=status)
        provider = RemoteChatProvider("m", api_key="k", endpoint="https://x", session=mock_session)

        with pytest.raises(ProviderError) as exc_info:
            provider.generate("hi")
        assert exc_info.value.status_code == status

    def test_timeout(self, mock_session):
        mock_session.post.side_effect = requests.Timeout("read timed out")
        provider = LocalChatProvider("m", base_url="http://localhost:1", session=mock_session)

        with pytest.raises(ProviderError, match="timed out"):
            provider.generate("hi")

    def test_malformed_json(self, mock_session):
        response = MagicMock(status_code=200)
        response.json.side_effect = ValueError("not json")
        mock_session.post.return_value = response
        provider = LocalChatProvider("m", base_url="http://localhost:1", session=mock_session)

        with pytest.raises(ProviderError, match="malformed"):
            provider.generate("hi")

    def test_default_session_is_blocked_in_tests(self):
        provider = RemoteChatProvider("m", api_key="k", endpoint="https://openrouter.invalid")

        with pytest.raises(ProviderError):
            provider.generate("hi")


class TestExtractMessageText:
    def test_content_parts_and_reasoning(self):
        assert extract_message_text({"choices": [{"message": {"content": [{"text": "a"}, {"text": "b"}]}}]}) == "ab"
        assert extract_message_text({"choices": [{"message": {"content": "", "reasoning": "r"}}]}) == "r"
        assert extract_message_text({"choices": []}) is None
        assert extract_message_text({"error": "x"}) is None

    @pytest.mark.parametrize("content", [42, {"text": "x"}, [{"text": None}]])
    def test_non_text_content(self, content):
        assert extract_message_text({"choices": [{"message": {"content": content}}]}) is None

    def test_non_text_content_raises_provider_error(self, mock_session):
        response = MagicMock(status_code=200)
        response.json.return_value = {"choices": [{"message": {"content": 42}}]}
        mock_session.post.return_value = response
        provider = LocalChatProvider("m", base_url="http://localhost:1", session=mock_session)

        with pytest.raises(ProviderError, match="no message content"):
            provider.generate("hi")
