"""Chat-completion providers: a remote gateway and a local OpenAI-compatible server."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests

from .config import AnalyzerConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a senior CI/CD debugging and testing assistant."


class ProviderError(Exception):
    """A provider call failed (HTTP status, timeout, transport or payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def user_messages(prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


class ChatProvider:
    """Base class for chat-completion providers."""

    name = "provider"

    def __init__(
        self,
        model: str,
        endpoint: str,
        api_key: str = "",
        connect_timeout: float = 20.0,
        request_timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ):
        self.model = model
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = (connect_timeout, request_timeout)
        self.session = session or requests.Session()

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 800,
        temperature: float = 0.2,
    ) -> str:
        """POST one chat completion and return the first message's text.

        Raises:
            ProviderError: on a non-2xx status, timeout, connection failure
                or a response without message content.
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            response = self.session.post(
                self.endpoint,
                headers=self.headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderError(f"{self.name} request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            parsed = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned malformed JSON") from exc

        content = extract_message_text(parsed)
        if not content:
            raise ProviderError(f"{self.name} response had no message content")
        return content

    def generate(self, prompt: str, max_tokens: int = 800, temperature: float = 0.2) -> str:
        return self.complete(user_messages(prompt), max_tokens=max_tokens, temperature=temperature)


def extract_message_text(parsed: object) -> Optional[str]:
    """Pull ``choices[0].message.content`` out of a chat-completion response.

    Reasoning models sometimes leave ``content`` empty and put the answer in
    ``reasoning`` instead.
    """
    try:
        msg = parsed["choices"][0]["message"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(msg, dict):
        return None
    content = msg.get("content") or ""
    if isinstance(content, list):
        content = "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    if not isinstance(content, str):
        return None
    if content.strip():
        return content
    reasoning = msg.get("reasoning") or ""
    if isinstance(reasoning, str) and reasoning.strip():
        return reasoning
    return None


class RemoteChatProvider(ChatProvider):
    """OpenRouter-style hosted gateway (bearer key required)."""

    name = "OpenRouter"

    def __init__(self, model: str, api_key: str, endpoint: str, title: str = "PR Targeted Test Analyzer", **kwargs):
        super().__init__(model=model, endpoint=endpoint, api_key=api_key, **kwargs)
        self.title = title

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["HTTP-Referer"] = "https://github.com"
        headers["X-Title"] = self.title
        return headers


class LocalChatProvider(ChatProvider):
    """Local OpenAI-compatible server such as Ollama's ``/v1`` API."""

    name = "local LLM"

    def __init__(self, model: str, base_url: str, api_key: str = "", **kwargs):
        super().__init__(model=model, endpoint=chat_completions_url(base_url), api_key=api_key, **kwargs)


def chat_completions_url(base_url: str) -> str:
    """Normalise a base URL to its ``.../v1/chat/completions`` endpoint."""
    base = base_url.strip()
    if base.endswith("/chat/completions"):
        return base
    if base.endswith("/v1/"):
        return base + "chat/completions"
    if base.endswith("/v1"):
        return base + "/chat/completions"
    return base.rstrip("/") + "/v1/chat/completions"


def resolve_provider(config: AnalyzerConfig, title: str = "PR Targeted Test Analyzer") -> Optional[ChatProvider]:
    """Pick the provider by strict priority: local endpoint, remote key, else none."""
    timeouts = {"connect_timeout": config.connect_timeout, "request_timeout": config.request_timeout}
    if config.local_configured:
        logger.debug("Using local provider at %s", config.local_base_url)
        return LocalChatProvider(
            model=config.local_model,
            base_url=config.local_base_url,
            api_key=config.local_api_key,
            **timeouts,
        )
    if config.remote_configured:
        logger.debug("Using remote provider model %s", config.remote_model)
        return RemoteChatProvider(
            model=config.remote_model,
            api_key=config.remote_api_key,
            endpoint=config.remote_endpoint,
            title=title,
            **timeouts,
        )
    return None
