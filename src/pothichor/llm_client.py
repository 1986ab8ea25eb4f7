from __future__ import annotations

import json
import os
from typing import Iterable, List, Mapping, MutableMapping, Optional

import requests

from .errors import DependencyError

DEFAULT_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class LLMError(DependencyError):
    """Raised when the chat-completions endpoint fails or answers with an unusable payload."""


class ChatCompletionsClient:
    """
    Minimal client for an OpenAI-compatible chat-completions endpoint.

    Configuration is pulled from environment variables unless provided directly:

    - ``POTHICHOR_LLM_API_KEY`` / ``OPENAI_API_KEY`` – bearer credential
    - ``POTHICHOR_LLM_URL`` – endpoint, defaults to OpenAI chat completions
    - ``POTHICHOR_LLM_MODEL`` – model id (``gpt-4o-mini`` etc.)

    Every call uses a bounded ``timeout`` so a slow provider cannot stall listing creation.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        url: str | None = None,
        timeout: float = 10.0,
        temperature: float = 0.2,
        session: requests.Session | None = None,
    ):
        key = api_key or os.environ.get("POTHICHOR_LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "LLM API key missing. Set POTHICHOR_LLM_API_KEY (or OPENAI_API_KEY) or pass api_key."
            )
        self.api_key = key
        self.model = model or os.environ.get("POTHICHOR_LLM_MODEL", "gpt-4o-mini")
        self.url = url or os.environ.get("POTHICHOR_LLM_URL", DEFAULT_CHAT_URL)
        self.timeout = timeout
        self.temperature = temperature
        self._http = session or requests.Session()

    def chat(
        self,
        messages: Iterable[Mapping[str, str]],
        *,
        system_prompt: str | None = None,
        response_format: Optional[MutableMapping[str, str]] = None,
    ) -> str:
        """Send the conversation and return the assistant's text reply."""

        payload: dict[str, object] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature,
        }
        if system_prompt:
            payload["messages"] = [{"role": "system", "content": system_prompt}, *payload["messages"]]
        if response_format:
            payload["response_format"] = response_format

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._http.post(self.url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LLMError(f"LLM request failed: {exc}") from exc
        if response.status_code >= 400:
            raise LLMError(f"LLM API error {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise LLMError(f"Invalid JSON from LLM API: {response.text[:200]}") from exc

        choices: List[Mapping[str, object]] = body.get("choices", []) if isinstance(body, dict) else []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
            raise LLMError(f"LLM response missing choices: {str(body)[:200]}")
        message = choices[0].get("message", {}) or {}
        content = message.get("content") if isinstance(message, Mapping) else None
        if not isinstance(content, str):
            raise LLMError(f"LLM response missing assistant text: {message}")
        return content
