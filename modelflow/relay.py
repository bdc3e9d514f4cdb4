"""
Inference relay for ModelFlow.

Sends a chat message plus history to a hosted model and returns the reply.
Relays are pluggable - the upstream OpenAI-compatible API, the HTTP relay
endpoint served by ``api.main``, or a scripted mock for testing.

Every failure, including timeouts, surfaces as ``RelayError``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
from openai import OpenAI, OpenAIError, APITimeoutError

from modelflow.config import get_models, get_relay_settings


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are ModelFlow Studio, a helpful and intelligent assistant.

FORMAT YOUR RESPONSES PROFESSIONALLY:
- Use **bold** for important terms
- Use proper headings with ## for main topics
- Use bullet points with - for lists
- Use numbered lists with 1. 2. 3. for steps
- Use `code` for technical terms
- Structure your response with clear sections
- Be accurate, helpful, and well-formatted

Always provide clear, concise, and accurate information."""

VALID_ROLES = ("user", "assistant")


class RelayError(Exception):
    """Raised when the inference call fails or times out."""

    def __init__(self, message: str, model_id: Optional[str] = None, timed_out: bool = False):
        self.model_id = model_id
        self.timed_out = timed_out
        super().__init__(message)


@dataclass
class RelayResponse:
    """Reply from the model."""
    text: str
    model: str


def format_history(messages: Sequence[dict]) -> list[dict]:
    """Normalize transcript entries to ``{role, content}`` pairs."""
    history = []
    for message in messages:
        role = "user" if message.get("role") == "user" else "assistant"
        content = message.get("content")
        if content is None:
            continue
        history.append({"role": role, "content": str(content)})
    return history


def model_parameters(model_id: str) -> tuple[int, float]:
    """(max_tokens, temperature) for a model."""
    if model_id == get_models()["advanced"]:
        return 8192, 0.8
    return 4096, 0.7


class InferenceRelay(ABC):
    """Abstract base class for inference relays."""

    @abstractmethod
    def send_message(
        self,
        text: str,
        history: Sequence[dict],
        model_id: str,
    ) -> RelayResponse:
        """Send ``text`` with prior ``history`` to ``model_id``."""
        pass


class MockRelay(InferenceRelay):
    """
    Mock relay for testing.

    Replies are taken from ``replies`` in order; an Exception instance in the
    list is raised instead. Models in ``failing_models`` always fail.
    """

    def __init__(
        self,
        replies: Optional[list] = None,
        failing_models: Optional[Sequence[str]] = None,
    ):
        self.replies = list(replies or [])
        self.failing_models = set(failing_models or ())
        self.calls: list[dict] = []

    def send_message(
        self,
        text: str,
        history: Sequence[dict],
        model_id: str,
    ) -> RelayResponse:
        self.calls.append({"text": text, "history": list(history), "model": model_id})

        if model_id in self.failing_models:
            raise RelayError(f"Simulated failure for {model_id}", model_id=model_id)

        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return RelayResponse(text=str(reply), model=model_id)

        return RelayResponse(text=f"[Mock response from {model_id}]", model=model_id)


class OpenAICompatibleRelay(InferenceRelay):
    """
    Relay to an OpenAI-compatible chat completions API.

    Defaults to the Hugging Face router with ``HF_TOKEN``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        settings = get_relay_settings()
        self.api_key = api_key or settings.api_key
        self.base_url = base_url or settings.upstream_url
        self.timeout_seconds = timeout_seconds or settings.timeout_seconds
        self.system_prompt = system_prompt
        self._client = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise RelayError("No API key. Set HF_TOKEN or pass api_key parameter.")
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def send_message(
        self,
        text: str,
        history: Sequence[dict],
        model_id: str,
    ) -> RelayResponse:
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(format_history(history))
        messages.append({"role": "user", "content": text})

        max_tokens, temperature = model_parameters(model_id)

        try:
            response = self.client.chat.completions.create(
                model=model_id,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except APITimeoutError as e:
            raise RelayError(f"{model_id} timed out", model_id=model_id, timed_out=True) from e
        except OpenAIError as e:
            raise RelayError(f"{model_id} error: {e}", model_id=model_id) from e

        if not response.choices or response.choices[0].message is None:
            raise RelayError("Invalid response format", model_id=model_id)

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise RelayError("Empty response", model_id=model_id)

        return RelayResponse(text=content, model=model_id)


class HTTPRelay(InferenceRelay):
    """
    Client of the relay endpoint (``POST /api/chat``).

    Request body ``{message, history, model}``; reply ``{response, model}``
    or an error envelope ``{error}``.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        settings = get_relay_settings()
        self.url = url or settings.relay_url
        if not self.url:
            raise ValueError("No relay URL. Set MODELFLOW_RELAY_URL or pass url parameter.")
        self.timeout_seconds = timeout_seconds or settings.timeout_seconds
        self._client = client or httpx.Client(timeout=self.timeout_seconds)

    def send_message(
        self,
        text: str,
        history: Sequence[dict],
        model_id: str,
    ) -> RelayResponse:
        payload = {
            "message": text,
            "history": format_history(history),
            "model": model_id,
        }

        try:
            response = self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise RelayError("Request timeout", model_id=model_id, timed_out=True) from e
        except httpx.HTTPError as e:
            raise RelayError(f"Relay unreachable: {e}", model_id=model_id) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            raise RelayError(
                message or f"Backend error: {response.status_code}",
                model_id=model_id,
            )

        if not isinstance(data, dict) or "response" not in data:
            raise RelayError("Invalid response format", model_id=model_id)

        return RelayResponse(text=str(data["response"]), model=str(data.get("model") or model_id))

    def close(self) -> None:
        self._client.close()
