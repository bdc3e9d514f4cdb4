"""Tests for inference relays."""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from openai import APITimeoutError, OpenAIError

from modelflow import config
from modelflow.relay import (
    SYSTEM_PROMPT,
    HTTPRelay,
    MockRelay,
    OpenAICompatibleRelay,
    RelayError,
    format_history,
    model_parameters,
)


class TestHelpers:
    """Test history formatting and model parameters."""

    def test_format_history(self):
        messages = [
            {"role": "user", "content": "hi", "timestamp": "t"},
            {"role": "assistant", "content": "hello", "model": "m"},
            {"role": "system", "content": "ignored role"},
            {"role": "user"},
        ]
        assert format_history(messages) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "assistant", "content": "ignored role"},
        ]

    def test_model_parameters(self):
        models = config.get_models()
        assert model_parameters(models["advanced"]) == (8192, 0.8)
        assert model_parameters(models["standard"]) == (4096, 0.7)


class TestMockRelay:
    """Test the mock relay."""

    def test_default_reply(self):
        relay = MockRelay()
        reply = relay.send_message("hi", [], "model-a")

        assert reply.text == "[Mock response from model-a]"
        assert reply.model == "model-a"
        assert relay.calls == [{"text": "hi", "history": [], "model": "model-a"}]

    def test_scripted_replies(self):
        relay = MockRelay(replies=["first", RelayError("down")])

        assert relay.send_message("a", [], "m").text == "first"
        with pytest.raises(RelayError):
            relay.send_message("b", [], "m")

    def test_failing_models(self):
        relay = MockRelay(failing_models=["bad"])
        with pytest.raises(RelayError) as excinfo:
            relay.send_message("a", [], "bad")
        assert excinfo.value.model_id == "bad"


def _completion(content):
    completion = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    completion.choices = [choice]
    return completion


class TestOpenAICompatibleRelay:
    """Test the upstream relay with a stubbed client."""

    def setup_method(self):
        self.relay = OpenAICompatibleRelay(api_key="test-key", base_url="http://upstream/v1")
        self.relay._client = MagicMock()
        self.create = self.relay._client.chat.completions.create

    def test_sends_system_history_and_message(self):
        """The request carries the system prompt, history and new message."""
        self.create.return_value = _completion("  answer  ")
        advanced = config.get_models()["advanced"]

        reply = self.relay.send_message("question", [{"role": "user", "content": "earlier"}], advanced)

        assert reply.text == "answer"
        assert reply.model == advanced
        kwargs = self.create.call_args.kwargs
        assert kwargs["model"] == advanced
        assert kwargs["max_tokens"] == 8192
        assert kwargs["temperature"] == 0.8
        assert kwargs["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "earlier"},
            {"role": "user", "content": "question"},
        ]

    def test_timeout(self):
        self.create.side_effect = APITimeoutError(request=httpx.Request("POST", "http://upstream/v1"))

        with pytest.raises(RelayError) as excinfo:
            self.relay.send_message("q", [], "m")
        assert excinfo.value.timed_out is True
        assert excinfo.value.model_id == "m"

    def test_api_error(self):
        self.create.side_effect = OpenAIError("bad gateway")

        with pytest.raises(RelayError) as excinfo:
            self.relay.send_message("q", [], "m")
        assert excinfo.value.timed_out is False

    def test_empty_choices(self):
        completion = MagicMock()
        completion.choices = []
        self.create.return_value = completion

        with pytest.raises(RelayError, match="Invalid response format"):
            self.relay.send_message("q", [], "m")

    def test_empty_content(self):
        self.create.return_value = _completion("   ")

        with pytest.raises(RelayError, match="Empty response"):
            self.relay.send_message("q", [], "m")

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        relay = OpenAICompatibleRelay()

        with pytest.raises(RelayError):
            relay.send_message("q", [], "m")


class TestHTTPRelay:
    """Test the relay endpoint client with a mock transport."""

    def _relay(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HTTPRelay(url="http://relay.test/api/chat", client=client)

    def test_success(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"response": "hello", "model": "m"})

        reply = self._relay(handler).send_message("hi", [{"role": "user", "content": "x"}], "m")

        assert reply.text == "hello"
        assert reply.model == "m"
        assert seen == {"message": "hi", "history": [{"role": "user", "content": "x"}], "model": "m"}

    def test_error_envelope(self):
        relay = self._relay(lambda request: httpx.Response(502, json={"error": "upstream down"}))

        with pytest.raises(RelayError, match="upstream down"):
            relay.send_message("hi", [], "m")

    def test_error_without_body(self):
        relay = self._relay(lambda request: httpx.Response(500, text="oops"))

        with pytest.raises(RelayError, match="Backend error: 500"):
            relay.send_message("hi", [], "m")

    def test_invalid_body(self):
        relay = self._relay(lambda request: httpx.Response(200, json={"text": "wrong key"}))

        with pytest.raises(RelayError, match="Invalid response format"):
            relay.send_message("hi", [], "m")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RelayError) as excinfo:
            self._relay(handler).send_message("hi", [], "m")
        assert excinfo.value.timed_out is True

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RelayError) as excinfo:
            self._relay(handler).send_message("hi", [], "m")
        assert excinfo.value.timed_out is False

    def test_requires_url(self, monkeypatch):
        monkeypatch.delenv("MODELFLOW_RELAY_URL", raising=False)
        with pytest.raises(ValueError):
            HTTPRelay()
