"""Tests for the model client helpers."""

import pytest

from margin_leakage.core.exceptions import ConfigurationError, LLMServiceError
from margin_leakage.llm_analyzer import (
    JSON_REMINDER,
    OpenRouterClient,
    VertexGeminiClient,
    generate_json_with_retry,
)

from conftest import FakeLLM


def test_first_reply_parsed():
    client = FakeLLM(['Result: {"insights": ["ok"]}'])
    raw, parsed = generate_json_with_retry(client, "check rows", model="m")
    assert parsed == {"insights": ["ok"]}
    assert raw == 'Result: {"insights": ["ok"]}'
    assert client.prompts == ["check rows"]


def test_reminder_sent_after_prose():
    client = FakeLLM(["The data looks fine.", '{"sql": "SELECT 1"}'])
    raw, parsed = generate_json_with_retry(client, "check rows", model="m")
    assert parsed == {"sql": "SELECT 1"}
    assert client.prompts[1] == "check rows" + JSON_REMINDER


def test_service_errors_consume_attempts():
    client = FakeLLM([LLMServiceError("Vertex AI error"), LLMServiceError("Vertex AI error"), '{"a": 1}'])
    raw, parsed = generate_json_with_retry(client, "p", model="m", attempts=3)
    assert parsed == {"a": 1}
    assert len(client.prompts) == 3


def test_gives_up_after_attempts():
    client = FakeLLM(default="still no json")
    raw, parsed = generate_json_with_retry(client, "p", model="m", attempts=2)
    assert parsed is None
    assert raw == "still no json"
    assert len(client.prompts) == 4


def test_unconfigured_clients():
    openrouter = OpenRouterClient(api_key=None, base_url="https://openrouter.ai/api/v1", referer="http://localhost")
    assert not openrouter.configured
    with pytest.raises(ConfigurationError):
        openrouter.generate("hi", model="m")

    with pytest.raises(ConfigurationError):
        VertexGeminiClient(project=None, location="us-central1").generate("hi", model="m")
