"""Tests for reply generation: escalation short-circuit, retries and fallbacks."""

from types import SimpleNamespace

import pytest

from app.agents.generator import (
    MODEL_NOT_CONFIGURED,
    RETRY_FALLBACK,
    UNCONFIGURED_FALLBACK,
    GenerationContext,
    HistoryEntry,
    ResponseGenerator,
)
from app.agents.llm import OpenAIChatModel
from app.agents.providers import DEFAULT_AZURE_API_VERSION, ProviderCredentials, ProviderRegistry
from app.agents.safety import EMPATHY_RESPONSES
from app.core.errors import ModelUnavailableError
from conftest import FakeModel, failing


def _context(message: str = "Busy week but good", tone: str = "friendly_peer", **extra) -> GenerationContext:
    return GenerationContext(
        employee_name="Alice Smith",
        agent_type="pulse_check",
        tone_preset=tone,
        history=[
            HistoryEntry("assistant", "Hey Alice! How's your week going?"),
            HistoryEntry("user", message),
        ],
        participant_id="emp-1",
        **extra,
    )


def _generator(model, sleeps=None, **kwargs) -> ResponseGenerator:
    return ResponseGenerator(model, sleep=(sleeps if sleeps is not None else []).append, **kwargs)


def test_flagged_message_short_circuits_model():
    model = FakeModel()

    reply = _generator(model).generate(_context("my manager harassed me again"))

    assert reply.should_escalate
    assert reply.escalation_type == "harassment"
    assert reply.content == EMPATHY_RESPONSES["harassment"]
    assert '"harassed"' in reply.escalation_reason
    assert model.calls == []


def test_unconfigured_model_returns_fixed_reply_without_call():
    reply = ResponseGenerator(None).generate(_context())

    assert reply.content == UNCONFIGURED_FALLBACK
    assert reply.warning == MODEL_NOT_CONFIGURED
    assert not reply.used_model


def test_model_reply_uses_prompt_history_and_tone_limits():
    model = FakeModel(["Glad to hear it! What made it good?"])

    reply = _generator(model, timeout=7.5).generate(
        _context(tone="poke_lite", employee_title="Engineer", department="Platform")
    )

    assert reply.content == "Glad to hear it! What made it good?"
    assert reply.used_model
    assert reply.attempts == 1
    call = model.calls[0]
    assert "under 240 characters" in call["system_prompt"]
    assert "Alice Smith, Engineer in Platform" in call["system_prompt"]
    assert call["history"][-1] == {"role": "user", "content": "Busy week but good"}
    assert call["max_tokens"] == 100
    assert call["timeout"] == 7.5


def test_model_reply_is_truncated_to_tone_ceiling():
    model = FakeModel(["a" * 600])

    reply = _generator(model).generate(_context(tone="poke_lite"))

    assert len(reply.content) == 240
    assert reply.content.endswith("...")


def test_retries_with_exponential_backoff_then_succeeds():
    sleeps: list[float] = []
    model = FakeModel([failing(), failing(), "Third time lucky."])

    reply = _generator(model, sleeps, max_attempts=3).generate(_context())

    assert reply.content == "Third time lucky."
    assert reply.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_fall_back():
    sleeps: list[float] = []
    model = FakeModel([failing(), failing(), failing()])

    reply = _generator(model, sleeps, max_attempts=3).generate(_context())

    assert reply.content == RETRY_FALLBACK
    assert not reply.used_model
    assert reply.attempts == 3
    assert len(model.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_policy_violating_reply_is_replaced():
    model = FakeModel(["Could you share your bank account details?"])

    reply = _generator(model).generate(_context())

    assert reply.content == RETRY_FALLBACK
    assert not reply.used_model
    assert len(model.calls) == 1


def test_opening_without_model_uses_canned_text():
    reply = ResponseGenerator(None).generate_opening(_context(), "opening")

    assert "Alice" in reply.content
    assert reply.warning == MODEL_NOT_CONFIGURED


def test_opening_is_attempted_once_and_falls_back():
    sleeps: list[float] = []
    model = FakeModel([failing()])

    reply = _generator(model, sleeps).generate_opening(_context(), "nudge")

    assert len(model.calls) == 1
    assert sleeps == []
    assert "Alice" in reply.content
    assert not reply.used_model


def test_opening_request_is_appended_to_history():
    model = FakeModel(["Hey Alice! Quick check-in - how are you?"])

    reply = _generator(model).generate_opening(_context(), "follow_up")

    assert reply.used_model
    history = model.calls[0]["history"]
    assert history[-1] == {"role": "user", "content": "Generate a follow-up check-in message."}
    assert "continuing a conversation" in model.calls[0]["system_prompt"]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        ResponseGenerator(None, max_attempts=0)


class _FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _client(outcome):
    completions = _FakeCompletions(outcome)
    timeouts: list[float] = []

    def with_options(timeout):
        timeouts.append(timeout)
        return SimpleNamespace(chat=SimpleNamespace(completions=completions))

    return SimpleNamespace(with_options=with_options), completions, timeouts


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def test_openai_adapter_builds_messages():
    client, completions, timeouts = _client(_completion("  Hello there  "))
    model = OpenAIChatModel(ProviderCredentials("openai", "sk-test"), "gpt-4o-mini", client=client)

    text = model.complete("rules", [{"role": "user", "content": "hi"}], 120, 5.0)

    assert text == "Hello there"
    assert timeouts == [5.0]
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["max_tokens"] == 120
    assert completions.kwargs["messages"] == [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "hi"},
    ]


@pytest.mark.parametrize("outcome", [RuntimeError("connection reset"), _completion("   ")])
def test_openai_adapter_failures_raise_model_unavailable(outcome):
    client, _, _ = _client(outcome)
    model = OpenAIChatModel(ProviderCredentials("openai", "sk-test"), "gpt-4o-mini", client=client)

    with pytest.raises(ModelUnavailableError):
        model.complete("rules", [], 50, 1.0)


def test_provider_registry_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    registry = ProviderRegistry()

    assert registry.get_credentials("OpenAI").api_key == "sk-env"
    assert registry.is_configured("openai")
    assert not registry.is_configured("azure")
    assert not registry.is_configured("anthropic")


def test_provider_registry_overrides_win(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    registry = ProviderRegistry({"openai": {"api_key": "  ", "base_url": "http://llm.local"}})

    credentials = registry.get_credentials("openai")

    assert not credentials.configured
    assert credentials.base_url == "http://llm.local"


class _RecordingClient:
    instances: list = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        type(self).instances.append(self)


def test_azure_provider_uses_azure_client(monkeypatch):
    import openai

    monkeypatch.setattr(_RecordingClient, "instances", [])
    monkeypatch.setattr(openai, "AzureOpenAI", _RecordingClient)
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "az-key")
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://people-ops.openai.azure.com")
    monkeypatch.delenv("AZURE_OPENAI_API_VERSION", raising=False)

    credentials = ProviderRegistry().get_credentials("azure")
    model = OpenAIChatModel(credentials, "checkin-deployment")

    assert credentials.configured
    assert model.model == "checkin-deployment"
    assert _RecordingClient.instances[0].kwargs == {
        "api_key": "az-key",
        "azure_endpoint": "https://people-ops.openai.azure.com",
        "api_version": DEFAULT_AZURE_API_VERSION,
    }


def test_azure_provider_needs_an_endpoint(monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "az-key")
    monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
    monkeypatch.setenv("AZURE_OPENAI_API_VERSION", "2024-10-21")

    credentials = ProviderRegistry().get_credentials("azure")

    assert credentials.api_version == "2024-10-21"
    assert not credentials.configured
