import asyncio

import pytest

from icp_agent.utils import llm as llm_mod
from icp_agent.utils.llm import CapabilityUnavailable, ChatCapability
from src.retry import BackoffPolicy, CircuitBreaker, RetryableError, with_retry


class _Reply:
    def __init__(self, content):
        self.content = content


class _RateLimited(Exception):
    status_code = 429


class _FakeChatClient:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return _Reply(outcome)


class _SlowClient:
    async def ainvoke(self, messages):
        await asyncio.sleep(1)
        return _Reply("too late")


def _fast_policy(attempts=3):
    return BackoffPolicy(max_attempts=attempts, base_delay_ms=0, max_delay_ms=0)


@pytest.mark.asyncio
async def test_disabled_capability_is_unavailable():
    cap = ChatCapability.disabled()
    assert cap.available is False
    with pytest.raises(CapabilityUnavailable):
        await cap.agenerate("hello")


def test_from_settings_respects_master_switch(monkeypatch):
    monkeypatch.setattr(llm_mod.settings, "ENABLE_ASSISTANT_LLM", False)
    assert ChatCapability.from_settings().configured is False


def test_missing_api_key_disables_client(monkeypatch):
    monkeypatch.setattr(llm_mod.settings, "OPENAI_API_KEY", None)
    assert llm_mod._make_chat_client("gpt-4o-mini", 0.3) is None


@pytest.mark.asyncio
async def test_returns_stripped_text_and_sends_schema_hint():
    client = _FakeChatClient(["  hi there  ", [{"type": "text", "text": "part one "}, {"type": "text", "text": "two"}]])
    cap = ChatCapability(client, policy=_fast_policy())
    assert await cap.agenerate("prompt", schema_hint='{"a": 1}') == "hi there"
    system, human = client.calls[0]
    assert '{"a": 1}' in system.content
    assert human.content == "prompt"
    assert await cap.agenerate("prompt") == "part one two"


@pytest.mark.asyncio
async def test_rate_limits_are_retried():
    client = _FakeChatClient([_RateLimited("slow down"), "ok"])
    cap = ChatCapability(client, policy=_fast_policy())
    assert await cap.agenerate("prompt") == "ok"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_timeout_raises_unavailable():
    cap = ChatCapability(_SlowClient(), timeout_s=0.01, policy=_fast_policy())
    with pytest.raises(CapabilityUnavailable):
        await cap.agenerate("prompt")


@pytest.mark.asyncio
async def test_breaker_opens_after_repeated_errors_and_recovers():
    now = [1000.0]
    breaker = CircuitBreaker(error_threshold=2, cool_off_s=60, clock=lambda: now[0])
    client = _FakeChatClient([ValueError("boom"), ValueError("boom"), "back"])
    cap = ChatCapability(client, breaker=breaker, policy=_fast_policy())

    for _ in range(2):
        with pytest.raises(CapabilityUnavailable):
            await cap.agenerate("prompt")
    assert cap.available is False
    with pytest.raises(CapabilityUnavailable):
        await cap.agenerate("prompt")
    assert len(client.calls) == 2

    now[0] += 61
    assert cap.available is True
    assert await cap.agenerate("prompt") == "back"


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_other_errors():
    calls = []

    async def _fn():
        calls.append(1)
        raise KeyError("nope")

    with pytest.raises(KeyError):
        await with_retry(_fn, retry_on=(RetryableError,), policy=_fast_policy())
    assert len(calls) == 1
