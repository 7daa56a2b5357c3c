"""
Injected chat-model capability used by the intent extractor and response generator.

The capability tolerates missing API credentials: when the model cannot be built
(or the generative tier is switched off) ``available`` is False and callers run on
their deterministic fallback instead. Every call is bounded by a timeout and
guarded by a circuit breaker, so a failing model degrades wording and
extraction quality, not latency.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from src import settings
from src.retry import BackoffPolicy, CircuitBreaker, CircuitOpen, RetryableError, with_retry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are Maya, an assistant that helps users define an ideal customer profile for outreach."


class CapabilityUnavailable(Exception):
    """The generative capability is unconfigured, open-circuited, timed out or errored."""


def _make_chat_client(model: str, temperature: float | None):
    if not settings.OPENAI_API_KEY:
        logger.info("OPENAI_API_KEY not set; generative tier disabled")
        return None
    try:
        from langchain_openai import ChatOpenAI

        kwargs: dict[str, Any] = {"model": model, "api_key": settings.OPENAI_API_KEY}
        # Some models (e.g., gpt-5) only support default temperature; omit override
        if temperature is not None and not (model or "").lower().startswith("gpt-5"):
            kwargs["temperature"] = temperature
        return ChatOpenAI(**kwargs)
    except Exception as exc:  # no package, bad config
        logger.warning("Falling back to heuristic mode (LLM unavailable): %s", exc)
        return None


def _is_rate_limit(exc: BaseException) -> bool:
    return getattr(exc, "status_code", None) == 429 or "rate limit" in str(exc).lower()


def _log_retry(attempt: int, exc: Exception) -> None:
    logger.info("llm rate limited (attempt %d): %s", attempt, exc)


class ChatCapability:
    """Narrow ``prompt -> text`` wrapper around a LangChain chat model."""

    def __init__(
        self,
        client: Any = None,
        *,
        timeout_s: float | None = None,
        breaker: CircuitBreaker | None = None,
        policy: BackoffPolicy | None = None,
    ):
        self.client = client
        self.timeout_s = float(timeout_s or settings.ASSISTANT_LLM_TIMEOUT_S)
        self.breaker = breaker or CircuitBreaker()
        self.policy = policy or BackoffPolicy()

    @classmethod
    def from_settings(cls, temperature: float | None = None) -> "ChatCapability":
        if not settings.ENABLE_ASSISTANT_LLM:
            return cls.disabled()
        temp = settings.ASSISTANT_TEMPERATURE if temperature is None else temperature
        return cls(_make_chat_client(settings.ASSISTANT_MODEL, temp))

    @classmethod
    def disabled(cls) -> "ChatCapability":
        return cls(None)

    @property
    def configured(self) -> bool:
        return self.client is not None

    @property
    def available(self) -> bool:
        return self.configured and self.breaker.closed

    async def agenerate(self, prompt: str, schema_hint: Optional[str] = None) -> str:
        """Return the model's text for ``prompt``; raise ``CapabilityUnavailable`` otherwise."""
        if not self.configured:
            raise CapabilityUnavailable("not configured")
        try:
            self.breaker.guard()
        except CircuitOpen as exc:
            raise CapabilityUnavailable(str(exc)) from exc
        system = SYSTEM_PROMPT
        if schema_hint:
            system += "\nRespond with ONLY a JSON object matching this schema:\n" + schema_hint
        messages = [SystemMessage(content=system), HumanMessage(content=prompt)]

        async def _call():
            try:
                return await self.client.ainvoke(messages)
            except Exception as exc:
                if _is_rate_limit(exc):
                    raise RetryableError(str(exc)) from exc
                raise

        try:
            result = await asyncio.wait_for(
                with_retry(_call, retry_on=(RetryableError,), policy=self.policy, on_retry=_log_retry),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            self.breaker.on_error()
            logger.info("llm call timed out after %.1fs", self.timeout_s)
            raise CapabilityUnavailable("timeout") from exc
        except Exception as exc:
            self.breaker.on_error()
            logger.info("llm call failed: %s", exc)
            raise CapabilityUnavailable(str(exc)) from exc
        self.breaker.on_success()
        content = getattr(result, "content", None)
        if content is None:
            content = str(result)
        if isinstance(content, list):
            # content blocks from newer chat models
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        return str(content).strip()
