"""LLM adapter with Cerebras → Groq failover for streamed completions.

Cerebras is the primary (fast inference). On timeout or 5xx before the first
token, falls back to Groq. 4xx errors fail immediately, and so does any
error after tokens have already been streamed: switching providers mid-reply
would splice two different answers together.
"""

import os
from dataclasses import dataclass
from typing import Iterator

import structlog
from httpx import HTTPStatusError, ReadTimeout
from langchain_cerebras import ChatCerebras
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_groq import ChatGroq

logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """Non-retryable LLM error (e.g. 4xx bad request)."""
    pass


class LLMUnavailableError(Exception):
    """Both providers are down, or the stream broke mid-reply."""
    pass


@dataclass
class StreamUsage:
    """Filled in while a stream is consumed.

    Attributes:
        model: Model that produced the reply.
        input_tokens: Prompt tokens reported by the provider, if any.
        output_tokens: Completion tokens reported by the provider, if any.
    """
    model: str = ""
    input_tokens: int | None = None
    output_tokens: int | None = None


class LLMAdapter:
    """Wraps Cerebras + Groq with automatic failover."""

    def __init__(self):
        self.cerebras_key = os.environ.get("CEREBRAS_API_KEY", "")
        self.groq_key = os.environ.get("GROQ_API_KEY", "")

        self.cerebras_model_name = os.environ.get("CEREBRAS_MODEL", "gpt-oss-120b")
        self.groq_model_name = os.environ.get("GROQ_MODEL", "openai/gpt-oss-120b")

        self.temperature = float(os.environ.get("LLM_TEMPERATURE", "0.7"))
        self.max_tokens = int(os.environ.get("LLM_MAX_TOKENS", "2048"))
        self.timeout = int(os.environ.get("LLM_TIMEOUT", "30"))

        self.primary_llm = ChatCerebras(
            api_key=self.cerebras_key,
            model=self.cerebras_model_name,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )

        self.fallback_llm = ChatGroq(
            api_key=self.groq_key,
            model=self.groq_model_name,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )

    def is_healthy(self) -> bool:
        """Check if at least one provider has a key configured."""
        return bool(self.cerebras_key) or bool(self.groq_key)

    def stream_with_failover(self, messages: list[BaseMessage]) -> tuple[Iterator[str], StreamUsage]:
        """Stream a completion, trying Cerebras first.

        Args:
            messages: List of LangChain message objects to send.

        Returns:
            (fragments, usage): an iterator of text fragments and a
            StreamUsage that is complete once the iterator is exhausted.

        Raises (while iterating):
            LLMError: If Cerebras returns a 4xx (no fallback attempted).
            LLMUnavailableError: If both providers fail or a stream breaks
                after tokens were emitted.
        """
        usage = StreamUsage()
        return self._stream(messages, usage), usage

    def _stream(self, messages: list[BaseMessage], usage: StreamUsage) -> Iterator[str]:
        logger.debug("llm.stream", provider="cerebras", model=self.cerebras_model_name)
        emitted = False

        try:
            for fragment in _stream_from(self.primary_llm, self.cerebras_model_name, messages, usage):
                emitted = True
                yield fragment
            return

        except HTTPStatusError as e:
            if emitted:
                raise LLMUnavailableError(f"Cerebras stream interrupted: {e}")
            if 400 <= e.response.status_code < 500:
                logger.error("llm.4xx", status=e.response.status_code)
                raise LLMError(f"Cerebras API rejected request ({e.response.status_code}): {e}")
            logger.warning("llm.5xx_fallback", status=e.response.status_code)

        except ReadTimeout:
            if emitted:
                raise LLMUnavailableError("Cerebras stream timed out mid-reply")
            logger.warning("llm.timeout_fallback", threshold=self.timeout)

        except Exception as e:
            if emitted:
                raise LLMUnavailableError(f"Cerebras stream interrupted: {e}")
            logger.warning("llm.unknown_fallback", error=str(e))

        # Fallback to Groq
        logger.info("llm.groq_fallback", model=self.groq_model_name)
        usage.input_tokens = usage.output_tokens = None
        try:
            yield from _stream_from(self.fallback_llm, self.groq_model_name, messages, usage)
            logger.info("llm.groq_ok")
        except Exception as e:
            logger.error("llm.both_failed", error=str(e))
            raise LLMUnavailableError(f"Both primary and fallback LLMs failed: {e}")


def _stream_from(
    llm: BaseChatModel,
    model_name: str,
    messages: list[BaseMessage],
    usage: StreamUsage,
) -> Iterator[str]:
    """Yield text fragments from one provider, accumulating reported usage."""
    usage.model = model_name
    for chunk in llm.stream(messages):
        meta = getattr(chunk, "usage_metadata", None)
        if meta:
            usage.input_tokens = (usage.input_tokens or 0) + meta.get("input_tokens", 0)
            usage.output_tokens = (usage.output_tokens or 0) + meta.get("output_tokens", 0)
        if isinstance(chunk.content, str) and chunk.content:
            yield chunk.content
