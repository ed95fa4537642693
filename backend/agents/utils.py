"""LLM access for agents.

- LLMClient: one LiteLLM completion per call, plain or streamed, throttled by
  the shared RateLimiter
- MockLLMClient: scripted client for tests and offline runs
- extract_json_from_response: find the JSON object in free-form model output
- count_tokens_estimate: rough token count for rate-limit budgeting

LLMClient never retries. Retries belong to the orchestrator worker running
the task, so provider errors reach the agent unchanged and are classified
there.
"""

import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion

from config import settings
from rate_limiter import RateLimiter, RateLimitExceededError, Reservation

logger = structlog.get_logger(__name__)

# Prompts are rarely shorter than this once the system prompt is included.
MIN_TOKEN_RESERVATION = 500

_FENCED_BLOCK = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()

DeltaCallback = Callable[[str], None]


@dataclass(frozen=True)
class LLMMetrics:
    """Token usage and latency of a single LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    """Text, finish reason and metrics of one completion."""

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Thin async client over ``litellm.acompletion``.

    Any provider LiteLLM supports can be addressed through the model string
    (``anthropic/...``, ``openai/...``, ``gemini/...``).

    Attributes:
        rate_limiter: Limiter shared by all agents, or None to skip throttling
        default_model: Model used when a call does not name one
        temperature: Default sampling temperature
        max_tokens: Default completion token cap
        request_timeout: Provider timeout in seconds
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        default_model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.default_model = default_model or settings.default_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.request_timeout = request_timeout or settings.llm_request_timeout_seconds

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_kind: str | None = None,
    ) -> LLMResponse:
        """Run one completion.

        Args:
            messages: Chat messages (``role``/``content`` dicts)
            model: LiteLLM model id, defaults to ``default_model``
            temperature: Overrides the client's temperature
            max_tokens: Overrides the client's completion cap
            run_id: Run id, for log context only
            agent_kind: Agent kind, for log context only

        Raises:
            RateLimitExceededError: If the limiter had no capacity in time.
            litellm.exceptions.*: Provider errors, unchanged.
        """
        model = model or self.default_model
        log = logger.bind(model=model, run_id=run_id, agent_kind=agent_kind)
        reservation = await self._reserve(messages, log)
        request = self._request(messages, model, temperature, max_tokens)

        started = time.perf_counter()
        try:
            raw = await acompletion(**request)
        except Exception as e:
            log.warning("llm_call_failed", error_type=type(e).__name__, error=str(e))
            raise
        latency_ms = int((time.perf_counter() - started) * 1000)

        response = _to_llm_response(raw, model, latency_ms)
        if self.rate_limiter is not None:
            self.rate_limiter.record_usage(response.metrics.total_tokens, reservation)

        log.info(
            "llm_call_complete",
            input_tokens=response.metrics.input_tokens,
            output_tokens=response.metrics.output_tokens,
            latency_ms=latency_ms,
            finish_reason=response.finish_reason,
        )
        return response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_kind: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> LLMResponse:
        """Run one completion with ``stream=True``.

        Each text delta goes to ``on_delta`` as it arrives; the return value is
        the same complete LLMResponse ``call`` would produce. An exception
        raised by ``on_delta`` stops the stream and propagates.

        Raises:
            RateLimitExceededError: If the limiter had no capacity in time.
            litellm.exceptions.*: Provider errors, unchanged.
        """
        model = model or self.default_model
        log = logger.bind(model=model, run_id=run_id, agent_kind=agent_kind)
        reservation = await self._reserve(messages, log)
        request = self._request(messages, model, temperature, max_tokens)
        request["stream"] = True
        request["stream_options"] = {"include_usage": True}

        parts: list[str] = []
        finish_reason = "unknown"
        usage = None
        started = time.perf_counter()
        try:
            chunks = await acompletion(**request)
            async for chunk in chunks:
                usage = getattr(chunk, "usage", None) or usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                finish_reason = choice.finish_reason or finish_reason
                delta = getattr(choice.delta, "content", None)
                if delta:
                    parts.append(delta)
                    if on_delta is not None:
                        on_delta(delta)
        except Exception as e:
            log.warning("llm_stream_failed", error_type=type(e).__name__, error=str(e))
            raise
        latency_ms = int((time.perf_counter() - started) * 1000)

        content = "".join(parts)
        response = LLMResponse(
            content=content,
            finish_reason=finish_reason,
            metrics=LLMMetrics(
                model=model,
                input_tokens=getattr(usage, "prompt_tokens", 0) or count_messages_tokens(messages),
                output_tokens=getattr(usage, "completion_tokens", 0) or count_tokens_estimate(content),
                latency_ms=latency_ms,
            ),
        )
        if self.rate_limiter is not None:
            self.rate_limiter.record_usage(response.metrics.total_tokens, reservation)

        log.info(
            "llm_stream_complete",
            chunks=len(parts),
            input_tokens=response.metrics.input_tokens,
            output_tokens=response.metrics.output_tokens,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
        )
        return response

    async def _reserve(self, messages: list[dict[str, Any]], log: Any) -> Reservation | None:
        if self.rate_limiter is None:
            return None
        try:
            return await self.rate_limiter.acquire(
                estimated_tokens=max(count_messages_tokens(messages), MIN_TOKEN_RESERVATION)
            )
        except RateLimitExceededError as e:
            log.error("llm_call_rate_limit_exceeded", error=str(e))
            raise

    def _request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "timeout": self.request_timeout,
        }
        if max_tokens or self.max_tokens:
            request["max_tokens"] = max_tokens or self.max_tokens
        return request

def _to_llm_response(raw: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
    choice = raw.choices[0]
    usage = getattr(raw, "usage", None)
    return LLMResponse(
        content=choice.message.content or "",
        finish_reason=choice.finish_reason or "unknown",
        metrics=LLMMetrics(
            model=model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            latency_ms=latency_ms,
        ),
        raw_response=raw,
    )


# =============================================================================
# Response parsing
# =============================================================================


def _first_object(text: str) -> dict[str, Any] | None:
    """Decode the first JSON object that starts at any ``{`` in ``text``."""
    start = text.find("{")
    while start != -1:
        try:
            value, _end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Return the JSON object carried by a model response, if any.

    Models often wrap the object in prose or a Markdown fence. The whole
    text is tried first, then each fenced block, then the raw text.
    """
    stripped = response.strip()
    try:
        whole = json.loads(stripped)
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        return whole

    for block in _FENCED_BLOCK.findall(response):
        found = _first_object(block)
        if found is not None:
            return found

    return _first_object(response)


def count_tokens_estimate(text: str) -> int:
    """About four characters per token."""
    return len(text) // 4


def count_messages_tokens(messages: list[dict[str, Any]]) -> int:
    return sum(count_tokens_estimate(str(m.get("content", ""))) for m in messages)


# =============================================================================
# Test double
# =============================================================================


class MockLLMClient(LLMClient):
    """LLM client that replays a script instead of calling a provider.

    Each script item is an LLMResponse, a string (returned with
    ``finish_reason="stop"``), or an exception instance to raise.

    Usage:
        >>> client = MockLLMClient(responses=['{"files": []}'])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | str | Exception] | None = None,
        chunk_size: int = 64,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.chunk_size = chunk_size
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._next = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_kind: str | None = None,
    ) -> LLMResponse:
        """Record the call, then return or raise the next script item.

        Raises:
            IndexError: When the script is exhausted.
        """
        model = model or self.default_model
        self.call_history.append(
            {
                "messages": messages,
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "run_id": run_id,
                "agent_kind": agent_kind,
            }
        )
        if self._next >= len(self.responses):
            raise IndexError(f"MockLLMClient script exhausted after {self._next} calls")

        item = self.responses[self._next]
        self._next += 1
        if isinstance(item, Exception):
            raise item
        if isinstance(item, LLMResponse):
            return item

        logger.debug("mock_llm_call", call_index=self._next - 1, run_id=run_id)
        return LLMResponse(
            content=item,
            finish_reason="stop",
            metrics=LLMMetrics(
                model=model,
                input_tokens=count_messages_tokens(messages),
                output_tokens=count_tokens_estimate(item),
            ),
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_kind: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> LLMResponse:
        """Like ``call``, feeding the scripted content to ``on_delta`` in chunks."""
        response = await self.call(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            run_id=run_id,
            agent_kind=agent_kind,
        )
        self.call_history[-1]["stream"] = True
        if on_delta is not None:
            content = response.content
            for start in range(0, len(content), self.chunk_size):
                on_delta(content[start : start + self.chunk_size])
        return response

    def reset(self) -> None:
        """Rewind the script and forget recorded calls."""
        self._next = 0
        self.call_history.clear()
