"""
LLM Fallback Chain — Automatic Provider Failover

Report synthesis is a single, long completion. When the chosen provider
times out or returns a transient error, the chain moves to the next model
the router ranked, until one answers or all are exhausted.

Retry policy:
  - Retryable:     rate limits, 5xx, connection errors, per-attempt timeout
  - Non-retryable: 4xx (bad request, auth failure) — surfaced immediately
  - Per-attempt timeout: SYNTHESIS_TIMEOUT_SECONDS (default 120 s)

Circuit breaker:
  A provider that fails OPEN_THRESHOLD times in a row is skipped for
  RESET_SECONDS. In-process counter; each worker keeps its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from langchain_core.messages import BaseMessage

from auditvault.core.config import settings
from auditvault.llm.router import ModelRequirements, ModelRouter, ModelSpec, Provider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # botocore (Bedrock)
    "ThrottlingException",
    "ModelTimeoutException",
    "EndpointConnectionError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectError",
    "RemoteProtocolError",
)


def _is_retryable(exc: Exception) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


# ---------------------------------------------------------------------------
# Circuit breaker (in-process)
# ---------------------------------------------------------------------------

@dataclass
class _CircuitState:
    failures:       int   = 0
    open_until:     float = 0.0
    OPEN_THRESHOLD: int   = 3
    RESET_SECONDS:  int   = 60


_CIRCUIT_STATES: dict[Provider, _CircuitState] = {
    p: _CircuitState() for p in Provider
}


def _is_circuit_open(provider: Provider) -> bool:
    state = _CIRCUIT_STATES[provider]
    if state.failures < state.OPEN_THRESHOLD:
        return False
    if time.monotonic() >= state.open_until:
        state.failures = 0
        return False
    return True


def _record_failure(provider: Provider) -> None:
    state = _CIRCUIT_STATES[provider]
    state.failures  += 1
    state.open_until = time.monotonic() + state.RESET_SECONDS
    logger.warning(
        "Circuit breaker | provider=%s failures=%d open_until=+%ds",
        provider.value, state.failures, state.RESET_SECONDS,
    )


def _record_success(provider: Provider) -> None:
    _CIRCUIT_STATES[provider].failures = 0


def message_text(message) -> str:
    """Flatten a chat model reply to text (Bedrock may return content blocks)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content or "")


@dataclass
class FallbackResult:
    content:       str
    spec:          ModelSpec
    input_tokens:  int | None = None
    output_tokens: int | None = None


# ---------------------------------------------------------------------------
# FallbackChain
# ---------------------------------------------------------------------------

class FallbackChain:
    """
    Ordered chain of providers with automatic failover.

    Usage::

        chain  = FallbackChain(requirements=ModelRequirements(min_output_tokens=7_000))
        result = await chain.ainvoke(messages, max_tokens=7_000)
        result.content, result.spec.model_id
    """

    def __init__(
        self,
        requirements:        ModelRequirements | None = None,
        router:              ModelRouter | None = None,
        per_attempt_timeout: float | None = None,
    ) -> None:
        self._requirements        = requirements or ModelRequirements()
        self._router              = router or ModelRouter()
        self._per_attempt_timeout = per_attempt_timeout or settings.synthesis_timeout_seconds

    async def ainvoke(self, messages: list[BaseMessage], max_tokens: int) -> FallbackResult:
        """
        Raises:
            RuntimeError: If no provider qualifies or all of them fail.
        """
        errors: list[str] = []

        for spec in self._router.rank(self._requirements):
            if _is_circuit_open(spec.provider):
                logger.debug("Skipping provider=%s (circuit open)", spec.provider.value)
                continue

            llm = self._router.build_llm(spec, max_tokens=max_tokens)
            try:
                logger.debug("FallbackChain | trying provider=%s model=%s", spec.provider.value, spec.model_id)
                reply = await asyncio.wait_for(
                    llm.ainvoke(messages),
                    timeout=self._per_attempt_timeout,
                )
                _record_success(spec.provider)

                usage = getattr(reply, "usage_metadata", None) or {}
                return FallbackResult(
                    content=message_text(reply),
                    spec=spec,
                    input_tokens=usage.get("input_tokens"),
                    output_tokens=usage.get("output_tokens"),
                )

            except asyncio.TimeoutError:
                err = f"{spec.provider.value}/{spec.model_id}: timed out after {self._per_attempt_timeout:.0f}s"
                logger.warning("FallbackChain | %s", err)
                _record_failure(spec.provider)
                errors.append(err)

            except Exception as exc:
                if not _is_retryable(exc):
                    raise
                err = f"{spec.provider.value}/{spec.model_id}: {type(exc).__name__}: {exc}"
                logger.warning("FallbackChain | retryable error — %s", err)
                _record_failure(spec.provider)
                errors.append(err)

        raise RuntimeError(
            "All LLM providers failed. Errors:\n" + "\n".join(f"  - {e}" for e in errors)
        )
