"""
LLM Gateway — Single Call Site for Language-Model Requests

  LLMGateway.invoke()
       │
       ▼
  ModelRouter.rank()          ← models that fit the prompt and output budget
       │
       ▼
  FallbackChain.ainvoke()     ← auto-failover across ranked providers
       │
       ▼
  usage log line + GatewayResponse

Usage (from the report synthesizer)::

    gateway  = LLMGateway()
    response = await gateway.invoke(
        messages=[SystemMessage(...), HumanMessage(...)],
        max_output_tokens=7_000,
    )
    response.content
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, replace

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from auditvault.core.config import settings
from auditvault.llm.fallback import FallbackChain
from auditvault.llm.router import ModelRequirements, ModelRouter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Token usage estimation (fallback when the provider reports no usage)
# ---------------------------------------------------------------------------

def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """Rough token count: 4 chars ≈ 1 token."""
    total_chars = sum(len(m.content) for m in messages if isinstance(m.content, str))
    return max(1, total_chars // 4)


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway:
    """
    Provider-agnostic completion interface with routing and fallback.

    Safe to share across tasks; holds no per-request state.
    """

    def __init__(self, router: ModelRouter | None = None) -> None:
        self._router = router or ModelRouter()

    async def invoke(
        self,
        messages:          list[BaseMessage],
        requirements:      ModelRequirements | None = None,
        max_output_tokens: int | None = None,
    ) -> "GatewayResponse":
        """
        Invoke an LLM with automatic provider routing and fallback.

        The prompt size and output budget are folded into the routing
        requirements so only models that can hold both are tried.

        Raises:
            RuntimeError: no model qualifies, or every provider failed.
        """
        max_tokens    = max_output_tokens or settings.synthesis_max_output_tokens
        input_tokens  = _estimate_tokens(messages)
        reqs          = requirements or ModelRequirements()
        reqs          = replace(
            reqs,
            min_context_tokens=max(reqs.min_context_tokens, input_tokens + max_tokens),
            min_output_tokens=max(reqs.min_output_tokens, max_tokens),
        )
        chain = FallbackChain(requirements=reqs, router=self._router)

        t0      = time.perf_counter()
        result  = await chain.ainvoke(messages, max_tokens=max_tokens)
        latency = (time.perf_counter() - t0) * 1000

        response = GatewayResponse(
            content       = result.content,
            model_used    = result.spec.model_id,
            provider      = result.spec.provider.value,
            input_tokens  = result.input_tokens or input_tokens,
            output_tokens = result.output_tokens or max(1, len(result.content) // 4),
            latency_ms    = latency,
            request_id    = str(uuid.uuid4()),
        )

        logger.info(
            "LLMGateway | model=%s provider=%s tokens_in=%d tokens_out=%d latency_ms=%.1f request=%s",
            response.model_used, response.provider,
            response.input_tokens, response.output_tokens,
            response.latency_ms, response.request_id,
        )
        return response

    @staticmethod
    def build_messages(system_prompt: str, user_prompt: str) -> list[BaseMessage]:
        return [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------

@dataclass
class GatewayResponse:
    """The result of a single gateway call."""
    content:       str
    model_used:    str
    provider:      str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str
