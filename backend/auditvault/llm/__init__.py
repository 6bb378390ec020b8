"""
LLM Gateway Package

Provider-agnostic completion interface over:
  - OpenAI           (GPT-4o, GPT-4o-mini)
  - Azure OpenAI     (same models, different endpoint — failover target)
  - AWS Bedrock      (Claude — data-residency option)
  - Ollama / Local   (air-gapped datarooms)

Public API::

    from auditvault.llm import LLMGateway

    gateway  = LLMGateway()
    response = await gateway.invoke(messages, max_output_tokens=7_000)
"""

from auditvault.llm.gateway import GatewayResponse, LLMGateway
from auditvault.llm.router import ModelRequirements, ModelSpec, RoutingStrategy

__all__ = [
    "GatewayResponse",
    "LLMGateway",
    "ModelRequirements",
    "ModelSpec",
    "RoutingStrategy",
]
