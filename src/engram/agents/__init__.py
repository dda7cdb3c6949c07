"""Extraction agents and the policy that picks between them."""

from engram.agents.base import ConversationalAgent, ExtractionAgent, WorkerRef, format_history
from engram.agents.claude import ClaudeCliAgent
from engram.agents.codex import CodexAgent
from engram.agents.litellm_agent import GeminiAgent, LiteLLMAgent, OpenRouterAgent
from engram.agents.parser import parse_response
from engram.agents.selection import FALLBACK_ORDER, fallback_chain, select_agent
from engram.models.config import ProviderConfig
from engram.tokens.estimator import TokenEstimator


def build_agents(
    config: ProviderConfig, estimator: TokenEstimator | None = None
) -> dict[str, ExtractionAgent]:
    """Instantiate every known agent keyed by name."""
    estimator = estimator or TokenEstimator()
    agents: list[ExtractionAgent] = [
        ClaudeCliAgent(config, estimator),
        GeminiAgent(config, estimator),
        OpenRouterAgent(config, estimator),
        CodexAgent(config, estimator),
    ]
    return {agent.name: agent for agent in agents}


__all__ = [
    "FALLBACK_ORDER",
    "ClaudeCliAgent",
    "CodexAgent",
    "ConversationalAgent",
    "ExtractionAgent",
    "GeminiAgent",
    "LiteLLMAgent",
    "OpenRouterAgent",
    "WorkerRef",
    "build_agents",
    "fallback_chain",
    "format_history",
    "parse_response",
    "select_agent",
]
