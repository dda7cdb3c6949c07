"""Agent selection policy and the fallback chain."""

from __future__ import annotations

from collections.abc import Mapping

from engram.agents.base import ExtractionAgent

PRIMARY = "claude"
FALLBACK_ORDER: tuple[str, ...] = ("gemini", "openrouter")


def select_agent(provider: str, agents: Mapping[str, ExtractionAgent]) -> ExtractionAgent:
    """
    Choose the agent that starts a session's processor.

    - ``openrouter`` / ``gemini`` / ``codex``: that agent when available,
      else the primary.
    - ``auto``: OpenRouter, then Gemini, then the primary.
    - anything else: the primary.

    Raises:
        KeyError: If *agents* has no primary agent.
    """
    if provider == "auto":
        for name in ("openrouter", "gemini"):
            agent = agents.get(name)
            if agent is not None and agent.is_available():
                return agent
        return agents[PRIMARY]
    agent = agents.get(provider)
    if agent is not None and agent.is_available():
        return agent
    return agents[PRIMARY]


def fallback_chain(failed: str, agents: Mapping[str, ExtractionAgent]) -> list[ExtractionAgent]:
    """Available fallback agents in priority order, excluding the one that failed."""
    chain = []
    for name in FALLBACK_ORDER:
        if name == failed:
            continue
        agent = agents.get(name)
        if agent is not None and agent.is_available():
            chain.append(agent)
    return chain
