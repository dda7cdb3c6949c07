"""Character-based token estimation and history truncation."""

from __future__ import annotations

import math
from collections.abc import Sequence

import structlog

from engram.models.message import ConversationMessage

_logger = structlog.get_logger("engram.tokens")


class TokenEstimator:
    """
    Provider-agnostic token counting.

    Every provider is billed and bounded with the same heuristic,
    ``ceil(len(text) / 4)``, so history truncation behaves identically no
    matter which agent is active.
    """

    def estimate(self, text: str) -> int:
        """
        Estimate the token count for a string.

        Returns:
            ``ceil(len(text) / 4)``; 0 for empty text.
        """
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def estimate_history(self, history: Sequence[ConversationMessage]) -> int:
        return sum(self.estimate(m.content) for m in history)

    def truncate_history(
        self,
        history: Sequence[ConversationMessage],
        *,
        max_messages: int,
        max_tokens: int,
    ) -> list[ConversationMessage]:
        """
        Keep the newest messages that fit both limits, evicting oldest-first.

        The newest message is always kept, even when it alone exceeds
        ``max_tokens``, so a model call never goes out with an empty prompt.

        Args:
            history: Conversation, oldest first.
            max_messages: Maximum number of messages kept.
            max_tokens: Maximum estimated tokens kept.

        Returns:
            The retained suffix of *history*, oldest first.
        """
        kept: list[ConversationMessage] = []
        token_count = 0
        for index in range(len(history) - 1, -1, -1):
            message = history[index]
            message_tokens = self.estimate(message.content)
            if kept and (len(kept) >= max_messages or token_count + message_tokens > max_tokens):
                _logger.warning(
                    "history_truncated",
                    original_messages=len(history),
                    kept_messages=len(kept),
                    dropped_messages=index + 1,
                    estimated_tokens=token_count,
                    token_limit=max_tokens,
                )
                break
            kept.append(message)
            token_count += message_tokens
        kept.reverse()
        return kept

