"""Secondary agents backed by hosted APIs through litellm."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING

from engram.agents.base import ConversationalAgent
from engram.errors import FatalAgentError, SessionTerminatedError, TransientAgentError
from engram.models.message import ConversationMessage

if TYPE_CHECKING:
    from engram.agents.base import WorkerRef
    from engram.session.context import SessionContext


class LiteLLMAgent(ConversationalAgent):
    """Chat-completion agent; available when its API key is configured."""

    name = "litellm"

    @abstractmethod
    def model(self) -> str:
        """litellm model string, provider-prefixed."""

    @abstractmethod
    def api_key(self) -> str | None: ...

    def is_available(self) -> bool:
        return bool(self.api_key())

    async def _query(
        self,
        ctx: SessionContext,
        worker: WorkerRef,
        history: list[ConversationMessage],
    ) -> str:
        import litellm

        api_key = self.api_key()
        if not api_key:
            raise FatalAgentError(f"{self.name} API key is not configured", agent=self.name)
        try:
            response = await litellm.acompletion(
                model=self.model(),
                messages=[{"role": m.role, "content": m.content} for m in history],
                api_key=api_key,
                timeout=self._config.call_timeout_s,
            )
        except (litellm.AuthenticationError, litellm.PermissionDeniedError, litellm.NotFoundError) as exc:
            raise FatalAgentError(f"{self.name}: {exc}", agent=self.name) from exc
        except litellm.ContextWindowExceededError as exc:
            raise SessionTerminatedError(f"{self.name}: {exc}", agent=self.name) from exc
        except litellm.APIError as exc:
            raise TransientAgentError(f"{self.name}: {exc}", agent=self.name) from exc
        content = response.choices[0].message.content
        if not content:
            raise TransientAgentError(f"{self.name} returned an empty response", agent=self.name)
        return content


class GeminiAgent(LiteLLMAgent):
    name = "gemini"

    def model(self) -> str:
        return f"gemini/{self._config.gemini_model}"

    def api_key(self) -> str | None:
        return self._config.gemini_api_key


class OpenRouterAgent(LiteLLMAgent):
    name = "openrouter"

    def model(self) -> str:
        return f"openrouter/{self._config.openrouter_model}"

    def api_key(self) -> str | None:
        return self._config.openrouter_api_key
