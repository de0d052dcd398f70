"""LLM provider abstraction via LiteLLM Router.

Provides the completion service used by every LLM-backed answering stage:
- A configured primary chat model with a distinct fallback deployment,
  wired as a LiteLLM Router fallback for non-streaming calls
- Streaming completion against one explicit model via async generators,
  yielding answer and reasoning deltas separately
- An explicit deadline on every call and Prometheus call tracking
"""

from __future__ import annotations

from typing import Any, AsyncGenerator

import litellm
import structlog
from litellm import Router
from pydantic import BaseModel

from src.app.config import Settings, get_settings
from src.app.core.monitoring import track_llm_call

logger = structlog.get_logger(__name__)

PRIMARY_GROUP = "primary"
FALLBACK_GROUP = "fallback"


class LLMServiceError(RuntimeError):
    """Raised when no configured model produced a completion."""


class LLMUnavailableError(LLMServiceError):
    """Raised when the service has no chat model configured."""


class StreamDelta(BaseModel):
    """One streamed increment from the provider.

    Attributes:
        content: Answer text carried by this delta (may be empty).
        reasoning: Reasoning/thinking text carried by this delta (may be empty).
    """

    content: str = ""
    reasoning: str = ""


# ── LLM Service ──────────────────────────────────────────────────────────────


class LLMService:
    """LLM provider abstraction with LiteLLM Router.

    The primary chat model is registered as the "primary" model group and
    the fallback chat model as "fallback"; the Router falls back from one
    to the other on failure. Streaming calls bypass the Router and target
    one explicit model so that answer generation can run its own, visible
    fallback policy.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.primary_model = self._settings.CHAT_MODEL
        fallback = self._settings.FALLBACK_CHAT_MODEL
        self.fallback_model = fallback if fallback and fallback != self.primary_model else None
        self.timeout = self._settings.LLM_TIMEOUT

        if not self.primary_model:
            logger.warning("No chat model configured -- LLM service will be unavailable")
            self.router = None
            return

        model_list = [self._deployment(PRIMARY_GROUP, self.primary_model)]
        fallbacks: list[dict[str, list[str]]] = []
        if self.fallback_model:
            model_list.append(self._deployment(FALLBACK_GROUP, self.fallback_model))
            fallbacks.append({PRIMARY_GROUP: [FALLBACK_GROUP]})

        self.router = Router(
            model_list=model_list,
            fallbacks=fallbacks,
            num_retries=self._settings.LLM_MAX_RETRIES,
            timeout=self.timeout,
            allowed_fails=3,
            cooldown_time=30,
        )

    def _call_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self._settings.LLM_API_KEY:
            params["api_key"] = self._settings.LLM_API_KEY
        if self._settings.LLM_BASE_URL:
            params["api_base"] = self._settings.LLM_BASE_URL
        return params

    def _deployment(self, group: str, model: str) -> dict[str, Any]:
        return {
            "model_name": group,
            "litellm_params": {"model": model, **self._call_params()},
        }

    async def completion(
        self,
        messages: list[dict],
        max_tokens: int = 1024,
        temperature: float = 0.0,
        stage: str = "completion",
    ) -> dict:
        """Execute a completion call through the LiteLLM Router.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature (0-2).
            stage: Pipeline stage name, used as a metrics label.

        Returns:
            Dict with content, model, and usage.

        Raises:
            LLMUnavailableError: If no chat model is configured.
            LLMServiceError: If the primary and fallback deployments both failed.
        """
        if not self.router:
            raise LLMUnavailableError("No chat model configured")

        try:
            async with track_llm_call(self.primary_model, stage) as tracker:
                response = await self.router.acompletion(
                    model=PRIMARY_GROUP,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )

                usage = {}
                if getattr(response, "usage", None):
                    usage = {
                        "prompt_tokens": response.usage.prompt_tokens,
                        "completion_tokens": response.usage.completion_tokens,
                        "total_tokens": response.usage.total_tokens,
                    }
                    tracker.update(usage)
        except Exception as exc:
            logger.warning("llm.completion_failed", stage=stage, error=str(exc))
            raise LLMServiceError(f"All models failed for stage {stage}") from exc

        return {
            "content": response.choices[0].message.content or "",
            "model": getattr(response, "model", None) or self.primary_model,
            "usage": usage,
        }

    async def streaming_completion(
        self,
        messages: list[dict],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.7,
        stage: str = "completion",
    ) -> AsyncGenerator[StreamDelta, None]:
        """Execute a streaming completion against a single model.

        Yields StreamDelta objects in provider order. No fallback is applied
        here; the upstream stream is closed when the consumer stops iterating.

        Raises:
            LLMUnavailableError: If no model is given and none is configured.
        """
        model = model or self.primary_model
        if not model:
            raise LLMUnavailableError("No chat model configured")

        async with track_llm_call(model, stage):
            response = await litellm.acompletion(
                model=model,
                messages=messages,
                max_tokens=max_tokens or self._settings.LLM_MAX_TOKENS,
                temperature=temperature,
                stream=True,
                timeout=self.timeout,
                **self._call_params(),
            )

            try:
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    reasoning = getattr(delta, "reasoning_content", None) or ""
                    content = getattr(delta, "content", None) or ""
                    if reasoning or content:
                        yield StreamDelta(content=content, reasoning=reasoning)
            finally:
                aclose = getattr(response, "aclose", None)
                if aclose is not None:
                    await aclose()
