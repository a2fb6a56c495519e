"""Pydantic AI agent that judges whether a proof photo matches a task."""

import asyncio
import logging
from typing import Protocol

from pydantic import BaseModel, Field
from pydantic_ai import Agent, BinaryContent
from pydantic_ai.models.openrouter import OpenRouterModel, OpenRouterModelSettings
from pydantic_ai.providers.openrouter import OpenRouterProvider

from kin.agents.retry_handler import AgentRetryHandler
from kin.core.config import Settings, constants
from kin.core.errors import VerificationServiceUnavailableError
from kin.core.logging import span
from kin.domain.completion import VerificationResult
from kin.domain.task import TaskDefinition, generic_prompt


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an assistant for the Kin family accountability app. \
Families use Kin to stay consistent with their health and faith goals.
You will receive a user-submitted photo and details about the task they claim to have completed.
Your job is to carefully analyze the photo and decide whether the image appears to match the task.

Rules:
- is_verified is true only if the image clearly matches the task.
- confidence must be between 0 and 1 (inclusive).
- reason must be one short sentence (max 200 chars) referencing visual evidence (or lack of it).
- If the image is blurry or unrelated, set is_verified to false and explain why."""


class Judgment(BaseModel):
    """Structured output the model must return."""

    is_verified: bool = Field(..., description="True if the image clearly matches the task")
    confidence: float = Field(..., description="Confidence in the judgment, between 0 and 1")
    reason: str = Field(..., description="Short sentence explaining the judgment")


class Verifier(Protocol):
    """Black-box classifier for proof images."""

    async def verify(self, image: bytes, *, content_type: str, task: TaskDefinition) -> VerificationResult: ...


def create_agent(settings: Settings) -> Agent[None, Judgment]:
    """Build the OpenRouter-backed judge agent."""
    api_key = settings.require_credential("openrouter_api_key", "OpenRouter API key")
    provider = OpenRouterProvider(api_key=api_key)

    model_settings: OpenRouterModelSettings | None = None
    if settings.model_provider:
        model_settings = OpenRouterModelSettings(openrouter_provider={"only": [settings.model_provider]})

    model = OpenRouterModel(
        model_name=settings.model_id,
        provider=provider,
        settings=model_settings,
    )

    # Retries are handled by AgentRetryHandler, not the framework
    return Agent(
        model=model,
        output_type=Judgment,
        system_prompt=SYSTEM_PROMPT,
        retries=0,
    )


class VerificationAgent:
    """Verifier implementation backed by a Pydantic AI agent."""

    def __init__(
        self,
        agent: Agent[None, Judgment],
        *,
        model_name: str,
        retry_handler: AgentRetryHandler | None = None,
        timeout_seconds: float = constants.VERIFICATION_TIMEOUT_SECONDS,
    ) -> None:
        self._agent = agent
        self._model_name = model_name
        self._retry_handler = retry_handler or AgentRetryHandler()
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "VerificationAgent":
        return cls(create_agent(settings), model_name=settings.model_id)

    @property
    def agent(self) -> Agent[None, Judgment]:
        return self._agent

    async def _run(self, prompt: str, image: bytes, content_type: str) -> Judgment:
        result = await asyncio.wait_for(
            self._agent.run([prompt, BinaryContent(data=image, media_type=content_type)]),
            timeout=self._timeout_seconds,
        )
        return result.output

    async def verify(self, image: bytes, *, content_type: str, task: TaskDefinition) -> VerificationResult:
        """Judge one proof image.

        Args:
            image: Raw image bytes
            content_type: MIME type of the image
            task: Definition of the task being claimed

        Returns:
            VerificationResult tagged with the model name

        Raises:
            VerificationServiceUnavailableError: On network errors, non-2xx responses,
                timeouts, malformed output, or an open circuit breaker
        """
        with span("verification_agent.verify"):
            prompt = task.verification_prompt or generic_prompt(task)
            try:
                judgment = await self._retry_handler.execute_with_retry(self._run, prompt, image, content_type)
            except Exception as e:
                logger.warning("Verification failed for task %s: %s", task.kind, e)
                raise VerificationServiceUnavailableError(f"Verification service unavailable: {e}") from e

            logger.info(
                "Verification judged task %s: verified=%s confidence=%.2f",
                task.kind,
                judgment.is_verified,
                judgment.confidence,
            )
            return VerificationResult(
                is_verified=judgment.is_verified,
                confidence=judgment.confidence,
                reason=judgment.reason,
                model=self._model_name,
            )
