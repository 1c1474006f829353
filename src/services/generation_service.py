"""Generation service phrasing interventions through the LLM circuit breaker."""

from typing import Optional

import structlog
from openai import AsyncOpenAI

from src.config import get_settings
from src.models.intervention import CandidateAction, DailyState, DeliveryMessage
from src.services.circuit_breaker import LLM_BREAKER, CircuitBreaker, get_breaker

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You write one short, friendly sentence for a proactive assistant notification. "
    "Keep the user's intent, do not invent facts, no medical advice, under 140 characters."
)
MAX_BODY_CHARS = 300


class GenerationService:
    """generate(prompt) -> text, always behind the openai-llm breaker."""

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self.settings = get_settings()
        self.breaker = breaker or get_breaker(LLM_BREAKER)
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    @property
    def enabled(self) -> bool:
        return bool(self.settings.openai_api_key)

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.settings.max_tokens,
        )
        text = response.choices[0].message.content
        if not text or not text.strip():
            raise ValueError("Empty completion")
        return text.strip()

    async def generate(self, prompt: str) -> str:
        """Generate text.

        Raises:
            CircuitOpenError: If the LLM circuit is open
            Exception: Any OpenAI or empty-output failure
        """
        return await self.breaker.execute(lambda: self._complete(prompt))

    async def compose_message(
        self, candidate: CandidateAction, state: Optional[DailyState] = None
    ) -> DeliveryMessage:
        """Phrase a candidate for delivery, falling back to its own text."""
        fallback = DeliveryMessage(
            title=candidate.title,
            body=candidate.body,
            data={**candidate.data, "action_type": candidate.action_type},
        )
        if not self.enabled:
            return fallback

        prompt = f"Intervention type: {candidate.action_type}\nDraft: {candidate.body}"
        if state is not None:
            prompt += f"\nUser energy {state.energy_level}/10, stress {state.stress_level}/10."

        text = await self.breaker.execute_with_fallback(lambda: self._complete(prompt), None)
        if text is None:
            logger.info("compose_message_fallback", action_type=candidate.action_type)
            return fallback

        return fallback.model_copy(update={"body": text[:MAX_BODY_CHARS]})
