"""Unit tests for GenerationService."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models.intervention import CandidateAction
from src.services.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from src.services.generation_service import MAX_BODY_CHARS, GenerationService


@pytest.fixture
def candidate():
    return CandidateAction(
        action_type="energy_boost",
        category="energy",
        title="Recharge",
        body="Coffee or a short walk?",
        data={"reason": "low_energy"},
    )


def _settings(api_key="sk-test"):
    settings = MagicMock()
    settings.openai_api_key = api_key
    settings.openai_model = "gpt-4.1"
    settings.max_tokens = 200
    return settings


def _completion(text):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    return response


def _service(breaker=None, api_key="sk-test"):
    with patch("src.services.generation_service.get_settings", return_value=_settings(api_key)):
        service = GenerationService(breaker=breaker or CircuitBreaker(name="llm-test", failure_threshold=2))
    service._client = MagicMock()
    service._client.chat.completions.create = AsyncMock()
    return service


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_stripped_text(self):
        service = _service()
        service._client.chat.completions.create.return_value = _completion("  Hello there.  ")

        assert await service.generate("hi") == "Hello there."

    @pytest.mark.asyncio
    async def test_empty_output_counts_as_failure(self):
        service = _service()
        service._client.chat.completions.create.return_value = _completion("")

        with pytest.raises(ValueError):
            await service.generate("hi")
        assert service.breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self):
        service = _service()
        service._client.chat.completions.create.side_effect = RuntimeError("rate limited")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await service.generate("hi")

        assert service.breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await service.generate("hi")
        assert service._client.chat.completions.create.await_count == 2


class TestComposeMessage:
    @pytest.mark.asyncio
    async def test_uses_generated_body(self, candidate):
        service = _service()
        service._client.chat.completions.create.return_value = _completion("A quick walk might help.")

        message = await service.compose_message(candidate)

        assert message.title == "Recharge"
        assert message.body == "A quick walk might help."
        assert message.data["action_type"] == "energy_boost"
        assert message.data["reason"] == "low_energy"

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self, candidate):
        service = _service()
        service._client.chat.completions.create.side_effect = RuntimeError("timeout")

        message = await service.compose_message(candidate)

        assert message.body == "Coffee or a short walk?"

    @pytest.mark.asyncio
    async def test_no_api_key_skips_llm(self, candidate):
        service = _service(api_key="")

        message = await service.compose_message(candidate)

        assert message.body == "Coffee or a short walk?"
        service._client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_truncates_long_output(self, candidate):
        service = _service()
        service._client.chat.completions.create.return_value = _completion("x" * 1000)

        message = await service.compose_message(candidate)

        assert len(message.body) == MAX_BODY_CHARS
