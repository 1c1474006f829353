"""Delivery dispatcher handing interventions to push, chat, and escalation channels."""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import httpx
import structlog

from src.config import get_settings
from src.database import get_pool
from src.models.intervention import DeliveryChannel, DeliveryMessage, DeliveryResult
from src.services.circuit_breaker import (
    CHAT_BREAKER,
    ESCALATION_BREAKER,
    PUSH_BREAKER,
    get_breaker,
)

logger = structlog.get_logger(__name__)

CHANNEL_BREAKERS = {
    DeliveryChannel.PUSH: PUSH_BREAKER,
    DeliveryChannel.CHAT: CHAT_BREAKER,
    DeliveryChannel.ESCALATION: ESCALATION_BREAKER,
}


class DeliveryDispatcher:
    """deliver(user_id, message, channel) -> DeliveryResult. Never raises."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        self._http_client = http_client

    async def _post_json(self, url: str, body: dict) -> None:
        if self._http_client is not None:
            response = await self._http_client.post(url, json=body)
            response.raise_for_status()
            return

        async with httpx.AsyncClient(timeout=self.settings.delivery_timeout_seconds) as client:
            response = await client.post(url, json=body)
            response.raise_for_status()

    async def _send_push(self, user_id: str, message: DeliveryMessage) -> DeliveryResult:
        await self._post_json(
            self.settings.push_gateway_url,
            {
                "user_id": user_id,
                "title": message.title,
                "body": message.body,
                "data": message.data,
            },
        )
        return DeliveryResult(success=True, channel=DeliveryChannel.PUSH)

    async def _send_chat(self, user_id: str, message: DeliveryMessage) -> DeliveryResult:
        """Store an in-app chat card the client picks up on next poll."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (id, user_id, title, body, data, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, FALSE, $6)
                """,
                uuid4(),
                UUID(user_id),
                message.title,
                message.body,
                json.dumps(message.data, default=str),
                datetime.now(timezone.utc),
            )
        return DeliveryResult(success=True, channel=DeliveryChannel.CHAT)

    async def _send_escalation(self, user_id: str, message: DeliveryMessage) -> DeliveryResult:
        await self._post_json(
            self.settings.escalation_webhook_url,
            {
                "user_id": user_id,
                "text": f"{message.title}\n{message.body}",
                "data": message.data,
            },
        )
        return DeliveryResult(success=True, channel=DeliveryChannel.ESCALATION)

    def _is_configured(self, channel: DeliveryChannel) -> bool:
        if channel == DeliveryChannel.PUSH:
            return bool(self.settings.push_gateway_url)
        if channel == DeliveryChannel.ESCALATION:
            return bool(self.settings.escalation_webhook_url)
        return True

    async def deliver(
        self,
        user_id: str,
        message: DeliveryMessage,
        channel: DeliveryChannel = DeliveryChannel.PUSH,
    ) -> DeliveryResult:
        """Deliver through the channel's own breaker; failures become success=False."""
        if not self._is_configured(channel):
            logger.warning("delivery_channel_not_configured", user_id=user_id, channel=channel.value)
            return DeliveryResult(success=False, channel=channel, error="channel_not_configured")

        senders = {
            DeliveryChannel.PUSH: self._send_push,
            DeliveryChannel.CHAT: self._send_chat,
            DeliveryChannel.ESCALATION: self._send_escalation,
        }
        send = senders[channel]
        breaker = get_breaker(CHANNEL_BREAKERS[channel])
        fallback = DeliveryResult(success=False, channel=channel, error="circuit_open_or_failed")

        try:
            result = await breaker.execute_with_fallback(
                lambda: send(user_id, message), fallback
            )
        except Exception as e:
            logger.error("delivery_unexpected_error", user_id=user_id, channel=channel.value, error=str(e))
            return fallback

        if result.success:
            logger.info("intervention_delivered", user_id=user_id, channel=channel.value)
        else:
            logger.warning(
                "intervention_delivery_failed",
                user_id=user_id,
                channel=channel.value,
                circuit_state=breaker.state.value,
            )
        return result
