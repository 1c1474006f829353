"""Intervention log service: the record of every fired intervention and its outcome."""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from src.config import get_settings
from src.database import get_pool
from src.models.intervention import DeliveryChannel, InterventionFeedback, InterventionLog

logger = structlog.get_logger(__name__)


class InterventionLogNotFoundError(Exception):
    """No intervention log with this id belongs to the user."""


class FeedbackAlreadyRecordedError(Exception):
    """The intervention already carries feedback; it is never overwritten."""


def _row_to_log(row) -> InterventionLog:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return InterventionLog(
        id=row["id"],
        user_id=row["user_id"],
        action_type=row["action_type"],
        payload=payload or {},
        channel=DeliveryChannel(row["channel"]),
        score=row["score"],
        fired_at=row["fired_at"],
        feedback=InterventionFeedback(row["feedback"]) if row["feedback"] else None,
        feedback_at=row["feedback_at"],
    )


class InterventionLogService:
    """Creates logs before dispatch and records feedback exactly once."""

    async def create_log(
        self,
        user_id: str,
        action_type: str,
        payload: dict,
        channel: DeliveryChannel,
        score: float,
    ) -> UUID:
        """Insert a log row for an intervention about to be dispatched."""
        log_id = uuid4()
        now = datetime.now(timezone.utc)
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO intervention_logs (id, user_id, action_type, payload, channel, score, fired_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                log_id,
                UUID(user_id),
                action_type,
                json.dumps(payload, default=str),
                channel.value,
                score,
                now,
            )

        logger.info(
            "intervention_logged",
            intervention_id=str(log_id),
            user_id=user_id,
            action_type=action_type,
            channel=channel.value,
        )
        return log_id

    async def record_feedback(
        self,
        user_id: str,
        log_id: UUID,
        feedback: InterventionFeedback,
    ) -> InterventionLog:
        """Set feedback on a log that has none yet.

        The UPDATE only matches rows whose feedback is NULL, so two racing
        responses cannot both succeed.

        Raises:
            InterventionLogNotFoundError: Unknown id for this user
            FeedbackAlreadyRecordedError: Feedback was already set
        """
        now = datetime.now(timezone.utc)
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE intervention_logs
                SET feedback = $1, feedback_at = GREATEST($2, fired_at)
                WHERE id = $3 AND user_id = $4 AND feedback IS NULL
                RETURNING id, user_id, action_type, payload, channel, score,
                          fired_at, feedback, feedback_at
                """,
                feedback.value,
                now,
                log_id,
                UUID(user_id),
            )

            if row is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM intervention_logs WHERE id = $1 AND user_id = $2",
                    log_id,
                    UUID(user_id),
                )
                if exists is None:
                    raise InterventionLogNotFoundError(str(log_id))
                raise FeedbackAlreadyRecordedError(str(log_id))

        logger.info(
            "intervention_feedback_recorded",
            intervention_id=str(log_id),
            user_id=user_id,
            feedback=feedback.value,
        )

        if get_settings().recompute_on_feedback:
            await self._recompute_weights(user_id)

        return _row_to_log(row)

    async def _recompute_weights(self, user_id: str) -> None:
        """Refresh the user's weights after new feedback. Failures only log."""
        try:
            from src.services.feedback_aggregator import FeedbackAggregator

            await FeedbackAggregator().compute_weights(user_id)
        except Exception as e:
            logger.warning("feedback_recompute_failed", user_id=user_id, error=str(e))

    async def get_last_fired_at(self, user_id: str) -> Optional[datetime]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT MAX(fired_at) FROM intervention_logs WHERE user_id = $1",
                UUID(user_id),
            )

    async def count_fired_since(self, user_id: str, since: datetime) -> int:
        pool = await get_pool()

        async with pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM intervention_logs WHERE user_id = $1 AND fired_at >= $2",
                UUID(user_id),
                since,
            )
        return count or 0

    async def list_recent(self, user_id: str, limit: int = 20) -> list[InterventionLog]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, action_type, payload, channel, score,
                       fired_at, feedback, feedback_at
                FROM intervention_logs
                WHERE user_id = $1
                ORDER BY fired_at DESC
                LIMIT $2
                """,
                UUID(user_id),
                limit,
            )

        return [_row_to_log(row) for row in rows]
