"""Feedback aggregator turning intervention outcomes into per-action-type weights.

weight_multiplier = clamp(accept_rate / (dismiss_rate + 0.1), 0.1, 2.0)

Weights are recomputed from the full feedback history on every pass rather than
updated incrementally, so concurrent or repeated runs converge on the same rows.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import structlog

from src.database import get_pool
from src.models.intervention import FeedbackStat, InterventionFeedback

logger = structlog.get_logger(__name__)

WEIGHT_MIN = 0.1
WEIGHT_MAX = 2.0
DISMISS_SMOOTHING = 0.1


def compute_weight_multiplier(accepted: int, dismissed: int, total: int) -> float:
    """Clamp accept_rate / (dismiss_rate + 0.1) into [0.1, 2.0]."""
    accept_rate = accepted / total if total > 0 else 0.0
    dismiss_rate = dismissed / total if total > 0 else 0.0
    raw_weight = accept_rate / (dismiss_rate + DISMISS_SMOOTHING)
    return min(WEIGHT_MAX, max(WEIGHT_MIN, raw_weight))


@dataclass
class FeedbackCount:
    action_type: str
    accepted: int = 0
    dismissed: int = 0
    ignored: int = 0
    total: int = 0

    @property
    def weight_multiplier(self) -> float:
        return compute_weight_multiplier(self.accepted, self.dismissed, self.total)


def count_feedback(rows) -> dict[str, FeedbackCount]:
    """Group feedback-bearing log rows by action type."""
    counts: dict[str, FeedbackCount] = {}

    for row in rows:
        action_type = row["action_type"]
        if not action_type:
            continue

        count = counts.setdefault(action_type, FeedbackCount(action_type=action_type))
        count.total += 1

        feedback = row["feedback"]
        if feedback == InterventionFeedback.ACCEPTED.value:
            count.accepted += 1
        elif feedback == InterventionFeedback.DISMISSED.value:
            count.dismissed += 1
        elif feedback == InterventionFeedback.IGNORED.value:
            count.ignored += 1

    return counts


class FeedbackAggregator:
    """Owns intervention_feedback_stats; the policy engine only reads it."""

    async def compute_weights(self, user_id: str) -> dict[str, float]:
        """Recompute and upsert every action type's weight for one user.

        No-op (returns {}) if the user has no feedback yet. Rows whose counts
        and weight are unchanged are left untouched, including updated_at.
        """
        pool = await get_pool()
        uid = UUID(user_id)

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT action_type, feedback
                FROM intervention_logs
                WHERE user_id = $1 AND feedback IS NOT NULL
                """,
                uid,
            )

            if not rows:
                return {}

            counts = count_feedback(rows)
            now = datetime.now(timezone.utc)

            for count in counts.values():
                await conn.execute(
                    """
                    INSERT INTO intervention_feedback_stats
                        (user_id, action_type, weight_multiplier, total_count,
                         accepted_count, dismissed_count, ignored_count, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (user_id, action_type) DO UPDATE SET
                        weight_multiplier = EXCLUDED.weight_multiplier,
                        total_count = EXCLUDED.total_count,
                        accepted_count = EXCLUDED.accepted_count,
                        dismissed_count = EXCLUDED.dismissed_count,
                        ignored_count = EXCLUDED.ignored_count,
                        updated_at = EXCLUDED.updated_at
                    WHERE (intervention_feedback_stats.weight_multiplier,
                           intervention_feedback_stats.total_count,
                           intervention_feedback_stats.accepted_count,
                           intervention_feedback_stats.dismissed_count,
                           intervention_feedback_stats.ignored_count)
                        IS DISTINCT FROM
                          (EXCLUDED.weight_multiplier, EXCLUDED.total_count,
                           EXCLUDED.accepted_count, EXCLUDED.dismissed_count,
                           EXCLUDED.ignored_count)
                    """,
                    uid,
                    count.action_type,
                    count.weight_multiplier,
                    count.total,
                    count.accepted,
                    count.dismissed,
                    count.ignored,
                    now,
                )

        weights = {action_type: c.weight_multiplier for action_type, c in counts.items()}
        logger.info(
            "feedback_weights_updated",
            user_id=user_id,
            action_types=len(weights),
        )
        return weights

    async def compute_weights_for_all_users(self) -> dict:
        """Recompute weights for every user with feedback, one user at a time.

        A failure for one user is logged and counted; the batch continues.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT user_id
                FROM intervention_logs
                WHERE feedback IS NOT NULL
                """
            )

        if not rows:
            logger.info("feedback_batch_no_users")
            return {"processed": 0, "errors": 0}

        processed = 0
        errors = 0

        for row in rows:
            user_id = str(row["user_id"])
            try:
                await self.compute_weights(user_id)
                processed += 1
            except Exception as e:
                logger.error("feedback_batch_user_failed", user_id=user_id, error=str(e))
                errors += 1

        logger.info("feedback_batch_complete", processed=processed, errors=errors)
        return {"processed": processed, "errors": errors}

    async def get_weights(self, user_id: str) -> dict[str, float]:
        """Current weight per action type for a user (read-only view)."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT action_type, weight_multiplier
                FROM intervention_feedback_stats
                WHERE user_id = $1
                """,
                UUID(user_id),
            )

        return {row["action_type"]: row["weight_multiplier"] for row in rows}

    async def get_stats(self, user_id: str) -> list[FeedbackStat]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, action_type, weight_multiplier, total_count, accepted_count,
                       dismissed_count, ignored_count, updated_at
                FROM intervention_feedback_stats
                WHERE user_id = $1
                ORDER BY action_type
                """,
                UUID(user_id),
            )

        return [FeedbackStat(**dict(row)) for row in rows]
