"""Proactive service for per-user intervention preferences."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog

from src.config import get_settings
from src.database import get_pool
from src.models.intervention import InterventionPreferences

logger = structlog.get_logger(__name__)

ALLOWED_FIELDS = {
    "enabled",
    "timezone",
    "quiet_hours_start",
    "quiet_hours_end",
    "cooldown_minutes",
    "max_per_day",
    "max_level",
}


def _merge_defaults(row: Optional[dict]) -> InterventionPreferences:
    settings = get_settings()
    row = row or {}

    def pick(key, default):
        value = row.get(key)
        return default if value is None else value

    return InterventionPreferences(
        enabled=pick("enabled", True),
        timezone=pick("timezone", settings.default_timezone),
        quiet_hours_start=pick("quiet_hours_start", settings.default_quiet_hours_start),
        quiet_hours_end=pick("quiet_hours_end", settings.default_quiet_hours_end),
        cooldown_minutes=pick("cooldown_minutes", settings.default_cooldown_minutes),
        max_per_day=pick("max_per_day", settings.default_max_per_day),
        max_level=pick("max_level", settings.default_max_intervention_level),
    )


class ProactiveService:
    """Reads and updates the gates the policy engine applies per user."""

    async def get_preferences(self, user_id: str) -> InterventionPreferences:
        """Get a user's preferences, filling unset fields from settings."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT enabled, timezone, quiet_hours_start, quiet_hours_end,
                       cooldown_minutes, max_per_day, max_level
                FROM intervention_preferences
                WHERE user_id = $1
                """,
                UUID(user_id),
            )

        return _merge_defaults(dict(row) if row else None)

    async def update_preferences(self, user_id: str, **updates) -> InterventionPreferences:
        """Upsert the given preference fields. Unknown fields are ignored."""
        fields = [key for key in updates if key in ALLOWED_FIELDS]
        if not fields:
            return await self.get_preferences(user_id)

        columns = ", ".join(fields)
        placeholders = ", ".join(f"${i + 2}" for i in range(len(fields)))
        set_clause = ", ".join(f"{key} = EXCLUDED.{key}" for key in fields)
        now = datetime.now(timezone.utc)

        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO intervention_preferences (user_id, {columns}, updated_at)
                VALUES ($1, {placeholders}, ${len(fields) + 2})
                ON CONFLICT (user_id) DO UPDATE SET {set_clause}, updated_at = EXCLUDED.updated_at
                """,
                UUID(user_id),
                *[updates[key] for key in fields],
                now,
            )

        logger.info("intervention_preferences_updated", user_id=user_id, updates=fields)
        return await self.get_preferences(user_id)

    async def list_active_user_ids(self, limit: int) -> list[str]:
        """Users eligible for the heartbeat scan.

        A user is active if they have scheduled items from yesterday onward and
        have not disabled interventions.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT a.user_id
                FROM activity_items a
                LEFT JOIN intervention_preferences p ON p.user_id = a.user_id
                WHERE a.scheduled_at >= NOW() - INTERVAL '1 day'
                AND COALESCE(p.enabled, TRUE)
                ORDER BY a.user_id
                LIMIT $1
                """,
                limit,
            )

        return [str(row["user_id"]) for row in rows]
