"""Signal detector deriving a user's daily energy and stress from activity items."""

from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog

from src.database import get_pool
from src.models.intervention import ActivityItem, ActivityStatus, DailyState
from src.services.proactive_service import ProactiveService

logger = structlog.get_logger(__name__)

LEVEL_MIN = 1
LEVEL_MAX = 10
BASE_STRESS = 5
BASE_ENERGY = 5

# Stress: schedule density
DENSE_DAY_ITEMS = 8
DENSE_DAY_STRESS = 2
BUSY_DAY_ITEMS = 5
BUSY_DAY_STRESS = 1

# Stress: completion
VERY_LOW_COMPLETION = 0.3
VERY_LOW_COMPLETION_STRESS = 2
LOW_COMPLETION = 0.5
LOW_COMPLETION_STRESS = 1
HIGH_COMPLETION = 0.8
HIGH_COMPLETION_STRESS = -2

# Stress: skips and evening backlog
MANY_SKIPS = 3
MANY_SKIPS_STRESS = 1
EVENING_HOUR = 18
EVENING_BACKLOG_PENDING = 3
EVENING_BACKLOG_STRESS = 1

# Energy: completion
HIGH_ENERGY = 8
HIGH_ENERGY_MIN_COMPLETED = 3
GOOD_COMPLETION = 0.6
GOOD_ENERGY = 7
GOOD_ENERGY_MIN_COMPLETED = 2
LOW_ENERGY = 3

# Energy: time of day
MORNING_BOOST_HOURS = (6, 10)
AFTERNOON_DIP_HOURS = (15, 17)

# Empty day override
EMPTY_DAY_ENERGY = 5
EMPTY_DAY_STRESS = 3


def _clamp(value: int) -> int:
    return max(LEVEL_MIN, min(LEVEL_MAX, value))


def compute_daily_state(
    items: Iterable[ActivityItem],
    local_hour: int,
    now: Optional[datetime] = None,
) -> DailyState:
    """Derive energy and stress for one day of activity items.

    Pure function of the items and the user's local hour.
    """
    items = list(items)
    total = len(items)
    completed = sum(1 for item in items if item.status == ActivityStatus.COMPLETED)
    skipped = sum(1 for item in items if item.status == ActivityStatus.SKIPPED)
    pending = total - completed - skipped
    resolved = completed + skipped
    completion_rate = completed / resolved if resolved > 0 else 0.0

    stress = BASE_STRESS
    if total >= DENSE_DAY_ITEMS:
        stress += DENSE_DAY_STRESS
    elif total >= BUSY_DAY_ITEMS:
        stress += BUSY_DAY_STRESS

    if completion_rate < VERY_LOW_COMPLETION:
        stress += VERY_LOW_COMPLETION_STRESS
    elif completion_rate < LOW_COMPLETION:
        stress += LOW_COMPLETION_STRESS
    elif completion_rate >= HIGH_COMPLETION:
        stress += HIGH_COMPLETION_STRESS

    if skipped >= MANY_SKIPS:
        stress += MANY_SKIPS_STRESS
    if local_hour >= EVENING_HOUR and pending > EVENING_BACKLOG_PENDING:
        stress += EVENING_BACKLOG_STRESS

    energy = BASE_ENERGY
    if completion_rate >= HIGH_COMPLETION and completed >= HIGH_ENERGY_MIN_COMPLETED:
        energy = HIGH_ENERGY
    elif completion_rate >= GOOD_COMPLETION and completed >= GOOD_ENERGY_MIN_COMPLETED:
        energy = GOOD_ENERGY
    elif completion_rate < VERY_LOW_COMPLETION and resolved > 0:
        energy = LOW_ENERGY

    if MORNING_BOOST_HOURS[0] <= local_hour <= MORNING_BOOST_HOURS[1]:
        energy += 1
    elif AFTERNOON_DIP_HOURS[0] <= local_hour <= AFTERNOON_DIP_HOURS[1]:
        energy -= 1

    stress = _clamp(stress)
    energy = _clamp(energy)

    # Applied last so an empty day fully resets instead of partially adjusting
    if total == 0:
        energy = EMPTY_DAY_ENERGY
        stress = EMPTY_DAY_STRESS

    return DailyState(
        energy_level=energy,
        stress_level=stress,
        completion_rate=completion_rate,
        total_count=total,
        completed_count=completed,
        skipped_count=skipped,
        pending_count=pending,
        local_hour=local_hour,
        detected_at=now or datetime.now(timezone.utc),
    )


def local_day_bounds(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC start (inclusive) and end (exclusive) of the local calendar day containing now."""
    local_date = now.astimezone(tz).date()
    start = datetime.combine(local_date, time.min, tzinfo=tz)
    end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class SignalDetector:
    """Loads today's activity items for a user and derives their DailyState."""

    def __init__(self, proactive_service: Optional[ProactiveService] = None):
        self.proactive_service = proactive_service or ProactiveService()

    async def load_items(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[ActivityItem]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, title, scheduled_at, status
                FROM activity_items
                WHERE user_id = $1 AND scheduled_at >= $2 AND scheduled_at < $3
                ORDER BY scheduled_at ASC
                """,
                UUID(user_id),
                start,
                end,
            )

        return [
            ActivityItem(
                id=row["id"],
                title=row["title"],
                scheduled_at=row["scheduled_at"],
                status=ActivityStatus(row["status"]),
            )
            for row in rows
        ]

    async def detect_daily_state(
        self, user_id: str, now: Optional[datetime] = None
    ) -> DailyState:
        """Compute today's state in the user's local timezone. Read-only."""
        now = now or datetime.now(timezone.utc)
        prefs = await self.proactive_service.get_preferences(user_id)
        tz = ZoneInfo(prefs.timezone)

        start, end = local_day_bounds(now, tz)
        items = await self.load_items(user_id, start, end)
        state = compute_daily_state(items, now.astimezone(tz).hour, now=now)

        logger.info(
            "daily_state_detected",
            user_id=user_id,
            energy_level=state.energy_level,
            stress_level=state.stress_level,
            completion_rate=round(state.completion_rate, 3),
            total_count=state.total_count,
        )
        return state
