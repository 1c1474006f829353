"""Suggestion preference aggregator.

Aggregates ai_suggestion_shown / accepted / dismissed events over a rolling
window into per-category and per-time-block preferences and caches the result
in the KV store.

category weight = clamp(rate / (avg_rate + 0.1), 0.2, 3.0), where avg_rate is
the mean accept rate across the user's categories.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import structlog

from src.config import get_settings
from src.database import get_pool
from src.models.intervention import SuggestionEventType, SuggestionPreference, TimeBlock
from src.services.kv_store import KVStore
from src.services.proactive_service import ProactiveService

logger = structlog.get_logger(__name__)

KV_KEY = "suggestion_preferences"
CATEGORY_WEIGHT_MIN = 0.2
CATEGORY_WEIGHT_MAX = 3.0
BASELINE_SMOOTHING = 0.1
AVOID_BELOW = 0.3
TOP_CATEGORY_COUNT = 2
UNKNOWN_CATEGORY = "unknown"
# Shown events without an hour are bucketed as midday
DEFAULT_SHOWN_HOUR = 12
AFTERNOON_START = 12
EVENING_START = 18


def time_block_for_hour(hour: int) -> TimeBlock:
    if hour < AFTERNOON_START:
        return TimeBlock.MORNING
    if hour < EVENING_START:
        return TimeBlock.AFTERNOON
    return TimeBlock.EVENING


def _metadata(event: dict) -> dict:
    metadata = event.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return metadata


def _category(value: Any) -> str:
    return value or UNKNOWN_CATEGORY


def build_suggestion_preferences(
    shown_events: Iterable[dict],
    accepted_events: Iterable[dict],
    dismissed_events: Iterable[dict],
    now: Optional[datetime] = None,
    tz: ZoneInfo = ZoneInfo("UTC"),
) -> SuggestionPreference:
    """Pure aggregation of suggestion events into preferences.

    Shown events carry metadata.suggestions (each with a category) and an
    optional metadata.hour. Accepted and dismissed events carry
    metadata.category; accepted events may carry metadata.hour, otherwise their
    created_at in the user's timezone decides the time block.
    """
    shown_events = list(shown_events)
    accepted_events = list(accepted_events)
    dismissed_events = list(dismissed_events)

    stats: dict[str, dict[str, int]] = {}

    def ensure(cat: str) -> dict[str, int]:
        return stats.setdefault(cat, {"shown": 0, "accepted": 0, "dismissed": 0})

    for event in shown_events:
        for suggestion in _metadata(event).get("suggestions") or []:
            ensure(_category(suggestion.get("category")))["shown"] += 1

    for event in accepted_events:
        ensure(_category(_metadata(event).get("category")))["accepted"] += 1

    for event in dismissed_events:
        ensure(_category(_metadata(event).get("category")))["dismissed"] += 1

    rates = {cat: s["accepted"] / (s["shown"] or 1) for cat, s in stats.items()}
    avg_rate = sum(rates.values()) / len(rates) if rates else 0.0

    category_weights = {
        cat: min(CATEGORY_WEIGHT_MAX, max(CATEGORY_WEIGHT_MIN, rate / (avg_rate + BASELINE_SMOOTHING)))
        for cat, rate in rates.items()
    }

    block_counts: dict[str, dict[str, dict[str, int]]] = {block.value: {} for block in TimeBlock}

    for event in accepted_events:
        metadata = _metadata(event)
        hour = metadata.get("hour")
        if hour is None:
            created_at = event.get("created_at")
            hour = created_at.astimezone(tz).hour if created_at else DEFAULT_SHOWN_HOUR
        block = time_block_for_hour(int(hour)).value
        counts = block_counts[block].setdefault(
            _category(metadata.get("category")), {"accepted": 0, "total": 0}
        )
        counts["accepted"] += 1
        counts["total"] += 1

    for event in shown_events:
        metadata = _metadata(event)
        hour = metadata.get("hour")
        block = time_block_for_hour(int(hour if hour is not None else DEFAULT_SHOWN_HOUR)).value
        for suggestion in metadata.get("suggestions") or []:
            counts = block_counts[block].setdefault(
                _category(suggestion.get("category")), {"accepted": 0, "total": 0}
            )
            counts["total"] += 1

    time_category_scores = {
        block: {
            cat: (c["accepted"] / c["total"] if c["total"] > 0 else 0.0)
            for cat, c in cats.items()
        }
        for block, cats in block_counts.items()
    }

    ranked = sorted(category_weights.items(), key=lambda kv: kv[1], reverse=True)
    top_categories = [cat for cat, _ in ranked[:TOP_CATEGORY_COUNT]]
    avoid_categories = [cat for cat, weight in ranked if weight < AVOID_BELOW]

    return SuggestionPreference(
        category_weights=category_weights,
        time_category_scores=time_category_scores,
        top_categories=top_categories,
        avoid_categories=avoid_categories,
        updated_at=now or datetime.now(timezone.utc),
    )


class PreferenceAggregator:
    """Computes and serves cached suggestion preferences."""

    def __init__(
        self,
        kv_store: Optional[KVStore] = None,
        proactive_service: Optional[ProactiveService] = None,
    ):
        self.kv_store = kv_store or KVStore()
        self.proactive_service = proactive_service or ProactiveService()

    async def _fetch_events(self, user_id: str, event_type: SuggestionEventType, since: datetime) -> list[dict]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT metadata, created_at
                FROM user_events
                WHERE user_id = $1 AND event_type = $2 AND created_at >= $3
                """,
                UUID(user_id),
                event_type.value,
                since,
            )

        return [dict(row) for row in rows]

    async def compute_suggestion_preferences(
        self, user_id: str, tz: Optional[str] = None
    ) -> SuggestionPreference:
        """Aggregate the rolling window of events and persist the result.

        Events without an hour are bucketed in tz, defaulting to the user's own
        timezone preference.
        """
        settings = get_settings()
        if tz is None:
            tz = (await self.proactive_service.get_preferences(user_id)).timezone
        now = datetime.now(timezone.utc)
        since = now - timedelta(days=settings.preference_window_days)

        shown = await self._fetch_events(user_id, SuggestionEventType.SHOWN, since)
        accepted = await self._fetch_events(user_id, SuggestionEventType.ACCEPTED, since)
        dismissed = await self._fetch_events(user_id, SuggestionEventType.DISMISSED, since)

        prefs = build_suggestion_preferences(
            shown,
            accepted,
            dismissed,
            now=now,
            tz=ZoneInfo(tz),
        )

        await self.kv_store.set(user_id, KV_KEY, prefs.model_dump(mode="json", by_alias=True))
        logger.info(
            "suggestion_preferences_updated",
            user_id=user_id,
            top_categories=prefs.top_categories,
            avoid_categories=prefs.avoid_categories,
        )
        return prefs

    async def get_suggestion_preferences(self, user_id: str) -> Optional[SuggestionPreference]:
        """Cached preferences, or None if never computed."""
        data = await self.kv_store.get(user_id, KV_KEY)
        if data is None:
            return None
        return SuggestionPreference.model_validate(data)

    async def compute_for_all_users(self) -> dict:
        """Recompute preferences for users with suggestion events in the window."""
        settings = get_settings()
        since = datetime.now(timezone.utc) - timedelta(days=settings.preference_window_days)
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT user_id
                FROM user_events
                WHERE event_type = ANY($1::text[]) AND created_at >= $2
                """,
                [event_type.value for event_type in SuggestionEventType],
                since,
            )

        processed = 0
        errors = 0

        for row in rows:
            user_id = str(row["user_id"])
            try:
                await self.compute_suggestion_preferences(user_id)
                processed += 1
            except Exception as e:
                logger.error("preference_batch_user_failed", user_id=user_id, error=str(e))
                errors += 1

        logger.info("preference_batch_complete", processed=processed, errors=errors)
        return {"processed": processed, "errors": errors}

    async def record_suggestion_event(
        self, user_id: str, event_type: SuggestionEventType, metadata: Optional[dict] = None
    ) -> str:
        """Store a shown/accepted/dismissed event for the next aggregation pass."""
        event_id = uuid4()
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_events (id, user_id, event_type, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                event_id,
                UUID(user_id),
                event_type.value,
                json.dumps(metadata or {}),
                datetime.now(timezone.utc),
            )

        logger.info("suggestion_event_recorded", user_id=user_id, event_type=event_type.value)
        return str(event_id)
