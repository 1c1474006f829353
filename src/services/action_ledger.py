"""Action ledger shared by independently running agents.

Each agent records what it just did for a user; before acting, agents read the
recent entries so two of them do not fire for the same schedule item. The list
is advisory: under concurrent writers an entry may be lost to the cap, which
only costs an occasional duplicate notification.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

import structlog
from pydantic import ValidationError

from src.config import get_settings
from src.models.intervention import AgentType, LedgerEntry
from src.services.redis_service import RedisService

logger = structlog.get_logger(__name__)

DEFAULT_TARGET_ACTION_TYPES = (
    "add_schedule",
    "update_schedule",
    "delete_schedule",
    "suggest_schedule",
)
# Payload fields that may carry the schedule text an action targeted
TARGET_PAYLOAD_FIELDS = ("text", "schedule_text")


def ledger_key(user_id: str, day: str) -> str:
    return f"agent_actions:{user_id}:{day}"


def has_recent_action(
    actions: Iterable[LedgerEntry],
    target_text: str,
    action_types: Iterable[str] = DEFAULT_TARGET_ACTION_TYPES,
) -> bool:
    """True if any entry of the given types targeted the same text."""
    types = set(action_types)
    for action in actions:
        if action.action_type not in types:
            continue
        payload = action.payload or {}
        if any(payload.get(field) == target_text for field in TARGET_PAYLOAD_FIELDS):
            return True
    return False


class ActionLedger:
    """Per-user, per-day log of agent actions, capped to the newest entries."""

    def __init__(
        self,
        redis_service: Optional[RedisService] = None,
        tz: Optional[str] = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        settings = get_settings()
        self.redis = redis_service or RedisService()
        self.tz = ZoneInfo(tz or settings.default_timezone)
        self.max_entries = settings.ledger_max_entries
        self.ttl_seconds = settings.ledger_ttl_seconds
        self.default_window_minutes = settings.ledger_window_minutes
        self._now = now_fn

    def _today_key(self, user_id: str, now: datetime) -> str:
        day = now.astimezone(self.tz).date().isoformat()
        return ledger_key(user_id, day)

    async def log_action(
        self,
        user_id: str,
        agent: AgentType,
        action_type: str,
        payload: Optional[dict] = None,
    ) -> bool:
        """Append an entry to today's list. Never raises; returns False on failure."""
        now = self._now()
        entry = LedgerEntry(
            agent=agent,
            action_type=action_type,
            payload=payload or {},
            timestamp=now,
        )

        try:
            ok = await self.redis.append_capped(
                self._today_key(user_id, now),
                entry.model_dump(mode="json"),
                self.max_entries,
                self.ttl_seconds,
            )
        except Exception as e:
            logger.error("action_ledger_log_failed", user_id=user_id, error=str(e))
            return False

        if ok:
            logger.debug(
                "action_ledger_logged",
                user_id=user_id,
                agent=agent.value,
                action_type=action_type,
            )
        return ok

    async def get_recent_actions(
        self, user_id: str, window_minutes: Optional[int] = None
    ) -> list[LedgerEntry]:
        """Today's entries newer than the trailing window. Empty on any failure."""
        window = window_minutes if window_minutes is not None else self.default_window_minutes
        now = self._now()
        cutoff = now - timedelta(minutes=window)

        try:
            raw_entries = await self.redis.get_list(self._today_key(user_id, now))
        except Exception as e:
            logger.error("action_ledger_read_failed", user_id=user_id, error=str(e))
            return []

        recent = []
        for raw in raw_entries:
            try:
                entry = LedgerEntry.model_validate(raw)
            except ValidationError:
                logger.warning("action_ledger_entry_malformed", user_id=user_id)
                continue
            if entry.timestamp > cutoff:
                recent.append(entry)
        return recent
