"""Heartbeat service: periodic proactive evaluation and nightly learning."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog
from croniter import croniter

from src.config import get_settings
from src.models.intervention import AgentType
from src.services.feedback_aggregator import FeedbackAggregator
from src.services.intervention_log_service import InterventionLogService
from src.services.policy_engine import PolicyEngine
from src.services.preference_aggregator import PreferenceAggregator
from src.services.proactive_service import ProactiveService

logger = structlog.get_logger(__name__)


class HeartbeatService:
    """Scans active users on an interval and runs the nightly recompute on its cron."""

    def __init__(
        self,
        policy_engine: Optional[PolicyEngine] = None,
        proactive_service: Optional[ProactiveService] = None,
        log_service: Optional[InterventionLogService] = None,
        feedback_aggregator: Optional[FeedbackAggregator] = None,
        preference_aggregator: Optional[PreferenceAggregator] = None,
    ):
        self.proactive_service = proactive_service or ProactiveService()
        self.log_service = log_service or InterventionLogService()
        self.feedback_aggregator = feedback_aggregator or FeedbackAggregator()
        self.preference_aggregator = preference_aggregator or PreferenceAggregator()
        self.policy_engine = policy_engine or PolicyEngine(
            proactive_service=self.proactive_service,
            log_service=self.log_service,
            feedback_aggregator=self.feedback_aggregator,
            preference_aggregator=self.preference_aggregator,
        )
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._next_recompute_at: Optional[datetime] = None

    def start(self):
        """Start the heartbeat loop as an asyncio background task."""
        self._running = True
        self._next_recompute_at = self._next_cron_time(datetime.now(timezone.utc))
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("heartbeat_started", next_recompute_at=self._next_recompute_at.isoformat())

    async def stop(self):
        """Stop the heartbeat loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("heartbeat_stopped")

    def _next_cron_time(self, after: datetime) -> datetime:
        cron = croniter(get_settings().feedback_recompute_cron, after)
        return cron.get_next(datetime)

    async def _poll_loop(self):
        settings = get_settings()
        interval = settings.heartbeat_poll_interval_seconds

        while self._running:
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("heartbeat_poll_error", error=str(e))

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    async def _poll_once(self, now: Optional[datetime] = None) -> dict:
        """One tick: nightly recompute if due, then the user scan."""
        now = now or datetime.now(timezone.utc)

        if self._next_recompute_at is not None and now >= self._next_recompute_at:
            await self.run_recompute()
            self._next_recompute_at = self._next_cron_time(now)

        return await self.run_tick(now)

    async def run_tick(self, now: Optional[datetime] = None) -> dict:
        """Evaluate every active user once, sequentially."""
        settings = get_settings()
        user_ids = await self.proactive_service.list_active_user_ids(
            settings.heartbeat_max_users_per_tick
        )

        processed = 0
        intervened = 0
        errors = 0

        for user_id in user_ids:
            try:
                decision = await self.policy_engine.evaluate(
                    user_id, agent=AgentType.HEARTBEAT, now=now
                )
            except Exception as e:
                logger.error("heartbeat_user_failed", user_id=user_id, error=str(e))
                errors += 1
                continue

            processed += 1
            if decision.should_intervene:
                intervened += 1
            elif "engine_error" in decision.reason_codes:
                errors += 1

        summary = {"processed": processed, "intervened": intervened, "errors": errors}
        logger.info("heartbeat_tick_complete", **summary)
        return summary

    async def run_recompute(self) -> dict:
        """Nightly learning pass over recorded user feedback and suggestion events."""
        summary = {"weights": None, "preferences": None}

        try:
            summary["weights"] = await self.feedback_aggregator.compute_weights_for_all_users()
        except Exception as e:
            logger.error("weight_batch_failed", error=str(e))

        try:
            summary["preferences"] = await self.preference_aggregator.compute_for_all_users()
        except Exception as e:
            logger.error("preference_batch_failed", error=str(e))

        logger.info(
            "nightly_recompute_complete",
            weights_ok=summary["weights"] is not None,
            preferences_ok=summary["preferences"] is not None,
        )
        return summary
