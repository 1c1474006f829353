"""Policy engine deciding whether, and with what, to interrupt a user.

Flow for one evaluation:
1. Gates: preferences enabled, quiet hours, cooldown, daily cap
2. Candidates: supplied by the calling agent, or derived from DailyState
3. Dedup: drop candidates another agent already acted on (action ledger)
4. Scoring: blend(base priority, feedback weight, category weight, time score)
5. Level: score and reasons pick how loudly to interrupt, capped per user
6. Fire the top candidate above threshold: ledger entry and intervention log
   are written first, then the message is phrased and delivered through its
   breaker

evaluate() never raises; internal failures become an "engine_error" decision.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from src.config import get_settings
from src.models.intervention import (
    AgentType,
    CandidateAction,
    DailyState,
    DeliveryChannel,
    InterventionDecision,
    InterventionLevel,
    ScoredCandidate,
    SuggestionPreference,
)
from src.services.action_ledger import (
    DEFAULT_TARGET_ACTION_TYPES,
    ActionLedger,
    has_recent_action,
)
from src.services.delivery_dispatcher import DeliveryDispatcher
from src.services.feedback_aggregator import FeedbackAggregator
from src.services.generation_service import GenerationService
from src.services.intervention_log_service import InterventionLogService
from src.services.logging_service import log_intervention_decision
from src.services.preference_aggregator import PreferenceAggregator, time_block_for_hour
from src.services.proactive_service import ProactiveService
from src.services.signal_detector import SignalDetector, local_day_bounds

logger = structlog.get_logger(__name__)

REASON_DISABLED = "disabled"
REASON_QUIET_HOURS = "quiet_hours"
REASON_COOLDOWN = "cooldown"
REASON_DAILY_LIMIT = "daily_limit"
REASON_NO_CANDIDATES = "no_candidates"
REASON_ALL_DUPLICATES = "all_duplicates"
REASON_BELOW_THRESHOLD = "below_threshold"
REASON_DRY_RUN = "dry_run"
REASON_ENGINE_ERROR = "engine_error"
REASON_OBSERVE_ONLY = "observe_only"
REASON_HIGH_STRESS = "high_stress"
REASON_LOW_ENERGY = "low_energy"
REASON_EVENING_BACKLOG = "evening_backlog"

NEUTRAL_FACTOR = 1.0
# A category never accepted in a time block dampens rather than zeroes its score
TIME_SCORE_FLOOR = 0.1

# State-derived candidate rules
SEVERE_STRESS = 8
ELEVATED_STRESS = 6
DEPLETED_ENERGY = 3
LOW_ENERGY = 5
BACKLOG_HOUR = 18
BACKLOG_PENDING = 3

# Level rules
DIRECT_SCORE = 0.9
SOFT_SCORE = 0.6

LEVEL_CHANNELS = {
    InterventionLevel.SILENT_PREP: DeliveryChannel.CHAT,
    InterventionLevel.SOFT: DeliveryChannel.PUSH,
    InterventionLevel.DIRECT: DeliveryChannel.ESCALATION,
}
CHANNEL_LEVELS = {channel: level for level, channel in LEVEL_CHANNELS.items()}

BlendFn = Callable[[float, float, float, float], float]


def multiplicative_blend(base: float, weight: float, category_weight: float, time_score: float) -> float:
    return base * weight * category_weight * time_score


def weighted_blend(base: float, weight: float, category_weight: float, time_score: float) -> float:
    """Average of the factors instead of their product; softer on a single bad factor."""
    return base * (weight + category_weight + time_score) / 3


BLEND_FUNCTIONS: dict[str, BlendFn] = {
    "multiplicative": multiplicative_blend,
    "weighted": weighted_blend,
}


def is_quiet_hours(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """True if hour falls in [start, end), handling windows that wrap midnight."""
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def candidates_from_state(state: DailyState) -> list[CandidateAction]:
    """Default interventions suggested by today's signals."""
    candidates = []

    if state.stress_level >= SEVERE_STRESS:
        candidates.append(CandidateAction(
            action_type="stress_relief",
            category="rest",
            target_text="stress_relief",
            title="Time for a breather",
            body="Your day looks heavy. A five minute break or a short walk could help.",
            base_priority=1.0,
            data={"reason": REASON_HIGH_STRESS, "stress_level": state.stress_level},
        ))
    elif state.stress_level >= ELEVATED_STRESS:
        candidates.append(CandidateAction(
            action_type="stress_relief",
            category="rest",
            target_text="stress_relief",
            title="Quick pause?",
            body="A fifteen minute break with some music might reset the afternoon.",
            base_priority=0.6,
            data={"reason": REASON_HIGH_STRESS, "stress_level": state.stress_level},
        ))

    if state.energy_level <= DEPLETED_ENERGY:
        candidates.append(CandidateAction(
            action_type="energy_boost",
            category="energy",
            target_text="energy_boost",
            title="Running low",
            body="A light snack, some water, or a short stretch could lift your energy.",
            base_priority=0.8,
            data={"reason": REASON_LOW_ENERGY, "energy_level": state.energy_level},
        ))
    elif state.energy_level <= LOW_ENERGY and state.total_count > 0:
        candidates.append(CandidateAction(
            action_type="energy_boost",
            category="energy",
            target_text="energy_boost",
            title="Recharge",
            body="Coffee, tea, or a five minute walk before the next item?",
            base_priority=0.4,
            data={"reason": REASON_LOW_ENERGY, "energy_level": state.energy_level},
        ))

    if state.local_hour >= BACKLOG_HOUR and state.pending_count > BACKLOG_PENDING:
        candidates.append(CandidateAction(
            action_type="risk_alert",
            category="schedule",
            target_text="evening_backlog",
            title="Still a lot on today's list",
            body=f"{state.pending_count} items are still open. Want to move some to tomorrow?",
            base_priority=0.9,
            data={"reason": REASON_EVENING_BACKLOG, "pending_count": state.pending_count},
        ))

    return candidates


def score_candidate(
    candidate: CandidateAction,
    weights: dict[str, float],
    preferences: Optional[SuggestionPreference],
    block: str,
    blend: BlendFn = multiplicative_blend,
) -> ScoredCandidate:
    """Apply the learned factors to one candidate. Unknown factors are neutral."""
    weight = weights.get(candidate.action_type, NEUTRAL_FACTOR)
    category_weight = NEUTRAL_FACTOR
    time_score = NEUTRAL_FACTOR

    if preferences is not None:
        category_weight = preferences.category_weights.get(candidate.category, NEUTRAL_FACTOR)
        block_scores = preferences.time_category_scores.get(block, {})
        if candidate.category in block_scores:
            time_score = max(TIME_SCORE_FLOOR, block_scores[candidate.category])

    return ScoredCandidate(
        candidate=candidate,
        weight_multiplier=weight,
        category_weight=category_weight,
        time_score=time_score,
        final_score=blend(candidate.base_priority, weight, category_weight, time_score),
    )


def rank_candidates(
    candidates: list[CandidateAction],
    weights: dict[str, float],
    preferences: Optional[SuggestionPreference],
    block: str,
    blend: BlendFn = multiplicative_blend,
) -> list[ScoredCandidate]:
    """Score, drop avoided categories, and sort by final score descending."""
    avoid = set(preferences.avoid_categories) if preferences is not None else set()
    scored = [
        score_candidate(candidate, weights, preferences, block, blend)
        for candidate in candidates
        if candidate.category not in avoid
    ]
    return sorted(scored, key=lambda s: s.final_score, reverse=True)


def determine_level(
    score: float,
    reason_codes: list[str],
    max_level: InterventionLevel = InterventionLevel.DIRECT,
) -> InterventionLevel:
    """Map the winning score and today's reasons to an interruption level.

    Only a high score with both stress and an evening backlog goes direct; the
    user's max_level caps whatever is chosen.
    """
    if (
        REASON_HIGH_STRESS in reason_codes
        and REASON_EVENING_BACKLOG in reason_codes
        and score >= DIRECT_SCORE
    ):
        level = InterventionLevel.DIRECT
    elif score >= SOFT_SCORE:
        level = InterventionLevel.SOFT
    else:
        level = InterventionLevel.SILENT_PREP
    return InterventionLevel(min(level, max_level))


def channel_for(
    level: InterventionLevel,
    requested: Optional[DeliveryChannel],
    max_level: InterventionLevel,
) -> DeliveryChannel:
    """A caller-requested channel wins unless it is louder than max_level allows."""
    if requested is None:
        return LEVEL_CHANNELS[level]
    if CHANNEL_LEVELS[requested] > max_level:
        return LEVEL_CHANNELS[InterventionLevel(max_level)]
    return requested


class PolicyEngine:
    """Combines signals, learned weights, and the shared ledger into one decision."""

    def __init__(
        self,
        ledger: Optional[ActionLedger] = None,
        signal_detector: Optional[SignalDetector] = None,
        feedback_aggregator: Optional[FeedbackAggregator] = None,
        preference_aggregator: Optional[PreferenceAggregator] = None,
        log_service: Optional[InterventionLogService] = None,
        proactive_service: Optional[ProactiveService] = None,
        generation_service: Optional[GenerationService] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
        blend: Optional[BlendFn] = None,
        score_threshold: Optional[float] = None,
    ):
        settings = get_settings()
        self.proactive_service = proactive_service or ProactiveService()
        self.ledger = ledger or ActionLedger()
        self.signal_detector = signal_detector or SignalDetector(self.proactive_service)
        self.feedback_aggregator = feedback_aggregator or FeedbackAggregator()
        self.preference_aggregator = preference_aggregator or PreferenceAggregator()
        self.log_service = log_service or InterventionLogService()
        self.generation_service = generation_service or GenerationService()
        self.dispatcher = dispatcher or DeliveryDispatcher()
        self.blend = blend or BLEND_FUNCTIONS.get(settings.blend_mode, multiplicative_blend)
        self.score_threshold = (
            score_threshold if score_threshold is not None else settings.intervention_score_threshold
        )

    async def evaluate(
        self,
        user_id: str,
        candidates: Optional[list[CandidateAction]] = None,
        agent: AgentType = AgentType.PROACTIVE,
        state: Optional[DailyState] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> InterventionDecision:
        """Decide and, unless dry_run, fire. Never raises."""
        try:
            decision = await self._evaluate(user_id, candidates, agent, state, dry_run, now)
        except Exception as e:
            logger.error("policy_evaluation_failed", user_id=user_id, agent=agent.value, error=str(e))
            decision = InterventionDecision(should_intervene=False, reason_codes=[REASON_ENGINE_ERROR])

        top = decision.selected or (decision.ranked[0] if decision.ranked else None)
        log_intervention_decision(
            logger,
            user_id=user_id,
            should_intervene=decision.should_intervene,
            reason_codes=decision.reason_codes,
            top_score=top.final_score if top else None,
            action_type=top.candidate.action_type if top else None,
            skipped_duplicates=len(decision.skipped_duplicates),
        )
        return decision

    async def _evaluate(
        self,
        user_id: str,
        candidates: Optional[list[CandidateAction]],
        agent: AgentType,
        state: Optional[DailyState],
        dry_run: bool,
        now: Optional[datetime],
    ) -> InterventionDecision:
        now = now or datetime.now(timezone.utc)
        prefs = await self.proactive_service.get_preferences(user_id)

        if not prefs.enabled:
            return InterventionDecision(reason_codes=[REASON_DISABLED])

        tz = ZoneInfo(prefs.timezone)
        local_hour = now.astimezone(tz).hour

        if is_quiet_hours(local_hour, prefs.quiet_hours_start, prefs.quiet_hours_end):
            return InterventionDecision(reason_codes=[REASON_QUIET_HOURS])

        last_fired = await self.log_service.get_last_fired_at(user_id)
        if last_fired is not None and now - last_fired < timedelta(minutes=prefs.cooldown_minutes):
            return InterventionDecision(reason_codes=[REASON_COOLDOWN])

        day_start, _ = local_day_bounds(now, tz)
        fired_today = await self.log_service.count_fired_since(user_id, day_start)
        if fired_today >= prefs.max_per_day:
            return InterventionDecision(reason_codes=[REASON_DAILY_LIMIT])

        if candidates is None:
            if state is None:
                state = await self.signal_detector.detect_daily_state(user_id, now=now)
            candidates = candidates_from_state(state)

        if not candidates:
            return InterventionDecision(reason_codes=[REASON_NO_CANDIDATES])

        recent = await self.ledger.get_recent_actions(user_id)
        fresh = []
        skipped = []
        for candidate in candidates:
            action_types = (*DEFAULT_TARGET_ACTION_TYPES, candidate.action_type)
            if candidate.target_text and has_recent_action(recent, candidate.target_text, action_types):
                skipped.append(candidate.target_text)
            else:
                fresh.append(candidate)

        if not fresh:
            return InterventionDecision(reason_codes=[REASON_ALL_DUPLICATES], skipped_duplicates=skipped)

        weights = await self.feedback_aggregator.get_weights(user_id)
        preferences = await self.preference_aggregator.get_suggestion_preferences(user_id)
        block = time_block_for_hour(local_hour).value
        ranked = rank_candidates(fresh, weights, preferences, block, self.blend)

        if not ranked:
            return InterventionDecision(reason_codes=[REASON_NO_CANDIDATES], skipped_duplicates=skipped)

        top = ranked[0]
        reasons = [top.candidate.data["reason"]] if top.candidate.data.get("reason") else []

        if top.final_score < self.score_threshold:
            return InterventionDecision(
                reason_codes=[REASON_BELOW_THRESHOLD, *reasons],
                ranked=ranked,
                skipped_duplicates=skipped,
            )

        # Every reason still in play counts toward the level, not just the winner's
        all_reasons = [s.candidate.data["reason"] for s in ranked if s.candidate.data.get("reason")]
        level = determine_level(top.final_score, all_reasons, prefs.max_level)
        if level == InterventionLevel.OBSERVE:
            return InterventionDecision(
                reason_codes=[REASON_OBSERVE_ONLY, *reasons],
                ranked=ranked,
                skipped_duplicates=skipped,
            )
        channel = channel_for(level, top.candidate.channel, prefs.max_level)

        if dry_run:
            return InterventionDecision(
                should_intervene=True,
                reason_codes=[REASON_DRY_RUN, *reasons],
                selected=top,
                level=level,
                channel=channel,
                ranked=ranked,
                skipped_duplicates=skipped,
            )

        intervention_id, delivered = await self._fire(user_id, agent, top, channel, state)
        return InterventionDecision(
            should_intervene=True,
            reason_codes=reasons,
            selected=top,
            level=level,
            channel=channel,
            ranked=ranked,
            skipped_duplicates=skipped,
            intervention_id=intervention_id,
            delivered=delivered,
        )

    async def _fire(
        self,
        user_id: str,
        agent: AgentType,
        scored: ScoredCandidate,
        channel: DeliveryChannel,
        state: Optional[DailyState],
    ):
        """Record, then phrase and deliver. The records go first so another
        agent evaluating while generation is in flight already sees this one."""
        candidate = scored.candidate

        payload = {**candidate.data, "text": candidate.target_text, "category": candidate.category}
        await self.ledger.log_action(user_id, agent, candidate.action_type, payload)
        intervention_id = await self.log_service.create_log(
            user_id,
            candidate.action_type,
            payload,
            channel,
            scored.final_score,
        )

        message = await self.generation_service.compose_message(candidate, state)
        message = message.model_copy(
            update={"data": {**message.data, "intervention_id": str(intervention_id)}}
        )
        result = await self.dispatcher.deliver(user_id, message, channel)

        if not result.success and channel == DeliveryChannel.ESCALATION:
            # Linked channel unavailable: fall back to an in-app card
            result = await self.dispatcher.deliver(user_id, message, DeliveryChannel.CHAT)

        return intervention_id, result.success
