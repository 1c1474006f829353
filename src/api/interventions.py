"""Intervention API endpoints: synchronous evaluation, feedback, and learned state."""

from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.dependencies import get_current_user, get_policy_engine
from src.models.intervention import (
    DailyState,
    EvaluateRequest,
    FeedbackRequest,
    InterventionDecision,
    InterventionLog,
    InterventionPreferences,
    InterventionPreferencesUpdate,
    SuggestionEventRequest,
    SuggestionPreference,
)
from src.models.user import User
from src.services.feedback_aggregator import FeedbackAggregator
from src.services.intervention_log_service import (
    FeedbackAlreadyRecordedError,
    InterventionLogNotFoundError,
    InterventionLogService,
)
from src.services.policy_engine import REASON_ENGINE_ERROR, PolicyEngine
from src.services.preference_aggregator import PreferenceAggregator
from src.services.proactive_service import ProactiveService
from src.services.signal_detector import SignalDetector

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/interventions", tags=["Interventions"])


def _unavailable(what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{what} temporarily unavailable",
    )


@router.post("/evaluate")
async def evaluate(
    request: EvaluateRequest,
    current_user: User = Depends(get_current_user),
    engine: PolicyEngine = Depends(get_policy_engine),
) -> InterventionDecision:
    """Evaluate, and unless dry_run fire, an intervention for the caller.

    Always answers 200; engine failures come back as a negative decision.
    """
    try:
        return await engine.evaluate(
            str(current_user.id),
            candidates=request.candidates,
            agent=request.agent,
            dry_run=request.dry_run,
        )
    except Exception as e:
        logger.error("evaluate_endpoint_failed", user_id=str(current_user.id), error=str(e))
        return InterventionDecision(should_intervene=False, reason_codes=[REASON_ENGINE_ERROR])


@router.post("/{intervention_id}/feedback")
async def record_feedback(
    intervention_id: UUID,
    request: FeedbackRequest,
    current_user: User = Depends(get_current_user),
) -> InterventionLog:
    """Record the caller's response to a fired intervention.

    Raises:
        HTTPException 404: Unknown intervention for this user
        HTTPException 409: Feedback was already recorded
    """
    service = InterventionLogService()
    try:
        return await service.record_feedback(str(current_user.id), intervention_id, request.feedback)
    except InterventionLogNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Intervention not found",
        )
    except FeedbackAlreadyRecordedError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Feedback already recorded for this intervention",
        )


@router.get("/state")
async def get_state(
    current_user: User = Depends(get_current_user),
) -> DailyState:
    """Today's energy and stress signals for the caller."""
    detector = SignalDetector()
    try:
        return await detector.detect_daily_state(str(current_user.id))
    except Exception as e:
        logger.error("daily_state_failed", user_id=str(current_user.id), error=str(e))
        raise _unavailable("Daily state")


@router.get("/weights")
async def get_weights(
    current_user: User = Depends(get_current_user),
) -> dict:
    """Learned per-action-type weights with their underlying counts."""
    aggregator = FeedbackAggregator()
    try:
        stats = await aggregator.get_stats(str(current_user.id))
    except Exception as e:
        logger.error("weights_read_failed", user_id=str(current_user.id), error=str(e))
        raise _unavailable("Weights")
    return {
        "weights": {s.action_type: s.weight_multiplier for s in stats},
        "stats": stats,
    }


@router.get("/preferences")
async def get_preferences(
    recompute: bool = Query(default=False),
    current_user: User = Depends(get_current_user),
) -> Optional[SuggestionPreference]:
    """Cached suggestion preferences, recomputed first if asked."""
    aggregator = PreferenceAggregator()
    try:
        if recompute:
            return await aggregator.compute_suggestion_preferences(str(current_user.id))
        return await aggregator.get_suggestion_preferences(str(current_user.id))
    except Exception as e:
        logger.error("preferences_read_failed", user_id=str(current_user.id), error=str(e))
        raise _unavailable("Suggestion preferences")


@router.get("/recent")
async def list_recent(
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
) -> list[InterventionLog]:
    """Most recent fired interventions, newest first."""
    service = InterventionLogService()
    try:
        return await service.list_recent(str(current_user.id), limit=limit)
    except Exception as e:
        logger.error("recent_interventions_failed", user_id=str(current_user.id), error=str(e))
        raise _unavailable("Recent interventions")


@router.post("/suggestion-events", status_code=status.HTTP_201_CREATED)
async def record_suggestion_event(
    request: SuggestionEventRequest,
    current_user: User = Depends(get_current_user),
) -> dict:
    """Record that a suggestion was shown, accepted, or dismissed."""
    aggregator = PreferenceAggregator()
    event_id = await aggregator.record_suggestion_event(
        str(current_user.id), request.event_type, request.metadata
    )
    return {"id": event_id}


@router.get("/settings")
async def get_settings(
    current_user: User = Depends(get_current_user),
) -> InterventionPreferences:
    """Policy gates for the caller, with defaults filled in."""
    service = ProactiveService()
    return await service.get_preferences(str(current_user.id))


@router.put("/settings")
async def update_settings(
    request: InterventionPreferencesUpdate,
    current_user: User = Depends(get_current_user),
) -> InterventionPreferences:
    """Update the caller's policy gates.

    Raises:
        HTTPException 400: Unknown timezone
    """
    updates = request.model_dump(exclude_none=True)

    if "timezone" in updates:
        try:
            ZoneInfo(updates["timezone"])
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown timezone: {updates['timezone']}",
            )

    service = ProactiveService()
    return await service.update_preferences(str(current_user.id), **updates)
