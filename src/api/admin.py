"""Admin API endpoints for learning recomputes and circuit breaker inspection."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from src.api.dependencies import require_admin
from src.models.user import User
from src.services.circuit_breaker import list_breakers
from src.services.feedback_aggregator import FeedbackAggregator
from src.services.heartbeat_service import HeartbeatService
from src.services.preference_aggregator import PreferenceAggregator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/interventions/recompute")
async def recompute(
    user_id: Optional[UUID] = Query(default=None),
    admin: User = Depends(require_admin),
) -> dict:
    """Recompute learned weights and preferences (admin only).

    With user_id, only that user is recomputed; otherwise the full nightly
    pass runs now.
    """
    if user_id is not None:
        weights = await FeedbackAggregator().compute_weights(str(user_id))
        preferences = await PreferenceAggregator().compute_suggestion_preferences(str(user_id))
        logger.info("admin_user_recompute", admin_id=str(admin.id), user_id=str(user_id))
        return {
            "user_id": str(user_id),
            "weights": weights,
            "preferences": preferences.model_dump(mode="json", by_alias=True),
        }

    summary = await HeartbeatService().run_recompute()
    logger.info("admin_full_recompute", admin_id=str(admin.id))
    return summary


@router.get("/circuit-breakers")
async def get_circuit_breakers(
    admin: User = Depends(require_admin),
) -> list[dict]:
    """Current state of every breaker in this process (admin only)."""
    return [breaker.snapshot() for breaker in list_breakers()]


@router.post("/circuit-breakers/{name}/reset")
async def reset_circuit_breaker(
    name: str,
    admin: User = Depends(require_admin),
) -> dict:
    """Force a breaker back to closed (admin only).

    Raises:
        HTTPException 404: No breaker with that name in this process
    """
    for breaker in list_breakers():
        if breaker.name == name:
            breaker.reset()
            logger.info("circuit_breaker_reset", name=name, admin_id=str(admin.id))
            return breaker.snapshot()

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Unknown circuit breaker: {name}",
    )
