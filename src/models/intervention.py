"""Models for the proactive intervention engine."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class InterventionFeedback(str, Enum):
    """User response to a fired intervention."""

    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    IGNORED = "ignored"


class AgentType(str, Enum):
    """Independently running decision makers that share the action ledger."""

    JARVIS = "jarvis"
    REACT = "react"
    PROACTIVE = "proactive"
    HEARTBEAT = "heartbeat"


class DeliveryChannel(str, Enum):
    """Where an intervention is surfaced."""

    PUSH = "push"
    CHAT = "chat"
    ESCALATION = "escalation"


class InterventionLevel(int, Enum):
    """How forcefully an intervention interrupts the user."""

    OBSERVE = 0
    SILENT_PREP = 1
    SOFT = 2
    DIRECT = 3


class ActivityStatus(str, Enum):
    """Resolution state of a scheduled activity item."""

    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class TimeBlock(str, Enum):
    """Daily time blocks used for time/category acceptance scores."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class SuggestionEventType(str, Enum):
    """User events consumed by the preference aggregator."""

    SHOWN = "ai_suggestion_shown"
    ACCEPTED = "ai_suggestion_accepted"
    DISMISSED = "ai_suggestion_dismissed"


class InterventionLog(BaseModel):
    """One fired intervention and, eventually, the user's response to it."""

    id: UUID
    user_id: UUID
    action_type: str
    payload: dict = Field(default_factory=dict)
    channel: DeliveryChannel = DeliveryChannel.PUSH
    score: float = 0.0
    fired_at: datetime
    feedback: Optional[InterventionFeedback] = None
    feedback_at: Optional[datetime] = None


class FeedbackStat(BaseModel):
    """Learned weight for one (user, action type) pair."""

    user_id: UUID
    action_type: str
    weight_multiplier: float = Field(ge=0.1, le=2.0)
    total_count: int = 0
    accepted_count: int = 0
    dismissed_count: int = 0
    ignored_count: int = 0
    updated_at: datetime


class SuggestionPreference(BaseModel):
    """Per-user category and time-of-day preferences.

    Stored in the KV store with camelCase keys.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    category_weights: dict[str, float] = Field(default_factory=dict)
    time_category_scores: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {block.value: {} for block in TimeBlock}
    )
    top_categories: list[str] = Field(default_factory=list)
    avoid_categories: list[str] = Field(default_factory=list)
    updated_at: datetime


class LedgerEntry(BaseModel):
    """One action an agent took today, kept for cross-agent dedup."""

    agent: AgentType
    action_type: str
    payload: dict = Field(default_factory=dict)
    timestamp: datetime


class ActivityItem(BaseModel):
    """A scheduled item on the user's day."""

    id: UUID
    title: str
    scheduled_at: datetime
    status: ActivityStatus = ActivityStatus.PENDING


class DailyState(BaseModel):
    """Derived energy/stress signals for one user-day."""

    energy_level: int = Field(ge=1, le=10)
    stress_level: int = Field(ge=1, le=10)
    completion_rate: float = Field(ge=0.0, le=1.0)
    total_count: int = 0
    completed_count: int = 0
    skipped_count: int = 0
    pending_count: int = 0
    local_hour: int = Field(ge=0, le=23)
    detected_at: datetime


class InterventionPreferences(BaseModel):
    """Per-user policy gates. Unset fields fall back to settings defaults."""

    enabled: bool = True
    timezone: str = "UTC"
    quiet_hours_start: Optional[int] = Field(default=None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(default=None, ge=0, le=23)
    cooldown_minutes: int = 60
    max_per_day: int = 6
    max_level: InterventionLevel = InterventionLevel.SOFT


class InterventionPreferencesUpdate(BaseModel):
    """Partial update of a user's policy gates."""

    enabled: Optional[bool] = None
    timezone: Optional[str] = None
    quiet_hours_start: Optional[int] = Field(default=None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(default=None, ge=0, le=23)
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)
    max_per_day: Optional[int] = Field(default=None, ge=0)
    max_level: Optional[int] = Field(default=None, ge=1, le=3)


class CandidateAction(BaseModel):
    """An intervention some agent would like to fire."""

    action_type: str
    category: str = "general"
    target_text: Optional[str] = None
    title: str
    body: str
    base_priority: float = Field(default=1.0, ge=0.0)
    channel: Optional[DeliveryChannel] = None  # None: chosen from the intervention level
    data: dict = Field(default_factory=dict)


class ScoredCandidate(BaseModel):
    """A candidate with the learned factors applied."""

    candidate: CandidateAction
    weight_multiplier: float = 1.0
    category_weight: float = 1.0
    time_score: float = 1.0
    final_score: float = 0.0


class InterventionDecision(BaseModel):
    """Outcome of one policy evaluation."""

    should_intervene: bool = False
    reason_codes: list[str] = Field(default_factory=list)
    selected: Optional[ScoredCandidate] = None
    level: InterventionLevel = InterventionLevel.OBSERVE
    channel: Optional[DeliveryChannel] = None
    ranked: list[ScoredCandidate] = Field(default_factory=list)
    skipped_duplicates: list[str] = Field(default_factory=list)
    intervention_id: Optional[UUID] = None
    delivered: Optional[bool] = None


class DeliveryMessage(BaseModel):
    """Payload handed to a delivery channel."""

    title: str
    body: str
    data: dict = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Outcome of a delivery attempt."""

    success: bool
    channel: DeliveryChannel
    error: Optional[str] = None


class FeedbackRequest(BaseModel):
    """Request body for recording a user's response."""

    feedback: InterventionFeedback


class EvaluateRequest(BaseModel):
    """Request body for a synchronous per-user evaluation."""

    candidates: Optional[list[CandidateAction]] = None
    agent: AgentType = AgentType.REACT
    dry_run: bool = False


class SuggestionEventRequest(BaseModel):
    """Request body for recording a suggestion shown/accepted/dismissed event."""

    event_type: SuggestionEventType
    metadata: dict = Field(default_factory=dict)
