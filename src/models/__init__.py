"""Models package exports."""

from src.models.intervention import (
    ActivityItem,
    ActivityStatus,
    AgentType,
    CandidateAction,
    DailyState,
    DeliveryChannel,
    DeliveryMessage,
    DeliveryResult,
    FeedbackStat,
    InterventionDecision,
    InterventionFeedback,
    InterventionLevel,
    InterventionLog,
    InterventionPreferences,
    InterventionPreferencesUpdate,
    LedgerEntry,
    ScoredCandidate,
    SuggestionPreference,
    TimeBlock,
)

__all__ = [
    "ActivityItem",
    "ActivityStatus",
    "AgentType",
    "CandidateAction",
    "DailyState",
    "DeliveryChannel",
    "DeliveryMessage",
    "DeliveryResult",
    "FeedbackStat",
    "InterventionDecision",
    "InterventionFeedback",
    "InterventionLevel",
    "InterventionLog",
    "InterventionPreferences",
    "InterventionPreferencesUpdate",
    "LedgerEntry",
    "ScoredCandidate",
    "SuggestionPreference",
    "TimeBlock",
]
