"""Services package exports."""

from src.services.logging_service import configure_logging, get_logger, log_intervention_decision
from src.services.policy_engine import PolicyEngine

__all__ = [
    "PolicyEngine",
    "configure_logging",
    "get_logger",
    "log_intervention_decision",
]
