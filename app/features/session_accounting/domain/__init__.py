"""
Domain subpackage for session accounting.
"""

from .models import (
    STALE_TERMINATE_CAUSE,
    AccountingEvent,
    ConcentratorStats,
    Pagination,
    SessionConfig,
    SessionFilter,
    SessionStatus,
    StaleOpenSession,
    StaleSessionPolicy,
    SubscriberStatusPage,
    SubscriberStatusView,
)

__all__ = [
    "STALE_TERMINATE_CAUSE",
    "AccountingEvent",
    "ConcentratorStats",
    "Pagination",
    "SessionConfig",
    "SessionFilter",
    "SessionStatus",
    "StaleOpenSession",
    "StaleSessionPolicy",
    "SubscriberStatusPage",
    "SubscriberStatusView",
]
