"""
Service layer for billing reminders.
"""

from .rendering import render_template  # noqa: F401
from .scheduler import (  # noqa: F401
    BillingReminderScheduler,
    due_date_for,
    evaluate_reminder_state,
)
