"""
Job runners for the billing reminders feature.
"""

from .reminder_pass_job import run_reminder_pass, start_reminder_scheduler
from .send_history_job import list_send_history

__all__ = ["run_reminder_pass", "start_reminder_scheduler", "list_send_history"]
