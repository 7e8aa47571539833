"""
Billing reminders feature package.

Everything behind the daily reminder pass lives here: domain models, the
Supabase repositories, the scheduler, the messaging transport and the job
that ties them together.
"""

from .domain.models import Contract, MessageTemplate, PendingReminder  # noqa: F401
from .services.scheduler import BillingReminderScheduler  # noqa: F401
