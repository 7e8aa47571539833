"""
Domain subpackage for billing reminders.
"""

from .models import (
    ActiveContracts,
    BillingDayClamp,
    Contract,
    ContractFailure,
    ContractStatus,
    InvalidContractData,
    MessageTemplate,
    PendingReminder,
    ReminderConfig,
    ReminderPassResult,
    ReminderState,
    SentMessageRecord,
    SkippedContract,
    normalize_phone,
)

__all__ = [
    "ActiveContracts",
    "BillingDayClamp",
    "Contract",
    "ContractFailure",
    "ContractStatus",
    "InvalidContractData",
    "MessageTemplate",
    "PendingReminder",
    "ReminderConfig",
    "ReminderPassResult",
    "ReminderState",
    "SentMessageRecord",
    "SkippedContract",
    "normalize_phone",
]
