"""
Domain models for billing reminders.

Contracts, templates and send-log rows are mapped into these dataclasses
at the repository boundary. Everything here is plain data so the
scheduler stays a pure function of its inputs.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum


class ContractStatus(StrEnum):
    ACTIVE = "Ativo"
    SUSPENDED = "Suspenso"
    CANCELLED = "Cancelado"

    @classmethod
    def parse(cls, value: str) -> "ContractStatus":
        normalized = (value or "").strip().lower()
        for status in cls:
            if normalized in (status.value.lower(), status.name.lower()):
                return status
        raise InvalidContractData(f"Unknown contract status: {value!r}")


class BillingDayClamp(StrEnum):
    CLAMP_TO_MONTH_END = "clamp_to_month_end"
    SKIP_SHORT_MONTHS = "skip_short_months"


class ReminderState(StrEnum):
    NOT_DUE = "not_due"
    DUE = "due"
    SENT = "sent"


class InvalidContractData(ValueError):
    """A contract record that cannot be used for reminders. Permanent for that record."""

    def __init__(self, message: str, contract_id: int | None = None, reason: str = "invalid"):
        super().__init__(message)
        self.contract_id = contract_id
        self.reason = reason


@dataclass(frozen=True, slots=True)
class ReminderConfig:
    cooldown_days: int = 30
    billing_day_clamp: BillingDayClamp = BillingDayClamp.CLAMP_TO_MONTH_END
    min_phone_digits: int = 10
    max_concurrency: int = 10

    @classmethod
    def from_settings(cls, settings) -> "ReminderConfig":
        return cls(
            cooldown_days=settings.REMINDER_COOLDOWN_DAYS,
            billing_day_clamp=BillingDayClamp(settings.BILLING_DAY_CLAMP),
            min_phone_digits=settings.MIN_PHONE_DIGITS,
            max_concurrency=settings.REMINDER_MAX_CONCURRENCY,
        )


def normalize_phone(raw: str | None) -> str:
    return re.sub(r"\D", "", raw or "")


@dataclass(frozen=True, slots=True)
class Contract:
    contract_id: int
    subscriber_phone: str | None
    billing_day_of_month: int
    status: ContractStatus
    monthly_value: Decimal
    client_name: str = ""
    subscriber_id: str | None = None

    def validated_phone(self, min_digits: int = 10) -> str:
        """Digits-only phone, or InvalidContractData when too short or missing."""
        digits = normalize_phone(self.subscriber_phone)
        if len(digits) < min_digits:
            raise InvalidContractData(
                f"Contract {self.contract_id} has an invalid phone number",
                contract_id=self.contract_id,
                reason="invalid_phone",
            )
        return digits

    def validate_billing_day(self) -> None:
        if not 1 <= self.billing_day_of_month <= 31:
            raise InvalidContractData(
                f"Contract {self.contract_id} has billing day {self.billing_day_of_month}",
                contract_id=self.contract_id,
                reason="invalid_billing_day",
            )


@dataclass(frozen=True, slots=True)
class MessageTemplate:
    """
    A reminder message type.

    day_offset > 0: sent that many days before the due date.
    day_offset <= 0: sent that many days after it (overdue notice).
    """

    template_id: int
    day_offset: int
    body_template: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class SentMessageRecord:
    contract_id: int
    template_id: int
    sent_at: datetime
    rendered_body: str
    phone: str | None = None
    client_name: str | None = None
    record_id: int | None = None
    template_name: str | None = None


@dataclass(frozen=True, slots=True)
class PendingReminder:
    contract_id: int
    template_id: int
    phone: str
    rendered_body: str
    client_name: str = ""
    due_date: date | None = None

    def to_dict(self) -> dict:
        return {
            "contract_id": self.contract_id,
            "template_id": self.template_id,
            "phone": self.phone,
            "client_name": self.client_name,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "message": self.rendered_body,
        }


@dataclass(slots=True)
class ActiveContracts:
    """Contract snapshot for one pass; rows that could not be mapped are kept as rejected."""

    contracts: list[Contract] = field(default_factory=list)
    rejected: list[InvalidContractData] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SkippedContract:
    contract_id: int | None
    reason: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ContractFailure:
    contract_id: int
    error: str
    error_type: str


@dataclass(slots=True)
class ReminderPassResult:
    """Outcome of computing the pending reminders for one day."""

    today: date
    reminders: list[PendingReminder] = field(default_factory=list)
    skipped: list[SkippedContract] = field(default_factory=list)
    errors: list[ContractFailure] = field(default_factory=list)
    contracts_evaluated: int = 0
    contracts_not_evaluated: int = 0
    suppressed_by_cooldown: int = 0
    cancelled: bool = False

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def summary(self) -> dict:
        return {
            "today": self.today.isoformat(),
            "pending": len(self.reminders),
            "contracts_evaluated": self.contracts_evaluated,
            "contracts_not_evaluated": self.contracts_not_evaluated,
            "suppressed_by_cooldown": self.suppressed_by_cooldown,
            "skipped_invalid": self.skipped_count,
            "errored": self.error_count,
            "cancelled": self.cancelled,
        }
