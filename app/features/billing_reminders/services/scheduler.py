"""
Billing reminder scheduler.

Decides, for every active contract and every message template, whether a
reminder is due on a given day and renders its text. The only state is the
send log: a (contract, template) pair sent inside the cooldown window is
not due again until the window has passed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Protocol

from app.db.helpers import StoreUnavailable
from app.features.billing_reminders.domain import (
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
)
from app.features.billing_reminders.services.rendering import render_template
from app.infrastructure.observability.logging import get_logger
from app.utils.dates import cooldown_window_start, falls_on_billing_day, whole_days_between

logger = get_logger(__name__)


class ContractCatalog(Protocol):
    async def list_active_contracts(self) -> ActiveContracts: ...


class TemplateCatalog(Protocol):
    async def list_templates(self) -> list[MessageTemplate]: ...


class SendLogStore(Protocol):
    async def recent_sends(
        self, contract_id: int, template_id: int, since: datetime
    ) -> list[SentMessageRecord]: ...

    async def append(self, record: SentMessageRecord) -> SentMessageRecord: ...


def due_date_for(
    contract: Contract,
    template: MessageTemplate,
    today: date,
    clamp: BillingDayClamp = BillingDayClamp.CLAMP_TO_MONTH_END,
) -> date | None:
    """
    The due date this template would remind about today, or None.

    Pre-due templates look `day_offset` days ahead; overdue templates look
    `|day_offset|` days back. The date found must be the contract's billing
    day in its own month.
    """
    if template.day_offset > 0:
        candidate = today + timedelta(days=template.day_offset)
    else:
        candidate = today - timedelta(days=abs(template.day_offset))

    clamp_to_end = clamp is BillingDayClamp.CLAMP_TO_MONTH_END
    if falls_on_billing_day(candidate, contract.billing_day_of_month, clamp_to_end):
        return candidate
    return None


def sent_within_cooldown(
    contract_id: int,
    template_id: int,
    sends: Sequence[SentMessageRecord],
    today: date,
    cooldown_days: int,
) -> bool:
    since = cooldown_window_start(today, cooldown_days)
    return any(
        send.contract_id == contract_id
        and send.template_id == template_id
        and send.sent_at >= since
        for send in sends
    )


def evaluate_reminder_state(
    contract: Contract,
    template: MessageTemplate,
    today: date,
    recent_sends: Sequence[SentMessageRecord],
    config: ReminderConfig | None = None,
) -> ReminderState:
    """State of a (contract, template) pair on `today`, derived fresh from the send log."""
    config = config or ReminderConfig()

    if contract.status is not ContractStatus.ACTIVE:
        return ReminderState.NOT_DUE

    if due_date_for(contract, template, today, config.billing_day_clamp) is None:
        return ReminderState.NOT_DUE

    if sent_within_cooldown(
        contract.contract_id, template.template_id, recent_sends, today, config.cooldown_days
    ):
        return ReminderState.SENT

    return ReminderState.DUE


@dataclass
class _ContractEvaluation:
    reminders: list[PendingReminder] = field(default_factory=list)
    suppressed: int = 0


class BillingReminderScheduler:
    """Computes pending reminders for a day and records confirmed sends."""

    def __init__(
        self,
        contracts: ContractCatalog,
        templates: TemplateCatalog,
        send_log: SendLogStore,
        config: ReminderConfig | None = None,
    ):
        self.contracts = contracts
        self.templates = templates
        self.send_log = send_log
        self.config = config or ReminderConfig()

    async def compute_pending_reminders(
        self, today: date, cancel_event: asyncio.Event | None = None
    ) -> ReminderPassResult:
        """
        Reminders due on `today`, ordered by (contract_id, template_id).

        Contracts and templates are read once, as a snapshot. Each contract is
        evaluated independently: invalid records (including rows the catalog
        could not map) are reported as skipped and
        unexpected failures are collected, neither stops the pass. A store
        outage aborts it with StoreUnavailable.

        Args:
            today: Calendar date of the pass
            cancel_event: When set, contracts not yet started are left unevaluated

        Returns:
            ReminderPassResult with reminders, skipped entries and errors
        """
        snapshot = await self.contracts.list_active_contracts()
        contracts = snapshot.contracts
        templates = await self.templates.list_templates()
        result = ReminderPassResult(today=today)

        logger.info(
            "Computing pending reminders",
            today=today.isoformat(),
            contracts=len(contracts),
            rejected_rows=len(snapshot.rejected),
            templates=len(templates),
            cooldown_days=self.config.cooldown_days,
        )

        for rejected in snapshot.rejected:
            result.contracts_evaluated += 1
            result.skipped.append(
                SkippedContract(rejected.contract_id, rejected.reason, str(rejected))
            )

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        outcomes = await asyncio.gather(
            *(
                self._evaluate_with_semaphore(semaphore, contract, templates, today, cancel_event)
                for contract in contracts
            ),
            return_exceptions=True,
        )

        for contract, outcome in zip(contracts, outcomes):
            if outcome is None:
                result.contracts_not_evaluated += 1
            elif isinstance(outcome, _ContractEvaluation):
                result.contracts_evaluated += 1
                result.reminders.extend(outcome.reminders)
                result.suppressed_by_cooldown += outcome.suppressed
            elif isinstance(outcome, StoreUnavailable):
                logger.error(
                    "Store unavailable while evaluating contracts, aborting pass",
                    contract_id=contract.contract_id,
                    error=str(outcome),
                )
                raise outcome
            elif isinstance(outcome, InvalidContractData):
                result.contracts_evaluated += 1
                result.skipped.append(
                    SkippedContract(contract.contract_id, outcome.reason, str(outcome))
                )
                logger.info(
                    "Contract skipped",
                    contract_id=contract.contract_id,
                    reason=outcome.reason,
                )
            elif isinstance(outcome, Exception):
                result.contracts_evaluated += 1
                result.errors.append(
                    ContractFailure(contract.contract_id, str(outcome), type(outcome).__name__)
                )
                logger.error(
                    "Contract evaluation failed",
                    contract_id=contract.contract_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            else:
                raise outcome

        result.reminders.sort(key=lambda reminder: (reminder.contract_id, reminder.template_id))
        result.cancelled = result.contracts_not_evaluated > 0

        logger.info("Pending reminders computed", **result.summary())
        return result

    async def _evaluate_with_semaphore(
        self,
        semaphore: asyncio.Semaphore,
        contract: Contract,
        templates: Sequence[MessageTemplate],
        today: date,
        cancel_event: asyncio.Event | None,
    ) -> _ContractEvaluation | None:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return await self._evaluate_contract(contract, templates, today)

    async def _evaluate_contract(
        self, contract: Contract, templates: Sequence[MessageTemplate], today: date
    ) -> _ContractEvaluation:
        evaluation = _ContractEvaluation()
        if contract.status is not ContractStatus.ACTIVE:
            return evaluation

        contract.validate_billing_day()
        phone = contract.validated_phone(self.config.min_phone_digits)
        since = cooldown_window_start(today, self.config.cooldown_days)

        for template in templates:
            due_date = due_date_for(contract, template, today, self.config.billing_day_clamp)
            if due_date is None:
                continue

            recent = await self.send_log.recent_sends(
                contract.contract_id, template.template_id, since
            )
            state = evaluate_reminder_state(contract, template, today, recent, self.config)
            if state is ReminderState.SENT:
                evaluation.suppressed += 1
                logger.debug(
                    "Reminder suppressed by cooldown",
                    contract_id=contract.contract_id,
                    template_id=template.template_id,
                )
                continue

            evaluation.reminders.append(
                self._build_reminder(contract, template, phone, due_date, today)
            )

        return evaluation

    def _build_reminder(
        self,
        contract: Contract,
        template: MessageTemplate,
        phone: str,
        due_date: date,
        today: date,
    ) -> PendingReminder:
        days_until_due = whole_days_between(today, due_date) if due_date > today else 0
        days_overdue = whole_days_between(due_date, today) if due_date < today else 0

        body = render_template(
            template.body_template,
            client_name=contract.client_name,
            monthly_value=contract.monthly_value,
            days_until_due=days_until_due,
            days_overdue=days_overdue,
        )
        return PendingReminder(
            contract_id=contract.contract_id,
            template_id=template.template_id,
            phone=phone,
            rendered_body=body,
            client_name=contract.client_name,
            due_date=due_date,
        )

    async def record_sent(
        self,
        contract_id: int,
        template_id: int,
        rendered_body: str,
        now: datetime,
        *,
        phone: str | None = None,
        client_name: str | None = None,
    ) -> SentMessageRecord:
        """
        Append a confirmed send to the send log.

        Raises:
            DuplicateSendError: the same pair was already recorded in the same minute
        """
        record = SentMessageRecord(
            contract_id=contract_id,
            template_id=template_id,
            sent_at=now,
            rendered_body=rendered_body,
            phone=phone,
            client_name=client_name,
        )
        stored = await self.send_log.append(record)
        logger.info(
            "Reminder send recorded",
            contract_id=contract_id,
            template_id=template_id,
            sent_at=stored.sent_at.isoformat(),
        )
        return stored
