"""
In-memory stand-ins for the stores, transport and lock backend.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal

from app.db.helpers import StoreUnavailable
from app.features.billing_reminders.domain import (
    ActiveContracts,
    Contract,
    ContractStatus,
    InvalidContractData,
    MessageTemplate,
    SentMessageRecord,
)
from app.features.billing_reminders.repository.send_log_repository import DuplicateSendError
from app.features.billing_reminders.services.message_transport import Ack, TransportError
from app.features.session_accounting.domain import (
    AccountingEvent,
    ConcentratorStats,
    Pagination,
    SessionConfig,
    SessionFilter,
    SessionStatus,
)
from app.features.session_accounting.services.resolver import resolve_latest_per_subscriber
from app.services.infrastructure.redis_client import LockBackendError
from app.utils.dates import truncate_to_minute


def make_contract(
    contract_id: int = 1,
    billing_day: int = 10,
    phone: str | None = "11987654321",
    status: ContractStatus = ContractStatus.ACTIVE,
    value: str = "99.90",
    client_name: str = "Maria Silva",
) -> Contract:
    return Contract(
        contract_id=contract_id,
        subscriber_phone=phone,
        billing_day_of_month=billing_day,
        status=status,
        monthly_value=Decimal(value),
        client_name=client_name,
    )


def make_template(template_id: int = 1, day_offset: int = 3, body: str | None = None) -> MessageTemplate:
    return MessageTemplate(
        template_id=template_id,
        day_offset=day_offset,
        body_template=body or "Ola {cliente}, sua fatura de R$ {valor} vence em {dias_vencimento} dias.",
        name=f"template-{template_id}",
    )


def make_event(
    record_id: int,
    subscriber_id: str = "alice",
    start: datetime | None = None,
    stop: datetime | None = None,
    nas: str = "10.0.0.1",
) -> AccountingEvent:
    return AccountingEvent(
        record_id=record_id,
        subscriber_id=subscriber_id,
        nas_address=nas,
        session_start=start or datetime(2024, 5, 1, 8, 0, tzinfo=UTC),
        session_stop=stop,
        framed_address=f"100.64.0.{record_id % 250}",
        calling_station_id="AA:BB:CC:DD:EE:FF",
    )


class FakeContractCatalog:
    def __init__(
        self,
        contracts: list[Contract] | None = None,
        error: Exception | None = None,
        rejected: list[InvalidContractData] | None = None,
    ):
        self.contracts = contracts or []
        self.error = error
        self.rejected = rejected or []
        self.calls = 0

    async def list_active_contracts(self) -> ActiveContracts:
        self.calls += 1
        if self.error:
            raise self.error
        return ActiveContracts(
            contracts=[c for c in self.contracts if c.status is ContractStatus.ACTIVE],
            rejected=list(self.rejected),
        )


class FakeTemplateCatalog:
    def __init__(self, templates: list[MessageTemplate] | None = None):
        self.templates = templates or []

    async def list_templates(self) -> list[MessageTemplate]:
        return list(self.templates)


class FakeSendLog:
    """In-memory send log with the same per-minute uniqueness as the real table."""

    def __init__(self):
        self.records: list[SentMessageRecord] = []
        self.fail_for: dict[int, Exception] = {}
        self.append_error: Exception | None = None

    async def recent_sends(
        self, contract_id: int, template_id: int, since: datetime
    ) -> list[SentMessageRecord]:
        if contract_id in self.fail_for:
            raise self.fail_for[contract_id]
        return [
            r
            for r in self.records
            if r.contract_id == contract_id and r.template_id == template_id and r.sent_at >= since
        ]

    async def append(self, record: SentMessageRecord) -> SentMessageRecord:
        if self.append_error:
            raise self.append_error
        minute = truncate_to_minute(record.sent_at)
        for existing in self.records:
            if (
                existing.contract_id == record.contract_id
                and existing.template_id == record.template_id
                and truncate_to_minute(existing.sent_at) == minute
            ):
                raise DuplicateSendError(record.contract_id, record.template_id, record.sent_at)
        self.records.append(record)
        return record


class FakeTransport:
    def __init__(self, failing_phones: Sequence[str] = ()):
        self.sent: list[tuple[str, str]] = []
        self.failing_phones = set(failing_phones)
        self.closed = False

    async def send(self, phone: str, body: str) -> Ack:
        if phone in self.failing_phones:
            raise TransportError("gateway rejected message", status_code=400, recoverable=False)
        self.sent.append((phone, body))
        return Ack(accepted=True, message_id=str(len(self.sent)))

    async def close(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.unavailable = False

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        if self.unavailable:
            raise LockBackendError("connection refused")
        if key in self.store:
            return False
        self.store[key] = token
        return True

    async def release_lock(self, key: str, token: str) -> bool:
        if self.store.get(key) != token:
            return False
        del self.store[key]
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)


def filter_matches(
    session_filter: SessionFilter, event: AccountingEvent, config: SessionConfig
) -> bool:
    """The WHERE clause of the accounting queries, applied to one latest record."""
    if session_filter.nas_address:
        if event.nas_address != config.accounting_address(session_filter.nas_address):
            return False

    if session_filter.search:
        needle = session_filter.search.lower()
        haystack = (event.subscriber_id, event.framed_address, event.calling_station_id)
        if not any(value and needle in value.lower() for value in haystack):
            return False

    if session_filter.status is SessionStatus.ONLINE:
        return event.is_open
    if session_filter.status is SessionStatus.OFFLINE:
        return not event.is_open
    return True


class FakeAccountingStore:
    """Applies the latest-record rule in memory, the way the SQL does."""

    def __init__(self, events: list[AccountingEvent] | None = None, config: SessionConfig | None = None):
        self.events = events or []
        self.config = config or SessionConfig()
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise StoreUnavailable("accounting database down", operation="fetch_all")

    def _latest(self, session_filter: SessionFilter) -> list[AccountingEvent]:
        latest: dict[str, AccountingEvent] = {}
        for event in self.events:
            current = latest.get(event.subscriber_id)
            if current is None or event.record_id > current.record_id:
                latest[event.subscriber_id] = event
        matching = [e for e in latest.values() if filter_matches(session_filter, e, self.config)]
        return sorted(matching, key=lambda e: e.record_id, reverse=True)

    async def query(self, session_filter: SessionFilter, pagination: Pagination) -> list[AccountingEvent]:
        self._check()
        latest = self._latest(session_filter)
        return latest[pagination.offset : pagination.offset + pagination.limit]

    async def count(self, session_filter: SessionFilter) -> int:
        self._check()
        return len(self._latest(session_filter))

    async def history(self, subscriber_id: str, limit: int) -> list[AccountingEvent]:
        self._check()
        events = [e for e in self.events if e.subscriber_id == subscriber_id]
        return sorted(events, key=lambda e: e.record_id, reverse=True)[:limit]

    async def history_for_many(self, subscriber_ids: Sequence[str], limit: int) -> list[AccountingEvent]:
        self._check()
        result = []
        for subscriber_id in subscriber_ids:
            events = sorted(
                (e for e in self.events if e.subscriber_id == subscriber_id),
                key=lambda e: e.record_id,
                reverse=True,
            )
            result.extend(e for i, e in enumerate(events) if i < limit or e.is_open)
        return result

    async def concentrator_stats(self) -> list[ConcentratorStats]:
        self._check()
        views = resolve_latest_per_subscriber(self.events, self.config)
        online: dict[str, int] = {}
        for view in views.values():
            if view.is_online:
                address = view.latest_event.nas_address
                online[address] = online.get(address, 0) + 1
        return [
            ConcentratorStats(
                nas_name=address,
                short_name=None,
                nas_type="other",
                ports=None,
                description=None,
                online_subscribers=count,
            )
            for address, count in sorted(online.items())
        ]
