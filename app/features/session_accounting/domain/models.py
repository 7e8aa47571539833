"""
Domain models for session accounting.

Accounting rows are mapped into these dataclasses at the repository
boundary; the resolver never sees raw rows.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from app.models.pagination import Pagination


class StaleSessionPolicy(StrEnum):
    FLAG = "flag"
    FORCE_CLOSE = "force_close"


class SessionStatus(StrEnum):
    ALL = "all"
    ONLINE = "online"
    OFFLINE = "offline"


STALE_TERMINATE_CAUSE = "Stale-Session"


@dataclass(frozen=True, slots=True)
class SessionConfig:
    history_limit: int = 10
    stale_policy: StaleSessionPolicy = StaleSessionPolicy.FLAG
    # NAS name -> address the NAS reports accounting under
    nas_aliases: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "SessionConfig":
        return cls(
            history_limit=settings.SESSION_HISTORY_LIMIT,
            stale_policy=StaleSessionPolicy(settings.STALE_SESSION_POLICY),
            nas_aliases=dict(settings.NAS_ADDRESS_ALIASES),
        )

    def accounting_address(self, nas_address: str) -> str:
        return self.nas_aliases.get(nas_address, nas_address)


@dataclass(frozen=True, slots=True)
class AccountingEvent:
    """One radacct row. Immutable once written."""

    record_id: int
    subscriber_id: str
    nas_address: str
    session_start: datetime
    session_stop: datetime | None = None
    bytes_in: int = 0
    bytes_out: int = 0
    terminate_cause: str | None = None
    calling_station_id: str | None = None
    framed_address: str | None = None
    nas_port_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self.session_stop is None


class StaleOpenSession(Warning):
    """
    Data-quality warning: a subscriber has open sessions besides the current one.

    Attached to the status view, never raised by the resolver.
    """

    def __init__(self, subscriber_id: str, current_record_id: int, stale_record_ids: list[int]):
        super().__init__(
            f"Subscriber {subscriber_id} has {len(stale_record_ids)} stale open session(s)"
        )
        self.subscriber_id = subscriber_id
        self.current_record_id = current_record_id
        self.stale_record_ids = stale_record_ids


@dataclass(slots=True)
class SubscriberStatusView:
    subscriber_id: str
    is_online: bool
    current_event: AccountingEvent | None
    last_seen: datetime
    recent_history: list[AccountingEvent]
    latest_event: AccountingEvent
    stale_sessions: list[AccountingEvent] = field(default_factory=list)
    warning: StaleOpenSession | None = None

    @property
    def has_stale_sessions(self) -> bool:
        return bool(self.stale_sessions)

    def to_dict(self) -> dict:
        return {
            "subscriber_id": self.subscriber_id,
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat(),
            "nas_address": self.latest_event.nas_address,
            "framed_address": self.latest_event.framed_address,
            "calling_station_id": self.latest_event.calling_station_id,
            "current_record_id": self.current_event.record_id if self.current_event else None,
            "stale_record_ids": [event.record_id for event in self.stale_sessions],
            "history": [
                {
                    "record_id": event.record_id,
                    "nas_address": event.nas_address,
                    "session_start": event.session_start.isoformat(),
                    "session_stop": event.session_stop.isoformat() if event.session_stop else None,
                    "bytes_in": event.bytes_in,
                    "bytes_out": event.bytes_out,
                    "terminate_cause": event.terminate_cause,
                }
                for event in self.recent_history
            ],
        }


@dataclass(frozen=True, slots=True)
class SessionFilter:
    """Filters applied to each subscriber's latest accounting record."""

    nas_address: str | None = None
    search: str | None = None
    status: SessionStatus = SessionStatus.ALL

    def with_status(self, status: SessionStatus) -> "SessionFilter":
        return SessionFilter(nas_address=self.nas_address, search=self.search, status=status)


@dataclass(slots=True)
class SubscriberStatusPage:
    items: list[SubscriberStatusView]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict:
        return {
            "data": [item.to_dict() for item in self.items],
            "pagination": {
                "current_page": self.page,
                "total_pages": self.total_pages,
                "total_records": self.total,
                "records_per_page": self.limit,
            },
        }


@dataclass(frozen=True, slots=True)
class ConcentratorStats:
    """A network access server and the number of subscribers online through it."""

    nas_name: str
    short_name: str | None
    nas_type: str | None
    ports: int | None
    description: str | None
    online_subscribers: int
