"""
Session accounting resolver.

Derives each subscriber's connection status from the append-only
accounting log. The latest event is the one with the highest record id;
client-reported timestamps are never used for ordering.
"""

from __future__ import annotations

import dataclasses
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Protocol

from app.features.session_accounting.domain import (
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
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AccountingStore(Protocol):
    async def query(
        self, session_filter: SessionFilter, pagination: Pagination
    ) -> list[AccountingEvent]: ...

    async def count(self, session_filter: SessionFilter) -> int: ...

    async def history(self, subscriber_id: str, limit: int) -> list[AccountingEvent]: ...

    async def history_for_many(
        self, subscriber_ids: Sequence[str], limit: int
    ) -> list[AccountingEvent]: ...

    async def concentrator_stats(self) -> list[ConcentratorStats]: ...


def _close_stale(
    ordered: list[AccountingEvent], stale_ids: set[int]
) -> list[AccountingEvent]:
    """Present stale open events as closed at the start of the session that replaced them."""
    closed: list[AccountingEvent] = []
    newer: AccountingEvent | None = None
    for event in ordered:
        if event.record_id in stale_ids and newer is not None:
            event = dataclasses.replace(
                event,
                session_stop=newer.session_start,
                terminate_cause=STALE_TERMINATE_CAUSE,
            )
        closed.append(event)
        newer = event
    return closed


def build_status_view(
    subscriber_id: str, events: Iterable[AccountingEvent], config: SessionConfig
) -> SubscriberStatusView:
    """Status view for one subscriber from any subset of its events (at least one)."""
    unique: dict[int, AccountingEvent] = {}
    for event in events:
        unique.setdefault(event.record_id, event)
    if not unique:
        raise ValueError(f"No accounting events for subscriber {subscriber_id}")

    ordered = sorted(unique.values(), key=lambda event: event.record_id, reverse=True)
    latest = ordered[0]
    stale = [event for event in ordered[1:] if event.is_open]

    warning = None
    if stale:
        warning = StaleOpenSession(
            subscriber_id, latest.record_id, [event.record_id for event in stale]
        )
        logger.warning(
            "Stale open sessions detected",
            subscriber_id=subscriber_id,
            current_record_id=latest.record_id,
            stale_record_ids=warning.stale_record_ids,
            policy=str(config.stale_policy),
        )
        if config.stale_policy is StaleSessionPolicy.FORCE_CLOSE:
            ordered = _close_stale(ordered, set(warning.stale_record_ids))

    return SubscriberStatusView(
        subscriber_id=subscriber_id,
        is_online=latest.is_open,
        current_event=latest if latest.is_open else None,
        last_seen=latest.session_stop or latest.session_start,
        recent_history=ordered[: config.history_limit],
        latest_event=latest,
        stale_sessions=stale,
        warning=warning,
    )


def resolve_latest_per_subscriber(
    events: Iterable[AccountingEvent], config: SessionConfig | None = None
) -> dict[str, SubscriberStatusView]:
    """
    Group events by subscriber and build one status view per group.

    Duplicate deliveries of the same record id are collapsed. A subscriber
    with stale open sessions is still present in the result, with the
    anomaly reported on its view.
    """
    config = config or SessionConfig()
    grouped: dict[str, list[AccountingEvent]] = defaultdict(list)
    for event in events:
        grouped[event.subscriber_id].append(event)

    return {
        subscriber_id: build_status_view(subscriber_id, group, config)
        for subscriber_id, group in grouped.items()
    }


class SessionAccountingResolver:
    """Answers subscriber status questions against an accounting store."""

    def __init__(self, store: AccountingStore, config: SessionConfig | None = None):
        self.store = store
        self.config = config or SessionConfig()

    def resolve_latest_per_subscriber(
        self, events: Iterable[AccountingEvent]
    ) -> dict[str, SubscriberStatusView]:
        return resolve_latest_per_subscriber(events, self.config)

    async def list_subscriber_status(
        self, session_filter: SessionFilter | None = None, pagination: Pagination | None = None
    ) -> SubscriberStatusPage:
        """
        One page of subscriber status views, newest activity first.

        The store selects the latest record per subscriber and applies the
        filter; only the page's subscribers have their history loaded.
        """
        session_filter = session_filter or SessionFilter()
        pagination = pagination or Pagination()

        latest = await self.store.query(session_filter, pagination)
        total = await self.store.count(session_filter)

        subscriber_ids = [event.subscriber_id for event in latest]
        history = await self.store.history_for_many(subscriber_ids, self.config.history_limit)

        views = resolve_latest_per_subscriber([*latest, *history], self.config)
        items = [views[subscriber_id] for subscriber_id in subscriber_ids]

        logger.debug(
            "Subscriber status page resolved",
            page=pagination.page,
            limit=pagination.limit,
            total=total,
            returned=len(items),
            stale=sum(1 for item in items if item.has_stale_sessions),
        )
        return SubscriberStatusPage(
            items=items, total=total, page=pagination.page, limit=pagination.limit
        )

    async def subscriber_status(self, subscriber_id: str) -> SubscriberStatusView | None:
        history = await self.store.history_for_many([subscriber_id], self.config.history_limit)
        if not history:
            return None
        return build_status_view(subscriber_id, history, self.config)

    async def history_for_subscriber(
        self, subscriber_id: str, limit: int | None = None
    ) -> list[AccountingEvent]:
        """Most recent events for a subscriber, highest record id first."""
        limit = self.config.history_limit if limit is None else limit
        if limit <= 0:
            return []
        events = await self.store.history(subscriber_id, limit)
        return sorted(events, key=lambda event: event.record_id, reverse=True)[:limit]

    async def count_online(self, session_filter: SessionFilter | None = None) -> int:
        """Online subscribers under the same latest-record rule as the listing."""
        session_filter = session_filter or SessionFilter()
        return await self.store.count(session_filter.with_status(SessionStatus.ONLINE))

    async def concentrator_stats(self) -> list[ConcentratorStats]:
        return await self.store.concentrator_stats()
