from datetime import UTC, datetime, timedelta

import pytest

from app.db.helpers import StoreUnavailable
from app.features.session_accounting.domain import (
    STALE_TERMINATE_CAUSE,
    Pagination,
    SessionConfig,
    SessionFilter,
    SessionStatus,
    StaleOpenSession,
    StaleSessionPolicy,
)
from app.features.session_accounting.services.resolver import (
    SessionAccountingResolver,
    resolve_latest_per_subscriber,
)
from tests.fakes import FakeAccountingStore, make_event

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)


def test_latest_is_highest_record_id_not_latest_timestamp():
    events = [
        make_event(1, start=T0, stop=T0 + timedelta(hours=1)),
        # Clock skew on the NAS: the newer record reports an older start
        make_event(3, start=T0 - timedelta(days=2)),
        make_event(2, start=T0 + timedelta(hours=2), stop=T0 + timedelta(hours=3)),
    ]

    view = resolve_latest_per_subscriber(events)["alice"]

    assert view.latest_event.record_id == 3
    assert view.is_online is True
    assert view.current_event.record_id == 3
    assert [e.record_id for e in view.recent_history] == [3, 2, 1]


def test_online_then_offline():
    start = make_event(1, start=T0)
    stop = make_event(2, start=T0, stop=T0 + timedelta(hours=4))

    online = resolve_latest_per_subscriber([start])["alice"]
    offline = resolve_latest_per_subscriber([start, stop])["alice"]

    assert online.is_online is True
    assert offline.is_online is False
    assert offline.current_event is None
    assert offline.last_seen == T0 + timedelta(hours=4)


def test_duplicate_record_ids_collapse():
    event = make_event(5)

    view = resolve_latest_per_subscriber([event, event, make_event(4, stop=T0)])["alice"]

    assert [e.record_id for e in view.recent_history] == [5, 4]


def test_stale_open_session_flagged():
    events = [make_event(1, start=T0), make_event(2, start=T0 + timedelta(hours=6))]

    view = resolve_latest_per_subscriber(events)["alice"]

    assert view.is_online is True
    assert view.current_event.record_id == 2
    assert view.has_stale_sessions is True
    assert isinstance(view.warning, StaleOpenSession)
    assert view.warning.stale_record_ids == [1]
    # flag policy leaves the history untouched
    assert view.recent_history[1].session_stop is None


def test_stale_open_session_force_closed_in_view():
    config = SessionConfig(stale_policy=StaleSessionPolicy.FORCE_CLOSE)
    events = [make_event(1, start=T0), make_event(2, start=T0 + timedelta(hours=6))]

    view = resolve_latest_per_subscriber(events, config)["alice"]

    closed = view.recent_history[1]
    assert closed.record_id == 1
    assert closed.session_stop == T0 + timedelta(hours=6)
    assert closed.terminate_cause == STALE_TERMINATE_CAUSE
    assert view.is_online is True
    assert events[0].session_stop is None


def test_history_limit_applies_to_view():
    events = [make_event(i, stop=T0) for i in range(1, 8)]

    view = resolve_latest_per_subscriber(events, SessionConfig(history_limit=3))["alice"]

    assert [e.record_id for e in view.recent_history] == [7, 6, 5]


def test_subscribers_resolved_independently():
    events = [
        make_event(1, "alice"),
        make_event(2, "bob", stop=T0),
        make_event(3, "alice", stop=T0),
    ]

    views = resolve_latest_per_subscriber(events)

    assert views["alice"].is_online is False
    assert views["bob"].is_online is False
    assert views["alice"].latest_event.record_id == 3


def _store() -> FakeAccountingStore:
    return FakeAccountingStore(
        [
            make_event(1, "alice", stop=T0),
            make_event(2, "bob"),
            make_event(3, "carol", nas="10.0.0.2"),
            make_event(4, "dave", stop=T0),
            make_event(5, "alice"),
            make_event(6, "erin", nas="10.0.0.2"),
        ]
    )


@pytest.mark.asyncio
async def test_list_subscriber_status_pages_latest_first():
    resolver = SessionAccountingResolver(_store())

    first = await resolver.list_subscriber_status(SessionFilter(), Pagination(page=1, limit=2))
    second = await resolver.list_subscriber_status(SessionFilter(), Pagination(page=2, limit=2))

    assert [v.subscriber_id for v in first.items] == ["erin", "alice"]
    assert [v.subscriber_id for v in second.items] == ["dave", "carol"]
    assert first.total == 5
    assert first.total_pages == 3
    assert first.to_dict()["pagination"]["total_records"] == 5


@pytest.mark.asyncio
async def test_count_online_matches_online_listing():
    resolver = SessionAccountingResolver(_store())

    online = await resolver.count_online()
    listing = await resolver.list_subscriber_status(
        SessionFilter(status=SessionStatus.ONLINE), Pagination(limit=50)
    )

    assert online == 4
    assert listing.total == online
    assert all(view.is_online for view in listing.items)


@pytest.mark.asyncio
async def test_filter_by_nas_alias():
    config = SessionConfig(nas_aliases={"bng-02": "10.0.0.2"})
    resolver = SessionAccountingResolver(FakeAccountingStore(_store().events, config), config)

    page = await resolver.list_subscriber_status(SessionFilter(nas_address="bng-02"))

    assert sorted(v.subscriber_id for v in page.items) == ["carol", "erin"]
    assert await resolver.count_online(SessionFilter(nas_address="bng-02")) == 2


@pytest.mark.asyncio
async def test_search_matches_login_substring():
    resolver = SessionAccountingResolver(_store())

    page = await resolver.list_subscriber_status(SessionFilter(search="AL"))

    assert [v.subscriber_id for v in page.items] == ["alice"]


@pytest.mark.asyncio
async def test_history_for_subscriber():
    resolver = SessionAccountingResolver(_store())

    history = await resolver.history_for_subscriber("alice", limit=1)
    everything = await resolver.history_for_subscriber("alice")

    assert [e.record_id for e in history] == [5]
    assert [e.record_id for e in everything] == [5, 1]
    assert await resolver.history_for_subscriber("alice", limit=0) == []
    assert await resolver.history_for_subscriber("nobody") == []


@pytest.mark.asyncio
async def test_subscriber_status_unknown_subscriber():
    resolver = SessionAccountingResolver(_store())

    assert await resolver.subscriber_status("nobody") is None
    assert (await resolver.subscriber_status("alice")).is_online is True


@pytest.mark.asyncio
async def test_concentrator_stats_count_latest_online_only():
    resolver = SessionAccountingResolver(_store())

    stats = {s.nas_name: s.online_subscribers for s in await resolver.concentrator_stats()}

    assert stats == {"10.0.0.1": 2, "10.0.0.2": 2}


@pytest.mark.asyncio
async def test_store_unavailable_propagates():
    store = _store()
    store.unavailable = True
    resolver = SessionAccountingResolver(store)

    with pytest.raises(StoreUnavailable):
        await resolver.count_online()


@pytest.mark.asyncio
async def test_default_page_size_independent_of_history_limit():
    config = SessionConfig(history_limit=2)
    events = [make_event(i, f"user{i:02d}", stop=T0) for i in range(1, 13)]
    resolver = SessionAccountingResolver(FakeAccountingStore(events, config), config)

    page = await resolver.list_subscriber_status()

    assert len(page.items) == Pagination().limit
    assert page.total == 12
    assert all(len(view.recent_history) == 1 for view in page.items)
