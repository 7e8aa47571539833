"""
Operator queries over the RADIUS accounting log.
"""

import dataclasses

from app.config import Settings, settings
from app.features.session_accounting.domain import (
    Pagination,
    SessionConfig,
    SessionFilter,
    SessionStatus,
)
from app.features.session_accounting.repository.accounting_repository import AccountingRepository
from app.features.session_accounting.services.resolver import SessionAccountingResolver
from app.infrastructure.observability.logging import get_logger
from app.jobs.runtime import WorkerRuntime, worker_runtime

logger = get_logger(__name__)


def build_resolver(runtime: WorkerRuntime, config: Settings = settings) -> SessionAccountingResolver:
    session_config = SessionConfig.from_settings(config)
    return SessionAccountingResolver(
        AccountingRepository(runtime.radius_pool, session_config), session_config
    )


async def list_subscriber_status(
    *,
    search: str | None = None,
    nas: str | None = None,
    status: str = SessionStatus.ALL.value,
    page: int = 1,
    limit: int = 10,
    config: Settings = settings,
) -> dict:
    """
    One page of subscriber status plus the online total for the same filter.

    Raises:
        ValueError: unknown status or invalid page/limit
        StoreUnavailable: the accounting database could not be reached
    """
    session_filter = SessionFilter(nas_address=nas, search=search, status=SessionStatus(status))
    pagination = Pagination(page=page, limit=limit)

    async with worker_runtime(radius=True, config=config) as runtime:
        resolver = build_resolver(runtime, config)
        status_page = await resolver.list_subscriber_status(session_filter, pagination)
        online = await resolver.count_online(session_filter)

    logger.info(
        "Subscriber status listed",
        page=page,
        total=status_page.total,
        online=online,
    )
    result = status_page.to_dict()
    result["online_total"] = online
    return result


async def show_subscriber(
    subscriber_id: str, history_limit: int | None = None, config: Settings = settings
) -> dict | None:
    """Status view and recent history of one subscriber, None when never seen."""
    async with worker_runtime(radius=True, config=config) as runtime:
        resolver = build_resolver(runtime, config)
        view = await resolver.subscriber_status(subscriber_id)
        if view is None:
            return None
        history = await resolver.history_for_subscriber(subscriber_id, history_limit)

    result = view.to_dict()
    result["history"] = [
        {
            "record_id": event.record_id,
            "nas_address": event.nas_address,
            "session_start": event.session_start.isoformat(),
            "session_stop": event.session_stop.isoformat() if event.session_stop else None,
            "terminate_cause": event.terminate_cause,
        }
        for event in history
    ]
    return result


async def list_concentrators(config: Settings = settings) -> list[dict]:
    """Each NAS with its online subscriber count."""
    async with worker_runtime(radius=True, config=config) as runtime:
        stats = await build_resolver(runtime, config).concentrator_stats()
    return [dataclasses.asdict(stat) for stat in stats]
