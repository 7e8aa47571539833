"""
Accounting store backed by the FreeRADIUS PostgreSQL schema.

Latest-record selection happens in SQL (DISTINCT ON over the
(username, radacctid) index) so that listing, counting and NAS statistics
never pull the whole radacct table into the application.
"""

from collections.abc import Sequence

from app.db.helpers import fetch_all, fetch_val
from app.db.pool import DatabasePoolManager
from app.features.session_accounting.domain import (
    AccountingEvent,
    ConcentratorStats,
    Pagination,
    SessionConfig,
    SessionFilter,
    SessionStatus,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EVENT_COLUMNS = """
    radacctid,
    username,
    host(nasipaddress) AS nasipaddress,
    nasportid,
    acctstarttime,
    acctstoptime,
    acctinputoctets,
    acctoutputoctets,
    acctterminatecause,
    callingstationid,
    host(framedipaddress) AS framedipaddress
"""

LATEST_PER_SUBSCRIBER_CTE = f"""
    WITH latest AS (
        SELECT DISTINCT ON (username) {EVENT_COLUMNS}
        FROM radacct
        ORDER BY username, radacctid DESC
    )
"""


class AccountingRepository:
    """Read-only access to radacct and nas."""

    def __init__(self, pool: DatabasePoolManager, config: SessionConfig | None = None):
        self.pool = pool
        self.config = config or SessionConfig()

    @staticmethod
    def _row_to_event(row: dict) -> AccountingEvent:
        return AccountingEvent(
            record_id=int(row["radacctid"]),
            subscriber_id=row["username"],
            nas_address=row["nasipaddress"],
            session_start=row["acctstarttime"],
            session_stop=row.get("acctstoptime"),
            bytes_in=int(row.get("acctinputoctets") or 0),
            bytes_out=int(row.get("acctoutputoctets") or 0),
            terminate_cause=row.get("acctterminatecause") or None,
            calling_station_id=row.get("callingstationid") or None,
            framed_address=row.get("framedipaddress"),
            nas_port_id=row.get("nasportid"),
        )

    def _where(self, session_filter: SessionFilter) -> tuple[str, list]:
        conditions: list[str] = []
        params: list = []

        if session_filter.search:
            pattern = f"%{session_filter.search}%"
            conditions.append(
                "(username ILIKE %s OR callingstationid ILIKE %s OR framedipaddress ILIKE %s)"
            )
            params.extend([pattern, pattern, pattern])

        if session_filter.status is SessionStatus.ONLINE:
            conditions.append("acctstoptime IS NULL")
        elif session_filter.status is SessionStatus.OFFLINE:
            conditions.append("acctstoptime IS NOT NULL")

        if session_filter.nas_address:
            conditions.append("nasipaddress = %s")
            params.append(self.config.accounting_address(session_filter.nas_address))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    async def query(
        self, session_filter: SessionFilter, pagination: Pagination
    ) -> list[AccountingEvent]:
        """Latest record of each subscriber matching the filter, newest record first."""
        where, params = self._where(session_filter)
        query = f"""
            {LATEST_PER_SUBSCRIBER_CTE}
            SELECT * FROM latest
            {where}
            ORDER BY radacctid DESC
            LIMIT %s OFFSET %s
        """
        rows = await fetch_all(self.pool, query, (*params, pagination.limit, pagination.offset))
        return [self._row_to_event(row) for row in rows]

    async def count(self, session_filter: SessionFilter) -> int:
        where, params = self._where(session_filter)
        query = f"""
            {LATEST_PER_SUBSCRIBER_CTE}
            SELECT COUNT(*) AS total FROM latest
            {where}
        """
        return int(await fetch_val(self.pool, query, tuple(params)) or 0)

    async def history(self, subscriber_id: str, limit: int) -> list[AccountingEvent]:
        query = f"""
            SELECT {EVENT_COLUMNS}
            FROM radacct
            WHERE username = %s
            ORDER BY radacctid DESC
            LIMIT %s
        """
        rows = await fetch_all(self.pool, query, (subscriber_id, limit))
        return [self._row_to_event(row) for row in rows]

    async def history_for_many(
        self, subscriber_ids: Sequence[str], limit: int
    ) -> list[AccountingEvent]:
        """
        Recent events for several subscribers in one round trip.

        Every still-open event is included even past `limit`, so stale open
        sessions are visible to the resolver.
        """
        if not subscriber_ids:
            return []

        query = f"""
            SELECT * FROM (
                SELECT {EVENT_COLUMNS},
                       ROW_NUMBER() OVER (PARTITION BY username ORDER BY radacctid DESC) AS rn
                FROM radacct
                WHERE username = ANY(%s)
            ) ranked
            WHERE rn <= %s OR acctstoptime IS NULL
            ORDER BY username, radacctid DESC
        """
        rows = await fetch_all(self.pool, query, (list(subscriber_ids), limit))
        return [self._row_to_event(row) for row in rows]

    async def online_counts_by_address(self) -> dict[str, int]:
        """Online subscribers per accounting address, using the latest-record rule."""
        query = f"""
            {LATEST_PER_SUBSCRIBER_CTE}
            SELECT nasipaddress, COUNT(*) AS online
            FROM latest
            WHERE acctstoptime IS NULL
            GROUP BY nasipaddress
        """
        rows = await fetch_all(self.pool, query)
        return {row["nasipaddress"]: int(row["online"]) for row in rows}

    async def concentrator_stats(self) -> list[ConcentratorStats]:
        nas_rows = await fetch_all(
            self.pool,
            """
            SELECT nasname, shortname, type, ports, description
            FROM nas
            ORDER BY nasname
            """,
        )
        online = await self.online_counts_by_address()

        return [
            ConcentratorStats(
                nas_name=row["nasname"],
                short_name=row.get("shortname"),
                nas_type=row.get("type"),
                ports=row.get("ports"),
                description=row.get("description"),
                online_subscribers=online.get(self.config.accounting_address(row["nasname"]), 0),
            )
            for row in nas_rows
        ]
