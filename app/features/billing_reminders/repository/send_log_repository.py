"""
Append-only send log (mensagens_enviadas).

Rows are only ever inserted. The unique index created by
sql/001_send_log_minute_unique.sql on (id_contrato, id_tipo_mensagem,
date_trunc('minute', data_envio AT TIME ZONE 'UTC')) is the conflict target of
append, which turns a retried double submission into DuplicateSendError.
"""

from datetime import UTC, datetime

from app.db.helpers import DatabaseError, fetch_all, fetch_one, fetch_val
from app.db.pool import DatabasePoolManager
from app.features.billing_reminders.domain import SentMessageRecord
from app.infrastructure.observability.logging import get_logger
from app.models.pagination import Pagination
from app.utils.dates import truncate_to_minute

logger = get_logger(__name__)


class DuplicateSendError(DatabaseError):
    """The same (contract, template) pair was already recorded in the same minute."""

    def __init__(self, contract_id: int, template_id: int, sent_at: datetime):
        super().__init__(
            f"Send already recorded for contract {contract_id}, template {template_id} "
            f"at {sent_at:%Y-%m-%d %H:%M}",
            operation="append_send",
            recoverable=False,
        )
        self.contract_id = contract_id
        self.template_id = template_id
        self.sent_at = sent_at


class SendLogRepository:
    SELECT_COLUMNS = """
        m.id, m.id_contrato, m.id_tipo_mensagem, m.data_envio,
        m.telefone, m.nome_cliente, m.mensagem_enviada
    """

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    @staticmethod
    def _row_to_record(row: dict) -> SentMessageRecord:
        sent_at = row["data_envio"]
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=UTC)
        return SentMessageRecord(
            contract_id=int(row["id_contrato"]),
            template_id=int(row["id_tipo_mensagem"]),
            sent_at=sent_at,
            rendered_body=row.get("mensagem_enviada") or "",
            phone=row.get("telefone"),
            client_name=row.get("nome_cliente"),
            record_id=row.get("id"),
            template_name=row.get("tipo_nome"),
        )

    async def recent_sends(
        self, contract_id: int, template_id: int, since: datetime
    ) -> list[SentMessageRecord]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM mensagens_enviadas m
            WHERE m.id_contrato = %s
              AND m.id_tipo_mensagem = %s
              AND m.data_envio >= %s
            ORDER BY m.data_envio DESC
        """
        rows = await fetch_all(self.pool, query, (contract_id, template_id, since))
        return [self._row_to_record(row) for row in rows]

    async def append(self, record: SentMessageRecord) -> SentMessageRecord:
        """
        Insert a send record.

        Raises:
            DuplicateSendError: a record for the same pair and minute exists
        """
        query = f"""
            INSERT INTO mensagens_enviadas AS m (
                id_contrato, id_tipo_mensagem, data_envio,
                telefone, nome_cliente, mensagem_enviada
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (
                id_contrato,
                id_tipo_mensagem,
                (date_trunc('minute', data_envio AT TIME ZONE 'UTC'))
            ) DO NOTHING
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            self.pool,
            query,
            (
                record.contract_id,
                record.template_id,
                record.sent_at,
                record.phone,
                record.client_name,
                record.rendered_body,
            ),
        )
        if row is None:
            logger.info(
                "Duplicate send rejected",
                contract_id=record.contract_id,
                template_id=record.template_id,
                minute=truncate_to_minute(record.sent_at).isoformat(),
            )
            raise DuplicateSendError(record.contract_id, record.template_id, record.sent_at)

        return self._row_to_record(row)

    async def sends_for_contract(self, contract_id: int) -> list[SentMessageRecord]:
        """Every message sent for a contract, newest first."""
        query = f"""
            SELECT {self.SELECT_COLUMNS}, t.nome AS tipo_nome
            FROM mensagens_enviadas m
            LEFT JOIN tipos_mensagem t ON t.id = m.id_tipo_mensagem
            WHERE m.id_contrato = %s
            ORDER BY m.data_envio DESC
        """
        rows = await fetch_all(self.pool, query, (contract_id,))
        return [self._row_to_record(row) for row in rows]

    async def list_sends(
        self,
        pagination: Pagination,
        *,
        template_id: int | None = None,
        client_name: str | None = None,
    ) -> tuple[list[SentMessageRecord], int]:
        """
        Page through the send log, newest first.

        Returns:
            (records on the page, total matching records)
        """
        conditions: list[str] = []
        params: list = []
        if template_id:
            conditions.append("m.id_tipo_mensagem = %s")
            params.append(template_id)
        if client_name and client_name.strip():
            conditions.append("m.nome_cliente ILIKE %s")
            params.append(f"%{client_name.strip()}%")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        total = await fetch_val(
            self.pool, f"SELECT COUNT(*) FROM mensagens_enviadas m {where}", tuple(params)
        )
        rows = await fetch_all(
            self.pool,
            f"""
            SELECT {self.SELECT_COLUMNS}, t.nome AS tipo_nome
            FROM mensagens_enviadas m
            LEFT JOIN tipos_mensagem t ON t.id = m.id_tipo_mensagem
            {where}
            ORDER BY m.data_envio DESC
            LIMIT %s OFFSET %s
            """,
            (*params, pagination.limit, pagination.offset),
        )
        return [self._row_to_record(row) for row in rows], int(total or 0)
