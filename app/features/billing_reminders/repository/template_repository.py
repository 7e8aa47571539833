"""
Message template catalog backed by the hosted database.
"""

from app.db.helpers import fetch_all, with_db_retry
from app.db.pool import DatabasePoolManager
from app.features.billing_reminders.domain import MessageTemplate


class TemplateRepository:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    @staticmethod
    def _row_to_template(row: dict) -> MessageTemplate:
        return MessageTemplate(
            template_id=int(row["id"]),
            day_offset=int(row["dias"]),
            body_template=row.get("mensagem_template") or "",
            name=row.get("nome") or "",
        )

    @with_db_retry(max_retries=2, base_delay=0.5)
    async def list_templates(self) -> list[MessageTemplate]:
        rows = await fetch_all(
            self.pool,
            """
            SELECT id, nome, dias, mensagem_template
            FROM tipos_mensagem
            ORDER BY id
            """,
        )
        return [self._row_to_template(row) for row in rows]
