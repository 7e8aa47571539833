"""
Contract catalog backed by the hosted database.

Contracts are joined with their client so the scheduler has the name and
phone number it needs to render and address a reminder. Rows that cannot
be mapped are returned as rejected instead of failing the whole load.
"""

from decimal import Decimal, InvalidOperation

from app.db.helpers import fetch_all, with_db_retry
from app.db.pool import DatabasePoolManager
from app.features.billing_reminders.domain import (
    ActiveContracts,
    Contract,
    ContractStatus,
    InvalidContractData,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ContractRepository:
    """Read access to contratos + clientes."""

    CONTRACT_SELECT = """
        SELECT
            c.id,
            c.pppoe,
            c.valor_mensalidade,
            c.dia_vencimento,
            c.status,
            cl.nome AS cliente_nome,
            cl.telefone AS cliente_telefone
        FROM contratos c
        LEFT JOIN clientes cl ON cl.id = c.id_cliente
    """

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    @staticmethod
    def _row_to_contract(row: dict) -> Contract:
        # Missing billing day maps to 0 so the scheduler reports the contract as invalid
        return Contract(
            contract_id=int(row["id"]),
            subscriber_phone=row.get("cliente_telefone"),
            billing_day_of_month=int(row.get("dia_vencimento") or 0),
            status=ContractStatus.parse(row["status"]),
            monthly_value=Decimal(str(row.get("valor_mensalidade") or 0)),
            client_name=row.get("cliente_nome") or "",
            subscriber_id=row.get("pppoe"),
        )

    @staticmethod
    def _raw_contract_id(row: dict) -> int | None:
        try:
            return int(row["id"])
        except (KeyError, TypeError, ValueError):
            return None

    @with_db_retry(max_retries=2, base_delay=0.5)
    async def list_active_contracts(self) -> ActiveContracts:
        query = f"""
            {self.CONTRACT_SELECT}
            WHERE c.status = %s
            ORDER BY c.id
        """
        rows = await fetch_all(self.pool, query, (ContractStatus.ACTIVE.value,))

        snapshot = ActiveContracts()
        for row in rows:
            try:
                snapshot.contracts.append(self._row_to_contract(row))
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                contract_id = self._raw_contract_id(row)
                logger.warning(
                    "Contract row could not be mapped",
                    contract_id=contract_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                snapshot.rejected.append(
                    InvalidContractData(
                        f"Contract row could not be read: {type(e).__name__}: {e}",
                        contract_id=contract_id,
                        reason="invalid_row",
                    )
                )

        logger.debug(
            "Active contracts loaded",
            count=len(snapshot.contracts),
            rejected=len(snapshot.rejected),
        )
        return snapshot
