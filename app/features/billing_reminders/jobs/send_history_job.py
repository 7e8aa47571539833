"""
Read-only listing of the send log for operators.
"""

from app.config import Settings, settings
from app.features.billing_reminders.repository.send_log_repository import SendLogRepository
from app.jobs.runtime import worker_runtime
from app.models.pagination import Pagination


def _record_to_dict(record) -> dict:
    return {
        "id": record.record_id,
        "contract_id": record.contract_id,
        "template_id": record.template_id,
        "template_name": record.template_name,
        "sent_at": record.sent_at.isoformat(),
        "phone": record.phone,
        "client_name": record.client_name,
        "message": record.rendered_body,
    }


async def list_send_history(
    pagination: Pagination,
    *,
    template_id: int | None = None,
    client_name: str | None = None,
    contract_id: int | None = None,
    config: Settings = settings,
) -> dict:
    """Newest-first page of sent messages, or every send of one contract."""
    async with worker_runtime(supabase=True, config=config) as runtime:
        repository = SendLogRepository(runtime.supabase_pool)

        if contract_id is not None:
            records = await repository.sends_for_contract(contract_id)
            return {
                "contract_id": contract_id,
                "items": [_record_to_dict(record) for record in records],
                "total": len(records),
            }

        records, total = await repository.list_sends(
            pagination, template_id=template_id, client_name=client_name
        )
        return {
            "items": [_record_to_dict(record) for record in records],
            "total": total,
            "page": pagination.page,
            "limit": pagination.limit,
            "total_pages": (total + pagination.limit - 1) // pagination.limit,
        }
