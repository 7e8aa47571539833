"""
Generic worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate job. Remaining CLI args are
parsed by the job itself.
"""

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable, Sequence
from datetime import date

from app.features.billing_reminders.jobs import (
    list_send_history,
    run_reminder_pass,
    start_reminder_scheduler,
)
from app.features.session_accounting.domain import SessionStatus
from app.features.session_accounting.jobs import (
    list_concentrators,
    list_subscriber_status,
    show_subscriber,
)
from app.infrastructure.observability.logging import get_logger
from app.models.pagination import Pagination

logger = get_logger(__name__)

JobCoroutine = Callable[[Sequence[str]], Awaitable[None]]


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from e


def _page_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--page", type=int, default=1)
    parser.add_argument("--limit", type=int, default=10)


async def reminder_pass_job(argv: Sequence[str]) -> None:
    parser = argparse.ArgumentParser(prog="worker reminder_pass")
    parser.add_argument("--date", type=_parse_date, default=None, help="pass date, default today (UTC)")
    parser.add_argument("--dry-run", action="store_true", help="compute without sending or recording")
    args = parser.parse_args(argv)

    _print_json(await run_reminder_pass(args.date, dry_run=args.dry_run))


async def reminder_scheduler_job(argv: Sequence[str]) -> None:
    argparse.ArgumentParser(prog="worker reminder_scheduler").parse_args(argv)
    await start_reminder_scheduler()


async def subscriber_status_job(argv: Sequence[str]) -> None:
    parser = argparse.ArgumentParser(prog="worker subscriber_status")
    parser.add_argument("--search", default=None, help="login, IP or MAC substring")
    parser.add_argument("--nas", default=None, help="NAS address or alias")
    parser.add_argument(
        "--status", default=SessionStatus.ALL.value, choices=[s.value for s in SessionStatus]
    )
    parser.add_argument("--subscriber", default=None, help="show one subscriber with history")
    _page_args(parser)
    args = parser.parse_args(argv)

    if args.subscriber:
        view = await show_subscriber(args.subscriber, history_limit=args.limit)
        if view is None:
            raise SystemExit(f"Subscriber '{args.subscriber}' has no accounting records")
        _print_json(view)
        return

    _print_json(
        await list_subscriber_status(
            search=args.search,
            nas=args.nas,
            status=args.status,
            page=args.page,
            limit=args.limit,
        )
    )


async def concentrators_job(argv: Sequence[str]) -> None:
    argparse.ArgumentParser(prog="worker concentrators").parse_args(argv)
    _print_json(await list_concentrators())


async def send_history_job(argv: Sequence[str]) -> None:
    parser = argparse.ArgumentParser(prog="worker send_history")
    parser.add_argument("--template", type=int, default=None, help="template id")
    parser.add_argument("--client", default=None, help="client name substring")
    parser.add_argument("--contract", type=int, default=None, help="all sends of one contract")
    _page_args(parser)
    args = parser.parse_args(argv)

    _print_json(
        await list_send_history(
            Pagination(page=args.page, limit=args.limit),
            template_id=args.template,
            client_name=args.client,
            contract_id=args.contract,
        )
    )


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "reminder_pass": reminder_pass_job,
    "reminder_scheduler": reminder_scheduler_job,
    "subscriber_status": subscriber_status_job,
    "concentrators": concentrators_job,
    "send_history": send_history_job,
}


def _resolve_job_name(argv: Sequence[str]) -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if argv and not argv[0].startswith("-"):
        return argv[0].strip().lower()
    return os.getenv("WORKER_JOB", "reminder_scheduler").strip().lower()


async def run_worker(job_name: str | None = None, argv: Sequence[str] = ()) -> None:
    """Run the requested job."""
    name = (job_name or _resolve_job_name(sys.argv[1:])).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting worker job", job=name)
    await JOB_REGISTRY[name](list(argv))


def main() -> None:
    """CLI entrypoint."""
    argv = sys.argv[1:]
    job_name = _resolve_job_name(argv)
    job_args = argv[1:] if argv and not argv[0].startswith("-") else argv
    asyncio.run(run_worker(job_name, job_args))


if __name__ == "__main__":
    main()
