"""
Daily billing reminder pass.

Takes the per-date pass lock, asks the scheduler for the reminders due
today, hands each one to the messaging transport and records confirmed
sends in the send log. Store outages abort the pass and are retried with
exponential backoff; everything else is counted in the pass metrics.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from app.config import Settings, settings
from app.db.helpers import DatabaseError, StoreUnavailable
from app.features.billing_reminders.domain import (
    PendingReminder,
    ReminderConfig,
    ReminderPassResult,
)
from app.features.billing_reminders.repository.contract_repository import ContractRepository
from app.features.billing_reminders.repository.send_log_repository import (
    DuplicateSendError,
    SendLogRepository,
)
from app.features.billing_reminders.repository.template_repository import TemplateRepository
from app.features.billing_reminders.services.message_transport import (
    MessageTransport,
    TransportError,
)
from app.features.billing_reminders.services.scheduler import BillingReminderScheduler
from app.infrastructure.observability.logging import (
    bind_pass_context,
    clear_pass_context,
    get_logger,
)
from app.jobs.runtime import WorkerRuntime, install_stop_signals, worker_runtime
from app.services.infrastructure.redis_client import LockBackendError, RedisClient
from app.utils.dates import utc_today

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "isp-ops:reminder-pass"


class ReminderPassError(Exception):
    """Custom exception for reminder pass orchestration."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ReminderPassLock:
    """Mutual exclusion for passes of the same day, shared by every worker process."""

    def __init__(self, redis_client: RedisClient, ttl_s: int = 3600):
        self.redis = redis_client
        self.ttl_s = ttl_s

    @staticmethod
    def key_for(day: date) -> str:
        return f"{LOCK_KEY_PREFIX}:{day.isoformat()}"

    async def acquire(self, day: date) -> str | None:
        """Token of the acquired lock, or None when another pass holds it."""
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.acquire_lock(self.key_for(day), token, self.ttl_s)
        except LockBackendError as e:
            raise ReminderPassError(
                f"Pass lock unavailable: {e}", operation="acquire_lock", recoverable=True
            ) from e

        if not acquired:
            holder = await self.redis.get(self.key_for(day))
            logger.warning("Reminder pass already running", pass_date=day.isoformat(), holder=holder)
            return None
        return token

    async def release(self, day: date, token: str) -> None:
        released = await self.redis.release_lock(self.key_for(day), token)
        if not released:
            logger.warning("Reminder pass lock expired before release", pass_date=day.isoformat())


class ReminderPassMetrics:
    """Metrics tracking for one reminder pass."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new pass."""
        self.start_time = datetime.now(UTC)
        self.pass_date: date | None = None
        self.contracts_evaluated = 0
        self.contracts_not_evaluated = 0
        self.reminders_due = 0
        self.suppressed_by_cooldown = 0
        self.skipped_invalid = 0
        self.errored = 0
        self.sent = 0
        self.already_recorded = 0
        self.transport_failures = 0
        self.record_failures = 0
        self.not_attempted = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def absorb(self, result: ReminderPassResult):
        """Fold the scheduler's result into the pass metrics."""
        self.pass_date = result.today
        self.contracts_evaluated = result.contracts_evaluated
        self.contracts_not_evaluated = result.contracts_not_evaluated
        self.reminders_due = len(result.reminders)
        self.suppressed_by_cooldown = result.suppressed_by_cooldown
        self.skipped_invalid = result.skipped_count
        self.errored = result.error_count
        for skipped in result.skipped:
            self.errors.append(
                {
                    "contract_id": skipped.contract_id,
                    "error_type": skipped.reason,
                    "error": skipped.detail,
                }
            )
        for failure in result.errors:
            self.errors.append(
                {
                    "contract_id": failure.contract_id,
                    "error_type": failure.error_type,
                    "error": failure.error,
                }
            )

    def record_sent(self, reminder: PendingReminder):
        self.sent += 1
        logger.debug(
            "Reminder delivered",
            contract_id=reminder.contract_id,
            template_id=reminder.template_id,
        )

    def record_duplicate(self, reminder: PendingReminder):
        """A retried pass re-recorded a send; counts as delivered."""
        self.already_recorded += 1
        logger.info(
            "Reminder send already recorded",
            contract_id=reminder.contract_id,
            template_id=reminder.template_id,
        )

    def record_transport_failure(self, reminder: PendingReminder, error: str):
        self.transport_failures += 1
        self.errors.append(
            {
                "contract_id": reminder.contract_id,
                "template_id": reminder.template_id,
                "error_type": "transport",
                "error": error,
            }
        )
        logger.warning(
            "Reminder delivery failed",
            contract_id=reminder.contract_id,
            template_id=reminder.template_id,
            error=error,
        )

    def record_record_failure(self, reminder: PendingReminder, error: str):
        """Delivered but not written to the send log."""
        self.record_failures += 1
        self.errors.append(
            {
                "contract_id": reminder.contract_id,
                "template_id": reminder.template_id,
                "error_type": "record",
                "error": error,
            }
        )
        logger.error(
            "Delivered reminder could not be recorded",
            contract_id=reminder.contract_id,
            template_id=reminder.template_id,
            error=error,
        )

    def record_not_attempted(self):
        self.not_attempted += 1

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": "reminder_pass",
            "pass_date": self.pass_date.isoformat() if self.pass_date else None,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "contracts_evaluated": self.contracts_evaluated,
            "contracts_not_evaluated": self.contracts_not_evaluated,
            "reminders_due": self.reminders_due,
            "suppressed_by_cooldown": self.suppressed_by_cooldown,
            "skipped_invalid": self.skipped_invalid,
            "errored": self.errored,
            "sent": self.sent,
            "already_recorded": self.already_recorded,
            "transport_failures": self.transport_failures,
            "record_failures": self.record_failures,
            "not_attempted": self.not_attempted,
            "errors_count": len(self.errors),
        }


class ReminderPassJob:
    """
    Runs reminder passes.

    Cancellation is cooperative: once `cancel_event` is set no new contract
    is evaluated and no new message is sent, while sends already handed to
    the transport are still recorded.
    """

    def __init__(
        self,
        scheduler: BillingReminderScheduler,
        transport: MessageTransport,
        lock: ReminderPassLock,
        *,
        max_concurrency: int = 10,
        max_retries: int = 3,
        retry_base_delay: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.scheduler = scheduler
        self.transport = transport
        self.lock = lock
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.clock = clock or (lambda: datetime.now(UTC))
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = ReminderPassMetrics()

    async def run_once(
        self,
        day: date,
        cancel_event: asyncio.Event | None = None,
        dry_run: bool = False,
    ) -> dict:
        """
        Run a single reminder pass for `day`.

        Returns:
            Dict: pass metrics, or {"skipped": True, ...} when another pass holds the lock

        Raises:
            StoreUnavailable: a store could not be reached; the pass was aborted
            DatabaseError: any other store failure
            ReminderPassError: the pass lock could not be taken
        """
        if self.is_running:
            logger.warning("Reminder pass already running in this process, skipping")
            return {"skipped": True, "reason": "already_running"}

        cancel_event = cancel_event or asyncio.Event()
        token: str | None = None
        try:
            self.is_running = True
            self.job_metrics.reset()
            bind_pass_context(pass_date=day.isoformat(), job="reminder_pass")

            if not dry_run:
                token = await self.lock.acquire(day)
                if token is None:
                    return {"skipped": True, "reason": "pass_locked", "pass_date": day.isoformat()}

            logger.info("Starting reminder pass", dry_run=dry_run)
            result = await self.scheduler.compute_pending_reminders(day, cancel_event)
            self.job_metrics.absorb(result)

            if dry_run:
                self.job_metrics.finalize()
                metrics = self.job_metrics.to_dict()
                metrics["dry_run"] = True
                metrics["reminders"] = [reminder.to_dict() for reminder in result.reminders]
                return metrics

            await self._deliver_all(result.reminders, cancel_event)

            self.job_metrics.finalize()
            self.last_run_time = self.clock()
            metrics = self.job_metrics.to_dict()
            metrics["cancelled"] = cancel_event.is_set()
            logger.info("Reminder pass completed", **metrics)
            return metrics

        except StoreUnavailable as e:
            self.job_metrics.finalize()
            logger.error(
                "Reminder pass aborted, store unavailable",
                error=str(e),
                **self.job_metrics.to_dict(),
            )
            raise

        finally:
            if token is not None:
                await self.lock.release(day, token)
            self.is_running = False
            clear_pass_context()

    async def _deliver_all(self, reminders: list[PendingReminder], cancel_event: asyncio.Event):
        semaphore = asyncio.Semaphore(self.max_concurrency)
        store_failures: list[StoreUnavailable] = []

        async def _deliver_with_semaphore(reminder: PendingReminder):
            async with semaphore:
                if cancel_event.is_set() or store_failures:
                    self.job_metrics.record_not_attempted()
                    return
                try:
                    await self._deliver(reminder)
                except StoreUnavailable as e:
                    store_failures.append(e)

        await asyncio.gather(*(_deliver_with_semaphore(reminder) for reminder in reminders))

        if store_failures:
            raise store_failures[0]

    async def _deliver(self, reminder: PendingReminder):
        try:
            await self.transport.send(reminder.phone, reminder.rendered_body)
        except TransportError as e:
            self.job_metrics.record_transport_failure(reminder, str(e))
            return

        # The message is out; finish recording it even if the pass is cancelled
        await asyncio.shield(self._record(reminder))

    async def _record(self, reminder: PendingReminder):
        try:
            await self.scheduler.record_sent(
                reminder.contract_id,
                reminder.template_id,
                reminder.rendered_body,
                self.clock(),
                phone=reminder.phone,
                client_name=reminder.client_name,
            )
            self.job_metrics.record_sent(reminder)
        except DuplicateSendError:
            self.job_metrics.record_duplicate(reminder)
        except StoreUnavailable as e:
            self.job_metrics.record_record_failure(reminder, str(e))
            raise

    async def run_with_retry(
        self, day: date, cancel_event: asyncio.Event | None = None
    ) -> dict:
        """
        Run the pass, retrying with exponential backoff while a store is unavailable.

        Database errors that are not recoverable fail at once.

        Raises:
            ReminderPassError: all attempts failed, or the failure is permanent
        """
        cancel_event = cancel_event or asyncio.Event()
        for attempt in range(self.max_retries + 1):
            try:
                return await self.run_once(day, cancel_event)
            except (DatabaseError, ReminderPassError) as e:
                if not getattr(e, "recoverable", False) or attempt >= self.max_retries:
                    raise ReminderPassError(
                        f"Reminder pass for {day.isoformat()} failed "
                        f"after {attempt + 1} attempt(s): {e}",
                        operation="run_with_retry",
                        recoverable=False,
                    ) from e

                delay = self.retry_base_delay * (2**attempt)
                logger.warning(
                    "Reminder pass failed, retrying",
                    pass_date=day.isoformat(),
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=str(e),
                )
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                except TimeoutError:
                    continue
                return {"skipped": True, "reason": "cancelled", "pass_date": day.isoformat()}

        raise ReminderPassError("Reminder pass retry loop exhausted", operation="run_with_retry")

    def get_job_status(self) -> dict:
        return {
            "job_name": "reminder_pass",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "max_concurrency": self.max_concurrency,
            "max_retries": self.max_retries,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


def seconds_until_next_run(now: datetime, run_hour_utc: int) -> float:
    """Seconds from `now` to the next occurrence of `run_hour_utc`:00 UTC."""
    now = now.astimezone(UTC)
    next_run = now.replace(hour=run_hour_utc, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_reminder_scheduler_loop(
    job: ReminderPassJob, run_hour_utc: int, stop_event: asyncio.Event
) -> None:
    """
    Fire one pass per day at `run_hour_utc` until `stop_event` is set.

    A failed pass is logged and the loop waits for the next day; passes are
    never run back to back.
    """
    logger.info("Starting reminder scheduler", run_hour_utc=run_hour_utc)

    while not stop_event.is_set():
        delay = seconds_until_next_run(job.clock(), run_hour_utc)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            break
        except TimeoutError:
            pass

        day = job.clock().astimezone(UTC).date()
        try:
            metrics = await job.run_with_retry(day, stop_event)
            if not metrics.get("skipped", False):
                logger.info("Reminder scheduler cycle completed", **metrics)
        except ReminderPassError as e:
            logger.error("Reminder scheduler cycle failed", pass_date=day.isoformat(), error=str(e))
        except Exception as e:
            logger.error(
                "Unexpected error in reminder scheduler cycle",
                pass_date=day.isoformat(),
                error=str(e),
                error_type=type(e).__name__,
            )

    logger.info("Reminder scheduler stopped")


def build_reminder_pass_job(runtime: WorkerRuntime, config: Settings = settings) -> ReminderPassJob:
    """Wire repositories, transport and lock from an initialized runtime."""
    reminder_config = ReminderConfig.from_settings(config)
    scheduler = BillingReminderScheduler(
        ContractRepository(runtime.supabase_pool),
        TemplateRepository(runtime.supabase_pool),
        SendLogRepository(runtime.supabase_pool),
        reminder_config,
    )
    return ReminderPassJob(
        scheduler,
        runtime.transport,
        ReminderPassLock(runtime.redis, ttl_s=config.REMINDER_PASS_LOCK_TTL_SECONDS),
        max_concurrency=reminder_config.max_concurrency,
        max_retries=config.REMINDER_PASS_MAX_RETRIES,
        retry_base_delay=config.REMINDER_PASS_RETRY_BASE_DELAY,
    )


async def run_reminder_pass(
    day: date | None = None, dry_run: bool = False, config: Settings = settings
) -> dict:
    """Run one pass for `day` (today, UTC, by default)."""
    day = day or utc_today()

    async with worker_runtime(
        supabase=True, redis=not dry_run, transport=not dry_run, config=config
    ) as runtime:
        job = build_reminder_pass_job(runtime, config)
        stop_event = asyncio.Event()
        install_stop_signals(stop_event)

        if dry_run:
            return await job.run_once(day, stop_event, dry_run=True)
        return await job.run_with_retry(day, stop_event)


async def start_reminder_scheduler(config: Settings = settings) -> None:
    """Entry point for the daily reminder daemon."""
    async with worker_runtime(supabase=True, redis=True, transport=True, config=config) as runtime:
        job = build_reminder_pass_job(runtime, config)
        stop_event = asyncio.Event()
        install_stop_signals(stop_event)
        await run_reminder_scheduler_loop(job, config.REMINDER_RUN_HOUR_UTC, stop_event)


if __name__ == "__main__":
    asyncio.run(start_reminder_scheduler())
