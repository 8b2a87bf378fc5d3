"""Durable print job queue.

Jobs are rows in ``print_jobs``. Every status change is a compare-and-set
``UPDATE ... WHERE status = :expected`` so a job is claimed at most once and
a printer never has two jobs ``printing`` at the same time.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from app.core.clock import Clock, system_clock
from app.core.config import settings
from app.core.exceptions import Conflict, InvalidState, NotFound, ValidationError
from app.models.order import Order
from app.models.printer import Printer, PrintJob, PrintJobStatus, PrintType

logger = logging.getLogger(__name__)

PRINTER_REMOVED = "printer removed"
CANCELLED = "cancelled"
INTERRUPTED = "print dispatch interrupted"


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Seconds to wait before the next attempt: base, 2*base, 4*base ... capped."""
    return min(base * (2 ** max(attempts - 1, 0)), cap)


def coerce_print_type(value: Union[PrintType, str]) -> PrintType:
    if isinstance(value, PrintType):
        return value
    try:
        return PrintType(value)
    except ValueError:
        raise ValidationError([f"Invalid print type: {value}"])


class PrintJobQueue:
    """Queue operations over ``PrintJob`` rows.

    ``notifier`` is called with the printer id whenever a job becomes
    ready, so the dispatcher can wake that printer's worker.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        notifier: Optional[Callable[[int], None]] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.max_attempts = max_attempts or settings.print_max_attempts
        self.backoff_base = settings.print_backoff_base_seconds if backoff_base is None else backoff_base
        self.backoff_cap = settings.print_backoff_max_seconds if backoff_cap is None else backoff_cap

    def _notify(self, printer_id: int) -> None:
        if self.notifier is not None:
            self.notifier(printer_id)

    def _set_status(self, job_id: int, expected: PrintJobStatus, **values) -> bool:
        result = self.db.execute(
            update(PrintJob)
            .where(PrintJob.id == job_id, PrintJob.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get(self, job_id: int, restaurant_id: Optional[int] = None) -> PrintJob:
        job = self.db.get(PrintJob, job_id, populate_existing=True)
        if job is None or (restaurant_id is not None and job.restaurant_id != restaurant_id):
            raise NotFound(f"Print job {job_id} not found")
        return job

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, order_id: int, printer_id: int, print_type: Union[PrintType, str]) -> PrintJob:
        print_type = coerce_print_type(print_type)

        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        printer = self.db.get(Printer, printer_id)
        if printer is None or printer.restaurant_id != order.restaurant_id:
            raise NotFound(f"Printer {printer_id} not found")
        if not printer.enabled:
            raise Conflict(f"Printer {printer.name} is disabled")

        job = PrintJob(
            restaurant_id=order.restaurant_id,
            order_id=order.id,
            printer_id=printer.id,
            print_type=print_type,
            status=PrintJobStatus.QUEUED,
            attempts=0,
            max_attempts=self.max_attempts,
            created_at=self.clock.now(),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)

        logger.info(f"Queued {print_type.value} job {job.id} for order {order_id} on printer {printer_id}")
        self._notify(printer.id)
        return job

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue_next(self, printer_id: int) -> Optional[PrintJob]:
        """Oldest queued job of the printer that is not waiting out a backoff."""
        now = self.clock.now()
        return (
            self.db.query(PrintJob)
            .filter(
                PrintJob.printer_id == printer_id,
                PrintJob.status == PrintJobStatus.QUEUED,
                or_(PrintJob.not_before.is_(None), PrintJob.not_before <= now),
            )
            .order_by(PrintJob.created_at, PrintJob.id)
            .first()
        )

    def next_due_at(self, printer_id: int) -> Optional[datetime]:
        """Earliest backoff deadline among the printer's queued jobs."""
        return self.db.execute(
            select(func.min(PrintJob.not_before)).where(
                PrintJob.printer_id == printer_id,
                PrintJob.status == PrintJobStatus.QUEUED,
                PrintJob.not_before.is_not(None),
            )
        ).scalar()

    def mark_printing(self, job_id: int) -> PrintJob:
        """Claim a queued job. Refused while the printer has another job printing."""
        job = self.get(job_id)
        other = aliased(PrintJob)
        printer_busy = (
            select(other.id)
            .where(other.printer_id == job.printer_id, other.status == PrintJobStatus.PRINTING)
            .exists()
        )
        result = self.db.execute(
            update(PrintJob)
            .where(
                PrintJob.id == job_id,
                PrintJob.status == PrintJobStatus.QUEUED,
                ~printer_busy,
            )
            .values(status=PrintJobStatus.PRINTING, started_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidState(f"Print job {job_id} cannot be claimed")
        self.db.commit()
        return self.get(job_id)

    def mark_completed(self, job_id: int) -> PrintJob:
        job = self.get(job_id)
        if not self._set_status(
            job_id,
            PrintJobStatus.PRINTING,
            status=PrintJobStatus.COMPLETED,
            attempts=job.attempts + 1,
            completed_at=self.clock.now(),
            not_before=None,
            error=None,
        ):
            self.db.rollback()
            raise InvalidState(f"Print job {job_id} is not printing")
        self.db.commit()
        logger.info(f"Print job {job_id} completed on printer {job.printer_id}")
        return self.get(job_id)

    def _record_failure(self, job: PrintJob, error: str) -> bool:
        """Count a failed attempt; re-queue with backoff or settle in ``failed``."""
        attempts = job.attempts + 1
        printer_gone = self.db.get(Printer, job.printer_id) is None

        if job.cancel_requested:
            terminal_error = CANCELLED
        elif printer_gone:
            terminal_error = PRINTER_REMOVED
        elif attempts >= job.max_attempts:
            terminal_error = error
        else:
            terminal_error = None

        if terminal_error is not None:
            return self._set_status(
                job.id,
                PrintJobStatus.PRINTING,
                status=PrintJobStatus.FAILED,
                attempts=attempts,
                error=terminal_error,
                not_before=None,
            )

        delay = backoff_delay(attempts, self.backoff_base, self.backoff_cap)
        requeued = self._set_status(
            job.id,
            PrintJobStatus.PRINTING,
            status=PrintJobStatus.QUEUED,
            attempts=attempts,
            error=None,
            not_before=self.clock.now() + timedelta(seconds=delay),
        )
        if requeued:
            logger.warning(
                f"Print job {job.id} attempt {attempts}/{job.max_attempts} failed: {error}; "
                f"retrying in {delay:g}s"
            )
        return requeued

    def mark_failed(self, job_id: int, error: str) -> PrintJob:
        job = self.get(job_id)
        if job.status != PrintJobStatus.PRINTING or not self._record_failure(job, error):
            self.db.rollback()
            raise InvalidState(f"Print job {job_id} is not printing")
        self.db.commit()

        job = self.get(job_id)
        if job.status == PrintJobStatus.FAILED:
            logger.error(f"Print job {job_id} failed after {job.attempts} attempt(s): {job.error}")
        return job

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def retry(self, job_id: int, restaurant_id: Optional[int] = None) -> PrintJob:
        """Put a failed job back in the queue. ``attempts`` is kept as history.

        The job's printer must still exist and be enabled, as for ``enqueue``.
        """
        job = self.get(job_id, restaurant_id)
        if job.status == PrintJobStatus.FAILED:
            printer = self.db.get(Printer, job.printer_id)
            if printer is None or printer.restaurant_id != job.restaurant_id:
                raise NotFound(f"Printer {job.printer_id} of print job {job_id} no longer exists")
            if not printer.enabled:
                raise Conflict(f"Printer {printer.name} is disabled")
        if not self._set_status(
            job_id,
            PrintJobStatus.FAILED,
            status=PrintJobStatus.QUEUED,
            error=None,
            not_before=None,
            completed_at=None,
            cancel_requested=False,
        ):
            self.db.rollback()
            raise InvalidState(f"Only failed jobs can be retried (job {job_id} is {job.status.value})")
        self.db.commit()
        logger.info(f"Print job {job_id} re-queued by operator")
        self._notify(job.printer_id)
        return self.get(job_id)

    def cancel(self, job_id: int, restaurant_id: Optional[int] = None) -> PrintJob:
        """Cancel a queued job.

        A job already printing is only flagged; the in-flight attempt runs to
        its end and the job does not retry afterwards.
        """
        job = self.get(job_id, restaurant_id)
        if job.status == PrintJobStatus.QUEUED and self._set_status(
            job_id, PrintJobStatus.QUEUED,
            status=PrintJobStatus.FAILED, error=CANCELLED, not_before=None,
        ):
            self.db.commit()
            logger.info(f"Print job {job_id} cancelled")
            return self.get(job_id)

        job = self.get(job_id)
        if job.status == PrintJobStatus.PRINTING and self._set_status(
            job_id, PrintJobStatus.PRINTING, cancel_requested=True,
        ):
            self.db.commit()
            logger.info(f"Print job {job_id} is printing; cancellation requested")
            return self.get(job_id)

        self.db.rollback()
        raise InvalidState(f"Print job {job_id} is {job.status.value} and cannot be cancelled")

    def cancel_for_order(self, order_id: int) -> int:
        """Cancel every queued job of an order; flag the ones printing."""
        cancelled = self.db.execute(
            update(PrintJob)
            .where(PrintJob.order_id == order_id, PrintJob.status == PrintJobStatus.QUEUED)
            .values(status=PrintJobStatus.FAILED, error=CANCELLED, not_before=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.execute(
            update(PrintJob)
            .where(PrintJob.order_id == order_id, PrintJob.status == PrintJobStatus.PRINTING)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if cancelled:
            logger.info(f"Cancelled {cancelled} queued print job(s) for order {order_id}")
        return cancelled

    def fail_queued_for_printer(self, printer_id: int, reason: str = PRINTER_REMOVED) -> int:
        """Fail every queued job of a printer. The caller commits."""
        return self.db.execute(
            update(PrintJob)
            .where(PrintJob.printer_id == printer_id, PrintJob.status == PrintJobStatus.QUEUED)
            .values(status=PrintJobStatus.FAILED, error=reason, not_before=None)
            .execution_options(synchronize_session=False)
        ).rowcount

    def reclaim_stale(self, older_than: timedelta) -> int:
        """Recover jobs left ``printing`` by a dispatcher that went away.

        Each counts as a failed attempt, so it is re-queued or settles in
        ``failed`` when attempts are exhausted.
        """
        cutoff = self.clock.now() - older_than
        stale = (
            self.db.query(PrintJob)
            .filter(
                PrintJob.status == PrintJobStatus.PRINTING,
                or_(PrintJob.started_at.is_(None), PrintJob.started_at < cutoff),
            )
            .all()
        )
        reclaimed = sum(1 for job in stale if self._record_failure(job, INTERRUPTED))
        self.db.commit()
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} stale print job(s)")
            for printer_id in {job.printer_id for job in stale}:
                self._notify(printer_id)
        return reclaimed

    def list_queue(self, restaurant_id: int) -> List[PrintJob]:
        """All jobs of the restaurant, newest first."""
        return (
            self.db.query(PrintJob)
            .filter(PrintJob.restaurant_id == restaurant_id)
            .order_by(PrintJob.created_at.desc(), PrintJob.id.desc())
            .all()
        )

    def purge_completed(self, restaurant_id: int, older_than: timedelta) -> int:
        cutoff = self.clock.now() - older_than
        deleted = self.db.execute(
            delete(PrintJob)
            .where(
                PrintJob.restaurant_id == restaurant_id,
                PrintJob.status == PrintJobStatus.COMPLETED,
                PrintJob.completed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        logger.info(f"Purged {deleted} completed print job(s) for restaurant {restaurant_id}")
        return deleted
