"""Print dispatcher.

One asyncio worker per enabled printer delivers that printer's jobs one at a
time: claim the oldest due job, render it, send it over the printer's
transport and record the outcome. Workers sleep on an ``asyncio.Event`` that
is set when a job is queued for their printer, and otherwise wake on a poll
tick or when the earliest backoff expires.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, system_clock
from app.core.config import settings
from app.core.exceptions import InvalidState, TransportError
from app.models.order import Order
from app.models.printer import Printer, PrinterStatus, PrintJob, PrintType
from app.models.restaurant import Restaurant
from app.services.print_queue_service import PrintJobQueue
from app.services.printer_service import PrintSettings, render_print_job
from app.services.printer_transport import PrinterTransport, transport_for_printer

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    SENDING = "sending"


Renderer = Callable[[Order, PrintType, PrintSettings, str], bytes]
DbRunner = Callable[..., Awaitable[Any]]


async def run_in_thread(func: Callable[..., Any], *args: Any) -> Any:
    """Blocking session work goes to a thread so other printers' workers keep running."""
    return await asyncio.to_thread(func, *args)


async def run_inline(func: Callable[..., Any], *args: Any) -> Any:
    """On the loop thread; for engines whose single connection cannot be shared across threads."""
    return func(*args)


def default_renderer(order: Order, print_type: PrintType, print_settings: PrintSettings, restaurant_name: str) -> bytes:
    return render_print_job(order, print_type, print_settings, restaurant_name=restaurant_name)


class PrintDispatcher:
    """Runs per-printer delivery workers.

    All database work happens in short sessions that are closed before the
    transport is awaited, and runs through ``db_runner`` (a worker thread by
    default).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Clock = system_clock,
        transport_factory: Callable[[Printer], PrinterTransport] = transport_for_printer,
        renderer: Renderer = default_renderer,
        send_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        stale_after: Optional[timedelta] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        db_runner: DbRunner = run_in_thread,
    ):
        self.session_factory = session_factory
        self.run_db = db_runner
        self.clock = clock
        self.transport_factory = transport_factory
        self.renderer = renderer
        self.send_timeout = send_timeout or settings.print_send_timeout_seconds
        self.poll_interval = poll_interval or settings.print_dispatcher_poll_seconds
        self.stale_after = stale_after or timedelta(seconds=settings.print_stale_job_seconds)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

        self.running = False
        self.workers: Dict[int, asyncio.Task] = {}
        self.states: Dict[int, WorkerState] = {}
        self._wake: Dict[int, asyncio.Event] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._resyncs: set = set()

    def _queue(self, db: Session) -> PrintJobQueue:
        return PrintJobQueue(
            db, clock=self.clock,
            backoff_base=self.backoff_base, backoff_cap=self.backoff_cap,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Reclaim stale jobs, then start a worker for every enabled printer."""
        if self.running:
            return

        self.running = True
        self._loop = asyncio.get_running_loop()

        await self.run_db(self._reclaim_stale)
        self.sync_workers(await self.run_db(self._enabled_printer_ids))
        self._supervisor = asyncio.create_task(self._supervise())
        logger.info(f"Print dispatcher started with {len(self.workers)} printer worker(s)")

    async def stop(self) -> None:
        """Cancel all workers.

        A job interrupted mid-send stays ``printing`` and is reclaimed by the
        recovery sweep of the next start.
        """
        self.running = False
        tasks = list(self.workers.values()) + list(self._resyncs)
        if self._supervisor is not None:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.workers.clear()
        self.states.clear()
        self._wake.clear()
        self._supervisor = None
        logger.info("Print dispatcher stopped")

    def notify(self, printer_id: int) -> None:
        """Wake the printer's worker. Safe to call from any thread."""
        if not self.running or self._loop is None:
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self._loop:
            self._wake_printer(printer_id)
        else:
            self._loop.call_soon_threadsafe(self._wake_printer, printer_id)

    def _wake_printer(self, printer_id: int) -> None:
        event = self._wake.get(printer_id)
        if event is not None:
            event.set()
        else:
            task = asyncio.ensure_future(self._resync())
            self._resyncs.add(task)
            task.add_done_callback(self._resyncs.discard)

    def _reclaim_stale(self) -> int:
        with self.session_factory() as db:
            return self._queue(db).reclaim_stale(self.stale_after)

    def _enabled_printer_ids(self) -> List[int]:
        with self.session_factory() as db:
            return [row[0] for row in db.query(Printer.id).filter(Printer.enabled.is_(True)).all()]

    async def _resync(self) -> None:
        try:
            self.sync_workers(await self.run_db(self._enabled_printer_ids))
        except Exception as e:
            logger.error(f"Print dispatcher could not refresh its workers: {e}", exc_info=True)

    def sync_workers(self, printer_ids: List[int]) -> None:
        """Start workers for the given enabled printers that have none."""
        if not self.running:
            return
        for printer_id in printer_ids:
            task = self.workers.get(printer_id)
            if task is None or task.done():
                self._wake[printer_id] = asyncio.Event()
                self.states[printer_id] = WorkerState.IDLE
                self.workers[printer_id] = asyncio.create_task(
                    self._run_printer(printer_id), name=f"printer-{printer_id}"
                )
                logger.info(f"Started print worker for printer {printer_id}")

    async def _supervise(self) -> None:
        """Pick up printers added or re-enabled without a notification."""
        while self.running:
            await asyncio.sleep(self.poll_interval)
            await self._resync()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _printer_enabled(self, printer_id: int) -> bool:
        with self.session_factory() as db:
            printer = db.get(Printer, printer_id)
            return printer is not None and printer.enabled

    def _seconds_until_due(self, printer_id: int) -> float:
        with self.session_factory() as db:
            due = self._queue(db).next_due_at(printer_id)
        if due is None:
            return self.poll_interval
        remaining = (due - self.clock.now()).total_seconds()
        return min(max(remaining, 0.0), self.poll_interval)

    async def _run_printer(self, printer_id: int) -> None:
        wake = self._wake[printer_id]
        logger.debug(f"Print worker for printer {printer_id} running")

        while self.running:
            try:
                if not await self.run_db(self._printer_enabled, printer_id):
                    logger.info(f"Printer {printer_id} disabled or removed; stopping its worker")
                    break

                wake.clear()
                job = await self.process_next(printer_id)
                if job is not None:
                    continue

                idle_for = await self.run_db(self._seconds_until_due, printer_id)
                try:
                    await asyncio.wait_for(wake.wait(), timeout=idle_for)
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Print worker for printer {printer_id} error: {e}", exc_info=True)
                await asyncio.sleep(1.0)

        self.states.pop(printer_id, None)
        self._wake.pop(printer_id, None)
        self.workers.pop(printer_id, None)

    def _claim(self, printer_id: int) -> Optional[int]:
        with self.session_factory() as db:
            queue = self._queue(db)
            job = queue.dequeue_next(printer_id)
            if job is None:
                return None
            try:
                return queue.mark_printing(job.id).id
            except InvalidState:
                logger.debug(f"Print job {job.id} was taken or changed before it could be claimed")
                return None

    def _render(self, job_id: int):
        """Load what the send needs: payload and transport."""
        with self.session_factory() as db:
            job = db.get(PrintJob, job_id)
            order = db.get(Order, job.order_id)
            printer = db.get(Printer, job.printer_id)
            if printer is None:
                raise TransportError(f"Printer {job.printer_id} no longer exists")
            restaurant = db.get(Restaurant, order.restaurant_id)
            print_settings = PrintSettings.from_dict(restaurant.print_settings if restaurant else None)
            payload = self.renderer(order, job.print_type, print_settings, restaurant.name if restaurant else "")
            return payload, self.transport_factory(printer)

    def _record(self, job_id: int, printer_id: int, error: Optional[str]) -> PrintJob:
        with self.session_factory() as db:
            queue = self._queue(db)
            if error is None:
                job = queue.mark_completed(job_id)
                status = PrinterStatus.ONLINE
            else:
                job = queue.mark_failed(job_id, error)
                status = PrinterStatus.ERROR

            printer = db.get(Printer, printer_id)
            if printer is not None:
                printer.status = status
                printer.last_checked = self.clock.now()
                db.commit()
            job = queue.get(job_id)
            db.expunge(job)
            return job

    async def process_next(self, printer_id: int) -> Optional[PrintJob]:
        """Run one claim, render, send, record cycle for a printer.

        Returns the job in its recorded state, or None when nothing was due.
        """
        self.states[printer_id] = WorkerState.CLAIMING
        try:
            job_id = await self.run_db(self._claim, printer_id)
            if job_id is None:
                return None

            self.states[printer_id] = WorkerState.SENDING
            error = None
            try:
                payload, transport = await self.run_db(self._render, job_id)
                await transport.send(payload, self.send_timeout)
            except TransportError as e:
                error = e.message
            except Exception as e:
                logger.error(f"Unexpected error delivering print job {job_id}: {e}", exc_info=True)
                error = str(e) or e.__class__.__name__

            return await self.run_db(self._record, job_id, printer_id, error)
        finally:
            self.states[printer_id] = WorkerState.IDLE

    def get_stats(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "workers": {pid: self.states.get(pid, WorkerState.IDLE).value for pid in self.workers},
        }


# Singleton dispatcher, set by the application lifespan
_dispatcher: Optional[PrintDispatcher] = None


def get_dispatcher() -> Optional[PrintDispatcher]:
    return _dispatcher


def set_dispatcher(dispatcher: Optional[PrintDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def notify_printer(printer_id: int) -> None:
    """Wake the running dispatcher's worker for a printer, if there is one."""
    if _dispatcher is not None:
        _dispatcher.notify(printer_id)
