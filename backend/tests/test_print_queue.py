"""Tests for the durable print job queue."""

from datetime import timedelta

import pytest

from app.core.exceptions import Conflict, InvalidState, NotFound, ValidationError
from app.models.printer import PrintJobStatus, PrintType
from app.services.print_queue_service import (
    CANCELLED,
    INTERRUPTED,
    PRINTER_REMOVED,
    PrintJobQueue,
    backoff_delay,
)
from app.services.printer_registry_service import PrinterRegistry


@pytest.fixture
def notified():
    return []


@pytest.fixture
def queue(db_session, clock, notified):
    return PrintJobQueue(db_session, clock=clock, notifier=notified.append, max_attempts=3)


def _fail_once(queue, job_id, error="Connection refused"):
    queue.mark_printing(job_id)
    return queue.mark_failed(job_id, error)


# ============== Enqueue ==============

class TestEnqueue:

    def test_enqueue(self, queue, guest_order, kitchen_printer, notified, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, "kitchen_ticket")

        assert job.status == PrintJobStatus.QUEUED
        assert job.print_type == PrintType.KITCHEN_TICKET
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.restaurant_id == guest_order.restaurant_id
        assert job.created_at == clock.now()
        assert notified == [kitchen_printer.id]

    def test_unknown_order(self, queue, kitchen_printer):
        with pytest.raises(NotFound):
            queue.enqueue(31337, kitchen_printer.id, PrintType.RECEIPT)

    def test_printer_of_another_restaurant(self, queue, guest_order, make_printer, other_restaurant):
        foreign = make_printer(restaurant_id=other_restaurant.id)
        with pytest.raises(NotFound):
            queue.enqueue(guest_order.id, foreign.id, PrintType.RECEIPT)

    def test_disabled_printer(self, queue, guest_order, make_printer):
        printer = make_printer(enabled=False)
        with pytest.raises(Conflict):
            queue.enqueue(guest_order.id, printer.id, PrintType.RECEIPT)

    def test_invalid_print_type(self, queue, guest_order, kitchen_printer):
        with pytest.raises(ValidationError):
            queue.enqueue(guest_order.id, kitchen_printer.id, "poster")


# ============== Claiming ==============

class TestDequeue:

    def test_fifo_per_printer(self, queue, guest_order, kitchen_printer, make_printer, clock):
        other = make_printer(name="Bar")
        first = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        clock.advance(1)
        queue.enqueue(guest_order.id, other.id, PrintType.KITCHEN_TICKET)
        clock.advance(1)
        third = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.RECEIPT)

        assert queue.dequeue_next(kitchen_printer.id).id == first.id
        queue.mark_printing(first.id)
        queue.mark_completed(first.id)
        assert queue.dequeue_next(kitchen_printer.id).id == third.id

    def test_empty_queue(self, queue, kitchen_printer):
        assert queue.dequeue_next(kitchen_printer.id) is None

    def test_claim_sets_started_at(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        claimed = queue.mark_printing(job.id)

        assert claimed.status == PrintJobStatus.PRINTING
        assert claimed.started_at == clock.now()

    def test_job_is_claimed_once(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)

        with pytest.raises(InvalidState):
            queue.mark_printing(job.id)

    def test_one_printing_job_per_printer(self, queue, guest_order, kitchen_printer, make_printer):
        first = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        second = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.RECEIPT)
        elsewhere = queue.enqueue(guest_order.id, make_printer(name="Bar").id, PrintType.RECEIPT)
        queue.mark_printing(first.id)

        with pytest.raises(InvalidState):
            queue.mark_printing(second.id)
        assert queue.mark_printing(elsewhere.id).status == PrintJobStatus.PRINTING

    def test_complete_counts_the_attempt(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)
        clock.advance(3)

        done = queue.mark_completed(job.id)

        assert done.status == PrintJobStatus.COMPLETED
        assert done.attempts == 1
        assert done.completed_at == clock.now()

    def test_complete_requires_printing(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        with pytest.raises(InvalidState):
            queue.mark_completed(job.id)


# ============== Retry and backoff ==============

class TestBackoff:

    @pytest.mark.parametrize("attempts,expected", [(1, 2), (2, 4), (3, 8), (5, 32), (6, 60), (10, 60)])
    def test_backoff_delay(self, attempts, expected):
        assert backoff_delay(attempts, base=2, cap=60) == expected

    def test_failure_requeues_with_backoff(self, queue, guest_order, kitchen_printer, clock, notified):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)

        failed_once = _fail_once(queue, job.id)

        assert failed_once.status == PrintJobStatus.QUEUED
        assert failed_once.attempts == 1
        assert failed_once.not_before == clock.now() + timedelta(seconds=2)
        assert queue.next_due_at(kitchen_printer.id) == failed_once.not_before

    def test_job_under_backoff_is_skipped(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        clock.advance(1)
        later = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.RECEIPT)
        _fail_once(queue, job.id)

        assert queue.dequeue_next(kitchen_printer.id).id == later.id

        queue.mark_printing(later.id)
        queue.mark_completed(later.id)
        assert queue.dequeue_next(kitchen_printer.id) is None

        clock.advance(2)
        assert queue.dequeue_next(kitchen_printer.id).id == job.id

    def test_settles_in_failed_after_max_attempts(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)

        for expected_attempts in (1, 2):
            result = _fail_once(queue, job.id)
            assert result.status == PrintJobStatus.QUEUED
            assert result.attempts == expected_attempts
            clock.advance(backoff_delay(expected_attempts, 2, 60))

        result = _fail_once(queue, job.id, error="Printer on fire")

        assert result.status == PrintJobStatus.FAILED
        assert result.attempts == result.max_attempts == 3
        assert result.error == "Printer on fire"
        assert result.not_before is None
        assert queue.dequeue_next(kitchen_printer.id) is None

    def test_backoff_grows(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)

        first = _fail_once(queue, job.id)
        assert first.not_before - clock.now() == timedelta(seconds=2)
        clock.advance(2)
        second = _fail_once(queue, job.id)
        assert second.not_before - clock.now() == timedelta(seconds=4)


# ============== Operator actions ==============

class TestOperatorActions:

    def _exhaust(self, queue, job, clock):
        for _ in range(job.max_attempts):
            result = _fail_once(queue, job.id)
            clock.advance(60)
        return result

    def test_retry_failed_job(self, queue, guest_order, kitchen_printer, clock, notified):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        assert self._exhaust(queue, job, clock).status == PrintJobStatus.FAILED
        notified.clear()

        retried = queue.retry(job.id, restaurant_id=guest_order.restaurant_id)

        assert retried.status == PrintJobStatus.QUEUED
        assert retried.attempts == 3
        assert retried.error is None
        assert notified == [kitchen_printer.id]

        # one more attempt is allowed after a manual retry
        assert _fail_once(queue, job.id).status == PrintJobStatus.FAILED

    def test_retry_after_printer_deleted(self, queue, db_session, clock, guest_order, kitchen_printer, make_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        old_printer_id = kitchen_printer.id
        PrinterRegistry(db_session, clock=clock).delete(guest_order.restaurant_id, old_printer_id)
        assert queue.get(job.id).error == PRINTER_REMOVED

        replacement = make_printer(name="Unrelated")

        assert replacement.id != old_printer_id
        with pytest.raises(NotFound):
            queue.retry(job.id, restaurant_id=guest_order.restaurant_id)
        assert queue.get(job.id).status == PrintJobStatus.FAILED
        assert queue.dequeue_next(replacement.id) is None

    def test_retry_on_disabled_printer(self, queue, db_session, clock, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        self._exhaust(queue, job, clock)
        kitchen_printer.enabled = False
        db_session.commit()

        with pytest.raises(Conflict):
            queue.retry(job.id)
        assert queue.get(job.id).status == PrintJobStatus.FAILED

    def test_in_flight_job_of_deleted_printer_fails(self, queue, db_session, guest_order, kitchen_printer, make_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)
        db_session.delete(kitchen_printer)
        db_session.commit()
        make_printer(name="Unrelated")

        settled = queue.mark_failed(job.id, "Connection reset")

        assert settled.status == PrintJobStatus.FAILED
        assert settled.error == PRINTER_REMOVED

    def test_retry_only_failed(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        with pytest.raises(InvalidState):
            queue.retry(job.id)

    def test_retry_scoped_to_restaurant(self, queue, guest_order, kitchen_printer, other_restaurant):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        with pytest.raises(NotFound):
            queue.retry(job.id, restaurant_id=other_restaurant.id)

    def test_cancel_queued_job(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)

        cancelled = queue.cancel(job.id)

        assert cancelled.status == PrintJobStatus.FAILED
        assert cancelled.error == CANCELLED
        assert queue.dequeue_next(kitchen_printer.id) is None

    def test_cancel_printing_job_stops_retries(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)

        flagged = queue.cancel(job.id)
        assert flagged.status == PrintJobStatus.PRINTING
        assert flagged.cancel_requested is True

        settled = queue.mark_failed(job.id, "Connection reset")
        assert settled.status == PrintJobStatus.FAILED
        assert settled.error == CANCELLED
        assert settled.attempts == 1

    def test_cancel_completed_job(self, queue, guest_order, kitchen_printer):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)
        queue.mark_completed(job.id)

        with pytest.raises(InvalidState):
            queue.cancel(job.id)

    def test_cancel_for_order(self, queue, make_order, kitchen_printer):
        order = make_order()
        other_order = make_order()
        printing = queue.enqueue(order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queued = queue.enqueue(order.id, kitchen_printer.id, PrintType.RECEIPT)
        untouched = queue.enqueue(other_order.id, kitchen_printer.id, PrintType.RECEIPT)
        queue.mark_printing(printing.id)

        assert queue.cancel_for_order(order.id) == 1

        assert queue.get(queued.id).status == PrintJobStatus.FAILED
        assert queue.get(printing.id).cancel_requested is True
        assert queue.get(untouched.id).status == PrintJobStatus.QUEUED

    def test_list_queue_newest_first(self, queue, guest_order, kitchen_printer, clock):
        first = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        clock.advance(5)
        second = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.RECEIPT)

        jobs = queue.list_queue(guest_order.restaurant_id)

        assert [job.id for job in jobs] == [second.id, first.id]

    def test_purge_completed(self, queue, guest_order, kitchen_printer, clock):
        old = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(old.id)
        queue.mark_completed(old.id)
        clock.advance(3600 * 25)
        recent = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.RECEIPT)
        queue.mark_printing(recent.id)
        queue.mark_completed(recent.id)
        pending = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.LABEL)

        deleted = queue.purge_completed(guest_order.restaurant_id, timedelta(hours=24))

        assert deleted == 1
        remaining = {job.id for job in queue.list_queue(guest_order.restaurant_id)}
        assert remaining == {recent.id, pending.id}


# ============== Recovery ==============

class TestReclaimStale:

    def test_stale_printing_job_is_requeued(self, queue, guest_order, kitchen_printer, clock, notified):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)
        clock.advance(121)
        notified.clear()

        assert queue.reclaim_stale(timedelta(seconds=120)) == 1

        reclaimed = queue.get(job.id)
        assert reclaimed.status == PrintJobStatus.QUEUED
        assert reclaimed.attempts == 1
        assert notified == [kitchen_printer.id]

    def test_recent_printing_job_is_left_alone(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        queue.mark_printing(job.id)
        clock.advance(30)

        assert queue.reclaim_stale(timedelta(seconds=120)) == 0
        assert queue.get(job.id).status == PrintJobStatus.PRINTING

    def test_stale_job_on_last_attempt_fails(self, queue, guest_order, kitchen_printer, clock):
        job = queue.enqueue(guest_order.id, kitchen_printer.id, PrintType.KITCHEN_TICKET)
        for _ in range(2):
            _fail_once(queue, job.id)
            clock.advance(60)
        queue.mark_printing(job.id)
        clock.advance(300)

        queue.reclaim_stale(timedelta(seconds=120))

        settled = queue.get(job.id)
        assert settled.status == PrintJobStatus.FAILED
        assert settled.attempts == 3
        assert settled.error == INTERRUPTED
