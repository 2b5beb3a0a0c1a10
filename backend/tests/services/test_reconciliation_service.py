"""
对账任务测试
过期 / 自动完成、批量、幂等、单条失败隔离、完整生命周期、并发创建
"""
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, ProgrammingError
from sqlalchemy.orm import sessionmaker

from lockstay.models.events import EventType
from lockstay.models.ontology import Booking, BookingStatus, Hotel, Device, Room
from lockstay.services.booking_service import BookingService
from lockstay.services.ledger_service import ResourceLedger
from lockstay.services.reconciliation_service import (
    ReconciliationService, SweepResult, register_reconciliation_jobs,
    run_expire_job, run_complete_job, EXPIRE_JOB_ID, COMPLETE_JOB_ID,
)
from lockstay.services.errors import (
    ConflictError, InvalidTransitionError, StoreUnavailableError,
)


@pytest.fixture
def events():
    return []


@pytest.fixture
def reconciler(db_session, events):
    return ReconciliationService(db_session, event_publisher=events.append)


@pytest.fixture
def past():
    return (datetime.now() - timedelta(days=1)).replace(minute=0, second=0, microsecond=0)


def _status(db_session, booking_id):
    db_session.expire_all()
    return db_session.get(Booking, booking_id).status


class TestExpireSweep:

    def test_expires_overdue_paid(self, db_session, reconciler, room, device, add_booking, past):
        overdue = add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)

        result = reconciler.expire_overdue()

        assert result.expired == 1
        assert _status(db_session, overdue.id) == BookingStatus.EXPIRED
        assert ResourceLedger(db_session).available(device.id) == 2

    def test_ignores_future_and_verified(self, db_session, reconciler, room, add_booking, past, check_in_time):
        future = add_booking(room, check_in_time, check_in_time + timedelta(hours=2), BookingStatus.PAID)
        verified = add_booking(room, past, past + timedelta(hours=2), BookingStatus.VERIFIED)
        pending = add_booking(room, past + timedelta(hours=3), past + timedelta(hours=4),
                              BookingStatus.PENDING)

        result = reconciler.expire_overdue()

        assert result.expired == 0
        assert _status(db_session, future.id) == BookingStatus.PAID
        assert _status(db_session, verified.id) == BookingStatus.VERIFIED
        assert _status(db_session, pending.id) == BookingStatus.PENDING

    def test_respects_now(self, db_session, reconciler, room, add_booking, check_in_time):
        booking = add_booking(room, check_in_time, check_in_time + timedelta(hours=2), BookingStatus.PAID)

        assert reconciler.expire_overdue(now=check_in_time).expired == 0
        assert reconciler.expire_overdue(now=check_in_time + timedelta(minutes=1)).expired == 1
        assert _status(db_session, booking.id) == BookingStatus.EXPIRED

    def test_batch_size(self, reconciler, room, add_booking, past):
        for i in range(3):
            start = past + timedelta(hours=3 * i)
            add_booking(room, start, start + timedelta(hours=2), BookingStatus.PAID)

        assert reconciler.expire_overdue(now=datetime.now(), batch_size=2).expired == 2
        assert reconciler.expire_overdue(now=datetime.now(), batch_size=2).expired == 1

    def test_second_run_is_noop(self, reconciler, room, add_booking, past):
        add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)
        reconciler.expire_overdue()

        result = reconciler.expire_overdue()
        assert (result.expired, result.skipped, result.failed) == (0, 0, 0)


class TestCompleteSweep:

    @pytest.mark.parametrize("status", [BookingStatus.VERIFIED, BookingStatus.IN_USE])
    def test_completes_after_checkout(self, db_session, reconciler, room, device, add_booking, past, status):
        booking = add_booking(room, past, past + timedelta(hours=2), status)

        result = reconciler.complete_finished()

        assert result.completed == 1
        db_session.expire_all()
        done = db_session.get(Booking, booking.id)
        assert done.status == BookingStatus.COMPLETED
        assert done.completed_at is not None
        assert ResourceLedger(db_session).available(device.id) == 2

    def test_not_before_checkout(self, db_session, reconciler, room, add_booking, check_in_time):
        booking = add_booking(room, check_in_time, check_in_time + timedelta(hours=2), BookingStatus.IN_USE)

        assert reconciler.complete_finished(now=check_in_time + timedelta(hours=2)).completed == 0
        assert _status(db_session, booking.id) == BookingStatus.IN_USE

    def test_paid_is_not_completed(self, db_session, reconciler, room, add_booking, past):
        booking = add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)
        assert reconciler.complete_finished().completed == 0
        assert _status(db_session, booking.id) == BookingStatus.PAID


class TestFailureIsolation:

    def test_one_failure_does_not_stop_batch(self, db_session, reconciler, room, add_booking, past, monkeypatch):
        ids = []
        for i in range(3):
            start = past + timedelta(hours=3 * i)
            ids.append(add_booking(room, start, start + timedelta(hours=2), BookingStatus.PAID).id)

        real_expire = reconciler.bookings.expire

        def flaky_expire(booking_id):
            if booking_id == ids[1]:
                raise StoreUnavailableError()
            return real_expire(booking_id)

        monkeypatch.setattr(reconciler.bookings, "expire", flaky_expire)
        result = reconciler.expire_overdue()

        assert result.expired == 2
        assert result.failed == 1
        assert result.failures[0]["booking_id"] == ids[1]
        assert _status(db_session, ids[0]) == BookingStatus.EXPIRED
        assert _status(db_session, ids[1]) == BookingStatus.PAID
        assert _status(db_session, ids[2]) == BookingStatus.EXPIRED

    @pytest.mark.parametrize("error", [
        IntegrityError("UPDATE bookings", {}, Exception("constraint failed")),
        ProgrammingError("UPDATE bookings", {}, Exception("no such column")),
        RuntimeError("driver crashed"),
    ])
    def test_unexpected_error_does_not_stop_batch(self, db_session, reconciler, room, add_booking,
                                                  past, monkeypatch, error):
        ids = []
        for i in range(3):
            start = past + timedelta(hours=3 * i)
            ids.append(add_booking(room, start, start + timedelta(hours=2), BookingStatus.PAID).id)

        real_expire = reconciler.bookings.expire

        def broken_first(booking_id):
            if booking_id == ids[0]:
                raise error
            return real_expire(booking_id)

        monkeypatch.setattr(reconciler.bookings, "expire", broken_first)
        result = reconciler.expire_overdue()

        assert result.expired == 2
        assert result.failed == 1
        assert result.failures[0]["booking_id"] == ids[0]
        assert result.failures[0]["error"].startswith(type(error).__name__)
        assert _status(db_session, ids[0]) == BookingStatus.PAID
        assert _status(db_session, ids[1]) == BookingStatus.EXPIRED
        assert _status(db_session, ids[2]) == BookingStatus.EXPIRED

    def test_lost_race_counts_as_skipped(self, reconciler, room, add_booking, past, monkeypatch):
        booking = add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)

        def already_moved(booking_id):
            raise InvalidTransitionError(booking_id, BookingStatus.CANCELLED, "expired")

        monkeypatch.setattr(reconciler.bookings, "expire", already_moved)
        result = reconciler.expire_overdue()

        assert result.skipped == 1
        assert result.failed == 0
        assert result.failures == []

    def test_run_sweep_publishes_summary(self, reconciler, events, room, make_room, add_booking, past):
        _, _, other = make_room(room_no="505")
        add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)
        add_booking(other, past, past + timedelta(hours=2), BookingStatus.IN_USE)

        result = reconciler.run_sweep()

        assert (result.expired, result.completed) == (1, 1)
        summary = events[-1]
        assert summary.event_type == EventType.RECONCILIATION_FINISHED
        assert summary.data["expired"] == 1
        assert summary.data["completed"] == 1
        assert {e.event_type for e in events[:-1]} == {EventType.BOOKING_EXPIRED, EventType.BOOKING_COMPLETED}

    def test_sweep_result_merge(self):
        a = SweepResult(expired=1, failed=1, failures=[{"booking_id": 1, "error": "x"}])
        b = SweepResult(completed=2, skipped=1)
        merged = a.merge(b).to_dict()
        assert merged == {
            "expired": 1, "completed": 2, "skipped": 1, "failed": 1,
            "failures": [{"booking_id": 1, "error": "x"}],
        }


class TestLifecycle:

    def test_room_lifecycle_end_to_end(self, db_session, events, customer, staff, room, device, check_in_time):
        """房间 101：预订 [T, T+2h)，支付、前台核销、门锁开锁，T+3h 对账自动完成"""
        bookings = BookingService(db_session, event_publisher=events.append)
        reconciler = ReconciliationService(db_session, event_publisher=events.append)
        assert room.room_no == "101"

        booking = bookings.create_booking(customer.id, room.id, check_in_time, 2, amount=188)
        bookings.mark_paid(booking.order_id)
        assert ResourceLedger(db_session).available(device.id) == 0

        bookings.verify_by_code(booking.verification_code, staff.id)
        bookings.unlock_by_code(booking.unlock_code, device.id)

        # 入住时间到了但已核销，不会被过期
        result = reconciler.run_sweep(now=check_in_time + timedelta(minutes=30))
        assert (result.expired, result.completed) == (0, 0)

        result = reconciler.run_sweep(now=check_in_time + timedelta(hours=3))
        assert result.completed == 1

        db_session.expire_all()
        assert db_session.get(Booking, booking.id).status == BookingStatus.COMPLETED
        assert ResourceLedger(db_session).available(device.id) == 1
        assert [e.event_type for e in events if e.event_type != EventType.RECONCILIATION_FINISHED] == [
            EventType.BOOKING_CREATED, EventType.BOOKING_PAID, EventType.BOOKING_VERIFIED,
            EventType.BOOKING_UNLOCKED, EventType.BOOKING_COMPLETED,
        ]

        # 同一时段可以再次预订
        again = bookings.create_booking(customer.id, room.id, check_in_time, 2)
        assert again.status == BookingStatus.PENDING


class TestConcurrentCreate:

    def test_one_winner_per_interval(self, file_session_factory, check_in_time):
        setup = file_session_factory()
        hotel = Hotel(name="并发酒店")
        setup.add(hotel)
        setup.commit()
        device = Device(device_no="LOCK-CC", name="门锁", slot_count=1, available_slots=1)
        setup.add(device)
        setup.commit()
        room = Room(hotel_id=hotel.id, room_no="101", device_id=device.id)
        setup.add(room)
        setup.commit()
        room_id = room.id
        setup.close()

        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker(user_id):
            db = file_session_factory()
            try:
                service = BookingService(db, event_publisher=lambda event: None)
                barrier.wait()
                try:
                    service.create_booking(user_id, room_id, check_in_time, 2)
                    outcome = "ok"
                except ConflictError:
                    outcome = "conflict"
                with outcomes_lock:
                    outcomes.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in range(1, workers + 1)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == workers - 1

        check = file_session_factory()
        assert check.query(Booking).filter(Booking.room_id == room_id).count() == 1
        check.close()


class TestJobs:

    def test_register_jobs(self):
        backend = MagicMock()
        register_reconciliation_jobs(backend, interval_seconds=30)

        job_ids = [c.args[0] for c in backend.add_job.call_args_list]
        assert job_ids == [EXPIRE_JOB_ID, COMPLETE_JOB_ID]
        for c in backend.add_job.call_args_list:
            assert c.args[2] == "interval"
            assert c.kwargs["seconds"] == 30
            assert c.kwargs["max_instances"] == 1

    def test_job_entrypoints_use_own_session(self, db_engine, db_session, room, add_booking, past):
        expired = add_booking(room, past, past + timedelta(hours=2), BookingStatus.PAID)
        finished = add_booking(room, past + timedelta(hours=3), past + timedelta(hours=5),
                               BookingStatus.VERIFIED)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

        assert run_expire_job(factory).expired == 1
        assert run_complete_job(factory).completed == 1

        assert _status(db_session, expired.id) == BookingStatus.EXPIRED
        assert _status(db_session, finished.id) == BookingStatus.COMPLETED
