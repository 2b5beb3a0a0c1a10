"""
计数账本单元测试
槽位 / 优惠券 / 佣金的条件更新
"""
import threading
from decimal import Decimal

import pytest

from lockstay.models.ontology import Device, CommissionAccount
from lockstay.services.ledger_service import ResourceLedger, CouponLedger, CommissionLedger
from lockstay.services.errors import (
    ConflictError, InsufficientCapacityError, InsufficientBalanceError,
    InsufficientFrozenError, CouponSoldOutError, CounterUnderflowError,
    NotFoundError, LedgerValidationError,
)


class TestResourceLedger:
    """设备槽位"""

    def test_try_decrement(self, db_session, device):
        ledger = ResourceLedger(db_session)
        ledger.try_decrement(device.id)
        assert ledger.available(device.id) == 0

    def test_decrement_at_zero_raises_and_keeps_count(self, db_session, device):
        ledger = ResourceLedger(db_session)
        ledger.try_decrement(device.id)

        with pytest.raises(InsufficientCapacityError) as exc:
            ledger.try_decrement(device.id)

        assert exc.value.resource_id == device.id
        assert ledger.available(device.id) == 0

    def test_decrement_more_than_available(self, db_session, make_room):
        _, device, _ = make_room(slots=2)
        ledger = ResourceLedger(db_session)

        with pytest.raises(InsufficientCapacityError):
            ledger.try_decrement(device.id, by=3)
        assert ledger.available(device.id) == 2

    def test_capacity_error_is_conflict(self, db_session, device):
        ledger = ResourceLedger(db_session)
        ledger.try_decrement(device.id)
        with pytest.raises(ConflictError):
            ledger.try_decrement(device.id)

    def test_unknown_device(self, db_session):
        ledger = ResourceLedger(db_session)
        with pytest.raises(NotFoundError):
            ledger.try_decrement(999)
        with pytest.raises(NotFoundError):
            ledger.increment(999)
        with pytest.raises(NotFoundError):
            ledger.available(999)

    def test_increment_has_no_upper_bound(self, db_session, device):
        ledger = ResourceLedger(db_session)
        ledger.increment(device.id)
        ledger.increment(device.id, by=2)
        assert ledger.available(device.id) == 4

    @pytest.mark.parametrize("by", [0, -1, True, 1.5])
    def test_invalid_count(self, db_session, device, by):
        with pytest.raises(LedgerValidationError):
            ResourceLedger(db_session).try_decrement(device.id, by=by)

    def test_concurrent_decrement_never_negative(self, file_session_factory):
        """10 个线程争抢 3 个槽位"""
        setup = file_session_factory()
        device = Device(device_no="LOCK-RACE", name="并发门锁", slot_count=3, available_slots=3)
        setup.add(device)
        setup.commit()
        device_id = device.id
        setup.close()

        workers = 10
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def worker():
            db = file_session_factory()
            try:
                barrier.wait()
                try:
                    ResourceLedger(db).try_decrement(device_id)
                    outcome = "ok"
                except InsufficientCapacityError:
                    outcome = "conflict"
                with results_lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == workers
        assert results.count("ok") == 3
        assert results.count("conflict") == 7

        check = file_session_factory()
        assert ResourceLedger(check).available(device_id) == 0
        check.close()


class TestCouponLedger:
    """优惠券计数"""

    def test_issue_until_sold_out(self, db_session, coupon):
        ledger = CouponLedger(db_session)
        ledger.issue(coupon.id)
        ledger.issue(coupon.id)

        with pytest.raises(CouponSoldOutError):
            ledger.issue(coupon.id)

        db_session.refresh(coupon)
        assert coupon.issued_count == 2

    def test_use_cannot_exceed_issued(self, db_session, coupon):
        ledger = CouponLedger(db_session)
        with pytest.raises(CounterUnderflowError):
            ledger.use(coupon.id)

        ledger.issue(coupon.id)
        ledger.use(coupon.id)
        with pytest.raises(CounterUnderflowError):
            ledger.use(coupon.id)

        db_session.refresh(coupon)
        assert coupon.used_count == 1

    def test_unuse_and_revoke_underflow(self, db_session, coupon):
        ledger = CouponLedger(db_session)
        with pytest.raises(CounterUnderflowError):
            ledger.unuse(coupon.id)
        with pytest.raises(CounterUnderflowError):
            ledger.revoke(coupon.id)

        ledger.issue(coupon.id)
        ledger.use(coupon.id)
        ledger.unuse(coupon.id)
        ledger.revoke(coupon.id)

        db_session.refresh(coupon)
        assert coupon.issued_count == 0
        assert coupon.used_count == 0

    def test_unknown_coupon(self, db_session):
        with pytest.raises(NotFoundError):
            CouponLedger(db_session).issue(404)


class TestCommissionLedger:
    """佣金账本"""

    def _balances(self, db_session, distributor_id):
        db_session.expire_all()
        account = CommissionLedger(db_session).get_account(distributor_id)
        return account.available, account.frozen, account.withdrawn, account.total

    def test_freeze_more_than_available(self, db_session):
        db_session.add(CommissionAccount(distributor_id=7, available=Decimal("50"), total=Decimal("50")))
        db_session.commit()

        with pytest.raises(InsufficientBalanceError):
            CommissionLedger(db_session).freeze(7, 100)

        assert self._balances(db_session, 7) == (Decimal("50"), Decimal("0"), Decimal("0"), Decimal("50"))

    def test_withdraw_flow(self, db_session, commission_account):
        ledger = CommissionLedger(db_session)
        ledger.freeze(500, "30")
        ledger.confirm_withdraw(500, "20")
        ledger.unfreeze(500, "10")

        available, frozen, withdrawn, total = self._balances(db_session, 500)
        assert available == Decimal("80")
        assert frozen == Decimal("0")
        assert withdrawn == Decimal("20")
        assert total == Decimal("100")

    def test_unfreeze_and_confirm_need_frozen_balance(self, db_session, commission_account):
        ledger = CommissionLedger(db_session)
        with pytest.raises(InsufficientFrozenError):
            ledger.unfreeze(500, 1)
        with pytest.raises(InsufficientFrozenError):
            ledger.confirm_withdraw(500, 1)

    def test_total_invariant_after_mixed_operations(self, db_session, commission_account):
        ledger = CommissionLedger(db_session)
        operations = [
            ("add_commission", "12.50"), ("freeze", "40"), ("unfreeze", "15"),
            ("confirm_withdraw", "20"), ("freeze", "500"), ("confirm_withdraw", "10"),
            ("add_commission", "7.25"), ("unfreeze", "1000"), ("freeze", "0.75"),
        ]
        for op, amount in operations:
            try:
                getattr(ledger, op)(500, amount)
            except ConflictError:
                pass
            available, frozen, withdrawn, total = self._balances(db_session, 500)
            assert available + frozen + withdrawn == total
            assert min(available, frozen, withdrawn) >= 0

    def test_open_account_is_idempotent(self, db_session):
        ledger = CommissionLedger(db_session)
        first = ledger.open_account(42)
        second = ledger.open_account(42)
        assert first.id == second.id

    def test_add_commission_unknown_account(self, db_session):
        with pytest.raises(NotFoundError):
            CommissionLedger(db_session).add_commission(12345, 10)

    @pytest.mark.parametrize("amount", [0, -5, "abc"])
    def test_invalid_amount(self, db_session, commission_account, amount):
        with pytest.raises(LedgerValidationError):
            CommissionLedger(db_session).freeze(500, amount)
