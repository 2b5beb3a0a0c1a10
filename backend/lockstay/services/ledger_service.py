"""
计数账本服务 - 有界计数的原子调整
设备槽位、优惠券发放/使用计数、分销佣金余额共用同一种写法：

    UPDATE ... SET counter = counter - :n WHERE id = :id AND <不变量谓词>

受影响行数就是成功信号，0 行表示前置条件不满足，必须抛出类型化错误。
不做"先读后写"，因此在 read-committed 隔离级别下同样安全。
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import update, select
from sqlalchemy.orm import Session

from lockstay.models.ontology import Device, Coupon, CommissionAccount
from lockstay.services.errors import (
    InsufficientCapacityError, InsufficientBalanceError, InsufficientFrozenError,
    CouponSoldOutError, CounterUnderflowError, NotFoundError,
    LedgerValidationError, store_guard,
)

logger = logging.getLogger(__name__)


def _positive_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise LedgerValidationError(f"无效的金额: {amount}")
    if value <= 0:
        raise LedgerValidationError("金额必须大于 0")
    return value


def _positive_count(by: int) -> int:
    if not isinstance(by, int) or isinstance(by, bool) or by <= 0:
        raise LedgerValidationError("数量必须是正整数")
    return by


class _ConditionalLedger:
    """条件更新的公共部分"""

    model = None
    label = ""

    def __init__(self, db: Session, auto_commit: bool = True):
        self.db = db
        # 嵌在状态迁移事务里使用时由调用方提交
        self.auto_commit = auto_commit

    def _apply(self, stmt, operation: str) -> int:
        with store_guard(self.db, operation):
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            if self.auto_commit:
                self.db.commit()
        return result.rowcount

    def _ensure_exists(self, key_column, key) -> None:
        exists = self.db.execute(
            select(self.model.id).where(key_column == key)
        ).first()
        if exists is None:
            if self.auto_commit:
                self.db.rollback()
            raise NotFoundError(f"{self.label} {key} 不存在")

    def _fail(self, error: Exception) -> None:
        if self.auto_commit:
            self.db.rollback()
        raise error


class ResourceLedger(_ConditionalLedger):
    """设备槽位账本"""

    model = Device
    label = "设备"

    def available(self, device_id: int) -> int:
        value = self.db.execute(
            select(Device.available_slots).where(Device.id == device_id)
        ).scalar_one_or_none()
        if value is None:
            raise NotFoundError(f"设备 {device_id} 不存在")
        return value

    def try_decrement(self, device_id: int, by: int = 1) -> None:
        """占用槽位，仅在 available_slots >= by 时生效"""
        by = _positive_count(by)
        stmt = (
            update(Device)
            .where(Device.id == device_id, Device.available_slots >= by)
            .values(available_slots=Device.available_slots - by)
        )
        if self._apply(stmt, "device.try_decrement") == 1:
            logger.info(f"Device {device_id} slots -{by}")
            return
        self._ensure_exists(Device.id, device_id)
        logger.info(f"Device {device_id} has no free slot for {by}")
        self._fail(InsufficientCapacityError(device_id, by))

    def increment(self, device_id: int, by: int = 1) -> None:
        """释放槽位（调用方只释放自己占用过的槽位，不做上限校验）"""
        by = _positive_count(by)
        stmt = (
            update(Device)
            .where(Device.id == device_id)
            .values(available_slots=Device.available_slots + by)
        )
        if self._apply(stmt, "device.increment") == 0:
            self._fail(NotFoundError(f"设备 {device_id} 不存在"))
        logger.info(f"Device {device_id} slots +{by}")


class CouponLedger(_ConditionalLedger):
    """优惠券计数账本"""

    model = Coupon
    label = "优惠券"

    def issue(self, coupon_id: int) -> None:
        """发放一张，issued_count < total_count 时生效"""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.issued_count < Coupon.total_count)
            .values(issued_count=Coupon.issued_count + 1)
        )
        if self._apply(stmt, "coupon.issue") == 1:
            return
        self._ensure_exists(Coupon.id, coupon_id)
        self._fail(CouponSoldOutError(coupon_id))

    def revoke(self, coupon_id: int) -> None:
        """退回一张已发放的券"""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.issued_count > 0)
            .values(issued_count=Coupon.issued_count - 1)
        )
        if self._apply(stmt, "coupon.revoke") == 1:
            return
        self._ensure_exists(Coupon.id, coupon_id)
        self._fail(CounterUnderflowError(f"优惠券 {coupon_id} 已发放数量为 0", resource_id=coupon_id))

    def use(self, coupon_id: int) -> None:
        """核销一张，used_count 不能超过 issued_count"""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count < Coupon.issued_count)
            .values(used_count=Coupon.used_count + 1)
        )
        if self._apply(stmt, "coupon.use") == 1:
            return
        self._ensure_exists(Coupon.id, coupon_id)
        self._fail(CounterUnderflowError(f"优惠券 {coupon_id} 没有可核销的已发放券", resource_id=coupon_id))

    def unuse(self, coupon_id: int) -> None:
        """退款时回退使用数量"""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1)
        )
        if self._apply(stmt, "coupon.unuse") == 1:
            return
        self._ensure_exists(Coupon.id, coupon_id)
        self._fail(CounterUnderflowError(f"优惠券 {coupon_id} 已使用数量为 0", resource_id=coupon_id))


class CommissionLedger(_ConditionalLedger):
    """
    佣金账本 - available / frozen / withdrawn 三态

    每个操作只在两个桶之间搬移金额（入账同时增加 total），
    因此 total = available + frozen + withdrawn 由构造保证。
    """

    model = CommissionAccount
    label = "佣金账户"

    def open_account(self, distributor_id: int) -> CommissionAccount:
        """获取或创建分销员佣金账户"""
        account = self.get_account(distributor_id)
        if account:
            return account
        account = CommissionAccount(distributor_id=distributor_id)
        self.db.add(account)
        with store_guard(self.db, "commission.open_account"):
            if self.auto_commit:
                self.db.commit()
                self.db.refresh(account)
            else:
                self.db.flush()
        return account

    def get_account(self, distributor_id: int) -> Optional[CommissionAccount]:
        return self.db.execute(
            select(CommissionAccount).where(CommissionAccount.distributor_id == distributor_id)
        ).scalar_one_or_none()

    def add_commission(self, distributor_id: int, amount) -> None:
        """佣金入账"""
        value = _positive_amount(amount)
        stmt = (
            update(CommissionAccount)
            .where(CommissionAccount.distributor_id == distributor_id)
            .values(
                available=CommissionAccount.available + value,
                total=CommissionAccount.total + value,
            )
        )
        if self._apply(stmt, "commission.add") == 0:
            self._fail(NotFoundError(f"佣金账户 {distributor_id} 不存在"))

    def freeze(self, distributor_id: int, amount) -> None:
        """提现申请：available -> frozen"""
        value = _positive_amount(amount)
        stmt = (
            update(CommissionAccount)
            .where(
                CommissionAccount.distributor_id == distributor_id,
                CommissionAccount.available >= value,
            )
            .values(
                available=CommissionAccount.available - value,
                frozen=CommissionAccount.frozen + value,
            )
        )
        if self._apply(stmt, "commission.freeze") == 1:
            return
        self._ensure_exists(CommissionAccount.distributor_id, distributor_id)
        self._fail(InsufficientBalanceError(distributor_id, value))

    def unfreeze(self, distributor_id: int, amount) -> None:
        """提现驳回：frozen -> available"""
        value = _positive_amount(amount)
        stmt = (
            update(CommissionAccount)
            .where(
                CommissionAccount.distributor_id == distributor_id,
                CommissionAccount.frozen >= value,
            )
            .values(
                available=CommissionAccount.available + value,
                frozen=CommissionAccount.frozen - value,
            )
        )
        if self._apply(stmt, "commission.unfreeze") == 1:
            return
        self._ensure_exists(CommissionAccount.distributor_id, distributor_id)
        self._fail(InsufficientFrozenError(distributor_id, value))

    def confirm_withdraw(self, distributor_id: int, amount) -> None:
        """提现打款：frozen -> withdrawn"""
        value = _positive_amount(amount)
        stmt = (
            update(CommissionAccount)
            .where(
                CommissionAccount.distributor_id == distributor_id,
                CommissionAccount.frozen >= value,
            )
            .values(
                frozen=CommissionAccount.frozen - value,
                withdrawn=CommissionAccount.withdrawn + value,
            )
        )
        if self._apply(stmt, "commission.confirm_withdraw") == 1:
            return
        self._ensure_exists(CommissionAccount.distributor_id, distributor_id)
        self._fail(InsufficientFrozenError(distributor_id, value))
