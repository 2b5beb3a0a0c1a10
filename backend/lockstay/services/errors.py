"""
业务错误分类

- ConflictError 及其子类：预期内的业务结果（时段被占、槽位耗尽、余额不足），由调用方决定是否重试
- InvalidTransitionError：状态机集成错误，必须显式暴露
- NotFoundError：记录或编码不存在，按"拒绝访问"处理
- StoreUnavailableError：存储层暂时不可用，可整体重试
- *ValidationError：参数校验失败，沿用 ValueError 体系
"""
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class BookingDomainError(Exception):
    """领域错误基类"""

    code = "domain_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConflictError(BookingDomainError):
    """资源冲突 - 可重试的业务结果"""

    code = "conflict"

    def __init__(self, message: str = "时段不可用，请选择其他时间",
                 resource_id: Optional[int] = None):
        self.resource_id = resource_id
        super().__init__(message)


class LockTimeoutError(ConflictError):
    """在限定时间内未拿到房间锁"""

    code = "lock_timeout"

    def __init__(self, resource_key: str, timeout: float):
        self.resource_key = resource_key
        self.timeout = timeout
        super().__init__(f"资源 {resource_key} 繁忙，{timeout}s 内未获取到锁")


class LockLostError(ConflictError):
    """临界区执行超过租约，锁已被他人接管"""

    code = "lock_lost"

    def __init__(self, resource_key: str):
        self.resource_key = resource_key
        super().__init__(f"资源 {resource_key} 的锁租约已失效，请重试")


class InsufficientCapacityError(ConflictError):
    """设备无可用槽位"""

    code = "insufficient_capacity"

    def __init__(self, device_id: int, requested: int = 1):
        self.requested = requested
        super().__init__(f"设备 {device_id} 无可用槽位", resource_id=device_id)


class InsufficientBalanceError(ConflictError):
    """可用佣金不足"""

    code = "insufficient_balance"

    def __init__(self, distributor_id: int, amount):
        self.amount = amount
        super().__init__(f"分销员 {distributor_id} 可用佣金不足 {amount}", resource_id=distributor_id)


class InsufficientFrozenError(ConflictError):
    """冻结佣金不足"""

    code = "insufficient_frozen"

    def __init__(self, distributor_id: int, amount):
        self.amount = amount
        super().__init__(f"分销员 {distributor_id} 冻结佣金不足 {amount}", resource_id=distributor_id)


class CouponSoldOutError(ConflictError):
    """优惠券已领完"""

    code = "coupon_sold_out"

    def __init__(self, coupon_id: int):
        super().__init__(f"优惠券 {coupon_id} 已领完", resource_id=coupon_id)


class CounterUnderflowError(ConflictError):
    """计数已为零，无法再减"""

    code = "counter_underflow"


class InvalidTransitionError(BookingDomainError):
    """非法状态迁移"""

    code = "invalid_transition"

    def __init__(self, booking_id: Optional[int], current, requested: str):
        self.booking_id = booking_id
        self.current = current
        self.requested = requested
        current_value = getattr(current, "value", current)
        super().__init__(
            f"预订 {booking_id} 当前状态 {current_value} 不允许执行 {requested}"
        )


class NotFoundError(BookingDomainError):
    """记录不存在"""

    code = "not_found"


class CodeGenerationError(BookingDomainError):
    """多次重试后仍无法生成唯一编码"""

    code = "code_generation_failed"


class StoreUnavailableError(BookingDomainError):
    """存储不可用 - 可整体重试"""

    code = "store_unavailable"

    def __init__(self, message: str = "存储暂时不可用，请稍后重试",
                 original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class BookingValidationError(ValueError):
    """预订参数错误"""


class LedgerValidationError(ValueError):
    """计数/金额参数错误"""


@contextmanager
def store_guard(db: Session, operation: str):
    """把连接类故障统一翻译为 StoreUnavailableError，并回滚当前事务"""
    try:
        yield
    except (OperationalError, DisconnectionError) as e:
        db.rollback()
        logger.warning(f"Store unavailable during {operation}: {e}")
        raise StoreUnavailableError(original_error=e) from e
