"""
领域事件定义 (Domain Events)
预订状态每次成功迁移后发布一个事件，订阅方（通知、统计、分销结算）据此联动
"""
from enum import Enum
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any


class EventType(str, Enum):
    """事件类型枚举"""
    # 预订生命周期
    BOOKING_CREATED = "booking.created"
    BOOKING_PAID = "booking.paid"
    BOOKING_VERIFIED = "booking.verified"
    BOOKING_UNLOCKED = "booking.unlocked"
    BOOKING_COMPLETED = "booking.completed"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_REFUNDED = "booking.refunded"
    BOOKING_EXPIRED = "booking.expired"

    # 分销提现
    WITHDRAWAL_APPLIED = "withdrawal.applied"
    WITHDRAWAL_APPROVED = "withdrawal.approved"
    WITHDRAWAL_REJECTED = "withdrawal.rejected"

    # 对账
    RECONCILIATION_FINISHED = "reconciliation.finished"


@dataclass
class BaseEventData:
    """事件数据基类"""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
        return result


@dataclass
class BookingTransitionData(BaseEventData):
    """预订状态迁移事件数据"""
    booking_id: int = 0
    booking_no: str = ""
    room_id: int = 0
    device_id: Optional[int] = None
    old_status: str = ""
    new_status: str = ""
    operator_id: Optional[int] = None
    reason: str = ""


@dataclass
class WithdrawalEventData(BaseEventData):
    """提现事件数据"""
    withdrawal_id: int = 0
    withdrawal_no: str = ""
    distributor_id: int = 0
    amount: float = 0.0
    status: str = ""
    operator_id: Optional[int] = None


@dataclass
class ReconciliationFinishedData(BaseEventData):
    """对账结束事件数据"""
    expired: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
