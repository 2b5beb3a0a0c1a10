"""
时段分配服务 - 房间级互斥

重叠判定使用半开区间 [check_in, check_out)：
    existing.check_in < end AND existing.check_out > start
首尾相接（上一单退房 == 下一单入住）不算冲突。

并发策略：房间级排他锁（ResourceLock 租约行）。
"检查是否空闲 + 写入预订"在同一把锁内完成并提交，之后才释放锁，
对同一房间的并发预订是线性一致的。
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session

from lockstay.config import settings
from lockstay.models.ontology import Booking, BookingStatus, ACTIVE_BOOKING_STATUSES
from lockstay.services.errors import ConflictError, BookingValidationError, store_guard
from lockstay.services.resource_lock import ResourceLock, room_lock_key

logger = logging.getLogger(__name__)


def to_store_time(value: datetime) -> datetime:
    """存储层统一使用本地时间（不带时区），带时区的输入先换算到本地"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def validate_interval(start: datetime, end: datetime) -> None:
    """零长度或倒置的时段直接拒绝，不进入分配流程"""
    if start is None or end is None:
        raise BookingValidationError("入住和退房时间不能为空")
    if end <= start:
        raise BookingValidationError("退房时间必须晚于入住时间")


class IntervalAllocator:
    """时段型资源分配器"""

    def __init__(self, db: Session,
                 payment_hold_minutes: Optional[int] = None,
                 lock_timeout: Optional[float] = None):
        self.db = db
        self.payment_hold_minutes = (
            settings.BOOKING_PAYMENT_HOLD_MINUTES
            if payment_hold_minutes is None else payment_hold_minutes
        )
        self.lock_timeout = lock_timeout

    def lock(self, resource_id: int) -> ResourceLock:
        """房间锁，供状态机在 待支付->已支付 时复核使用"""
        return ResourceLock(self.db, room_lock_key(resource_id), timeout=self.lock_timeout)

    def _blocking_condition(self, now: datetime, include_pending_holds: bool):
        active = Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        if not include_pending_holds or self.payment_hold_minutes <= 0:
            return active
        # 支付窗口内的待支付预订同样占住时段
        hold_since = now - timedelta(minutes=self.payment_hold_minutes)
        pending_hold = and_(
            Booking.status == BookingStatus.PENDING,
            Booking.created_at >= hold_since,
        )
        return or_(active, pending_hold)

    def find_conflicts(self, resource_id: int, start: datetime, end: datetime,
                       exclude_booking_id: Optional[int] = None,
                       include_pending_holds: bool = True,
                       now: Optional[datetime] = None):
        query = select(Booking).where(
            Booking.room_id == resource_id,
            Booking.check_in_time < end,
            Booking.check_out_time > start,
            self._blocking_condition(now or datetime.now(), include_pending_holds),
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)
        return self.db.execute(query).scalars().all()

    def is_free(self, resource_id: int, start: datetime, end: datetime,
                exclude_booking_id: Optional[int] = None,
                include_pending_holds: bool = True) -> bool:
        """时段内没有占用中的预订即为空闲"""
        validate_interval(start, end)
        with store_guard(self.db, "allocator.is_free"):
            conflicts = self.find_conflicts(
                resource_id, start, end,
                exclude_booking_id=exclude_booking_id,
                include_pending_holds=include_pending_holds,
            )
        return not conflicts

    def reserve(self, resource_id: int, start: datetime, end: datetime,
                draft: Booking) -> Booking:
        """
        原子地检查并写入预订

        Raises:
            BookingValidationError: 时段非法
            ConflictError: 时段已被占用（或锁等待超时）
        """
        start, end = to_store_time(start), to_store_time(end)
        validate_interval(start, end)
        draft.room_id = resource_id
        draft.check_in_time = start
        draft.check_out_time = end

        with self.lock(resource_id) as lock:
            with store_guard(self.db, "allocator.reserve"):
                if not self.is_free(resource_id, start, end):
                    logger.info(f"Room {resource_id} conflict for [{start}, {end})")
                    raise ConflictError(resource_id=resource_id)
                self.db.add(draft)
                lock.ensure_held()
                self.db.commit()
        self.db.refresh(draft)
        logger.info(f"Room {resource_id} reserved [{start}, {end}) as booking {draft.id}")
        return draft
