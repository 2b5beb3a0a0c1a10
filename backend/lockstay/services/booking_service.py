"""
预订服务 - 预订状态机
Booking.status 的唯一写入方

正常流程：待支付 -> 已支付 -> 已核销 -> 使用中 -> 已完成
终止分支：已支付/已核销/使用中 -> 已取消 | 已退款；已支付 -> 已过期

每次迁移都是一条带源状态谓词的条件更新：
    UPDATE bookings SET status = :target WHERE id = :id AND status IN (:sources)
受影响 0 行说明预订已被并发迁移，重新读取当前状态后抛出 InvalidTransitionError。
槽位释放与状态写入在同一事务中提交；事务提交后再发布领域事件。
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Callable, Tuple, List

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lockstay.config import settings
from lockstay.models.ontology import (
    Booking, BookingStatus, Room, ACTIVE_BOOKING_STATUSES,
)
from lockstay.models.events import EventType, BookingTransitionData
from lockstay.services.event_bus import event_bus, Event
from lockstay.services.errors import (
    ConflictError, InvalidTransitionError, NotFoundError,
    BookingValidationError, store_guard,
)
from lockstay.services.code_issuer import CodeIssuer
from lockstay.services.interval_allocator import IntervalAllocator, validate_interval, to_store_time
from lockstay.services.ledger_service import ResourceLedger

logger = logging.getLogger(__name__)

# 编码唯一索引冲突时重新签发的次数
CREATE_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Transition:
    """状态迁移定义"""
    name: str
    sources: Tuple[BookingStatus, ...]
    target: BookingStatus
    event_type: EventType
    releases_slot: bool = False


TRANSITIONS = {
    "pay": Transition("pay", (BookingStatus.PENDING,), BookingStatus.PAID,
                      EventType.BOOKING_PAID),
    "verify": Transition("verify", (BookingStatus.PAID,), BookingStatus.VERIFIED,
                         EventType.BOOKING_VERIFIED),
    "unlock": Transition("unlock", (BookingStatus.VERIFIED,), BookingStatus.IN_USE,
                         EventType.BOOKING_UNLOCKED),
    "complete": Transition("complete", (BookingStatus.IN_USE,), BookingStatus.COMPLETED,
                           EventType.BOOKING_COMPLETED, releases_slot=True),
    "cancel": Transition("cancel", ACTIVE_BOOKING_STATUSES, BookingStatus.CANCELLED,
                         EventType.BOOKING_CANCELLED, releases_slot=True),
    "refund": Transition("refund", ACTIVE_BOOKING_STATUSES, BookingStatus.REFUNDED,
                         EventType.BOOKING_REFUNDED, releases_slot=True),
    "expire": Transition("expire", (BookingStatus.PAID,), BookingStatus.EXPIRED,
                         EventType.BOOKING_EXPIRED, releases_slot=True),
}

# 对账任务专用：退房时间已过的已核销预订同样自动完成
SWEEP_COMPLETE = Transition(
    "sweep_complete", (BookingStatus.VERIFIED, BookingStatus.IN_USE),
    BookingStatus.COMPLETED, EventType.BOOKING_COMPLETED, releases_slot=True,
)

# 已支付之后的状态再次收到支付回调视为重复回调
PAID_OR_LATER = ACTIVE_BOOKING_STATUSES + (BookingStatus.COMPLETED,)

# 仅这些状态下向用户展示核销码 / 开锁码
CODE_VISIBLE_STATUSES = ACTIVE_BOOKING_STATUSES

STATUS_LABELS = {
    BookingStatus.PENDING: "待支付",
    BookingStatus.PAID: "待核销",
    BookingStatus.VERIFIED: "已核销",
    BookingStatus.IN_USE: "使用中",
    BookingStatus.COMPLETED: "已完成",
    BookingStatus.CANCELLED: "已取消",
    BookingStatus.REFUNDED: "已退款",
    BookingStatus.EXPIRED: "已过期",
}


def generate_booking_no() -> str:
    return "B" + datetime.now().strftime("%Y%m%d%H%M%S") + f"{secrets.randbelow(1_000_000):06d}"


def generate_order_id() -> int:
    return int(datetime.now().strftime("%Y%m%d%H%M%S")) * 1000 + secrets.randbelow(1000)


class BookingService:
    """预订状态机"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None,
                 allocator: Optional[IntervalAllocator] = None):
        self.db = db
        self._publish_event = event_publisher or event_bus.publish
        self.allocator = allocator or IntervalAllocator(db)
        self.codes = CodeIssuer(db)

    # ============== 查询 ==============

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        return self.db.get(Booking, booking_id)

    def get_booking_by_no(self, booking_no: str) -> Optional[Booking]:
        return self.db.execute(
            select(Booking).where(Booking.booking_no == booking_no)
        ).scalar_one_or_none()

    def get_booking_by_order(self, order_id: int) -> Optional[Booking]:
        return self.db.execute(
            select(Booking).where(Booking.order_id == order_id)
        ).scalar_one_or_none()

    def _require(self, booking_id: int) -> Booking:
        booking = self.get_booking(booking_id)
        if not booking:
            raise NotFoundError(f"预订 {booking_id} 不存在")
        return booking

    def list_bookings(self, user_id: Optional[int] = None,
                      hotel_id: Optional[int] = None,
                      room_id: Optional[int] = None,
                      status: Optional[BookingStatus] = None,
                      page: int = 1, page_size: int = 10) -> Tuple[List[Booking], int]:
        """分页查询，返回 (列表, 总数)"""
        page = max(page, 1)
        page_size = page_size if page_size > 0 else 10

        query = select(Booking)
        if user_id is not None:
            query = query.where(Booking.user_id == user_id)
        if hotel_id is not None:
            query = query.where(Booking.hotel_id == hotel_id)
        if room_id is not None:
            query = query.where(Booking.room_id == room_id)
        if status is not None:
            query = query.where(Booking.status == status)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar_one()
        items = self.db.execute(
            query.order_by(Booking.created_at.desc(), Booking.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()
        return items, total

    def booking_detail(self, booking: Booking) -> dict:
        """对外展示的预订信息，编码只在已支付到使用中之间可见"""
        show_codes = booking.status in CODE_VISIBLE_STATUSES
        return {
            "id": booking.id,
            "booking_no": booking.booking_no,
            "order_id": booking.order_id,
            "user_id": booking.user_id,
            "hotel_id": booking.hotel_id,
            "room_id": booking.room_id,
            "device_id": booking.device_id,
            "status": booking.status.value,
            "status_name": STATUS_LABELS[booking.status],
            "check_in_time": booking.check_in_time,
            "check_out_time": booking.check_out_time,
            "duration_hours": booking.duration_hours,
            "amount": float(booking.amount or 0),
            "verification_code": booking.verification_code if show_codes else None,
            "unlock_code": booking.unlock_code if show_codes else None,
            "qr_code": booking.qr_code if show_codes else None,
            "verified_at": booking.verified_at,
            "verified_by": booking.verified_by,
            "unlocked_at": booking.unlocked_at,
            "completed_at": booking.completed_at,
            "created_at": booking.created_at,
        }

    # ============== 创建 ==============

    def create_booking(self, user_id: int, room_id: int, check_in_time: datetime,
                       duration_hours: int, amount=0,
                       order_id: Optional[int] = None,
                       now: Optional[datetime] = None) -> Booking:
        """
        创建预订（待支付）

        Raises:
            NotFoundError: 房间不存在
            BookingValidationError: 参数非法 / 房间停用
            ConflictError: 时段已被占用
        """
        if not isinstance(duration_hours, int) or duration_hours < 1:
            raise BookingValidationError("预订时长至少 1 小时")
        check_in_time = to_store_time(check_in_time)
        check_out_time = check_in_time + timedelta(hours=duration_hours)
        validate_interval(check_in_time, check_out_time)

        now = to_store_time(now) if now else datetime.now()
        grace = timedelta(minutes=settings.BOOKING_CHECK_IN_GRACE_MINUTES)
        if check_in_time < now - grace:
            raise BookingValidationError("入住时间不能是过去")

        room = self.db.get(Room, room_id)
        if not room:
            raise NotFoundError(f"房间 {room_id} 不存在")
        if not room.is_active or (room.hotel and not room.hotel.is_active):
            raise BookingValidationError("房间不可预订")

        if order_id is not None and self.get_booking_by_order(order_id):
            raise ConflictError(f"订单 {order_id} 已存在预订")

        for attempt in range(1, CREATE_MAX_ATTEMPTS + 1):
            booking_no = generate_booking_no()
            codes = self.codes.issue_codes(booking_no)
            draft = Booking(
                booking_no=booking_no,
                order_id=order_id if order_id is not None else generate_order_id(),
                user_id=user_id,
                hotel_id=room.hotel_id,
                device_id=room.device_id,
                duration_hours=duration_hours,
                amount=Decimal(str(amount)),
                verification_code=codes.verification_code,
                unlock_code=codes.unlock_code,
                qr_code=codes.qr_code,
                status=BookingStatus.PENDING,
            )
            try:
                booking = self.allocator.reserve(room_id, check_in_time, check_out_time, draft)
                break
            except IntegrityError:
                # 并发签发出相同编码，由唯一索引拦下，重新签发
                logger.warning(f"Booking insert collided on unique column, attempt {attempt}")
                if attempt == CREATE_MAX_ATTEMPTS:
                    raise ConflictError("预订编号冲突，请重试")

        logger.info(f"Booking {booking.booking_no} created for room {room_id} by user {user_id}")
        self._publish(booking, EventType.BOOKING_CREATED, old_status="", operator_id=user_id)
        return booking

    # ============== 状态迁移 ==============

    def _reject(self, booking: Booking, transition: Transition, lost_race: bool = False) -> None:
        error = InvalidTransitionError(booking.id, booking.status, transition.target.value)
        if lost_race:
            # 条件更新 0 行：预订已被并发迁移
            logger.warning(f"Booking transition '{transition.name}' lost race: {error.message}")
        else:
            logger.error(f"Invalid booking transition '{transition.name}': {error.message}")
        raise error

    def _transition(self, booking: Booking, transition: Transition,
                    values: Optional[dict] = None,
                    side_effect: Optional[Callable[[Booking], None]] = None,
                    operator_id: Optional[int] = None,
                    reason: str = "") -> Booking:
        """
        执行一次受保护的状态迁移

        side_effect 在同一事务内执行（槽位占用等），任何异常都会回滚整个迁移
        """
        if booking.status not in transition.sources:
            self._reject(booking, transition)

        old_status = booking.status
        now = datetime.now()
        stmt = (
            update(Booking)
            .where(Booking.id == booking.id, Booking.status.in_(transition.sources))
            .values(status=transition.target, updated_at=now, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        try:
            with store_guard(self.db, f"booking.{transition.name}"):
                result = self.db.execute(stmt)
                if result.rowcount != 1:
                    # 并发迁移抢先，读取最新状态后报错
                    self.db.rollback()
                    self.db.refresh(booking)
                    self._reject(booking, transition, lost_race=True)
                if side_effect:
                    side_effect(booking)
                if transition.releases_slot and booking.device_id:
                    ResourceLedger(self.db, auto_commit=False).increment(booking.device_id)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(
            f"Booking {booking.booking_no}: {old_status.value} -> {transition.target.value}"
        )
        self._publish(booking, transition.event_type, old_status=old_status.value,
                      operator_id=operator_id, reason=reason)
        return booking

    def _publish(self, booking: Booking, event_type: EventType, old_status: str,
                 operator_id: Optional[int] = None, reason: str = "") -> None:
        self._publish_event(Event(
            event_type=event_type,
            timestamp=datetime.now(),
            data=BookingTransitionData(
                booking_id=booking.id,
                booking_no=booking.booking_no,
                room_id=booking.room_id,
                device_id=booking.device_id,
                old_status=old_status,
                new_status=booking.status.value,
                operator_id=operator_id,
                reason=reason,
            ).to_dict(),
            source="booking_service"
        ))

    def mark_paid(self, order_id: int) -> Booking:
        """
        支付成功回调：待支付 -> 已支付

        回调至少投递一次，已支付及之后的状态直接返回。
        在房间锁内复核时段（支付窗口过期后可能已被他人支付占用），
        并在同一事务内占用门锁设备槽位。
        """
        booking = self.get_booking_by_order(order_id)
        if not booking:
            raise NotFoundError(f"订单 {order_id} 对应的预订不存在")
        if booking.status in PAID_OR_LATER:
            logger.info(f"Duplicate payment callback for order {order_id}, booking {booking.booking_no}")
            return booking

        transition = TRANSITIONS["pay"]
        if booking.status not in transition.sources:
            self._reject(booking, transition)

        with self.allocator.lock(booking.room_id) as lock:
            def acquire_slot(paid: Booking) -> None:
                if paid.device_id:
                    ResourceLedger(self.db, auto_commit=False).try_decrement(paid.device_id)
                lock.ensure_held()

            conflicts = self.allocator.find_conflicts(
                booking.room_id, booking.check_in_time, booking.check_out_time,
                exclude_booking_id=booking.id, include_pending_holds=False,
            )
            if conflicts:
                logger.info(f"Booking {booking.booking_no} lost its interval before payment")
                raise ConflictError(resource_id=booking.room_id)
            return self._transition(booking, transition, side_effect=acquire_slot)

    def verify_by_code(self, code: str, staff_id: int) -> Booking:
        """前台核销：已支付 -> 已核销"""
        booking = self.codes.resolve_by_verification_code(code)
        if not booking:
            raise NotFoundError("无效的核销码")
        return self._transition(
            booking, TRANSITIONS["verify"],
            values={"verified_at": datetime.now(), "verified_by": staff_id},
            operator_id=staff_id,
        )

    def unlock_by_code(self, code: str, device_id: int) -> Booking:
        """
        设备开锁：已核销 -> 使用中

        使用中的预订再次开锁（设备重试）不做迁移，原样返回
        """
        booking = self.codes.resolve_by_unlock_code(code, device_id)
        if not booking:
            raise NotFoundError("无效的开锁码")
        if booking.status == BookingStatus.IN_USE:
            logger.info(f"Booking {booking.booking_no} re-opened on device {device_id}")
            return booking
        return self._transition(
            booking, TRANSITIONS["unlock"],
            values={"unlocked_at": datetime.now()},
        )

    def complete(self, booking_id: int, operator_id: Optional[int] = None) -> Booking:
        """退房：使用中 -> 已完成，释放槽位"""
        booking = self._require(booking_id)
        return self._transition(
            booking, TRANSITIONS["complete"],
            values={"completed_at": datetime.now()},
            operator_id=operator_id,
        )

    def sweep_complete(self, booking_id: int) -> Booking:
        """对账任务自动完成：已核销 / 使用中 -> 已完成"""
        booking = self._require(booking_id)
        return self._transition(
            booking, SWEEP_COMPLETE,
            values={"completed_at": datetime.now()},
            reason="checkout time passed",
        )

    def cancel(self, booking_id: int, operator_id: Optional[int] = None,
               reason: str = "") -> Booking:
        """取消：已支付 / 已核销 / 使用中 -> 已取消，释放槽位"""
        booking = self._require(booking_id)
        return self._transition(booking, TRANSITIONS["cancel"],
                                operator_id=operator_id, reason=reason)

    def refund(self, booking_id: int, confirmation: str,
               operator_id: Optional[int] = None) -> Booking:
        """退款确认后：已支付 / 已核销 / 使用中 -> 已退款，释放槽位"""
        if not confirmation or not confirmation.strip():
            raise BookingValidationError("缺少退款确认凭证")
        booking = self._require(booking_id)
        return self._transition(
            booking, TRANSITIONS["refund"],
            values={"refund_reference": confirmation.strip()},
            operator_id=operator_id, reason=confirmation.strip(),
        )

    def expire(self, booking_id: int) -> Booking:
        """入住时间已过仍未核销：已支付 -> 已过期，释放槽位"""
        booking = self._require(booking_id)
        return self._transition(booking, TRANSITIONS["expire"],
                                reason="check-in time passed")
