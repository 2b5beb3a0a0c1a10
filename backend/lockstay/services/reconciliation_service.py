"""
对账服务 - 周期性清理预订状态

- 已支付且入住时间已过（未核销） -> 已过期
- 已核销 / 使用中且退房时间已过 -> 已完成

每个预订单独一个事务，单条失败只记录并计数，不中断整批。
迁移本身是带源状态谓词的条件更新，多个 worker 同时跑也只会有一个生效，
输掉竞争的一方记为 skipped。
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Callable, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from lockcore.scheduler import ISchedulerBackend
from lockstay.config import settings
from lockstay.database import session_scope
from lockstay.models.ontology import Booking, BookingStatus
from lockstay.models.events import EventType, ReconciliationFinishedData
from lockstay.services.booking_service import BookingService, SWEEP_COMPLETE, TRANSITIONS
from lockstay.services.event_bus import event_bus, Event
from lockstay.services.errors import InvalidTransitionError, BookingDomainError

logger = logging.getLogger(__name__)

EXPIRE_JOB_ID = "booking_expire"
COMPLETE_JOB_ID = "booking_complete"


@dataclass
class SweepResult:
    """一轮对账的结果"""
    expired: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[dict] = field(default_factory=list)

    def merge(self, other: "SweepResult") -> "SweepResult":
        self.expired += other.expired
        self.completed += other.completed
        self.skipped += other.skipped
        self.failed += other.failed
        self.failures.extend(other.failures)
        return self

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class ReconciliationService:
    """对账服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self._publish_event = event_publisher or event_bus.publish
        self.bookings = BookingService(db, event_publisher=self._publish_event)

    def _candidates(self, statuses, time_column, now: datetime, batch_size: int) -> List[int]:
        return list(self.db.execute(
            select(Booking.id)
            .where(Booking.status.in_(statuses), time_column < now)
            .order_by(time_column)
            .limit(batch_size)
        ).scalars().all())

    def _run_each(self, booking_ids: List[int], apply, counter: str) -> SweepResult:
        result = SweepResult()
        for booking_id in booking_ids:
            try:
                apply(booking_id)
                setattr(result, counter, getattr(result, counter) + 1)
            except InvalidTransitionError as e:
                # 已被其他 worker 或人工操作迁移
                logger.info(f"Sweep skipped booking {booking_id}: {e.message}")
                result.skipped += 1
            except (BookingDomainError, ValueError) as e:
                logger.error(f"Sweep failed on booking {booking_id}: {e}", exc_info=True)
                result.failed += 1
                result.failures.append({"booking_id": booking_id, "error": str(e)})
            except Exception as e:
                # 存储层其他异常（约束、SQL 错误等）同样只影响这一条
                logger.error(f"Sweep failed on booking {booking_id} with unexpected error: {e}",
                             exc_info=True)
                self.db.rollback()
                result.failed += 1
                result.failures.append({"booking_id": booking_id, "error": f"{type(e).__name__}: {e}"})
        return result

    def expire_overdue(self, now: Optional[datetime] = None,
                       batch_size: Optional[int] = None) -> SweepResult:
        """已支付但入住时间已过的预订标记为过期"""
        now = now or datetime.now()
        batch_size = batch_size or settings.RECONCILE_BATCH_SIZE
        ids = self._candidates(
            TRANSITIONS["expire"].sources, Booking.check_in_time, now, batch_size
        )
        result = self._run_each(ids, self.bookings.expire, "expired")
        if ids:
            logger.info(f"Expire sweep: {result.expired} expired, {result.skipped} skipped, "
                        f"{result.failed} failed")
        return result

    def complete_finished(self, now: Optional[datetime] = None,
                          batch_size: Optional[int] = None) -> SweepResult:
        """退房时间已过的已核销 / 使用中预订自动完成"""
        now = now or datetime.now()
        batch_size = batch_size or settings.RECONCILE_BATCH_SIZE
        ids = self._candidates(SWEEP_COMPLETE.sources, Booking.check_out_time, now, batch_size)
        result = self._run_each(ids, self.bookings.sweep_complete, "completed")
        if ids:
            logger.info(f"Complete sweep: {result.completed} completed, {result.skipped} skipped, "
                        f"{result.failed} failed")
        return result

    def run_sweep(self, now: Optional[datetime] = None,
                  batch_size: Optional[int] = None) -> SweepResult:
        """依次执行过期与自动完成"""
        now = now or datetime.now()
        result = self.expire_overdue(now, batch_size)
        result.merge(self.complete_finished(now, batch_size))
        self._publish_event(Event(
            event_type=EventType.RECONCILIATION_FINISHED,
            timestamp=datetime.now(),
            data=ReconciliationFinishedData(
                expired=result.expired,
                completed=result.completed,
                skipped=result.skipped,
                failed=result.failed,
            ).to_dict(),
            source="reconciliation_service"
        ))
        return result


# ============== 定时任务入口 ==============

def run_expire_job(session_factory=None) -> SweepResult:
    with session_scope(session_factory) as db:
        return ReconciliationService(db).expire_overdue()


def run_complete_job(session_factory=None) -> SweepResult:
    with session_scope(session_factory) as db:
        return ReconciliationService(db).complete_finished()


def register_reconciliation_jobs(backend: ISchedulerBackend,
                                 interval_seconds: Optional[int] = None) -> None:
    """注册过期 / 自动完成两个周期任务"""
    seconds = interval_seconds or settings.RECONCILE_INTERVAL_SECONDS
    backend.add_job(EXPIRE_JOB_ID, run_expire_job, "interval",
                    seconds=seconds, max_instances=1, coalesce=True)
    backend.add_job(COMPLETE_JOB_ID, run_complete_job, "interval",
                    seconds=seconds, max_instances=1, coalesce=True)
    logger.info(f"Reconciliation jobs registered every {seconds}s")
