"""
优惠券服务
领取：issued_count 原子加一 + 创建用户券
使用 / 退回：用户券状态条件更新 + used_count 原子增减，同一事务
"""
import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lockstay.models.ontology import Coupon, UserCoupon, UserCouponStatus
from lockstay.services.errors import ConflictError, NotFoundError, store_guard
from lockstay.services.ledger_service import CouponLedger

logger = logging.getLogger(__name__)


class CouponService:
    """优惠券服务"""

    def __init__(self, db: Session):
        self.db = db

    def get_coupon(self, coupon_id: int) -> Optional[Coupon]:
        return self.db.get(Coupon, coupon_id)

    def get_user_coupon(self, user_coupon_id: int) -> Optional[UserCoupon]:
        return self.db.get(UserCoupon, user_coupon_id)

    def list_user_coupons(self, user_id: int,
                          status: Optional[UserCouponStatus] = None) -> List[UserCoupon]:
        query = select(UserCoupon).where(UserCoupon.user_id == user_id)
        if status is not None:
            query = query.where(UserCoupon.status == status)
        return self.db.execute(query.order_by(UserCoupon.id.desc())).scalars().all()

    def receive(self, coupon_id: int, user_id: int) -> UserCoupon:
        """
        领取一张优惠券

        Raises:
            NotFoundError: 优惠券不存在或已下架
            CouponSoldOutError: 已领完
        """
        coupon = self.get_coupon(coupon_id)
        if not coupon or not coupon.is_active:
            raise NotFoundError(f"优惠券 {coupon_id} 不存在")

        user_coupon = UserCoupon(coupon_id=coupon_id, user_id=user_id,
                                 status=UserCouponStatus.UNUSED)
        try:
            with store_guard(self.db, "coupon.receive"):
                CouponLedger(self.db, auto_commit=False).issue(coupon_id)
                self.db.add(user_coupon)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(user_coupon)
        logger.info(f"Coupon {coupon_id} received by user {user_id}")
        return user_coupon

    def _switch(self, user_coupon_id: int, source: UserCouponStatus, values: dict,
                ledger_op: str, conflict_message: str) -> UserCoupon:
        user_coupon = self.get_user_coupon(user_coupon_id)
        if not user_coupon:
            raise NotFoundError(f"用户优惠券 {user_coupon_id} 不存在")

        stmt = (
            update(UserCoupon)
            .where(UserCoupon.id == user_coupon_id, UserCoupon.status == source)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with store_guard(self.db, f"user_coupon.{ledger_op}"):
                if self.db.execute(stmt).rowcount != 1:
                    raise ConflictError(conflict_message, resource_id=user_coupon_id)
                getattr(CouponLedger(self.db, auto_commit=False), ledger_op)(user_coupon.coupon_id)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(user_coupon)
        return user_coupon

    def use(self, user_coupon_id: int, order_id: int) -> UserCoupon:
        """下单时使用"""
        user_coupon = self._switch(
            user_coupon_id, UserCouponStatus.UNUSED,
            {"status": UserCouponStatus.USED, "order_id": order_id, "used_at": datetime.now()},
            "use", "优惠券已使用",
        )
        logger.info(f"User coupon {user_coupon_id} used on order {order_id}")
        return user_coupon

    def unuse(self, user_coupon_id: int) -> UserCoupon:
        """退款时退回"""
        user_coupon = self._switch(
            user_coupon_id, UserCouponStatus.USED,
            {"status": UserCouponStatus.UNUSED, "order_id": None, "used_at": None},
            "unuse", "优惠券未使用，无法退回",
        )
        logger.info(f"User coupon {user_coupon_id} returned")
        return user_coupon
