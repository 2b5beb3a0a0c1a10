"""
优惠券路由
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account, AccountRole
from lockstay.models.schemas import CouponUse, UserCouponResponse
from lockstay.services.coupon_service import CouponService
from lockstay.services.errors import BookingDomainError
from lockstay.routers.errors import to_http_exception
from lockstay.security.auth import get_current_user, require_customer, require_role

router = APIRouter(tags=["优惠券"])


@router.post("/coupons/{coupon_id}/receive", response_model=UserCouponResponse,
             status_code=status.HTTP_201_CREATED)
def receive_coupon(
    coupon_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_customer)
):
    """领取优惠券"""
    try:
        return CouponService(db).receive(coupon_id, current_user.id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/user-coupons", response_model=List[UserCouponResponse])
def list_my_coupons(
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """我的优惠券"""
    return CouponService(db).list_user_coupons(current_user.id)


@router.post("/user-coupons/{user_coupon_id}/use", response_model=UserCouponResponse)
def use_coupon(
    user_coupon_id: int,
    data: CouponUse,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_customer)
):
    """下单使用优惠券"""
    service = CouponService(db)
    user_coupon = service.get_user_coupon(user_coupon_id)
    if not user_coupon or user_coupon.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="优惠券不存在")
    try:
        return service.use(user_coupon_id, data.order_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/user-coupons/{user_coupon_id}/unuse", response_model=UserCouponResponse)
def unuse_coupon(
    user_coupon_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_role([AccountRole.SYSTEM, AccountRole.MANAGER]))
):
    """退款退回优惠券"""
    try:
        return CouponService(db).unuse(user_coupon_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
