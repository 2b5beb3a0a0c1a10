"""
支付回调路由
支付子系统在支付成功后回调，按订单号把预订从待支付迁移到已支付
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account
from lockstay.models.schemas import PaymentCallback, BookingResponse
from lockstay.services.booking_service import BookingService
from lockstay.services.errors import BookingDomainError
from lockstay.routers.errors import to_http_exception
from lockstay.security.auth import require_system

router = APIRouter(prefix="/payments", tags=["支付回调"])


@router.post("/callback", response_model=BookingResponse)
def payment_callback(
    data: PaymentCallback,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_system)
):
    """支付成功回调（可重复投递）"""
    service = BookingService(db)
    try:
        booking = service.mark_paid(data.order_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))
