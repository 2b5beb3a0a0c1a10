"""
预订路由
创建 / 查询 / 时间线 / 前台核销 / 退房 / 取消 / 退款
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account, AccountRole, Booking, BookingStatus
from lockstay.models.schemas import (
    BookingCreate, BookingResponse, BookingListResponse, BookingEventResponse,
    VerifyRequest, CancelRequest, RefundRequest,
)
from lockstay.services.booking_service import BookingService
from lockstay.services.errors import BookingDomainError
from lockstay.services.event_bus import event_bus
from lockstay.routers.errors import to_http_exception
from lockstay.security.auth import get_current_user, require_customer, require_staff

router = APIRouter(prefix="/bookings", tags=["预订"])


def _ensure_visible(booking: Optional[Booking], current_user: Account) -> Booking:
    # C 端用户只能看到自己的预订，不区分"不存在"和"无权限"
    if not booking or (
        current_user.role == AccountRole.CUSTOMER and booking.user_id != current_user.id
    ):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="预订不存在")
    return booking


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_customer)
):
    """创建预订（待支付）"""
    service = BookingService(db)
    try:
        booking = service.create_booking(
            user_id=current_user.id,
            room_id=data.room_id,
            check_in_time=data.check_in_time,
            duration_hours=data.duration_hours,
            amount=data.amount,
            order_id=data.order_id,
        )
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))


@router.get("", response_model=BookingListResponse)
def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    hotel_id: Optional[int] = None,
    room_id: Optional[int] = None,
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """预订列表"""
    if current_user.role == AccountRole.CUSTOMER:
        user_id = current_user.id
    service = BookingService(db)
    items, total = service.list_bookings(
        user_id=user_id, hotel_id=hotel_id, room_id=room_id,
        status=status_filter, page=page, page_size=page_size,
    )
    return BookingListResponse(
        items=[BookingResponse(**service.booking_detail(b)) for b in items],
        total=total, page=page, page_size=page_size,
    )


@router.post("/verify", response_model=BookingResponse)
def verify_booking(
    data: VerifyRequest,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """前台扫码核销"""
    service = BookingService(db)
    try:
        booking = service.verify_by_code(data.verification_code, current_user.id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))


@router.get("/no/{booking_no}", response_model=BookingResponse)
def get_booking_by_no(
    booking_no: str,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """按预订号查询"""
    service = BookingService(db)
    booking = _ensure_visible(service.get_booking_by_no(booking_no), current_user)
    return BookingResponse(**service.booking_detail(booking))


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """预订详情"""
    service = BookingService(db)
    booking = _ensure_visible(service.get_booking(booking_id), current_user)
    return BookingResponse(**service.booking_detail(booking))


@router.get("/{booking_id}/events", response_model=List[BookingEventResponse])
def get_booking_events(
    booking_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """预订状态时间线（仅内存中保留的最近事件）"""
    _ensure_visible(BookingService(db).get_booking(booking_id), current_user)
    return [
        BookingEventResponse(
            event_id=event.event_id,
            event_type=getattr(event.event_type, "value", event.event_type),
            timestamp=event.timestamp,
            old_status=event.data.get("old_status", ""),
            new_status=event.data.get("new_status", ""),
            operator_id=event.data.get("operator_id"),
            reason=event.data.get("reason", ""),
        )
        for event in event_bus.booking_timeline(booking_id)
    ]


@router.post("/{booking_id}/checkout", response_model=BookingResponse)
def checkout_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """退房"""
    service = BookingService(db)
    try:
        booking = service.complete(booking_id, operator_id=current_user.id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: int,
    data: CancelRequest,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """取消预订（本人或前台）"""
    service = BookingService(db)
    if current_user.role not in (AccountRole.CUSTOMER, AccountRole.STAFF, AccountRole.MANAGER):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="权限不足")
    _ensure_visible(service.get_booking(booking_id), current_user)
    try:
        booking = service.cancel(booking_id, operator_id=current_user.id, reason=data.reason or "")
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))


@router.post("/{booking_id}/refund", response_model=BookingResponse)
def refund_booking(
    booking_id: int,
    data: RefundRequest,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """退款确认后标记已退款"""
    service = BookingService(db)
    try:
        booking = service.refund(booking_id, data.confirmation, operator_id=current_user.id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))
