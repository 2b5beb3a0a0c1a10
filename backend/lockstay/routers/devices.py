"""
设备路由
门锁开锁 + 槽位账本操作
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account
from lockstay.models.schemas import UnlockRequest, BookingResponse, SlotAdjust, SlotResponse
from lockstay.services.booking_service import BookingService
from lockstay.services.ledger_service import ResourceLedger
from lockstay.services.errors import BookingDomainError
from lockstay.routers.errors import to_http_exception
from lockstay.security.auth import require_device, require_staff

router = APIRouter(prefix="/devices", tags=["设备"])


@router.post("/{device_id}/unlock", response_model=BookingResponse)
def unlock_device(
    device_id: int,
    data: UnlockRequest,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_device)
):
    """设备网关提交开锁码"""
    service = BookingService(db)
    try:
        booking = service.unlock_by_code(data.unlock_code, device_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return BookingResponse(**service.booking_detail(booking))


@router.get("/{device_id}/slots", response_model=SlotResponse)
def get_slots(
    device_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """可用槽位"""
    try:
        available = ResourceLedger(db).available(device_id)
    except BookingDomainError as e:
        raise to_http_exception(e)
    return SlotResponse(device_id=device_id, available_slots=available)


@router.post("/{device_id}/slots/acquire", response_model=SlotResponse)
def acquire_slots(
    device_id: int,
    data: SlotAdjust,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """占用槽位"""
    ledger = ResourceLedger(db)
    try:
        ledger.try_decrement(device_id, data.count)
        available = ledger.available(device_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return SlotResponse(device_id=device_id, available_slots=available)


@router.post("/{device_id}/slots/release", response_model=SlotResponse)
def release_slots(
    device_id: int,
    data: SlotAdjust,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_staff)
):
    """释放槽位"""
    ledger = ResourceLedger(db)
    try:
        ledger.increment(device_id, data.count)
        available = ledger.available(device_id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    return SlotResponse(device_id=device_id, available_slots=available)
