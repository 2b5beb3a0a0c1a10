"""
Pydantic 模式定义
用于 API 请求/响应验证
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, field_validator
from lockstay.models.ontology import AccountRole, WithdrawalStatus, UserCouponStatus


# ============== 认证 Schemas ==============

class LoginRequest(BaseModel):
    username: str
    password: str


class AccountResponse(BaseModel):
    id: int
    username: str
    name: str
    role: AccountRole
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse


# ============== 预订 Schemas ==============

class BookingCreate(BaseModel):
    room_id: int
    check_in_time: datetime
    duration_hours: int = Field(..., ge=1)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    order_id: Optional[int] = None

    @field_validator("check_in_time")
    @classmethod
    def to_local_time(cls, value: datetime) -> datetime:
        # 带时区的时间（如 ...Z、+08:00）换算为本地时间，与库内时间一致
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value


class BookingResponse(BaseModel):
    id: int
    booking_no: str
    order_id: int
    user_id: int
    hotel_id: int
    room_id: int
    device_id: Optional[int] = None
    status: str
    status_name: str
    check_in_time: datetime
    check_out_time: datetime
    duration_hours: int
    amount: float
    verification_code: Optional[str] = None
    unlock_code: Optional[str] = None
    qr_code: Optional[str] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[int] = None
    unlocked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class BookingEventResponse(BaseModel):
    """预订时间线上的一条事件"""
    event_id: str
    event_type: str
    timestamp: datetime
    old_status: str = ""
    new_status: str = ""
    operator_id: Optional[int] = None
    reason: str = ""


class BookingListResponse(BaseModel):
    items: List[BookingResponse]
    total: int
    page: int
    page_size: int


class PaymentCallback(BaseModel):
    order_id: int


class VerifyRequest(BaseModel):
    verification_code: str = Field(..., min_length=1, max_length=64)


class UnlockRequest(BaseModel):
    unlock_code: str = Field(..., min_length=1, max_length=16)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class RefundRequest(BaseModel):
    confirmation: str = Field(..., max_length=64)


# ============== 设备槽位 Schemas ==============

class SlotAdjust(BaseModel):
    count: int = Field(default=1, ge=1)


class SlotResponse(BaseModel):
    device_id: int
    available_slots: int


# ============== 分销提现 Schemas ==============

class WithdrawalApply(BaseModel):
    amount: Decimal = Field(..., gt=0)


class WithdrawalReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class WithdrawalResponse(BaseModel):
    id: int
    withdrawal_no: str
    distributor_id: int
    amount: Decimal
    status: WithdrawalStatus
    operator_id: Optional[int] = None
    reject_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ============== 优惠券 Schemas ==============

class CouponUse(BaseModel):
    order_id: int


class UserCouponResponse(BaseModel):
    id: int
    coupon_id: int
    user_id: int
    status: UserCouponStatus
    order_id: Optional[int] = None
    used_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# ============== 对账 Schemas ==============

class SweepResponse(BaseModel):
    expired: int
    completed: int
    skipped: int
    failed: int
    failures: List[dict] = []


# ============== 佣金账户 Schemas ==============

class CommissionCredit(BaseModel):
    amount: Decimal = Field(..., gt=0)


class CommissionAccountResponse(BaseModel):
    distributor_id: int
    available: Decimal
    frozen: Decimal
    withdrawn: Decimal
    total: Decimal
    model_config = ConfigDict(from_attributes=True)
