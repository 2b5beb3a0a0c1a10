"""
本体对象定义 (Ontology Objects)
时段型资源（房间）、计数型资源（设备槽位）、预订、佣金账户、优惠券
所有受并发保护的计数字段都带有数据库 CHECK 约束兜底
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Enum as SQLEnum,
    Boolean, Numeric, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from lockstay.database import Base


# ============== 枚举定义 ==============

class BookingStatus(str, Enum):
    """预订状态枚举"""
    PENDING = "pending"        # 待支付
    PAID = "paid"              # 已支付/待核销
    VERIFIED = "verified"      # 已核销/待使用
    IN_USE = "in_use"          # 使用中
    COMPLETED = "completed"    # 已完成
    CANCELLED = "cancelled"    # 已取消
    REFUNDED = "refunded"      # 已退款
    EXPIRED = "expired"        # 已过期


# 占用时段的状态：这些状态下的预订之间不允许时段重叠
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PAID,
    BookingStatus.VERIFIED,
    BookingStatus.IN_USE,
)

TERMINAL_BOOKING_STATUSES = (
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REFUNDED,
    BookingStatus.EXPIRED,
)


class AccountRole(str, Enum):
    """账号角色"""
    CUSTOMER = "customer"      # C 端用户
    STAFF = "staff"            # 酒店前台
    MANAGER = "manager"        # 管理员
    DEVICE = "device"          # 设备网关
    SYSTEM = "system"          # 系统回调（支付/退款子系统）


class UserCouponStatus(str, Enum):
    """用户优惠券状态"""
    UNUSED = "unused"
    USED = "used"


class WithdrawalStatus(str, Enum):
    """提现状态"""
    PENDING = "pending"        # 待审核
    APPROVED = "approved"      # 已打款
    REJECTED = "rejected"      # 已拒绝


# ============== 本体对象定义 ==============

class Account(Base):
    """
    账号对象 - 员工、设备网关、系统回调的统一身份
    """
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)
    role = Column(SQLEnum(AccountRole), nullable=False, default=AccountRole.CUSTOMER)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)


class Hotel(Base):
    """酒店对象"""
    __tablename__ = "hotels"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    address = Column(String(255))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    rooms = relationship("Room", back_populates="hotel")


class Device(Base):
    """
    设备对象 - 计数型资源
    不变量：available_slots >= 0（释放槽位不做上限校验）
    """
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    device_no = Column(String(64), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    slot_count = Column(Integer, nullable=False, default=1)
    available_slots = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        CheckConstraint("available_slots >= 0", name="ck_device_available_slots_non_negative"),
        CheckConstraint("slot_count >= 0", name="ck_device_slot_count_non_negative"),
    )


class Room(Base):
    """
    房间对象 - 时段型资源
    不存储占用状态，占用由活跃预订的时段推导
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    room_no = Column(String(20), nullable=False)
    room_type = Column(String(50), default="standard")
    device_id = Column(Integer, ForeignKey("devices.id"))  # 门锁设备
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    hotel = relationship("Hotel", back_populates="rooms")
    device = relationship("Device")
    bookings = relationship("Booking", back_populates="room")


class Booking(Base):
    """
    预订对象 - 聚合根
    只能通过 BookingService 的状态迁移修改 status，永不物理删除
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_no = Column(String(64), unique=True, nullable=False)
    order_id = Column(Integer, unique=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"))
    check_in_time = Column(DateTime, nullable=False)
    check_out_time = Column(DateTime, nullable=False)
    duration_hours = Column(Integer, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    verification_code = Column(String(20), unique=True, nullable=False)
    unlock_code = Column(String(10), unique=True, nullable=False)
    qr_code = Column(String(255), unique=True, nullable=False)
    status = Column(SQLEnum(BookingStatus), nullable=False, default=BookingStatus.PENDING)
    verified_at = Column(DateTime)
    verified_by = Column(Integer, ForeignKey("accounts.id"))
    unlocked_at = Column(DateTime)
    completed_at = Column(DateTime)
    refund_reference = Column(String(64))
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    room = relationship("Room", back_populates="bookings")
    hotel = relationship("Hotel")
    device = relationship("Device")
    verifier = relationship("Account", foreign_keys=[verified_by])

    __table_args__ = (
        CheckConstraint("check_out_time > check_in_time", name="ck_booking_interval"),
        Index("ix_bookings_room_interval", "room_id", "check_in_time", "check_out_time"),
        Index("ix_bookings_status_check_in", "status", "check_in_time"),
    )


class ResourceLock(Base):
    """
    资源锁 - 房间级排他租约
    holder 为空或 expires_at 已过期即视为空闲
    """
    __tablename__ = "resource_locks"

    resource_key = Column(String(64), primary_key=True)
    holder = Column(String(64))
    expires_at = Column(DateTime)


class CommissionAccount(Base):
    """
    佣金账户 - 每个分销员一行
    不变量：total = available + frozen + withdrawn
    """
    __tablename__ = "commission_accounts"

    id = Column(Integer, primary_key=True, index=True)
    distributor_id = Column(Integer, unique=True, nullable=False)
    available = Column(Numeric(12, 2), nullable=False, default=0)
    frozen = Column(Numeric(12, 2), nullable=False, default=0)
    withdrawn = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_commission_available_non_negative"),
        CheckConstraint("frozen >= 0", name="ck_commission_frozen_non_negative"),
        CheckConstraint("withdrawn >= 0", name="ck_commission_withdrawn_non_negative"),
    )


class Withdrawal(Base):
    """提现申请"""
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    withdrawal_no = Column(String(32), unique=True, nullable=False)
    distributor_id = Column(Integer, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(WithdrawalStatus), nullable=False, default=WithdrawalStatus.PENDING)
    operator_id = Column(Integer, ForeignKey("accounts.id"))
    reject_reason = Column(Text)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now)


class Coupon(Base):
    """
    优惠券定义 - 发放/使用计数
    不变量：issued_count <= total_count，计数非负
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    total_count = Column(Integer, nullable=False)
    issued_count = Column(Integer, nullable=False, default=0)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        CheckConstraint("issued_count <= total_count", name="ck_coupon_issued_le_total"),
        CheckConstraint("issued_count >= 0", name="ck_coupon_issued_non_negative"),
        CheckConstraint("used_count >= 0", name="ck_coupon_used_non_negative"),
    )


class UserCoupon(Base):
    """用户领取的优惠券"""
    __tablename__ = "user_coupons"

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(SQLEnum(UserCouponStatus), nullable=False, default=UserCouponStatus.UNUSED)
    order_id = Column(Integer)
    used_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now)

    coupon = relationship("Coupon")
