"""
Pytest 配置和共享 fixtures
"""
import itertools
import os

# 测试时不启动后台对账任务，应用启动建表落到内存库
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from lockstay.database import Base, get_db
from lockstay.models import ontology  # noqa
from lockstay.models.ontology import (
    Account, AccountRole, Hotel, Device, Room, Coupon, CommissionAccount,
    Booking, BookingStatus,
)
from lockstay.security.auth import get_password_hash, create_access_token
from lockstay.services.event_bus import event_bus
from lockstay.main import app


@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """文件库会话工厂 - 多线程并发测试，每个线程独立连接"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def client(db_session):
    """创建测试客户端"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def clean_event_bus():
    """每个测试使用干净的事件总线"""
    event_bus.clear_subscribers()
    event_bus.clear_history()
    yield
    event_bus.clear_subscribers()
    event_bus.clear_history()


# ============== 认证相关 Fixtures ==============

def _create_account(db_session, username, name, role):
    account = Account(
        username=username,
        password_hash=get_password_hash("123456"),
        name=name,
        role=role,
        is_active=True
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def customer(db_session):
    return _create_account(db_session, "guest1", "住客小张", AccountRole.CUSTOMER)


@pytest.fixture
def staff(db_session):
    return _create_account(db_session, "front1", "前台小王", AccountRole.STAFF)


@pytest.fixture
def manager(db_session):
    return _create_account(db_session, "manager", "店长", AccountRole.MANAGER)


@pytest.fixture
def device_gateway(db_session):
    return _create_account(db_session, "gateway", "门锁网关", AccountRole.DEVICE)


@pytest.fixture
def payment_system(db_session):
    return _create_account(db_session, "payment", "支付回调", AccountRole.SYSTEM)


def _headers(account):
    return {"Authorization": f"Bearer {create_access_token(account.id, account.role)}"}


@pytest.fixture
def customer_headers(customer):
    return _headers(customer)


@pytest.fixture
def staff_headers(staff):
    return _headers(staff)


@pytest.fixture
def manager_headers(manager):
    return _headers(manager)


@pytest.fixture
def device_headers(device_gateway):
    return _headers(device_gateway)


@pytest.fixture
def system_headers(payment_system):
    return _headers(payment_system)


# ============== 实体相关 Fixtures ==============

def create_room_setup(db_session, slots=1, room_no="101"):
    """酒店 + 门锁设备 + 房间"""
    hotel = Hotel(name="测试酒店", address="测试路 1 号")
    db_session.add(hotel)
    db_session.commit()
    device = Device(device_no=f"LOCK-{room_no}", name=f"{room_no} 门锁",
                    slot_count=slots, available_slots=slots)
    db_session.add(device)
    db_session.commit()
    room = Room(hotel_id=hotel.id, room_no=room_no, room_type="standard", device_id=device.id)
    db_session.add(room)
    db_session.commit()
    db_session.refresh(room)
    return hotel, device, room


@pytest.fixture
def room_setup(db_session):
    return create_room_setup(db_session)


@pytest.fixture
def make_room(db_session):
    """按需创建额外的房间"""
    def _make(slots=1, room_no="102"):
        return create_room_setup(db_session, slots=slots, room_no=room_no)
    return _make


@pytest.fixture
def hotel(room_setup):
    return room_setup[0]


@pytest.fixture
def device(room_setup):
    return room_setup[1]


@pytest.fixture
def room(room_setup):
    return room_setup[2]


@pytest.fixture
def check_in_time():
    """明天整点入住"""
    return (datetime.now() + timedelta(days=1)).replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def coupon(db_session):
    coupon = Coupon(name="满100减10", total_count=2)
    db_session.add(coupon)
    db_session.commit()
    db_session.refresh(coupon)
    return coupon


@pytest.fixture
def commission_account(db_session):
    account = CommissionAccount(distributor_id=500, available=Decimal("100.00"), total=Decimal("100.00"))
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def add_booking(db_session):
    """直接写入指定状态的预订（绕过状态机，构造测试数据）"""
    counter = itertools.count(1)

    def _add(room, start, end, status=BookingStatus.PAID, created_at=None, user_id=1):
        n = next(counter)
        booking_no = f"BTEST{n:06d}"
        verification_code = f"V{n:019x}"
        booking = Booking(
            booking_no=booking_no,
            order_id=900000 + n,
            user_id=user_id,
            hotel_id=room.hotel_id,
            room_id=room.id,
            device_id=room.device_id,
            check_in_time=start,
            check_out_time=end,
            duration_hours=max(1, int((end - start).total_seconds() // 3600)),
            amount=Decimal("88.00"),
            verification_code=verification_code,
            unlock_code=f"{n:06d}",
            qr_code=f"/api/v1/hotel/verify/{booking_no}?code={verification_code}",
            status=status,
        )
        if created_at is not None:
            booking.created_at = created_at
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return _add
