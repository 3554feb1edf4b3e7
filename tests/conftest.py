"""
測試共用 fixtures

- 每個測試一個 in-memory SQLite（StaticPool，所有 thread 共用同一個連線）
- 房間：STANDARD 210 / 211 / 212、DOUBLE 300；置物櫃 1 / 2
- 時間一律明確傳入 now（星期六晚上，沒有平日折扣）
"""
from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from models import (
    Actor,
    Customer,
    KeyTag,
    Locker,
    RentalType,
    Room,
    RoomStatus,
    RoomTier,
)
from core.broadcaster import broadcaster
from core.lane_manager import LaneSessionManager
from core.payment_manager import PaymentManager

# 2026-10-24 是星期六
T0 = datetime(2026, 10, 24, 18, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def inventory(db):
    rooms = {
        210: Room(number=210, tier=RoomTier.STANDARD, status=RoomStatus.CLEAN),
        211: Room(number=211, tier=RoomTier.STANDARD, status=RoomStatus.CLEAN),
        212: Room(number=212, tier=RoomTier.STANDARD, status=RoomStatus.CLEAN),
        300: Room(number=300, tier=RoomTier.DOUBLE, status=RoomStatus.CLEAN),
    }
    lockers = {
        1: Locker(number=1, status=RoomStatus.CLEAN),
        2: Locker(number=2, status=RoomStatus.CLEAN),
    }
    db.add_all(list(rooms.values()) + list(lockers.values()))
    db.flush()
    db.add_all([
        KeyTag(token=f"ROOM-{number}", room_id=room.id) for number, room in rooms.items()
    ] + [
        KeyTag(token=f"LOCKER-{number}", locker_id=locker.id) for number, locker in lockers.items()
    ])
    db.commit()
    return {"rooms": rooms, "lockers": lockers}


@pytest.fixture
def make_customer(db):
    counter = {"n": 0}

    def _make(name=None, **fields):
        counter["n"] += 1
        customer = Customer(
            name=name or f"Customer {counter['n']}",
            dob=fields.pop("dob", date(1990, 5, 1)),
            past_due_balance=fields.pop("past_due_balance", Decimal("0")),
            **fields,
        )
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer("Alex Rivera")


@pytest.fixture
def checkin(db):
    """
    把一位客戶從識別走到簽約

    返回：
        sign_agreement 的結果
    """
    def _checkin(
        lane_id,
        customer_id,
        rental_type=RentalType.STANDARD,
        now=T0,
        waitlist_desired_type=None,
    ):
        LaneSessionManager.identify_customer(db, lane_id, staff_id="staff-1", customer_id=customer_id, now=now)
        LaneSessionManager.propose_selection(
            db, lane_id, rental_type, Actor.CUSTOMER, waitlist_desired_type=waitlist_desired_type
        )
        LaneSessionManager.confirm_selection(db, lane_id, Actor.EMPLOYEE, now=now)
        intent = PaymentManager.create_payment_intent(db, lane_id, now=now)
        PaymentManager.mark_paid(db, intent["payment_intent_id"], now=now)
        return LaneSessionManager.sign_agreement(db, intent["session_id"], "data:image/png;base64,AAAA", now=now)

    return _checkin


@pytest.fixture
def events():
    """收集 broadcaster 在測試期間推播的事件：events(channel) -> list"""
    collected = {}
    unsubscribers = []

    def _listen(channel):
        if channel not in collected:
            collected[channel] = []
            unsubscribers.append(broadcaster.subscribe(channel, collected[channel].append))
        return collected[channel]

    yield _listen
    for unsubscribe in unsubscribers:
        unsubscribe()


@pytest.fixture
def client(session_factory):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
