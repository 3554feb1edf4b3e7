"""
資料模型

所有持久化狀態都在這裡：資源（房間 / 置物櫃）、候補名單、Lane Session、
付款意圖、Visit / Checkin Block、退房請求、客戶，以及稽核紀錄。

時間一律以 naive UTC 儲存（見 utcnow），避免 SQLite 與 PostgreSQL 行為不一致。
"""
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """目前時間（naive UTC）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============ Enums ============

class RoomStatus(str, enum.Enum):
    DIRTY = "DIRTY"
    CLEANING = "CLEANING"
    CLEAN = "CLEAN"
    OCCUPIED = "OCCUPIED"


class RoomTier(str, enum.Enum):
    STANDARD = "STANDARD"
    DOUBLE = "DOUBLE"
    SPECIAL = "SPECIAL"


class RentalType(str, enum.Enum):
    LOCKER = "LOCKER"
    GYM_LOCKER = "GYM_LOCKER"
    STANDARD = "STANDARD"
    DOUBLE = "DOUBLE"
    SPECIAL = "SPECIAL"

    @property
    def is_locker(self) -> bool:
        return self in (RentalType.LOCKER, RentalType.GYM_LOCKER)


class ResourceKind(str, enum.Enum):
    ROOM = "room"
    LOCKER = "locker"


class WaitlistStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OFFERED = "OFFERED"
    CANCELLED = "CANCELLED"


class LaneSessionStatus(str, enum.Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    AWAITING_ASSIGNMENT = "AWAITING_ASSIGNMENT"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    COMPLETED = "COMPLETED"


class Actor(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    EMPLOYEE = "EMPLOYEE"


class CheckinMode(str, enum.Enum):
    INITIAL = "INITIAL"
    RENEWAL = "RENEWAL"


class MembershipPurchaseIntent(str, enum.Enum):
    PURCHASE = "PURCHASE"
    RENEW = "RENEW"


class MembershipCardType(str, enum.Enum):
    NONE = "NONE"
    SIX_MONTH = "SIX_MONTH"


class Language(str, enum.Enum):
    EN = "EN"
    ES = "ES"


class PaymentStatus(str, enum.Enum):
    DUE = "DUE"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CREDIT = "CREDIT"


class CheckoutStatus(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    CLAIMED = "CLAIMED"
    VERIFIED = "VERIFIED"


class BlockType(str, enum.Enum):
    INITIAL = "INITIAL"
    RENEWAL = "RENEWAL"


# ============ Customer ============

class Customer(Base):
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    dob = Column(Date, nullable=True)
    membership_number = Column(String(64), unique=True, nullable=True, index=True)
    # 證件掃描值正規化後的 SHA-256（不存原始內容）
    id_scan_hash = Column(String(64), unique=True, nullable=True, index=True)
    membership_card_type = Column(Enum(MembershipCardType), nullable=False, default=MembershipCardType.NONE)
    membership_valid_until = Column(Date, nullable=True)
    past_due_balance = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    primary_language = Column(Enum(Language), nullable=True)
    notes = Column(Text, nullable=True)
    banned_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============ Resource Inventory ============

class Room(Base):
    __tablename__ = "rooms"

    id = Column(Uuid, primary_key=True, default=uuid4)
    number = Column(Integer, unique=True, nullable=False)
    tier = Column(Enum(RoomTier), nullable=False, index=True)
    status = Column(Enum(RoomStatus), nullable=False, default=RoomStatus.CLEAN)
    assigned_to_customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    last_status_change = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_assignable(self) -> bool:
        return self.status == RoomStatus.CLEAN and self.assigned_to_customer_id is None


class Locker(Base):
    __tablename__ = "lockers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    number = Column(Integer, unique=True, nullable=False)
    status = Column(Enum(RoomStatus), nullable=False, default=RoomStatus.CLEAN)
    assigned_to_customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_assignable(self) -> bool:
        return self.status == RoomStatus.CLEAN and self.assigned_to_customer_id is None


class KeyTag(Base):
    __tablename__ = "key_tags"

    id = Column(Uuid, primary_key=True, default=uuid4)
    token = Column(String(128), unique=True, nullable=False)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=True)
    locker_id = Column(Uuid, ForeignKey("lockers.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


# ============ Visit / Occupancy ============

class Visit(Base):
    __tablename__ = "visits"

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)

    blocks = relationship("CheckinBlock", back_populates="visit", order_by="CheckinBlock.ends_at")


class CheckinBlock(Base):
    __tablename__ = "checkin_blocks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=False, index=True)
    block_type = Column(Enum(BlockType), nullable=False, default=BlockType.INITIAL)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    rental_type = Column(Enum(RentalType), nullable=False)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=True)
    locker_id = Column(Uuid, ForeignKey("lockers.id"), nullable=True)
    session_id = Column(Uuid, ForeignKey("lane_sessions.id"), nullable=True, index=True)
    agreement_signed = Column(Boolean, nullable=False, default=False)
    agreement_signed_at = Column(DateTime, nullable=True)
    signature_payload = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    visit = relationship("Visit", back_populates="blocks")


# ============ Waitlist Ledger ============

class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id = Column(Uuid, primary_key=True, default=uuid4)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=False, index=True)
    checkin_block_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    desired_tier = Column(Enum(RoomTier), nullable=False, index=True)
    backup_tier = Column(Enum(RentalType), nullable=False)
    status = Column(Enum(WaitlistStatus), nullable=False, default=WaitlistStatus.ACTIVE)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=True)
    offered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============ Lane Session ============

class LaneSession(Base):
    __tablename__ = "lane_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    lane_id = Column(String(32), nullable=False, index=True)
    status = Column(Enum(LaneSessionStatus), nullable=False, default=LaneSessionStatus.IDLE)
    staff_id = Column(String(64), nullable=True)

    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    customer_display_name = Column(String(255), nullable=True)
    membership_number = Column(String(64), nullable=True)
    checkin_mode = Column(Enum(CheckinMode), nullable=False, default=CheckinMode.INITIAL)
    renewal_visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=True)

    desired_rental_type = Column(Enum(RentalType), nullable=True)
    waitlist_desired_type = Column(Enum(RentalType), nullable=True)
    backup_rental_type = Column(Enum(RentalType), nullable=True)
    proposed_rental_type = Column(Enum(RentalType), nullable=True)
    proposed_by = Column(Enum(Actor), nullable=True)
    selection_confirmed = Column(Boolean, nullable=False, default=False)
    selection_confirmed_by = Column(Enum(Actor), nullable=True)
    selection_locked_at = Column(DateTime, nullable=True)

    # 簽約前只是「保留」，資源本身的狀態不會改變
    assigned_resource_type = Column(Enum(ResourceKind), nullable=True)
    assigned_resource_id = Column(Uuid, nullable=True)

    payment_intent_id = Column(Uuid, nullable=True)
    price_quote_json = Column(JSON, nullable=True)
    last_payment_decline_reason = Column(String(64), nullable=True)
    last_payment_decline_at = Column(DateTime, nullable=True)

    membership_purchase_intent = Column(Enum(MembershipPurchaseIntent), nullable=True)
    membership_purchase_requested_at = Column(DateTime, nullable=True)
    # 客戶在 kiosk 上的會員選擇：ONE_TIME（單次）或 SIX_MONTH
    membership_choice = Column(String(16), nullable=True)
    past_due_bypassed = Column(Boolean, nullable=False, default=False)
    kiosk_acknowledged_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # 每條 lane 同時最多一個未完成的 session
        Index(
            "uq_lane_sessions_open_lane",
            "lane_id",
            unique=True,
            sqlite_where=text("status <> 'COMPLETED'"),
            postgresql_where=text("status <> 'COMPLETED'"),
        ),
    )


# ============ Payment Intent ============

class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    lane_session_id = Column(Uuid, ForeignKey("lane_sessions.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.DUE)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    quote_json = Column(JSON, nullable=True)
    failure_reason = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============ Checkout ============

class CheckoutRequest(Base):
    __tablename__ = "checkout_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    occupancy_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=False, index=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    key_tag_id = Column(Uuid, ForeignKey("key_tags.id"), nullable=True)
    kiosk_device_id = Column(String(64), nullable=True)
    customer_checklist_json = Column(JSON, nullable=True)

    late_minutes = Column(Integer, nullable=False, default=0)
    late_fee_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    ban_applied = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(CheckoutStatus), nullable=False, default=CheckoutStatus.SUBMITTED)
    claimed_by_staff_id = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    claim_expires_at = Column(DateTime, nullable=True)
    items_confirmed = Column(Boolean, nullable=False, default=False)
    fee_paid = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Charge(Base):
    __tablename__ = "charges"

    id = Column(Uuid, primary_key=True, default=uuid4)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=False)
    checkin_block_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=True)
    type = Column(String(32), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_intent_id = Column(Uuid, ForeignKey("payment_intents.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class LateCheckoutEvent(Base):
    __tablename__ = "late_checkout_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    occupancy_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=False)
    checkout_request_id = Column(Uuid, ForeignKey("checkout_requests.id"), nullable=True)
    late_minutes = Column(Integer, nullable=False)
    fee_amount = Column(Numeric(10, 2), nullable=False)
    ban_applied = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AuditLog(Base):
    """狀態轉換與重要操作的稽核軌跡"""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    staff_id = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
