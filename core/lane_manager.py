"""
Lane Session Manager：一條 lane 上一次 check-in 的完整生命週期

職責：
1. 識別客戶、建立 / 沿用 lane session
2. 租借類型的提議與確認
3. 資源「保留」（只寫在 session 上，不動資源本身）
4. 會員購買意圖
5. 簽約：唯一會建立 Checkin Block 並把資源翻成 OCCUPIED 的操作
6. RESET：清空 lane，讓下一位客人使用

所有狀態變更都經過 LaneSessionStateMachine；每個操作都是一個 transaction，
任何檢查失敗都會整個 rollback。推播 snapshot 由呼叫端在 commit 之後處理。
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Dict, List, Optional
import logging

from models import (
    Actor,
    AuditLog,
    BlockType,
    Charge,
    CheckinBlock,
    CheckinMode,
    Customer,
    Language,
    LaneSession,
    LaneSessionStatus,
    Locker,
    MembershipCardType,
    MembershipPurchaseIntent,
    PaymentStatus,
    RentalType,
    ResourceKind,
    Room,
    RoomStatus,
    Visit,
    WaitlistEntry,
    WaitlistStatus,
    utcnow,
)
from core.state_machine import LaneSessionStateMachine
from core.locks import OPEN_LANE_STATUSES, with_lane_lock, with_lane_session_lock
from core.allocation import allocate, reserved_resource_ids, room_tier_for
from core import waitlist
from core.payment_manager import pinned_intent, requote_due_intent
from core.exceptions import (
    AlreadyCheckedIn,
    ConfirmationRequiresCounterpart,
    CustomerBanned,
    CustomerNotFound,
    InvalidStateTransition,
    LaneBusy,
    LaneSessionNotFound,
    MembershipNumberTaken,
    MissingCustomerIdentity,
    NoCustomerOnSession,
    NoMembershipIntent,
    NoSelectionProposed,
    PastDueBlocked,
    PaymentNotPaid,
    RentalNotAllowed,
    ResourceNotFound,
    ResourceUnavailable,
    SelectionLocked,
    SelectionNotConfirmed,
    VisitAlreadyEnded,
    VisitNotFound,
    VisitOwnershipMismatch,
)
from services.late_fee_service import strip_system_late_fee_notes
from services.rental_service import (
    add_months,
    compute_block_end,
    compute_id_scan_hash,
    get_allowed_rentals,
    parse_membership_number,
)
from services.waitlist_service import compute_waitlist_info
from database import serializable, transactional

logger = logging.getLogger(__name__)

ALL_LANE_STATUSES = tuple(LaneSessionStatus)
SELECTION_STATUSES = (LaneSessionStatus.ACTIVE, LaneSessionStatus.AWAITING_ASSIGNMENT)
ASSIGNMENT_STATUSES = (
    LaneSessionStatus.AWAITING_ASSIGNMENT,
    LaneSessionStatus.AWAITING_PAYMENT,
    LaneSessionStatus.AWAITING_SIGNATURE,
)
SIX_MONTHS = 6


def _require_session(lane_id: str, statuses, db: Session) -> LaneSession:
    session = with_lane_lock(lane_id, statuses, db).first()
    if not session:
        raise LaneSessionNotFound(lane_id)
    return session


def _is_past_due_blocked(customer: Optional[Customer], session: LaneSession) -> bool:
    if customer is None:
        return False
    return (customer.past_due_balance or Decimal("0")) > 0 and not session.past_due_bypassed


def _clear_customer_scope(session: LaneSession):
    """清空 session 上所有客戶相關欄位（RESET 與換客人時使用）"""
    session.customer_id = None
    session.customer_display_name = None
    session.membership_number = None
    session.checkin_mode = CheckinMode.INITIAL
    session.renewal_visit_id = None
    session.desired_rental_type = None
    session.waitlist_desired_type = None
    session.backup_rental_type = None
    session.proposed_rental_type = None
    session.proposed_by = None
    session.selection_confirmed = False
    session.selection_confirmed_by = None
    session.selection_locked_at = None
    session.assigned_resource_type = None
    session.assigned_resource_id = None
    session.payment_intent_id = None
    session.price_quote_json = None
    session.last_payment_decline_reason = None
    session.last_payment_decline_at = None
    session.membership_purchase_intent = None
    session.membership_purchase_requested_at = None
    session.membership_choice = None
    session.past_due_bypassed = False
    session.kiosk_acknowledged_at = None


def _active_checkin_summary(db: Session, visit: Visit, now: datetime) -> Dict[str, Any]:
    """客戶目前在場內的摘要（ALREADY_CHECKED_IN 錯誤會帶上）"""
    block = db.query(CheckinBlock).filter(
        CheckinBlock.visit_id == visit.id
    ).order_by(CheckinBlock.ends_at.desc()).first()

    resource_type = None
    resource_number = None
    if block and block.room_id:
        room = db.get(Room, block.room_id)
        resource_type, resource_number = ResourceKind.ROOM.value, room.number if room else None
    elif block and block.locker_id:
        locker = db.get(Locker, block.locker_id)
        resource_type, resource_number = ResourceKind.LOCKER.value, locker.number if locker else None

    entry = db.query(WaitlistEntry).filter(
        WaitlistEntry.visit_id == visit.id,
        WaitlistEntry.status.in_([WaitlistStatus.ACTIVE, WaitlistStatus.OFFERED])
    ).order_by(WaitlistEntry.created_at.desc()).first()

    return {
        "visitId": str(visit.id),
        "rentalType": block.rental_type.value if block else None,
        "assignedResourceType": resource_type,
        "assignedResourceNumber": str(resource_number) if resource_number is not None else None,
        "checkinAt": block.starts_at.isoformat() if block else None,
        "checkoutAt": block.ends_at.isoformat() if block else None,
        "overdue": block.ends_at < now if block else None,
        "waitlist": {
            "id": str(entry.id),
            "desiredTier": entry.desired_tier.value,
            "backupTier": entry.backup_tier.value,
            "status": entry.status.value,
        } if entry else None,
    }


def _resolve_customer(
    db: Session,
    customer_id: Optional[UUID],
    customer_name: Optional[str],
    membership_scan_value: Optional[str],
    id_scan_value: Optional[str] = None,
) -> Customer:
    """
    依序用 customer id、證件掃描、會員卡掃描找客戶，都找不到時用姓名建立

    證件掃描比對到的客戶若還沒有會員號碼，會補上這次掃到的會員號碼。
    """
    if customer_id:
        customer = db.get(Customer, customer_id)
        if not customer:
            raise CustomerNotFound(customer_id)
        return customer

    membership_number = parse_membership_number(membership_scan_value) if membership_scan_value else None
    id_scan_hash = compute_id_scan_hash(id_scan_value) if id_scan_value and id_scan_value.strip() else None

    if id_scan_hash:
        customer = db.query(Customer).filter(Customer.id_scan_hash == id_scan_hash).first()
        if customer:
            if membership_number and not customer.membership_number:
                customer.membership_number = membership_number
            return customer

    if membership_number:
        customer = db.query(Customer).filter(
            Customer.membership_number == membership_number
        ).first()
        if customer:
            if id_scan_hash and not customer.id_scan_hash:
                customer.id_scan_hash = id_scan_hash
            return customer

    if not customer_name:
        raise MissingCustomerIdentity()

    customer = Customer(name=customer_name, membership_number=membership_number, id_scan_hash=id_scan_hash)
    db.add(customer)
    db.flush()
    logger.info(f"Created customer {customer.id} ({customer_name})")
    return customer


def _lock_reserved_resource(db: Session, session: LaneSession):
    """重新鎖定並驗證 session 上保留的資源（簽約時使用）"""
    model = Room if session.assigned_resource_type == ResourceKind.ROOM else Locker
    resource = db.query(model).filter(
        model.id == session.assigned_resource_id
    ).with_for_update().first()
    if not resource:
        raise ResourceNotFound(session.assigned_resource_type.value, session.assigned_resource_id)
    if not resource.is_assignable:
        raise ResourceUnavailable(
            f"{session.assigned_resource_type.value.capitalize()} {resource.number} is no longer available"
        )
    return resource


def _reservation_matches(session: LaneSession) -> bool:
    if not session.assigned_resource_id or not session.assigned_resource_type:
        return False
    wants_locker = session.desired_rental_type.is_locker
    return (session.assigned_resource_type == ResourceKind.LOCKER) == wants_locker


class LaneSessionManager:
    """Lane Session 生命週期管理器"""

    @staticmethod
    @transactional
    def identify_customer(
        db: Session,
        lane_id: str,
        staff_id: Optional[str] = None,
        customer_id: Optional[UUID] = None,
        customer_name: Optional[str] = None,
        membership_scan_value: Optional[str] = None,
        visit_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
        id_scan_value: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        在 lane 上識別客戶，開始一次 check-in

        流程：
        1. 找出（或建立）客戶
        2. 停權檢查
        3. 指定 visit -> 續住（RENEWAL）；客戶已在場內又沒指定 visit -> ALREADY_CHECKED_IN
        4. 沿用 lane 上 IDLE / ACTIVE 的 session，或建立新的
        5. Session 轉到 ACTIVE

        參數：
            db: SQLAlchemy Session
            lane_id: lane 識別碼
            staff_id: 操作員工
            customer_id: 既有客戶 id
            customer_name: 新客戶姓名（找不到客戶時建立）
            membership_scan_value: 會員卡掃描值
            visit_id: 指定要續住的 visit
            now: 操作時間
            id_scan_value: 證件條碼原始內容（只存雜湊）

        返回：
            {"session_id", "lane_id", "customer_id", "mode", "allowed_rentals", "past_due_balance", "past_due_blocked"}

        異常：
            CustomerNotFound / VisitNotFound: 指定的資料不存在
            CustomerBanned: 客戶停權中
            VisitOwnershipMismatch: visit 不屬於這位客戶
            AlreadyCheckedIn: 客戶已在場內（details 帶 active_checkin）
            LaneBusy: lane 上的 session 已經進入付款 / 簽約流程
        """
        now = now or utcnow()

        # 1. 客戶
        customer = _resolve_customer(db, customer_id, customer_name, membership_scan_value, id_scan_value)

        # 2. 停權
        if customer.banned_until and now < customer.banned_until:
            raise CustomerBanned(f"Customer is banned until {customer.banned_until.isoformat()}")

        # 3. 續住 / 已在場內
        mode = CheckinMode.INITIAL
        renewal_visit_id = None
        if visit_id:
            visit = db.get(Visit, visit_id)
            if not visit:
                raise VisitNotFound(visit_id)
            if visit.customer_id != customer.id:
                raise VisitOwnershipMismatch()
            if visit.ended_at is not None:
                raise VisitAlreadyEnded()
            mode = CheckinMode.RENEWAL
            renewal_visit_id = visit.id
        else:
            open_visit = db.query(Visit).filter(
                Visit.customer_id == customer.id,
                Visit.ended_at.is_(None)
            ).order_by(Visit.started_at.desc()).first()
            if open_visit:
                raise AlreadyCheckedIn(
                    "Customer is currently checked in",
                    active_checkin=_active_checkin_summary(db, open_visit, now),
                )

        # 4. Lane session
        session = with_lane_lock(lane_id, (LaneSessionStatus.IDLE,) + OPEN_LANE_STATUSES, db).first()
        if session and session.status not in (LaneSessionStatus.IDLE, LaneSessionStatus.ACTIVE):
            raise LaneBusy(f"Lane {lane_id} is {session.status.value}; reset it before starting a new check-in")

        if session is None:
            session = LaneSession(lane_id=lane_id, status=LaneSessionStatus.IDLE)
            db.add(session)
            db.flush()
        elif session.customer_id != customer.id:
            _clear_customer_scope(session)

        session.staff_id = staff_id
        session.customer_id = customer.id
        session.customer_display_name = customer.name
        session.membership_number = customer.membership_number
        session.checkin_mode = mode
        session.renewal_visit_id = renewal_visit_id

        # 5. 狀態轉換
        LaneSessionStateMachine.transition(session, LaneSessionStatus.ACTIVE, db)

        past_due_balance = customer.past_due_balance or Decimal("0")
        logger.info(f"Lane {lane_id}: identified customer {customer.id} ({mode.value}) on session {session.id}")

        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "customer_id": customer.id,
            "mode": mode,
            "allowed_rentals": get_allowed_rentals(customer.membership_number),
            "past_due_balance": past_due_balance,
            "past_due_blocked": _is_past_due_blocked(customer, session),
        }

    @staticmethod
    @transactional
    def set_language(db: Session, lane_id: str, language: Language) -> Dict[str, Any]:
        """設定客戶偏好語言（存在客戶資料上，下次來不用再選）"""
        session = _require_session(lane_id, OPEN_LANE_STATUSES, db)
        if not session.customer_id:
            raise NoCustomerOnSession()

        customer = db.get(Customer, session.customer_id)
        customer.primary_language = language
        session.updated_at = utcnow()

        logger.info(f"Lane {lane_id}: customer {customer.id} language set to {language.value}")
        return {"session_id": session.id, "lane_id": lane_id, "language": language}

    @staticmethod
    @transactional
    def propose_selection(
        db: Session,
        lane_id: str,
        rental_type: RentalType,
        proposed_by: Actor,
        waitlist_desired_type: Optional[RentalType] = None,
        backup_rental_type: Optional[RentalType] = None,
    ) -> Dict[str, Any]:
        """
        提議租借類型（客戶或員工都可以提議，反覆修改直到確認）

        異常：
            LaneSessionNotFound: lane 上沒有 ACTIVE / AWAITING_ASSIGNMENT session
            PastDueBlocked: 客戶有欠款且未被員工放行（只擋客戶的提議）
            SelectionLocked: 已經確認過
            RentalNotAllowed: 這位客戶不能租這種類型
        """
        session = _require_session(lane_id, SELECTION_STATUSES, db)
        customer = db.get(Customer, session.customer_id) if session.customer_id else None

        if proposed_by == Actor.CUSTOMER and _is_past_due_blocked(customer, session):
            raise PastDueBlocked("Past due balance must be cleared before selection")

        if session.selection_confirmed:
            raise SelectionLocked()

        allowed = get_allowed_rentals(customer.membership_number if customer else session.membership_number)
        if rental_type not in allowed:
            raise RentalNotAllowed(f"{rental_type.value} is not available for this customer")
        if waitlist_desired_type is not None and waitlist_desired_type.is_locker:
            raise RentalNotAllowed("Only room tiers can be waitlisted")

        session.proposed_rental_type = rental_type
        session.proposed_by = proposed_by
        if waitlist_desired_type is not None:
            session.waitlist_desired_type = waitlist_desired_type
        if backup_rental_type is not None:
            session.backup_rental_type = backup_rental_type
        session.updated_at = utcnow()

        logger.info(f"Lane {lane_id}: {proposed_by.value} proposed {rental_type.value}")
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "proposed_rental_type": rental_type,
            "proposed_by": proposed_by,
        }

    @staticmethod
    @transactional
    def confirm_selection(
        db: Session,
        lane_id: str,
        confirmed_by: Actor,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        確認並鎖定租借類型（ACTIVE → AWAITING_ASSIGNMENT）

        一方提議、另一方確認才算數；已經鎖定時直接返回目前狀態。

        異常：
            PastDueBlocked: 客戶有欠款且未被放行（只擋客戶的確認）
            NoSelectionProposed: 還沒有任何提議
            ConfirmationRequiresCounterpart: 提議與確認是同一方
        """
        now = now or utcnow()
        session = _require_session(lane_id, SELECTION_STATUSES, db)
        customer = db.get(Customer, session.customer_id) if session.customer_id else None

        if confirmed_by == Actor.CUSTOMER and _is_past_due_blocked(customer, session):
            raise PastDueBlocked("Past due balance must be cleared before confirmation")

        if not session.proposed_rental_type:
            raise NoSelectionProposed()

        if session.selection_confirmed:
            return {
                "session_id": session.id,
                "lane_id": lane_id,
                "rental_type": session.desired_rental_type,
                "confirmed_by": session.selection_confirmed_by,
                "already_confirmed": True,
            }

        if session.proposed_by == confirmed_by:
            raise ConfirmationRequiresCounterpart()

        session.selection_confirmed = True
        session.selection_confirmed_by = confirmed_by
        session.selection_locked_at = now
        session.desired_rental_type = session.proposed_rental_type

        LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_ASSIGNMENT, db)

        logger.info(f"Lane {lane_id}: selection {session.desired_rental_type.value} locked by {confirmed_by.value}")
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "rental_type": session.desired_rental_type,
            "confirmed_by": confirmed_by,
            "already_confirmed": False,
        }

    @staticmethod
    @transactional
    def assign_resource(
        db: Session,
        lane_id: str,
        resource_type: ResourceKind,
        resource_id: UUID,
    ) -> Dict[str, Any]:
        """
        保留一個資源（只寫在 session 上）

        資源本身的狀態在簽約前都不會改變，所以簽約前可以反覆換。

        異常：
            SelectionNotConfirmed: 租借類型還沒確認
            ResourceNotFound: 資源不存在
            ResourceUnavailable: 資源不是 CLEAN、已被佔用，或已被其他 lane 保留
            RentalNotAllowed: 資源種類 / tier 和確認的租借類型不符
        """
        session = _require_session(lane_id, ASSIGNMENT_STATUSES, db)
        if not session.selection_confirmed or not session.desired_rental_type:
            raise SelectionNotConfirmed("Selection must be confirmed before assignment")

        model = Room if resource_type == ResourceKind.ROOM else Locker
        resource = db.get(model, resource_id)
        if not resource:
            raise ResourceNotFound(resource_type.value, resource_id)
        if not resource.is_assignable:
            raise ResourceUnavailable(f"{resource_type.value.capitalize()} {resource.number} is not available")
        if resource.id in reserved_resource_ids(db, resource_type, exclude_session_id=session.id):
            raise ResourceUnavailable(
                f"{resource_type.value.capitalize()} {resource.number} is reserved on another lane"
            )

        if (resource_type == ResourceKind.LOCKER) != session.desired_rental_type.is_locker:
            raise RentalNotAllowed(
                f"Cannot reserve a {resource_type.value} for a {session.desired_rental_type.value} rental"
            )
        if resource_type == ResourceKind.ROOM and resource.tier != room_tier_for(session.desired_rental_type):
            raise RentalNotAllowed(f"Room {resource.number} is {resource.tier.value}")

        session.assigned_resource_type = resource_type
        session.assigned_resource_id = resource.id
        session.updated_at = utcnow()

        logger.info(f"Lane {lane_id}: reserved {resource_type.value} {resource.number}")
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "resource_type": resource_type,
            "resource_id": resource.id,
            "number": resource.number,
        }

    @staticmethod
    @transactional
    def auto_assign(db: Session, lane_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        用分配演算法挑一個資源並保留在 session 上

        異常：
            SelectionNotConfirmed: 租借類型還沒確認
            CapacityExhausted: 沒有可分配的資源
        """
        now = now or utcnow()
        session = _require_session(lane_id, ASSIGNMENT_STATUSES, db)
        if not session.selection_confirmed or not session.desired_rental_type:
            raise SelectionNotConfirmed("Selection must be confirmed before assignment")

        kind, resource = allocate(db, session.desired_rental_type, now, exclude_session_id=session.id)
        session.assigned_resource_type = kind
        session.assigned_resource_id = resource.id
        session.updated_at = now

        logger.info(f"Lane {lane_id}: auto-reserved {kind.value} {resource.number}")
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "resource_type": kind,
            "resource_id": resource.id,
            "number": resource.number,
        }

    @staticmethod
    @transactional
    def set_past_due_bypass(
        db: Session,
        lane_id: str,
        bypassed: bool,
        staff_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """員工放行有欠款的客戶（只影響這次 session）"""
        session = _require_session(lane_id, OPEN_LANE_STATUSES, db)
        if not session.customer_id:
            raise NoCustomerOnSession()

        session.past_due_bypassed = bypassed
        session.updated_at = utcnow()
        db.add(AuditLog(
            staff_id=staff_id,
            action="PAST_DUE_BYPASS",
            entity_type="lane_session",
            entity_id=str(session.id),
            new_value={"bypassed": bypassed},
        ))

        logger.info(f"Lane {lane_id}: past-due bypass set to {bypassed} by {staff_id}")
        return {"session_id": session.id, "lane_id": lane_id, "past_due_bypassed": bypassed}

    @staticmethod
    @transactional
    def set_membership_purchase_intent(
        db: Session,
        lane_id: str,
        intent: Optional[MembershipPurchaseIntent],
        session_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        設定（或清除）會員購買意圖

        intent 為 None 表示客戶選擇單次入場。已有 DUE 付款意圖時會重新報價。

        異常：
            PaymentAlreadyCollected: 已經付款，不能再改報價
        """
        now = now or utcnow()
        session = _require_session(lane_id, OPEN_LANE_STATUSES, db)
        if session_id and session.id != session_id:
            raise LaneSessionNotFound(session_id)
        if not session.customer_id:
            raise NoCustomerOnSession()

        session.membership_purchase_intent = intent
        session.membership_purchase_requested_at = now if intent else None
        session.membership_choice = "SIX_MONTH" if intent else "ONE_TIME"
        session.updated_at = now

        payment = requote_due_intent(db, session, now)

        logger.info(f"Lane {lane_id}: membership intent {intent.value if intent else 'NONE'}")
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "membership_purchase_intent": intent,
            "payment_intent_id": payment.id if payment else None,
        }

    @staticmethod
    @serializable
    def complete_membership_purchase(
        db: Session,
        lane_id: str,
        membership_number: str,
        session_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        付款完成後寫入半年會員

        流程：
        1. 鎖定 session，驗證有客戶、有會員購買意圖、付款 PAID
        2. 會員號碼不能屬於別人
        3. RENEW：從目前到期日（若仍有效）往後加 6 個月；PURCHASE：從今天起算
        4. 清除意圖

        異常：
            NoCustomerOnSession / NoMembershipIntent / PaymentNotPaid: 前置條件不符
            MembershipNumberTaken: 會員號碼已屬於其他客戶
        """
        now = now or utcnow()

        # 1. 鎖定並驗證
        session = _require_session(lane_id, OPEN_LANE_STATUSES + (LaneSessionStatus.COMPLETED,), db)
        if session_id and session.id != session_id:
            raise LaneSessionNotFound(session_id)
        if not session.customer_id:
            raise NoCustomerOnSession()
        if not session.membership_purchase_intent:
            raise NoMembershipIntent()

        payment = pinned_intent(db, session)
        if payment is None or payment.status != PaymentStatus.PAID:
            raise PaymentNotPaid("Membership purchase requires a PAID payment")

        # 2. 會員號碼
        customer = db.query(Customer).filter(
            Customer.id == session.customer_id
        ).with_for_update().first()
        owner = db.query(Customer).filter(
            Customer.membership_number == membership_number,
            Customer.id != customer.id
        ).first()
        if owner:
            raise MembershipNumberTaken(f"Membership number {membership_number} belongs to another customer")

        # 3. 有效期限
        today = now.date()
        start = today
        if (
            session.membership_purchase_intent == MembershipPurchaseIntent.RENEW
            and customer.membership_valid_until
            and customer.membership_valid_until > today
        ):
            start = customer.membership_valid_until

        customer.membership_number = membership_number
        customer.membership_card_type = MembershipCardType.SIX_MONTH
        customer.membership_valid_until = add_months(start, SIX_MONTHS)

        # 4. 清除意圖
        session.membership_number = membership_number
        session.membership_purchase_intent = None
        session.membership_purchase_requested_at = None
        session.updated_at = now

        logger.info(
            f"Lane {lane_id}: customer {customer.id} membership {membership_number} "
            f"valid until {customer.membership_valid_until}"
        )
        return {
            "session_id": session.id,
            "lane_id": lane_id,
            "customer_id": customer.id,
            "membership_number": membership_number,
            "membership_valid_until": customer.membership_valid_until,
        }

    @staticmethod
    @serializable
    def sign_agreement(
        db: Session,
        session_id: UUID,
        signature: str,
        now: Optional[datetime] = None,
        lane_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        簽約，完成 check-in

        這是唯一會建立 Checkin Block、並把資源翻成 OCCUPIED 的操作。

        流程：
        1. 鎖定 session，驗證客戶、租借類型、付款 PAID
        2. 清除客戶身上的系統逾時費備註
        3. 取用保留的資源（重新驗證），沒有保留就跑分配演算法
        4. 建立 Visit（續住沿用原本的 Visit）與 Checkin Block
        5. 資源 CLEAN → OCCUPIED 並設定主人
        6. 客戶想候補更好的房型時，建立 ACTIVE 候補
        7. Session → COMPLETED（客戶資料保留到員工 RESET）

        參數：
            db: SQLAlchemy Session
            session_id: Lane Session id
            signature: 簽名資料（data URL 或 base64）
            now: 簽約時間
            lane_id: 指定時 session 必須屬於這條 lane

        異常：
            LaneSessionNotFound: session 不存在
            NoCustomerOnSession / SelectionNotConfirmed / PaymentNotPaid: 前置條件不符
            InvalidStateTransition: session 不是 AWAITING_SIGNATURE
            ResourceUnavailable: 保留的資源已被別人用掉
            CapacityExhausted: 沒有保留且沒有可分配的資源
        """
        now = now or utcnow()

        # 1. 鎖定並驗證
        session = with_lane_session_lock(session_id, db).first()
        if not session or (lane_id and session.lane_id != lane_id):
            raise LaneSessionNotFound(session_id)
        if not session.customer_id:
            raise NoCustomerOnSession()
        if not session.selection_confirmed or not session.desired_rental_type:
            raise SelectionNotConfirmed("Selection must be confirmed before signing agreement")

        payment = pinned_intent(db, session)
        if payment is None or payment.status != PaymentStatus.PAID:
            raise PaymentNotPaid("Payment must be PAID before signing agreement")

        if session.status != LaneSessionStatus.AWAITING_SIGNATURE:
            raise InvalidStateTransition(
                f"Lane session {session.id} is {session.status.value}, expected AWAITING_SIGNATURE"
            )

        # 2. 備註
        customer = db.query(Customer).filter(
            Customer.id == session.customer_id
        ).with_for_update().first()
        if not customer:
            raise CustomerNotFound(session.customer_id)
        customer.notes = strip_system_late_fee_notes(customer.notes)

        # 3. 資源
        if _reservation_matches(session):
            kind = session.assigned_resource_type
            resource = _lock_reserved_resource(db, session)
        else:
            kind, resource = allocate(db, session.desired_rental_type, now, exclude_session_id=session.id)

        # 4. Visit / Checkin Block
        if session.checkin_mode == CheckinMode.RENEWAL:
            visit = db.query(Visit).filter(
                Visit.id == session.renewal_visit_id,
                Visit.ended_at.is_(None)
            ).with_for_update().first()
            if not visit:
                raise VisitAlreadyEnded()
            block_type = BlockType.RENEWAL
        else:
            visit = Visit(customer_id=customer.id, started_at=now)
            db.add(visit)
            db.flush()
            block_type = BlockType.INITIAL

        block = CheckinBlock(
            visit_id=visit.id,
            block_type=block_type,
            starts_at=now,
            ends_at=compute_block_end(now),
            rental_type=session.desired_rental_type,
            room_id=resource.id if kind == ResourceKind.ROOM else None,
            locker_id=resource.id if kind == ResourceKind.LOCKER else None,
            session_id=session.id,
            agreement_signed=True,
            agreement_signed_at=now,
            signature_payload=signature,
        )
        db.add(block)
        db.flush()

        db.add(Charge(
            visit_id=visit.id,
            checkin_block_id=block.id,
            type=session.desired_rental_type.value,
            amount=payment.amount,
            payment_intent_id=payment.id,
        ))

        # 5. 資源翻轉
        resource.status = RoomStatus.OCCUPIED
        resource.assigned_to_customer_id = customer.id
        resource.updated_at = now
        if kind == ResourceKind.ROOM:
            resource.last_status_change = now
        session.assigned_resource_type = kind
        session.assigned_resource_id = resource.id

        # 6. 候補
        entry = None
        if session.waitlist_desired_type and not session.waitlist_desired_type.is_locker:
            entry = waitlist.create_entry(
                db,
                visit_id=visit.id,
                checkin_block_id=block.id,
                customer_id=customer.id,
                desired_tier=room_tier_for(session.waitlist_desired_type),
                backup_tier=session.desired_rental_type,
            )

        # 7. 狀態轉換
        LaneSessionStateMachine.transition(session, LaneSessionStatus.COMPLETED, db)

        logger.info(
            f"Lane {session.lane_id}: agreement signed, customer {customer.id} "
            f"checked into {kind.value} {resource.number} until {block.ends_at.isoformat()}"
        )
        return {
            "session_id": session.id,
            "lane_id": session.lane_id,
            "visit_id": visit.id,
            "checkin_block_id": block.id,
            "resource_type": kind,
            "resource_id": resource.id,
            "number": resource.number,
            "checkout_at": block.ends_at,
            "waitlist_entry_id": entry.id if entry else None,
        }

    @staticmethod
    @transactional
    def kiosk_acknowledge(db: Session, lane_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """客戶在 kiosk 上按下「完成」"""
        now = now or utcnow()
        session = _require_session(lane_id, ALL_LANE_STATUSES, db)
        session.kiosk_acknowledged_at = now
        session.updated_at = now
        return {"session_id": session.id, "lane_id": lane_id}

    @staticmethod
    @transactional
    def reset_lane(db: Session, lane_id: str, staff_id: Optional[str] = None) -> Dict[str, Any]:
        """
        RESET：清空 lane 上的 session，狀態設為 COMPLETED

        注意：
            - 不動任何資源、Visit 或 Checkin Block；已完成 check-in 的客人照樣住
            - 只清掉 lane kiosk 的狀態
        """
        session = _require_session(lane_id, ALL_LANE_STATUSES, db)

        _clear_customer_scope(session)
        LaneSessionStateMachine.transition(session, LaneSessionStatus.COMPLETED, db, reset=True)
        db.add(AuditLog(
            staff_id=staff_id,
            action="LANE_RESET",
            entity_type="lane_session",
            entity_id=str(session.id),
        ))

        logger.info(f"Lane {lane_id} reset by {staff_id}")
        return {"session_id": session.id, "lane_id": lane_id}

    @staticmethod
    def list_lane_sessions(db: Session) -> List[LaneSession]:
        """每條 lane 最新的一個 session"""
        sessions = db.query(LaneSession).order_by(
            LaneSession.lane_id.asc(), LaneSession.created_at.desc()
        ).all()
        latest = {}
        for session in sessions:
            latest.setdefault(session.lane_id, session)
        return list(latest.values())

    @staticmethod
    def latest_session(db: Session, lane_id: str) -> LaneSession:
        session = db.query(LaneSession).filter(
            LaneSession.lane_id == lane_id
        ).order_by(LaneSession.created_at.desc()).first()
        if not session:
            raise LaneSessionNotFound(lane_id)
        return session

    @staticmethod
    def waitlist_info(
        db: Session,
        lane_id: str,
        desired_type: RentalType,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """客戶選了沒有空房的房型時，告訴他排第幾、大概多久"""
        now = now or utcnow()
        session = db.query(LaneSession).filter(
            LaneSession.lane_id == lane_id,
            LaneSession.status.in_(SELECTION_STATUSES)
        ).order_by(LaneSession.created_at.desc()).first()
        if not session:
            raise LaneSessionNotFound(lane_id)
        return compute_waitlist_info(db, room_tier_for(desired_type), now)
