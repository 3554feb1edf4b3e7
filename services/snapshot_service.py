"""
Session Snapshot：把資料庫狀態投影成推播用的 payload

純讀取、沒有副作用，同樣的資料庫狀態永遠產生同樣的 payload（除了 stage
會參考 now 判斷會員是否有效）。每次 lane session 變更 commit 之後呼叫一次，
輸出就是推播層轉發給前端的唯一契約。

所有 key 都是 camelCase；沒有值的欄位會省略或為 None。
"""
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Dict, List, Optional, Tuple

from models import (
    CheckinBlock,
    CheckinMode,
    Customer,
    LaneSession,
    LaneSessionStatus,
    Locker,
    PaymentIntent,
    ResourceKind,
    Room,
    Visit,
    utcnow,
)
from core.exceptions import LaneSessionNotFound
from services.rental_service import get_allowed_rentals, membership_status

STAGES = {
    "LANGUAGE": 1,
    "MEMBERSHIP": 2,
    "RENTAL": 3,
    "APPROVAL": 3,
    "PAYMENT": 4,
    "AGREEMENT": 5,
    "COMPLETE": 6,
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value) -> Optional[float]:
    if value is None:
        return None
    return float(Decimal(value))


def _line_items(quote: Any) -> Optional[List[Dict[str, Any]]]:
    """從報價 blob 取出明細；格式不對的項目直接略過"""
    if not isinstance(quote, dict):
        return None
    items = quote.get("lineItems")
    if not isinstance(items, list):
        return None

    normalized = []
    for item in items:
        if not isinstance(item, dict):
            continue
        description = item.get("description")
        amount = item.get("amount")
        if not isinstance(description, str) or not isinstance(amount, (int, float)):
            continue
        normalized.append({"description": description, "amount": float(amount)})
    return normalized or None


def derive_checkin_stage(payload: Dict[str, Any], today: Optional[date] = None) -> Optional[Dict[str, Any]]:
    """
    從 snapshot 推導前端顯示用的 check-in 階段

    順序：COMPLETE > AGREEMENT > PAYMENT > APPROVAL > LANGUAGE > MEMBERSHIP > RENTAL

    返回：
        {"number": int, "key": str}，沒有進行中的客戶時返回 None
    """
    if not payload.get("sessionId") or not payload.get("customerName"):
        return None

    def stage(key):
        return {"number": STAGES[key], "key": key}

    if payload.get("agreementSigned"):
        return stage("COMPLETE")
    if payload.get("status") == LaneSessionStatus.AWAITING_SIGNATURE.value:
        return stage("AGREEMENT")
    if payload.get("paymentStatus") == "DUE":
        return stage("PAYMENT")
    if payload.get("proposedRentalType") and not payload.get("selectionConfirmed"):
        return stage("APPROVAL")
    if not payload.get("customerPrimaryLanguage"):
        return stage("LANGUAGE")

    today = today or utcnow().date()
    valid_until = payload.get("customerMembershipValidUntil")
    status = membership_status(
        payload.get("membershipNumber"),
        date.fromisoformat(valid_until) if valid_until else None,
        today,
    )
    is_member = bool(payload.get("membershipPurchaseIntent")) or status == "ACTIVE"
    if not is_member and not payload.get("membershipChoice"):
        return stage("MEMBERSHIP")

    return stage("RENTAL")


def build_session_snapshot(
    db: Session,
    session_id: UUID,
    now: Optional[datetime] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    組出一個 lane session 的完整 snapshot

    參數：
        db: SQLAlchemy Session
        session_id: Lane Session id
        now: 推導 stage 用的時間

    返回：
        (lane_id, payload)

    異常：
        LaneSessionNotFound: session 不存在
    """
    now = now or utcnow()

    session = db.get(LaneSession, session_id)
    if not session:
        raise LaneSessionNotFound(session_id)

    # 1. 客戶
    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    membership_number = (customer.membership_number if customer else None) or session.membership_number

    past_due_balance = (customer.past_due_balance or Decimal("0")) if customer else Decimal("0")
    past_due_bypassed = bool(session.past_due_bypassed)
    past_due_blocked = past_due_balance > 0 and not past_due_bypassed

    last_visit_at = None
    active_visit_id = None
    active_block_ends_at = None
    if customer:
        last_block = db.query(CheckinBlock).join(
            Visit, Visit.id == CheckinBlock.visit_id
        ).filter(
            Visit.customer_id == customer.id
        ).order_by(CheckinBlock.starts_at.desc()).first()
        last_visit_at = last_block.starts_at if last_block else None

        active_block = db.query(CheckinBlock).join(
            Visit, Visit.id == CheckinBlock.visit_id
        ).filter(
            Visit.customer_id == customer.id,
            Visit.ended_at.is_(None)
        ).order_by(CheckinBlock.ends_at.desc()).first()
        if active_block:
            active_visit_id = active_block.visit_id
            active_block_ends_at = active_block.ends_at

    # 2. 這個 session 簽約產生的 block
    session_block = db.query(CheckinBlock).filter(
        CheckinBlock.session_id == session.id
    ).order_by(CheckinBlock.created_at.desc()).first()

    # 3. 保留 / 分配的資源
    resource_number = None
    if session.assigned_resource_id and session.assigned_resource_type:
        model = Room if session.assigned_resource_type == ResourceKind.ROOM else Locker
        resource = db.get(model, session.assigned_resource_id)
        resource_number = str(resource.number) if resource else None

    # 4. 付款意圖：優先使用 session 釘住的那筆
    if session.payment_intent_id:
        intent = db.get(PaymentIntent, session.payment_intent_id)
    else:
        intent = db.query(PaymentIntent).filter(
            PaymentIntent.lane_session_id == session.id
        ).order_by(PaymentIntent.created_at.desc()).first()

    line_items = _line_items(session.price_quote_json) or _line_items(intent.quote_json if intent else None)

    dob_month_day = customer.dob.strftime("%m/%d") if customer and customer.dob else None
    valid_until = customer.membership_valid_until if customer else None

    payload = {
        "sessionId": str(session.id),
        "laneId": session.lane_id,
        "status": session.status.value,
        "mode": (session.checkin_mode or CheckinMode.INITIAL).value,
        "customerName": (customer.name if customer else None) or session.customer_display_name or "",
        "membershipNumber": membership_number,
        "customerMembershipValidUntil": valid_until.isoformat() if valid_until else None,
        "membershipPurchaseIntent": (
            session.membership_purchase_intent.value if session.membership_purchase_intent else None
        ),
        "membershipChoice": session.membership_choice,
        "kioskAcknowledgedAt": _iso(session.kiosk_acknowledged_at),
        "allowedRentals": [rental.value for rental in get_allowed_rentals(membership_number)],
        "proposedRentalType": session.proposed_rental_type.value if session.proposed_rental_type else None,
        "proposedBy": session.proposed_by.value if session.proposed_by else None,
        "selectionConfirmed": bool(session.selection_confirmed),
        "selectionConfirmedBy": (
            session.selection_confirmed_by.value if session.selection_confirmed_by else None
        ),
        "customerPrimaryLanguage": (
            customer.primary_language.value if customer and customer.primary_language else None
        ),
        "customerDobMonthDay": dob_month_day,
        "customerLastVisitAt": _iso(last_visit_at),
        "customerNotes": customer.notes if customer else None,
        "pastDueBalance": float(past_due_balance) if past_due_balance > 0 else None,
        "pastDueBlocked": past_due_blocked,
        "pastDueBypassed": past_due_bypassed,
        "paymentIntentId": str(intent.id) if intent else None,
        "paymentStatus": intent.status.value if intent else None,
        "paymentMethod": intent.payment_method.value if intent and intent.payment_method else None,
        "paymentTotal": _money(intent.amount) if intent else None,
        "paymentLineItems": line_items,
        "paymentFailureReason": intent.failure_reason if intent else None,
        "agreementSigned": bool(session_block.agreement_signed) if session_block else False,
        "assignedResourceType": session.assigned_resource_type.value if session.assigned_resource_type else None,
        "assignedResourceNumber": resource_number,
        "visitId": str(session_block.visit_id) if session_block else (
            str(active_visit_id) if active_visit_id else None
        ),
        "waitlistDesiredType": session.waitlist_desired_type.value if session.waitlist_desired_type else None,
        "backupRentalType": session.backup_rental_type.value if session.backup_rental_type else None,
        "blockEndsAt": _iso(session_block.ends_at if session_block else active_block_ends_at),
        "checkoutAt": _iso(session_block.ends_at) if session_block else None,
    }
    payload["stage"] = derive_checkin_stage(payload, now.date())

    return session.lane_id, payload
