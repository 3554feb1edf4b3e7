"""
Payment Manager：付款意圖的生命週期

狀態：
    DUE → PAID（終態，只能經由員工確認或刷卡機回報成功）
    DUE → CANCELLED（終態，只會在合併重複的 DUE 意圖時發生）

不變式：
- 每個 Lane Session 同時最多一筆 DUE 意圖；重複時保留最新的，其餘取消
- PAID 之後不再修改；PAID 是簽約的唯一前提
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Dict, Optional
import logging

from models import (
    AuditLog,
    Customer,
    LaneSession,
    LaneSessionStatus,
    MembershipCardType,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from core.state_machine import LaneSessionStateMachine
from core.locks import OPEN_LANE_STATUSES, with_lane_lock, with_payment_intent_lock
from core.exceptions import (
    InvalidStateTransition,
    LaneSessionNotFound,
    NoPaymentIntent,
    PaymentAlreadyCollected,
    PaymentIntentNotFound,
    SelectionNotConfirmed,
)
from services.pricing_service import calculate_price_quote
from services.rental_service import calculate_age
from database import transactional

logger = logging.getLogger(__name__)

TERMINAL_OUTCOMES = {
    "CASH_SUCCESS": PaymentMethod.CASH,
    "CARD_SUCCESS": PaymentMethod.CREDIT,
}
DECLINE_OUTCOMES = ("CASH_DECLINE", "CARD_DECLINE")


def build_quote(db: Session, session: LaneSession, now: datetime) -> Dict[str, Any]:
    """依客戶年齡、會員狀態與會員加購意圖計算報價"""
    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    return calculate_price_quote(
        rental_type=session.desired_rental_type,
        customer_age=calculate_age(customer.dob, now.date()) if customer else None,
        check_in_time=now,
        membership_card_type=customer.membership_card_type if customer else MembershipCardType.NONE,
        membership_valid_until=customer.membership_valid_until if customer else None,
        include_six_month_membership_purchase=session.membership_purchase_intent is not None,
    )


def pinned_intent(db: Session, session: LaneSession) -> Optional[PaymentIntent]:
    if not session.payment_intent_id:
        return None
    return db.get(PaymentIntent, session.payment_intent_id)


def requote_due_intent(db: Session, session: LaneSession, now: datetime) -> Optional[PaymentIntent]:
    """
    重新計算 session 上 DUE 意圖的報價（會員加購意圖改變時）

    返回：
        更新後的 PaymentIntent，沒有 DUE 意圖時返回 None

    異常：
        PaymentAlreadyCollected: 已經付款，報價不能再改
    """
    intent = pinned_intent(db, session)
    if intent is None:
        return None
    if intent.status == PaymentStatus.PAID:
        raise PaymentAlreadyCollected(f"Payment {intent.id} is already PAID")
    if intent.status != PaymentStatus.DUE:
        return None

    quote = build_quote(db, session, now)
    intent.amount = Decimal(str(quote["total"]))
    intent.quote_json = quote
    intent.updated_at = now
    session.price_quote_json = quote
    logger.info(f"Re-quoted payment intent {intent.id}: {quote['total']}")
    return intent


def _apply_paid(db: Session, intent: PaymentIntent, method: PaymentMethod, now: datetime) -> Optional[LaneSession]:
    """DUE → PAID，並把 session 推進到 AWAITING_SIGNATURE"""
    intent.status = PaymentStatus.PAID
    intent.payment_method = method
    intent.failure_reason = None
    intent.updated_at = now
    db.add(AuditLog(
        action="PAYMENT_MARKED_PAID",
        entity_type="payment_intent",
        entity_id=str(intent.id),
        old_value={"status": PaymentStatus.DUE.value},
        new_value={"status": PaymentStatus.PAID.value, "method": method.value},
    ))

    if not intent.lane_session_id:
        return None

    session = db.query(LaneSession).filter(
        LaneSession.id == intent.lane_session_id
    ).with_for_update().first()
    if session and session.status == LaneSessionStatus.AWAITING_PAYMENT:
        LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_SIGNATURE, db)
    return session


class PaymentManager:
    """付款意圖管理器"""

    @staticmethod
    @transactional
    def create_payment_intent(db: Session, lane_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        建立（或沿用）lane session 的 DUE 付款意圖

        流程：
        1. 鎖定 lane 上進行中的 session
        2. 驗證租借類型已確認、尚未付款
        3. 已有 DUE 意圖：保留最新的一筆，其餘 CANCELLED
        4. 否則計算報價並建立新的 DUE 意圖
        5. Session 轉到 AWAITING_PAYMENT

        參數：
            db: SQLAlchemy Session
            lane_id: lane 識別碼
            now: 報價時間

        返回：
            {"session_id", "lane_id", "payment_intent_id", "amount", "quote"}

        異常：
            LaneSessionNotFound: lane 上沒有進行中的 session
            SelectionNotConfirmed: 租借類型尚未確認
            PaymentAlreadyCollected: session 已經付過款
        """
        now = now or utcnow()

        # 1. 鎖定 session
        session = with_lane_lock(lane_id, OPEN_LANE_STATUSES, db).first()
        if not session:
            raise LaneSessionNotFound(lane_id)

        # 2. 驗證前置條件
        if not session.selection_confirmed or not session.desired_rental_type:
            raise SelectionNotConfirmed("Selection must be confirmed before creating payment intent")

        current = pinned_intent(db, session)
        if current is not None and current.status == PaymentStatus.PAID:
            raise PaymentAlreadyCollected(f"Lane session {session.id} is already paid")

        # 3. 合併重複的 DUE 意圖
        due = db.query(PaymentIntent).filter(
            PaymentIntent.lane_session_id == session.id,
            PaymentIntent.status == PaymentStatus.DUE
        ).order_by(PaymentIntent.created_at.desc()).with_for_update().all()

        if due:
            keep, extras = due[0], due[1:]
            for extra in extras:
                extra.status = PaymentStatus.CANCELLED
                extra.updated_at = now
            if extras:
                logger.warning(
                    f"Coalesced {len(extras)} duplicate DUE intents on session {session.id}, kept {keep.id}"
                )
            session.payment_intent_id = keep.id
            intent = keep
            quote = keep.quote_json
        else:
            # 4. 建立新的 DUE 意圖
            quote = build_quote(db, session, now)
            intent = PaymentIntent(
                lane_session_id=session.id,
                amount=Decimal(str(quote["total"])),
                status=PaymentStatus.DUE,
                quote_json=quote,
            )
            db.add(intent)
            db.flush()
            session.payment_intent_id = intent.id
            session.price_quote_json = quote
            logger.info(f"Created payment intent {intent.id} for session {session.id}: {quote['total']}")

        # 5. 狀態轉換
        if session.status == LaneSessionStatus.AWAITING_ASSIGNMENT:
            LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_PAYMENT, db)

        return {
            "session_id": session.id,
            "lane_id": session.lane_id,
            "payment_intent_id": intent.id,
            "amount": intent.amount,
            "quote": quote,
        }

    @staticmethod
    @transactional
    def mark_paid(
        db: Session,
        payment_intent_id: UUID,
        method: PaymentMethod = PaymentMethod.CASH,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        員工確認收款（DUE → PAID）

        已經是 PAID 時直接返回成功（重複點擊不算錯）。

        異常：
            PaymentIntentNotFound: 付款意圖不存在
            InvalidStateTransition: 付款意圖已被取消
        """
        now = now or utcnow()

        intent = with_payment_intent_lock(payment_intent_id, db).first()
        if not intent:
            raise PaymentIntentNotFound(payment_intent_id)

        session = db.get(LaneSession, intent.lane_session_id) if intent.lane_session_id else None

        if intent.status == PaymentStatus.PAID:
            return {
                "payment_intent_id": intent.id,
                "status": intent.status,
                "session_id": intent.lane_session_id,
                "lane_id": session.lane_id if session else None,
                "already_paid": True,
            }
        if intent.status == PaymentStatus.CANCELLED:
            raise InvalidStateTransition(f"Payment intent {intent.id} was cancelled")

        session = _apply_paid(db, intent, method, now)
        logger.info(f"Payment intent {intent.id} marked PAID ({method.value})")

        return {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "session_id": intent.lane_session_id,
            "lane_id": session.lane_id if session else None,
            "already_paid": False,
        }

    @staticmethod
    @transactional
    def record_terminal_result(
        db: Session,
        lane_id: str,
        outcome: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        記錄收銀機 / 刷卡機的結果

        outcome：
            CASH_SUCCESS / CARD_SUCCESS -> 付款意圖 PAID（CASH / CREDIT）
            CASH_DECLINE / CARD_DECLINE -> 記錄失敗原因，狀態不變
        """
        now = now or utcnow()

        if outcome not in TERMINAL_OUTCOMES and outcome not in DECLINE_OUTCOMES:
            raise ValueError(f"Unknown terminal outcome: {outcome}")

        session = with_lane_lock(lane_id, OPEN_LANE_STATUSES, db).first()
        if not session:
            raise LaneSessionNotFound(lane_id)
        if not session.payment_intent_id:
            raise NoPaymentIntent(f"Lane session {session.id} has no payment intent")

        intent = with_payment_intent_lock(session.payment_intent_id, db).first()
        if not intent:
            raise PaymentIntentNotFound(session.payment_intent_id)

        if outcome in TERMINAL_OUTCOMES:
            if intent.status == PaymentStatus.DUE:
                _apply_paid(db, intent, TERMINAL_OUTCOMES[outcome], now)
                logger.info(f"Terminal {outcome} on lane {lane_id}, intent {intent.id} PAID")
            elif intent.status == PaymentStatus.CANCELLED:
                raise InvalidStateTransition(f"Payment intent {intent.id} was cancelled")
            return {"session_id": session.id, "lane_id": lane_id, "payment_intent_id": intent.id, "ok": True}

        intent.failure_reason = outcome
        intent.updated_at = now
        session.last_payment_decline_reason = outcome
        session.last_payment_decline_at = now
        logger.info(f"Terminal {outcome} on lane {lane_id}, intent {intent.id} stays {intent.status.value}")
        return {"session_id": session.id, "lane_id": lane_id, "payment_intent_id": intent.id, "ok": False}
