"""
狀態機：集中管理所有狀態轉換

Lane Session：
    IDLE → ACTIVE → AWAITING_ASSIGNMENT → AWAITING_PAYMENT → AWAITING_SIGNATURE → COMPLETED
    任何狀態都可以被 RESET 直接帶到 COMPLETED；除此之外沒有往回走的轉換。

Checkout Request：
    SUBMITTED → CLAIMED → VERIFIED
    CLAIMED → CLAIMED 只在認領過期後重新認領時發生（由 CheckoutManager 判斷）。

所有轉換都會寫一筆 AuditLog，方便事後追查。
"""
from sqlalchemy.orm import Session
import logging

from models import (
    AuditLog,
    CheckoutRequest,
    CheckoutStatus,
    LaneSession,
    LaneSessionStatus,
    utcnow,
)
from core.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class LaneSessionStateMachine:
    """Lane Session 狀態轉換表"""

    TRANSITIONS = {
        LaneSessionStatus.IDLE: {LaneSessionStatus.ACTIVE},
        LaneSessionStatus.ACTIVE: {LaneSessionStatus.AWAITING_ASSIGNMENT},
        LaneSessionStatus.AWAITING_ASSIGNMENT: {LaneSessionStatus.AWAITING_PAYMENT},
        LaneSessionStatus.AWAITING_PAYMENT: {LaneSessionStatus.AWAITING_SIGNATURE},
        LaneSessionStatus.AWAITING_SIGNATURE: {LaneSessionStatus.COMPLETED},
        LaneSessionStatus.COMPLETED: set(),
    }

    @classmethod
    def can_transition(cls, current: LaneSessionStatus, target: LaneSessionStatus) -> bool:
        if current == target:
            return True
        return target in cls.TRANSITIONS[current]

    @classmethod
    def transition(
        cls,
        session: LaneSession,
        target: LaneSessionStatus,
        db: Session,
        reset: bool = False,
    ) -> LaneSession:
        """
        轉換 Lane Session 狀態

        參數：
            session: 已鎖定的 LaneSession
            target: 目標狀態
            db: SQLAlchemy Session
            reset: True 表示 RESET（任何狀態都可以到 COMPLETED）

        返回：
            更新後的 LaneSession

        異常：
            InvalidStateTransition: 轉換不合法
        """
        current = session.status
        allowed = reset and target == LaneSessionStatus.COMPLETED
        if not allowed and not cls.can_transition(current, target):
            raise InvalidStateTransition(
                f"Lane session {session.id} cannot go from {current.value} to {target.value}"
            )

        if current == target:
            return session

        session.status = target
        session.updated_at = utcnow()
        db.add(AuditLog(
            action="LANE_SESSION_STATUS_CHANGED",
            entity_type="lane_session",
            entity_id=str(session.id),
            old_value={"status": current.value},
            new_value={"status": target.value, "reset": reset},
        ))
        logger.info(f"Lane {session.lane_id} session {session.id}: {current.value} -> {target.value}")
        return session


class CheckoutRequestStateMachine:
    """退房請求狀態轉換表"""

    TRANSITIONS = {
        CheckoutStatus.SUBMITTED: {CheckoutStatus.CLAIMED},
        CheckoutStatus.CLAIMED: {CheckoutStatus.CLAIMED, CheckoutStatus.VERIFIED},
        CheckoutStatus.VERIFIED: set(),
    }

    @classmethod
    def transition(
        cls,
        request: CheckoutRequest,
        target: CheckoutStatus,
        db: Session,
        staff_id: str | None = None,
    ) -> CheckoutRequest:
        current = request.status
        if target not in cls.TRANSITIONS[current]:
            raise InvalidStateTransition(f"Checkout request is {current.value}")

        request.status = target
        request.updated_at = utcnow()
        db.add(AuditLog(
            staff_id=staff_id,
            action="CHECKOUT_REQUEST_STATUS_CHANGED",
            entity_type="checkout_request",
            entity_id=str(request.id),
            old_value={"status": current.value},
            new_value={"status": target.value},
        ))
        return request
