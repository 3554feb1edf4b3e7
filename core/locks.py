"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking）；
資源挑選則使用 FOR UPDATE SKIP LOCKED，讓兩條 lane 同時分配時不會互相等待，
也不會拿到同一間房。

SQLite 會忽略 FOR UPDATE（整個資料庫只有一個 writer），測試環境行為一致。
"""
from sqlalchemy.orm import Session, Query
from uuid import UUID

from models import (
    CheckoutRequest,
    LaneSession,
    LaneSessionStatus,
    PaymentIntent,
    WaitlistEntry,
    WaitlistStatus,
)


def with_lane_session_lock(session_id: UUID, db: Session) -> Query:
    """
    鎖定一個 Lane Session（行級鎖）

    使用場景：
    - 簽約、會員購買等以 session id 為入口的操作

    返回：
        Query object（需要呼叫 .first() 來取得結果）
    """
    return db.query(LaneSession).filter(
        LaneSession.id == session_id
    ).with_for_update(nowait=False)


def with_lane_lock(lane_id: str, statuses, db: Session) -> Query:
    """
    鎖定某條 lane 上最新的一個 session（限定狀態）

    範例：
        session = with_lane_lock(lane_id, OPEN_STATUSES, db).first()
        if not session:
            raise LaneSessionNotFound(lane_id)

    參數：
        lane_id: lane 識別碼
        statuses: 允許的 LaneSessionStatus 集合
        db: SQLAlchemy Session
    """
    return db.query(LaneSession).filter(
        LaneSession.lane_id == lane_id,
        LaneSession.status.in_(list(statuses))
    ).order_by(LaneSession.created_at.desc()).limit(1).with_for_update(nowait=False)


def with_payment_intent_lock(payment_intent_id: UUID, db: Session) -> Query:
    return db.query(PaymentIntent).filter(
        PaymentIntent.id == payment_intent_id
    ).with_for_update(nowait=False)


def with_checkout_request_lock(request_id: UUID, db: Session) -> Query:
    """
    鎖定一個退房請求（行級鎖）

    使用場景：
    - 認領、確認物品、付逾時費、完成退房

    注意：
        - 認領時兩位員工同時點擊，第二位會等第一位 commit 之後
          才讀到 CLAIMED 狀態並被拒絕
    """
    return db.query(CheckoutRequest).filter(
        CheckoutRequest.id == request_id
    ).with_for_update(nowait=False)


def lock_open_waitlist_for_visit(visit_id: UUID, db: Session) -> Query:
    """
    鎖定某個 Visit 的所有 ACTIVE / OFFERED 候補

    返回：
        Query object（呼叫 .all() 取得所有結果）
    """
    return db.query(WaitlistEntry).filter(
        WaitlistEntry.visit_id == visit_id,
        WaitlistEntry.status.in_([WaitlistStatus.ACTIVE, WaitlistStatus.OFFERED])
    ).with_for_update(nowait=False)


def skip_locked(query: Query) -> Query:
    """對資源挑選查詢加上 FOR UPDATE SKIP LOCKED"""
    return query.with_for_update(skip_locked=True)


OPEN_LANE_STATUSES = (
    LaneSessionStatus.ACTIVE,
    LaneSessionStatus.AWAITING_ASSIGNMENT,
    LaneSessionStatus.AWAITING_PAYMENT,
    LaneSessionStatus.AWAITING_SIGNATURE,
)
