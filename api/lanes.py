"""
Lane Check-in API Endpoints

職責：
1. 把 lane kiosk / 員工端的指令轉成 LaneSessionManager / PaymentManager 呼叫
2. 指令 commit 之後重新組出 snapshot 並推播給同一條 lane 的訂閱者
3. 業務異常依 ErrorKind 轉成 HTTP status

推播一定在 manager 的 transaction commit 之後，rollback 的狀態不會被推出去。
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Callable, Dict, List, Optional
import logging

from database import get_db
from models import RentalType
from schemas import (
    AssignResource,
    AssignResourceResponse,
    CompleteMembership,
    ConfirmSelection,
    IdentifyCustomer,
    IdentifyCustomerResponse,
    LaneSessionSummary,
    MembershipIntent,
    PastDueBypass,
    PaymentIntentResponse,
    ProposeSelection,
    ResetLane,
    SetLanguage,
    SignAgreement,
    SignAgreementResponse,
    TerminalResult,
    WaitlistInfoResponse,
)
from core.lane_manager import LaneSessionManager
from core.payment_manager import PaymentManager
from core.broadcaster import broadcaster
from core.exceptions import CheckinCoreException
from services.snapshot_service import build_session_snapshot
from api.errors import to_http_exception

router = APIRouter(prefix="/v1/checkin", tags=["lanes"])
logger = logging.getLogger(__name__)


def publish_lane_snapshot(db: Session, session_id: UUID) -> Optional[Dict[str, Any]]:
    """
    重新組出 snapshot 並推播（只能在 commit 之後呼叫）

    推播失敗只記錄錯誤，不影響已 commit 的指令結果。

    返回：
        snapshot payload，推播失敗時返回 None
    """
    try:
        lane_id, payload = build_session_snapshot(db, session_id)
        delivered = broadcaster.publish_session_updated(lane_id, payload)
    except Exception as e:
        logger.error(f"Failed to publish snapshot for session {session_id}: {e}", exc_info=True)
        db.rollback()
        return None

    logger.debug(f"Lane {lane_id} snapshot delivered to {delivered} subscribers")
    return payload


def _execute(db: Session, command: Callable[..., Dict[str, Any]], *args, **kwargs) -> Dict[str, Any]:
    """
    執行一個 lane 指令並推播結果

    流程：
    1. 呼叫 manager（manager 自己 commit / rollback）
    2. 依返回的 session_id 推播 snapshot（失敗只記錄，照樣返回結果）
    3. 業務異常轉成對應的 HTTP status，其餘一律 500
    """
    try:
        result = command(db, *args, **kwargs)
    except CheckinCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Lane command {command.__name__} failed: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")

    if result.get("session_id"):
        publish_lane_snapshot(db, result["session_id"])
    return result


@router.post("/lane/{lane_id}/start", response_model=IdentifyCustomerResponse)
def identify_customer(lane_id: str, data: IdentifyCustomer, db: Session = Depends(get_db)):
    """
    識別客戶並開始 check-in

    客戶已在場內又沒指定 visit_id 時返回 409，detail 帶 code=ALREADY_CHECKED_IN
    與 active_checkin 摘要，前端據此詢問是否續住。
    """
    return _execute(
        db,
        LaneSessionManager.identify_customer,
        lane_id,
        staff_id=data.staff_id,
        customer_id=data.customer_id,
        customer_name=data.customer_name,
        membership_scan_value=data.membership_scan_value,
        id_scan_value=data.id_scan_value,
        visit_id=data.visit_id,
    )


@router.post("/lane/{lane_id}/set-language")
def set_language(lane_id: str, data: SetLanguage, db: Session = Depends(get_db)):
    return _execute(db, LaneSessionManager.set_language, lane_id, data.language)


@router.post("/lane/{lane_id}/propose-selection")
def propose_selection(lane_id: str, data: ProposeSelection, db: Session = Depends(get_db)):
    return _execute(
        db,
        LaneSessionManager.propose_selection,
        lane_id,
        data.rental_type,
        data.proposed_by,
        waitlist_desired_type=data.waitlist_desired_type,
        backup_rental_type=data.backup_rental_type,
    )


@router.post("/lane/{lane_id}/confirm-selection")
def confirm_selection(lane_id: str, data: ConfirmSelection, db: Session = Depends(get_db)):
    return _execute(db, LaneSessionManager.confirm_selection, lane_id, data.confirmed_by)


@router.post("/lane/{lane_id}/assign", response_model=AssignResourceResponse)
def assign_resource(lane_id: str, data: AssignResource, db: Session = Depends(get_db)):
    """保留資源（簽約前可反覆更換，資源本身狀態不變）"""
    return _execute(db, LaneSessionManager.assign_resource, lane_id, data.resource_type, data.resource_id)


@router.post("/lane/{lane_id}/auto-assign", response_model=AssignResourceResponse)
def auto_assign(lane_id: str, db: Session = Depends(get_db)):
    return _execute(db, LaneSessionManager.auto_assign, lane_id)


@router.post("/lane/{lane_id}/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(lane_id: str, db: Session = Depends(get_db)):
    return _execute(db, PaymentManager.create_payment_intent, lane_id)


@router.post("/lane/{lane_id}/terminal-result")
def record_terminal_result(lane_id: str, data: TerminalResult, db: Session = Depends(get_db)):
    return _execute(db, PaymentManager.record_terminal_result, lane_id, data.outcome)


@router.post("/lane/{lane_id}/past-due-bypass")
def set_past_due_bypass(lane_id: str, data: PastDueBypass, db: Session = Depends(get_db)):
    return _execute(db, LaneSessionManager.set_past_due_bypass, lane_id, data.bypassed, staff_id=data.staff_id)


@router.post("/lane/{lane_id}/membership-purchase-intent")
def set_membership_purchase_intent(lane_id: str, data: MembershipIntent, db: Session = Depends(get_db)):
    return _execute(
        db,
        LaneSessionManager.set_membership_purchase_intent,
        lane_id,
        data.intent,
        session_id=data.session_id,
    )


@router.post("/lane/{lane_id}/complete-membership-purchase")
def complete_membership_purchase(lane_id: str, data: CompleteMembership, db: Session = Depends(get_db)):
    return _execute(
        db,
        LaneSessionManager.complete_membership_purchase,
        lane_id,
        data.membership_number,
        session_id=data.session_id,
    )


@router.post("/lane/{lane_id}/sign-agreement", response_model=SignAgreementResponse)
def sign_agreement(lane_id: str, data: SignAgreement, db: Session = Depends(get_db)):
    """
    簽約，完成 check-in

    前置條件：
    - session 在 AWAITING_SIGNATURE
    - 付款意圖 PAID
    """
    return _execute(db, LaneSessionManager.sign_agreement, data.session_id, data.signature, lane_id=lane_id)


@router.post("/lane/{lane_id}/kiosk-ack")
def kiosk_acknowledge(lane_id: str, db: Session = Depends(get_db)):
    return _execute(db, LaneSessionManager.kiosk_acknowledge, lane_id)


@router.post("/lane/{lane_id}/reset")
def reset_lane(lane_id: str, data: ResetLane, db: Session = Depends(get_db)):
    """RESET 只清 lane kiosk 的狀態，不動已完成的 check-in"""
    return _execute(db, LaneSessionManager.reset_lane, lane_id, staff_id=data.staff_id)


@router.get("/lane/{lane_id}/snapshot")
def get_lane_snapshot(lane_id: str, db: Session = Depends(get_db)):
    """Lane 上最新 session 的 snapshot（WebSocket 重連時補資料用）"""
    try:
        session = LaneSessionManager.latest_session(db, lane_id)
        _, payload = build_session_snapshot(db, session.id)
        return payload
    except CheckinCoreException as e:
        raise to_http_exception(e)


@router.get("/lane/{lane_id}/waitlist-info", response_model=WaitlistInfoResponse)
def get_waitlist_info(
    lane_id: str,
    desired_type: RentalType = Query(...),
    db: Session = Depends(get_db)
):
    """
    候補順位與預估時間

    返回：
        - position: ACTIVE 候補數 + 1
        - estimatedReadyAt: 預估可入住時間（無法估計時為 None）
    """
    try:
        return LaneSessionManager.waitlist_info(db, lane_id, desired_type)
    except CheckinCoreException as e:
        raise to_http_exception(e)


@router.get("/lane-sessions", response_model=List[LaneSessionSummary])
def list_lane_sessions(db: Session = Depends(get_db)):
    """每條 lane 最新的 session（員工端總覽）"""
    return [
        LaneSessionSummary(
            session_id=session.id,
            lane_id=session.lane_id,
            status=session.status.value,
            customer_name=session.customer_display_name,
            updated_at=session.updated_at,
        )
        for session in LaneSessionManager.list_lane_sessions(db)
    ]
