"""
Checkout API Endpoints

職責：
1. 客戶在 kiosk 送出退房請求
2. 員工認領、確認物品、收逾時費、完成退房
3. 掃鑰匙牌查 occupancy；不經請求的手動退房
4. 每次請求狀態改變都在 commit 之後推播退房事件
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Callable, Dict, Optional
import logging

from database import get_db
from models import CheckoutRequest
from schemas import (
    ChecklistProgress,
    ClaimResponse,
    CompleteCheckoutResponse,
    ManualComplete,
    ManualCompleteResponse,
    ManualResolve,
    StaffAction,
    SubmitCheckout,
)
from core.checkout_manager import CheckoutManager, build_request_summary
from core.broadcaster import broadcaster
from core.exceptions import CheckinCoreException
from api.errors import to_http_exception

router = APIRouter(prefix="/v1/checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


def publish_checkout_event(event_type: str, build_payload: Callable[[], Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    組出事件內容並推播（commit 之後呼叫）

    推播失敗只記錄錯誤，不影響已 commit 的退房結果。

    返回：
        推播的 payload，失敗時返回 None
    """
    try:
        payload = build_payload()
        broadcaster.publish_checkout_event(event_type, payload)
    except Exception as e:
        logger.error(f"Failed to publish {event_type}: {e}", exc_info=True)
        return None
    return payload


def publish_request_event(db: Session, event_type: str, request_id: UUID, **extra) -> Optional[Dict[str, Any]]:
    """重新讀取請求並推播摘要"""
    def build():
        summary = build_request_summary(db, db.get(CheckoutRequest, request_id))
        summary.update(extra)
        return summary

    summary = publish_checkout_event(event_type, build)
    if summary is None:
        db.rollback()
    return summary


def _run(db: Session, command: Callable[..., Dict[str, Any]], *args, **kwargs) -> Dict[str, Any]:
    try:
        return command(db, *args, **kwargs)
    except CheckinCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Checkout command {command.__name__} failed: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/requests")
def submit_checkout(data: SubmitCheckout, db: Session = Depends(get_db)):
    """
    送出退房請求

    返回：
        - request_id
        - summary: 逾時分鐘數、逾時費、是否停權
    """
    result = _run(
        db,
        CheckoutManager.submit,
        data.occupancy_id,
        kiosk_device_id=data.kiosk_device_id,
        checklist=data.checklist,
    )
    summary = publish_request_event(db, "CHECKOUT_REQUESTED", result["request_id"])
    return {"request_id": result["request_id"], "summary": summary or result["summary"]}


@router.get("/requests")
def list_open_requests(db: Session = Depends(get_db)):
    """所有 SUBMITTED / CLAIMED 的退房請求"""
    return CheckoutManager.list_open_requests(db)


@router.post("/requests/{request_id}/claim", response_model=ClaimResponse)
def claim_checkout(request_id: UUID, data: StaffAction, db: Session = Depends(get_db)):
    """
    認領退房請求

    已被他人認領且未滿 2 分鐘：409
    """
    result = _run(db, CheckoutManager.claim, request_id, data.staff_id)
    publish_request_event(db, "CHECKOUT_CLAIMED", request_id)
    return result


@router.post("/requests/{request_id}/confirm-items", response_model=ChecklistProgress)
def confirm_items(request_id: UUID, data: StaffAction, db: Session = Depends(get_db)):
    result = _run(db, CheckoutManager.confirm_items, request_id, data.staff_id)
    publish_request_event(db, "CHECKOUT_UPDATED", request_id)
    return result


@router.post("/requests/{request_id}/mark-fee-paid", response_model=ChecklistProgress)
def mark_fee_paid(request_id: UUID, data: StaffAction, db: Session = Depends(get_db)):
    result = _run(db, CheckoutManager.mark_fee_paid, request_id, data.staff_id)
    publish_request_event(db, "CHECKOUT_UPDATED", request_id)
    return result


@router.post("/requests/{request_id}/complete", response_model=CompleteCheckoutResponse)
def complete_checkout(request_id: UUID, data: StaffAction, db: Session = Depends(get_db)):
    """
    完成退房

    前置條件：
    - 操作者是認領者（否則 403）
    - 物品已確認、逾時費已付或為 0（否則 400）
    """
    result = _run(db, CheckoutManager.complete, request_id, data.staff_id)
    publish_request_event(
        db,
        "CHECKOUT_COMPLETED",
        request_id,
        kioskDeviceId=result["kiosk_device_id"],
    )
    return result


@router.get("/resolve-key")
def resolve_key(token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """掃描鑰匙牌，返回目前的 occupancy 與逾時資訊"""
    return _run(db, CheckoutManager.resolve_key, token)


@router.post("/manual-resolve")
def manual_resolve(data: ManualResolve, db: Session = Depends(get_db)):
    if data.occupancy_id is None and data.number is None:
        raise HTTPException(status_code=400, detail="occupancy_id or number is required")
    return _run(db, CheckoutManager.manual_resolve, occupancy_id=data.occupancy_id, number=data.number)


@router.post("/manual-complete", response_model=ManualCompleteResponse)
def manual_complete(data: ManualComplete, db: Session = Depends(get_db)):
    """員工直接退房；visit 已結束時返回 already_checked_out=True"""
    result = _run(db, CheckoutManager.manual_complete, data.occupancy_id, data.staff_id)
    if not result["already_checked_out"]:
        publish_checkout_event("CHECKOUT_COMPLETED", lambda: {
            "occupancyId": str(result["occupancy_id"]),
            "visitId": str(result["visit_id"]),
            "lateMinutes": result["late_minutes"],
            "lateFeeAmount": float(result["fee_amount"]),
            "banApplied": result["ban_applied"],
            "manual": True,
        })
    return result
