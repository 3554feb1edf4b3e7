"""
Payment API Endpoints

員工在收銀端確認收款；收款後 lane 進入簽約階段，推播新的 snapshot。
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from uuid import UUID
import logging

from database import get_db
from schemas import MarkPaid, MarkPaidResponse
from core.payment_manager import PaymentManager
from core.exceptions import CheckinCoreException
from api.errors import to_http_exception
from api.lanes import publish_lane_snapshot

router = APIRouter(prefix="/v1/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/{payment_intent_id}/mark-paid", response_model=MarkPaidResponse)
def mark_paid(payment_intent_id: UUID, data: MarkPaid, db: Session = Depends(get_db)):
    """
    確認收款（DUE → PAID）

    重複呼叫返回 already_paid=True；已取消的付款意圖返回 409。
    """
    try:
        result = PaymentManager.mark_paid(db, payment_intent_id, data.method)
    except CheckinCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to mark payment {payment_intent_id} paid: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")

    if result["session_id"] and not result["already_paid"]:
        publish_lane_snapshot(db, result["session_id"])

    return MarkPaidResponse(
        payment_intent_id=result["payment_intent_id"],
        status=result["status"].value,
        session_id=result["session_id"],
        already_paid=result["already_paid"],
    )
