"""
Checkout Manager：退房請求的生命週期

狀態：
    SUBMITTED → CLAIMED → VERIFIED（終態）

規則：
- 同一個 occupancy 同時最多一筆進行中（SUBMITTED / CLAIMED）的請求
- 逾時分鐘數、逾時費與停權在送出時計算並寫死在請求上
- 認領是獨佔的，有效 2 分鐘；過期後任何員工都可以重新認領（送出時不跑計時器，
  下一次認領時才判斷是否過期）
- 完成退房的所有副作用在同一個 transaction 內：取消候補、釋放資源、
  結束 Visit、停權、欠款、備註、逾時紀錄、VERIFIED；任何一步失敗全部 rollback

員工也可以不經過請求直接手動退房（manual_complete），副作用相同。
"""
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Any, Dict, List, Optional
import logging

import database
from models import (
    Charge,
    CheckinBlock,
    CheckoutRequest,
    CheckoutStatus,
    Customer,
    KeyTag,
    LateCheckoutEvent,
    Locker,
    Room,
    RoomStatus,
    Visit,
    utcnow,
)
from core.state_machine import CheckoutRequestStateMachine
from core.locks import with_checkout_request_lock
from core import waitlist
from core.exceptions import (
    CheckoutRequestNotFound,
    ClaimHeldByOther,
    CustomerNotFound,
    DuplicateCheckoutRequest,
    InvalidStateTransition,
    ItemsNotConfirmed,
    KeyTagNotFound,
    LateFeeUnpaid,
    NotClaimOwner,
    OccupancyNotFound,
)
from services import late_fee_service
from database import serializable, transactional

logger = logging.getLogger(__name__)

OPEN_CHECKOUT_STATUSES = (CheckoutStatus.SUBMITTED, CheckoutStatus.CLAIMED)
LATE_FEE_CHARGE_TYPE = "LATE_FEE"


# ============ Queries ============

def _active_block(db: Session, occupancy_id: UUID) -> Optional[CheckinBlock]:
    """Visit 尚未結束的 block"""
    return db.query(CheckinBlock).join(
        Visit, Visit.id == CheckinBlock.visit_id
    ).filter(
        CheckinBlock.id == occupancy_id,
        Visit.ended_at.is_(None)
    ).first()


def _latest_active_block_for(db: Session, room_id=None, locker_id=None) -> Optional[CheckinBlock]:
    query = db.query(CheckinBlock).join(
        Visit, Visit.id == CheckinBlock.visit_id
    ).filter(Visit.ended_at.is_(None))
    if room_id is not None:
        query = query.filter(CheckinBlock.room_id == room_id)
    else:
        query = query.filter(CheckinBlock.locker_id == locker_id)
    return query.order_by(CheckinBlock.ends_at.desc()).first()


def _resource_numbers(db: Session, block: CheckinBlock) -> Dict[str, Optional[str]]:
    room = db.get(Room, block.room_id) if block.room_id else None
    locker = db.get(Locker, block.locker_id) if block.locker_id else None
    return {
        "roomNumber": str(room.number) if room else None,
        "lockerNumber": str(locker.number) if locker else None,
    }


def build_request_summary(db: Session, request: CheckoutRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
    """退房事件帶的請求摘要（客戶、資源、逾時資訊）"""
    now = now or utcnow()
    block = db.get(CheckinBlock, request.occupancy_id)
    customer = db.get(Customer, request.customer_id)

    summary = {
        "requestId": str(request.id),
        "occupancyId": str(request.occupancy_id),
        "status": request.status.value,
        "customerName": customer.name if customer else None,
        "membershipNumber": customer.membership_number if customer else None,
        "rentalType": block.rental_type.value if block else None,
        "scheduledCheckoutAt": block.ends_at.isoformat() if block else None,
        "currentTime": now.isoformat(),
        "lateMinutes": request.late_minutes,
        "lateFeeAmount": float(request.late_fee_amount or 0),
        "banApplied": bool(request.ban_applied),
        "claimedBy": request.claimed_by_staff_id,
        "claimExpiresAt": request.claim_expires_at.isoformat() if request.claim_expires_at else None,
        "itemsConfirmed": bool(request.items_confirmed),
        "feePaid": bool(request.fee_paid),
    }
    if block:
        summary.update(_resource_numbers(db, block))
    return summary


# ============ Side effects ============

def _release_resources(db: Session, block: CheckinBlock, now: datetime):
    """房間 → DIRTY、置物櫃 → CLEAN，並清掉主人"""
    if block.room_id:
        room = db.query(Room).filter(Room.id == block.room_id).with_for_update().first()
        if room:
            room.status = RoomStatus.DIRTY
            room.assigned_to_customer_id = None
            room.last_status_change = now
            room.updated_at = now
    if block.locker_id:
        locker = db.query(Locker).filter(Locker.id == block.locker_id).with_for_update().first()
        if locker:
            locker.status = RoomStatus.CLEAN
            locker.assigned_to_customer_id = None
            locker.updated_at = now


def _charge_late_fee(
    db: Session,
    customer: Customer,
    block: CheckinBlock,
    visit: Visit,
    fee_amount: Decimal,
    late_minutes: int,
):
    """把逾時費加到欠款、寫一筆 LATE_FEE charge（每個 block 一次）、在客戶備註加一行"""
    customer.past_due_balance = (customer.past_due_balance or Decimal("0")) + fee_amount

    existing = db.query(Charge).filter(
        Charge.checkin_block_id == block.id,
        Charge.type == LATE_FEE_CHARGE_TYPE
    ).first()
    if not existing:
        db.add(Charge(
            visit_id=visit.id,
            checkin_block_id=block.id,
            type=LATE_FEE_CHARGE_TYPE,
            amount=fee_amount,
        ))

    note = late_fee_service.build_system_late_fee_note(late_minutes, visit.started_at.date(), fee_amount)
    customer.notes = late_fee_service.append_note(customer.notes, note)


def _record_late_checkout_event(
    db: Session,
    customer_id: UUID,
    occupancy_id: UUID,
    checkout_request_id: Optional[UUID],
    late_minutes: int,
    fee_amount: Decimal,
    ban_applied: bool,
):
    db.add(LateCheckoutEvent(
        customer_id=customer_id,
        occupancy_id=occupancy_id,
        checkout_request_id=checkout_request_id,
        late_minutes=late_minutes,
        fee_amount=fee_amount,
        ban_applied=ban_applied,
    ))
    logger.info(f"Late checkout recorded for customer {customer_id}: {late_minutes} minutes")


def _finalize_checkout(
    db: Session,
    block: CheckinBlock,
    customer_id: UUID,
    staff_id: Optional[str],
    late_minutes: int,
    fee_amount: Decimal,
    ban_applied: bool,
    checkout_request_id: Optional[UUID],
    now: datetime,
) -> List[UUID]:
    """
    退房的共同副作用（請求退房與手動退房共用）

    流程：
    1. 取消同一個 Visit 的 ACTIVE / OFFERED 候補
    2. 釋放資源
    3. 結束 Visit
    4. 停權
    5. 欠款 + charge + 備註
    6. 逾時 >= 30 分鐘寫逾時紀錄

    返回：
        被取消的候補 id
    """
    visit = db.query(Visit).filter(Visit.id == block.visit_id).with_for_update().first()

    # 1. 候補
    cancelled = waitlist.cancel_for_visit(db, visit.id, staff_id=staff_id)

    # 2. 資源
    _release_resources(db, block, now)

    # 3. Visit
    visit.ended_at = now

    customer = db.query(Customer).filter(Customer.id == customer_id).with_for_update().first()
    if not customer:
        raise CustomerNotFound(customer_id)

    # 4. 停權
    if ban_applied:
        customer.banned_until = now + timedelta(days=database.settings.ban_days)

    # 5. 逾時費
    if fee_amount > 0:
        _charge_late_fee(db, customer, block, visit, fee_amount, late_minutes)

    # 6. 逾時紀錄
    if late_fee_service.should_record_late_event(late_minutes):
        _record_late_checkout_event(
            db, customer_id, block.id, checkout_request_id, late_minutes, fee_amount, ban_applied
        )

    return cancelled


def _require_owned_claim(request: Optional[CheckoutRequest], request_id: UUID, staff_id: str) -> CheckoutRequest:
    if not request:
        raise CheckoutRequestNotFound(request_id)
    if request.claimed_by_staff_id != staff_id:
        raise NotClaimOwner("Not authorized to update this checkout request")
    if request.status != CheckoutStatus.CLAIMED:
        raise InvalidStateTransition(f"Checkout request is {request.status.value}")
    return request


class CheckoutManager:
    """退房請求管理器"""

    @staticmethod
    @serializable
    def submit(
        db: Session,
        occupancy_id: UUID,
        kiosk_device_id: Optional[str] = None,
        checklist: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        客戶在 kiosk 上送出退房請求

        流程：
        1. 找出進行中的 occupancy
        2. 確認沒有其他進行中的請求
        3. 計算逾時分鐘數、逾時費、停權
        4. 找出資源的 key tag
        5. 建立 SUBMITTED 請求

        異常：
            OccupancyNotFound: occupancy 不存在或 Visit 已結束
            DuplicateCheckoutRequest: 已有進行中的請求
        """
        now = now or utcnow()

        # 1. Occupancy
        block = _active_block(db, occupancy_id)
        if not block:
            raise OccupancyNotFound(occupancy_id)
        visit = db.get(Visit, block.visit_id)

        # 2. 重複請求
        existing = db.query(CheckoutRequest).filter(
            CheckoutRequest.occupancy_id == occupancy_id,
            CheckoutRequest.status.in_(OPEN_CHECKOUT_STATUSES)
        ).first()
        if existing:
            raise DuplicateCheckoutRequest(f"Checkout request {existing.id} already exists for this occupancy")

        # 3. 逾時
        late_minutes = late_fee_service.compute_late_minutes(now, block.ends_at)
        fee_amount, ban_applied = late_fee_service.calculate_late_fee(late_minutes)

        # 4. Key tag
        tag_query = db.query(KeyTag).filter(KeyTag.is_active == True)
        if block.room_id:
            tag = tag_query.filter(KeyTag.room_id == block.room_id).first()
        else:
            tag = tag_query.filter(KeyTag.locker_id == block.locker_id).first()

        # 5. 建立請求
        request = CheckoutRequest(
            occupancy_id=block.id,
            customer_id=visit.customer_id,
            key_tag_id=tag.id if tag else None,
            kiosk_device_id=kiosk_device_id,
            customer_checklist_json=checklist or {},
            late_minutes=late_minutes,
            late_fee_amount=fee_amount,
            ban_applied=ban_applied,
            status=CheckoutStatus.SUBMITTED,
        )
        db.add(request)
        db.flush()

        logger.info(
            f"Checkout request {request.id} submitted for occupancy {occupancy_id}: "
            f"{late_minutes} minutes late, fee {fee_amount}, ban {ban_applied}"
        )
        return {
            "request_id": request.id,
            "summary": build_request_summary(db, request, now),
        }

    @staticmethod
    @serializable
    def claim(db: Session, request_id: UUID, staff_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        員工認領退房請求

        認領在 claim_expires_at 之後（嚴格大於）才算過期；
        過期的認領可以被任何員工重新認領。

        異常：
            CheckoutRequestNotFound: 請求不存在
            ClaimHeldByOther: 已被認領且尚未過期
            InvalidStateTransition: 請求已經 VERIFIED
        """
        now = now or utcnow()

        request = with_checkout_request_lock(request_id, db).first()
        if not request:
            raise CheckoutRequestNotFound(request_id)

        if request.status == CheckoutStatus.CLAIMED:
            if request.claim_expires_at and not now > request.claim_expires_at:
                raise ClaimHeldByOther("Checkout request already claimed")
            logger.warning(
                f"Checkout request {request_id}: claim by {request.claimed_by_staff_id} expired, "
                f"re-claimed by {staff_id}"
            )
        elif request.status != CheckoutStatus.SUBMITTED:
            raise InvalidStateTransition(f"Checkout request is {request.status.value}")

        CheckoutRequestStateMachine.transition(request, CheckoutStatus.CLAIMED, db, staff_id=staff_id)
        request.claimed_by_staff_id = staff_id
        request.claimed_at = now
        request.claim_expires_at = now + timedelta(seconds=database.settings.checkout_claim_ttl_seconds)

        logger.info(f"Checkout request {request_id} claimed by {staff_id}")
        return {
            "request_id": request.id,
            "claimed_by": staff_id,
            "claimed_at": request.claimed_at,
            "claim_expires_at": request.claim_expires_at,
        }

    @staticmethod
    @transactional
    def confirm_items(db: Session, request_id: UUID, staff_id: str) -> Dict[str, Any]:
        """認領者確認客戶已歸還所有物品"""
        request = _require_owned_claim(with_checkout_request_lock(request_id, db).first(), request_id, staff_id)
        request.items_confirmed = True
        request.updated_at = utcnow()
        return {"request_id": request.id, "items_confirmed": True, "fee_paid": request.fee_paid}

    @staticmethod
    @transactional
    def mark_fee_paid(db: Session, request_id: UUID, staff_id: str) -> Dict[str, Any]:
        """認領者確認逾時費已收"""
        request = _require_owned_claim(with_checkout_request_lock(request_id, db).first(), request_id, staff_id)
        request.fee_paid = True
        request.updated_at = utcnow()
        return {"request_id": request.id, "items_confirmed": request.items_confirmed, "fee_paid": True}

    @staticmethod
    @serializable
    def complete(db: Session, request_id: UUID, staff_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        完成退房（CLAIMED → VERIFIED）

        前置條件：
        1. 操作者是認領者
        2. 請求是 CLAIMED
        3. 物品已確認
        4. 沒有逾時費，或逾時費已付

        所有副作用（見 _finalize_checkout）與 VERIFIED 在同一個 transaction 內。

        異常：
            NotClaimOwner: 操作者不是認領者
            InvalidStateTransition: 請求不是 CLAIMED
            ItemsNotConfirmed / LateFeeUnpaid: 前置條件不符
            OccupancyNotFound: occupancy 不存在
        """
        now = now or utcnow()

        request = _require_owned_claim(with_checkout_request_lock(request_id, db).first(), request_id, staff_id)
        if not request.items_confirmed:
            raise ItemsNotConfirmed("Items must be confirmed before completing checkout")
        fee_amount = Decimal(request.late_fee_amount or 0)
        if fee_amount > 0 and not request.fee_paid:
            raise LateFeeUnpaid("Late fee must be paid before completing checkout")

        block = db.get(CheckinBlock, request.occupancy_id)
        if not block:
            raise OccupancyNotFound(request.occupancy_id)

        cancelled = _finalize_checkout(
            db,
            block,
            customer_id=request.customer_id,
            staff_id=staff_id,
            late_minutes=request.late_minutes,
            fee_amount=fee_amount,
            ban_applied=request.ban_applied,
            checkout_request_id=request.id,
            now=now,
        )

        CheckoutRequestStateMachine.transition(request, CheckoutStatus.VERIFIED, db, staff_id=staff_id)
        request.completed_at = now

        logger.info(f"Checkout request {request_id} completed by {staff_id}")
        return {
            "request_id": request.id,
            "kiosk_device_id": request.kiosk_device_id,
            "room_id": block.room_id,
            "locker_id": block.locker_id,
            "visit_id": block.visit_id,
            "cancelled_waitlist_ids": cancelled,
        }

    @staticmethod
    def resolve_key(db: Session, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        掃描鑰匙牌，找出對應的進行中 occupancy 與目前的逾時資訊

        異常：
            KeyTagNotFound: 鑰匙牌不存在、已停用或沒有綁資源
            OccupancyNotFound: 資源目前沒有人使用
        """
        now = now or utcnow()

        tag = db.query(KeyTag).filter(KeyTag.token == token, KeyTag.is_active == True).first()
        if not tag or (not tag.room_id and not tag.locker_id):
            raise KeyTagNotFound("Key tag not found or inactive")

        block = _latest_active_block_for(db, room_id=tag.room_id, locker_id=tag.locker_id)
        if not block:
            raise OccupancyNotFound(tag.room_id or tag.locker_id)

        visit = db.get(Visit, block.visit_id)
        customer = db.get(Customer, visit.customer_id)
        late_minutes = late_fee_service.compute_late_minutes(now, block.ends_at)
        fee_amount, ban_applied = late_fee_service.calculate_late_fee(late_minutes)

        result = {
            "keyTagId": str(tag.id),
            "occupancyId": str(block.id),
            "customerId": str(customer.id),
            "customerName": customer.name,
            "membershipNumber": customer.membership_number,
            "rentalType": block.rental_type.value,
            "roomId": str(block.room_id) if block.room_id else None,
            "lockerId": str(block.locker_id) if block.locker_id else None,
            "scheduledCheckoutAt": block.ends_at.isoformat(),
            "lateMinutes": late_minutes,
            "lateFeeAmount": float(fee_amount),
            "banApplied": ban_applied,
        }
        result.update(_resource_numbers(db, block))
        return result

    @staticmethod
    def list_open_requests(db: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        requests = db.query(CheckoutRequest).filter(
            CheckoutRequest.status.in_(OPEN_CHECKOUT_STATUSES)
        ).order_by(CheckoutRequest.created_at.asc()).all()
        return [build_request_summary(db, request, now) for request in requests]

    @staticmethod
    def manual_resolve(
        db: Session,
        occupancy_id: Optional[UUID] = None,
        number: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        手動退房前的預覽：以 occupancy id 或資源號碼（先找置物櫃，再找房間）查詢

        異常：
            OccupancyNotFound: 找不到進行中的 occupancy
        """
        now = now or utcnow()

        block = None
        if occupancy_id:
            block = _active_block(db, occupancy_id)
        elif number is not None:
            locker = db.query(Locker).filter(Locker.number == number).first()
            if locker:
                block = _latest_active_block_for(db, locker_id=locker.id)
            else:
                room = db.query(Room).filter(Room.number == number).first()
                if room:
                    block = _latest_active_block_for(db, room_id=room.id)
        if not block:
            raise OccupancyNotFound(occupancy_id or number)

        visit = db.get(Visit, block.visit_id)
        customer = db.get(Customer, visit.customer_id)
        late_minutes = late_fee_service.compute_late_minutes(now, block.ends_at)
        fee_amount, ban_applied = late_fee_service.calculate_late_fee(late_minutes)
        numbers = _resource_numbers(db, block)

        return {
            "occupancyId": str(block.id),
            "resourceType": "LOCKER" if block.locker_id else "ROOM",
            "number": numbers["lockerNumber"] or numbers["roomNumber"],
            "customerName": customer.name,
            "checkinAt": block.starts_at.isoformat(),
            "scheduledCheckoutAt": block.ends_at.isoformat(),
            "lateMinutes": late_minutes,
            "fee": float(fee_amount),
            "banApplied": ban_applied,
        }

    @staticmethod
    @serializable
    def manual_complete(
        db: Session,
        occupancy_id: UUID,
        staff_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        員工直接手動退房（不經過退房請求）

        Visit 已經結束時直接返回 already_checked_out=True，不重複扣款。
        """
        now = now or utcnow()

        block = db.get(CheckinBlock, occupancy_id)
        if not block:
            raise OccupancyNotFound(occupancy_id)

        visit = db.query(Visit).filter(Visit.id == block.visit_id).with_for_update().first()
        if visit.ended_at is not None:
            return {
                "occupancy_id": block.id,
                "visit_id": visit.id,
                "already_checked_out": True,
                "late_minutes": 0,
                "fee_amount": Decimal("0"),
                "ban_applied": False,
                "cancelled_waitlist_ids": [],
            }

        late_minutes = late_fee_service.compute_late_minutes(now, block.ends_at)
        fee_amount, ban_applied = late_fee_service.calculate_late_fee(late_minutes)

        cancelled = _finalize_checkout(
            db,
            block,
            customer_id=visit.customer_id,
            staff_id=staff_id,
            late_minutes=late_minutes,
            fee_amount=fee_amount,
            ban_applied=ban_applied,
            checkout_request_id=None,
            now=now,
        )

        logger.info(f"Manual checkout of occupancy {occupancy_id} by {staff_id}: {late_minutes} minutes late")
        return {
            "occupancy_id": block.id,
            "visit_id": visit.id,
            "already_checked_out": False,
            "late_minutes": late_minutes,
            "fee_amount": fee_amount,
            "ban_applied": ban_applied,
            "cancelled_waitlist_ids": cancelled,
        }
