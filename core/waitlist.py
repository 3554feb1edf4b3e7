"""
Waitlist Ledger：候補名單

ACTIVE 候補是「需求」，讓分配演算法往後跳過同 tier 的前 N 間房；
OFFERED 候補已經釘住一間房，新的分配一律排除這間。

只有「Visit 尚未結束、且 block 還沒到期」的候補才算數，
已經離場或過期的候補不會擋住 walk-in 客人。
"""
from datetime import datetime
from sqlalchemy.orm import Session
from uuid import UUID
from typing import List, Optional
import logging

from models import (
    AuditLog,
    CheckinBlock,
    RentalType,
    Room,
    RoomStatus,
    RoomTier,
    Visit,
    WaitlistEntry,
    WaitlistStatus,
    utcnow,
)
from core.exceptions import InvalidStateTransition, ResourceUnavailable, WaitlistEntryNotFound
from core.locks import lock_open_waitlist_for_visit

logger = logging.getLogger(__name__)


def _live_entries(db: Session, tier: RoomTier, status: WaitlistStatus, now: datetime):
    """同 tier、指定狀態、且仍在有效停留期間內的候補"""
    return db.query(WaitlistEntry).join(
        CheckinBlock, CheckinBlock.id == WaitlistEntry.checkin_block_id
    ).join(
        Visit, Visit.id == WaitlistEntry.visit_id
    ).filter(
        WaitlistEntry.status == status,
        WaitlistEntry.desired_tier == tier,
        Visit.ended_at.is_(None),
        CheckinBlock.ends_at > now
    )


def active_demand_count(db: Session, tier: RoomTier, now: Optional[datetime] = None) -> int:
    """ACTIVE 候補數（分配時要跳過的房間數）"""
    now = now or utcnow()
    return _live_entries(db, tier, WaitlistStatus.ACTIVE, now).count()


def offered_room_ids(db: Session, tier: RoomTier, now: Optional[datetime] = None) -> List[UUID]:
    """被 OFFERED 候補釘住的房間 id"""
    now = now or utcnow()
    entries = _live_entries(db, tier, WaitlistStatus.OFFERED, now).filter(
        WaitlistEntry.room_id.isnot(None)
    ).all()
    return [entry.room_id for entry in entries]


def create_entry(
    db: Session,
    visit_id: UUID,
    checkin_block_id: UUID,
    customer_id: UUID,
    desired_tier: RoomTier,
    backup_tier: RentalType,
) -> WaitlistEntry:
    """
    建立一筆 ACTIVE 候補

    注意：
        - 不 commit，由呼叫端的 transaction 決定
    """
    entry = WaitlistEntry(
        visit_id=visit_id,
        checkin_block_id=checkin_block_id,
        customer_id=customer_id,
        desired_tier=desired_tier,
        backup_tier=backup_tier,
        status=WaitlistStatus.ACTIVE,
    )
    db.add(entry)
    db.flush()

    logger.info(
        f"Waitlist entry {entry.id} created for customer {customer_id}: "
        f"{desired_tier.value} (backup {backup_tier.value})"
    )
    return entry


def offer(db: Session, entry_id: UUID, room_id: UUID, staff_id: Optional[str] = None) -> WaitlistEntry:
    """
    把一間房釘給候補（ACTIVE → OFFERED）

    異常：
        WaitlistEntryNotFound: 候補不存在
        InvalidStateTransition: 候補不是 ACTIVE
        ResourceUnavailable: 房間不是 CLEAN / 已被佔用 / tier 不符
    """
    entry = db.query(WaitlistEntry).filter(
        WaitlistEntry.id == entry_id
    ).with_for_update().first()
    if not entry:
        raise WaitlistEntryNotFound(entry_id)
    if entry.status != WaitlistStatus.ACTIVE:
        raise InvalidStateTransition(f"Waitlist entry {entry_id} is {entry.status.value}")

    room = db.query(Room).filter(Room.id == room_id).with_for_update().first()
    if not room or not room.is_assignable or room.tier != entry.desired_tier:
        raise ResourceUnavailable(f"Room {room_id} cannot be offered to waitlist entry {entry_id}")

    entry.status = WaitlistStatus.OFFERED
    entry.room_id = room.id
    entry.offered_at = utcnow()
    db.add(AuditLog(
        staff_id=staff_id,
        action="WAITLIST_OFFERED",
        entity_type="waitlist",
        entity_id=str(entry.id),
        old_value={"status": WaitlistStatus.ACTIVE.value},
        new_value={"status": WaitlistStatus.OFFERED.value, "room_id": str(room.id)},
    ))

    logger.info(f"Room {room.number} offered to waitlist entry {entry.id}")
    return entry


def cancel_for_visit(
    db: Session,
    visit_id: UUID,
    staff_id: Optional[str] = None,
    reason: str = "CHECKED_OUT",
) -> List[UUID]:
    """
    取消某個 Visit 的所有 ACTIVE / OFFERED 候補（退房時呼叫）

    每一筆都會寫一筆 WAITLIST_CANCELLED 稽核紀錄。

    返回：
        被取消的候補 id 列表
    """
    entries = lock_open_waitlist_for_visit(visit_id, db).all()
    if not entries:
        return []

    now = utcnow()
    cancelled = []
    for entry in entries:
        old_status = entry.status
        entry.status = WaitlistStatus.CANCELLED
        entry.cancelled_at = now
        db.add(AuditLog(
            staff_id=staff_id,
            action="WAITLIST_CANCELLED",
            entity_type="waitlist",
            entity_id=str(entry.id),
            old_value={"status": old_status.value},
            new_value={"status": WaitlistStatus.CANCELLED.value, "reason": reason},
        ))
        cancelled.append(entry.id)

    logger.info(f"Cancelled {len(cancelled)} waitlist entries for visit {visit_id}")
    return cancelled
