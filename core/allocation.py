"""
分配演算法：為新的 check-in 挑選房間或置物櫃

規則（房間）：
1. 取出同 tier、CLEAN 且沒有主人的房間，依房號由小到大排序
2. 排除被 OFFERED 候補釘住的房間，以及其他 lane 已保留的房間
3. 跳過前 N 間（N = 同 tier 仍有效的 ACTIVE 候補數）
4. 取下一間

範例：
    210 是唯一的 STANDARD 空房、沒有候補 -> 210
    加一筆 STANDARD ACTIVE 候補 -> 跳過 210，取下一間 STANDARD
    L1 已保留 210 -> L2 拿到 211

置物櫃沒有 tier 也沒有候補，直接取號碼最小、沒被其他 lane 保留的空櫃。

挑選查詢一律使用 FOR UPDATE SKIP LOCKED：兩條 lane 同時分配時，
後到的那個會跳過已被鎖住的列，不會拿到同一個資源。
"""
from datetime import datetime
from sqlalchemy.orm import Session
from uuid import UUID
from typing import List, Optional, Tuple, Union
import logging

from models import (
    LaneSession,
    Locker,
    RentalType,
    ResourceKind,
    Room,
    RoomStatus,
    RoomTier,
    utcnow,
)
from core.exceptions import CapacityExhausted, RentalNotAllowed
from core.locks import OPEN_LANE_STATUSES, skip_locked
from core import waitlist

logger = logging.getLogger(__name__)


def room_tier_for(rental_type: RentalType) -> RoomTier:
    """租借類型對應的房間 tier（置物櫃類型沒有 tier）"""
    if rental_type.is_locker:
        raise RentalNotAllowed(f"{rental_type.value} is not a room rental")
    return RoomTier(rental_type.value)


def reserved_resource_ids(
    db: Session,
    kind: ResourceKind,
    exclude_session_id: Optional[UUID] = None,
) -> List[UUID]:
    """
    未完成的 lane session 上保留中的資源 id

    參數：
        kind: 房間或置物櫃
        exclude_session_id: 不算這個 session 自己的保留
    """
    query = db.query(LaneSession.assigned_resource_id).filter(
        LaneSession.status.in_(list(OPEN_LANE_STATUSES)),
        LaneSession.assigned_resource_type == kind,
        LaneSession.assigned_resource_id.isnot(None)
    )
    if exclude_session_id is not None:
        query = query.filter(LaneSession.id != exclude_session_id)
    return [row[0] for row in query.all()]


def select_room_for_new_checkin(
    db: Session,
    tier: RoomTier,
    now: Optional[datetime] = None,
    exclude_session_id: Optional[UUID] = None,
) -> Optional[Room]:
    """
    挑選第 (N+1) 間可用房間

    參數：
        db: SQLAlchemy Session
        tier: 房間 tier
        now: 判斷候補是否仍有效的時間點
        exclude_session_id: 正在分配的 session（自己的保留不排除）

    返回：
        Room，或沒有足夠的房間時返回 None
    """
    now = now or utcnow()

    # 1. ACTIVE 候補需求
    demand = waitlist.active_demand_count(db, tier, now)

    # 2. OFFERED 候補釘住的房間與其他 lane 的保留
    pinned = waitlist.offered_room_ids(db, tier, now)
    held = reserved_resource_ids(db, ResourceKind.ROOM, exclude_session_id)
    excluded = set(pinned) | set(held)

    # 3. 依房號排序，跳過前 N 間
    query = db.query(Room).filter(
        Room.status == RoomStatus.CLEAN,
        Room.assigned_to_customer_id.is_(None),
        Room.tier == tier
    )
    if excluded:
        query = query.filter(Room.id.notin_(excluded))

    room = skip_locked(
        query.order_by(Room.number.asc()).offset(demand).limit(1)
    ).first()

    logger.debug(
        f"Room selection for {tier.value}: demand={demand}, pinned={len(pinned)}, "
        f"held={len(held)}, picked={room.number if room else None}"
    )
    return room


def select_locker(db: Session, exclude_session_id: Optional[UUID] = None) -> Optional[Locker]:
    """號碼最小的 CLEAN 空櫃（排除其他 lane 的保留）"""
    query = db.query(Locker).filter(
        Locker.status == RoomStatus.CLEAN,
        Locker.assigned_to_customer_id.is_(None)
    )
    held = reserved_resource_ids(db, ResourceKind.LOCKER, exclude_session_id)
    if held:
        query = query.filter(Locker.id.notin_(held))
    return skip_locked(query.order_by(Locker.number.asc()).limit(1)).first()


def allocate(
    db: Session,
    rental_type: RentalType,
    now: Optional[datetime] = None,
    exclude_session_id: Optional[UUID] = None,
) -> Tuple[ResourceKind, Union[Room, Locker]]:
    """
    依租借類型分配資源

    參數：
        exclude_session_id: 正在分配的 session（它自己的保留可以被重新選到）

    返回：
        (ResourceKind, Room | Locker)

    異常：
        CapacityExhausted: 沒有可分配的資源（呼叫端應改走候補）
    """
    if rental_type.is_locker:
        locker = select_locker(db, exclude_session_id)
        if not locker:
            raise CapacityExhausted("No available lockers")
        return ResourceKind.LOCKER, locker

    tier = room_tier_for(rental_type)
    room = select_room_for_new_checkin(db, tier, now, exclude_session_id)
    if not room:
        raise CapacityExhausted(f"No available {tier.value} rooms")
    return ResourceKind.ROOM, room
