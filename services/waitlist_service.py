"""
候補服務：估計候補順位與可入住時間

順位 = 同 tier 仍有效的 ACTIVE 候補數 + 1（和分配演算法跳過的房間數一致）。
預估時間 = 同 tier 第 N 個最早到期的在住房間結束時間（N = 順位）+ 清潔緩衝；
在住房間不足 N 間時無法估計。
"""
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from typing import Any, Dict

import database
from models import CheckinBlock, Room, RoomTier, Visit
from core import waitlist


def compute_waitlist_info(db: Session, tier: RoomTier, now: datetime) -> Dict[str, Any]:
    """
    返回：
        {"position": int, "estimatedReadyAt": ISO 字串或 None}
    """
    position = waitlist.active_demand_count(db, tier, now) + 1

    blocks = db.query(CheckinBlock).join(
        Room, Room.id == CheckinBlock.room_id
    ).join(
        Visit, Visit.id == CheckinBlock.visit_id
    ).filter(
        Room.tier == tier,
        Visit.ended_at.is_(None),
        CheckinBlock.ends_at > now
    ).order_by(CheckinBlock.ends_at.asc()).limit(position).all()

    estimated_ready_at = None
    if len(blocks) >= position:
        buffer = timedelta(minutes=database.settings.waitlist_eta_buffer_minutes)
        estimated_ready_at = (blocks[position - 1].ends_at + buffer).isoformat()

    return {"position": position, "estimatedReadyAt": estimated_ready_at}
