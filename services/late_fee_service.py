"""
逾時服務：計算逾時分鐘數、逾時費與停權

純計算邏輯，階梯式（單調遞增）：

    逾時分鐘      費用    停權
    < 30          0       否
    30 - 59       15      否
    60 - 89       35      否
    >= 90         35      是

Demo 模式下一律不收費、不停權。
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple

import database

LATE_EVENT_THRESHOLD_MINUTES = 30

SYSTEM_LATE_FEE_NOTE_PREFIX = "[SYSTEM_LATE_FEE_PENDING]"


def compute_late_minutes(now: datetime, scheduled_checkout_at: datetime) -> int:
    """
    逾時分鐘數（無條件捨去，未逾時為 0）

    範例：
        now 在 scheduled 之前或剛好 -> 0
        晚 45 分 59 秒 -> 45
    """
    seconds = (now - scheduled_checkout_at).total_seconds()
    return max(0, int(seconds // 60))


def calculate_late_fee(late_minutes: int) -> Tuple[Decimal, bool]:
    """
    依逾時分鐘數計算 (費用, 是否停權)
    """
    if database.settings.demo_mode:
        return Decimal("0"), False
    if late_minutes < 30:
        return Decimal("0"), False
    elif late_minutes < 60:
        return Decimal("15.00"), False
    elif late_minutes < 90:
        return Decimal("35.00"), False
    else:
        return Decimal("35.00"), True


def should_record_late_event(late_minutes: int) -> bool:
    return late_minutes >= LATE_EVENT_THRESHOLD_MINUTES


def build_system_late_fee_note(late_minutes: int, visit_date: date, fee_amount: Decimal) -> str:
    return (
        f"{SYSTEM_LATE_FEE_NOTE_PREFIX} Late fee (${fee_amount:.2f}): customer was "
        f"{late_minutes} minutes late on last visit on {visit_date.isoformat()}."
    )


def append_note(notes: Optional[str], line: str) -> str:
    if not notes:
        return line
    return f"{notes}\n{line}"


def strip_system_late_fee_notes(notes: Optional[str]) -> Optional[str]:
    """
    移除系統產生的逾時費備註（手動備註保留）

    用途：
        客戶下次成功 check-in 時，系統備註已經完成提醒的任務
    """
    if not notes:
        return notes
    kept = [
        line for line in notes.split("\n")
        if not line.startswith(SYSTEM_LATE_FEE_NOTE_PREFIX)
    ]
    cleaned = "\n".join(kept).strip()
    return cleaned or None
