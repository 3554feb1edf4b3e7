"""
租借規則與客戶資料的純計算

- 可租借類型（GYM_LOCKER 依會員號碼範圍開放）
- 年齡、會員狀態
- 會員卡 / 證件掃描值解析
- check-in 結束時間（往上取整到 15 分鐘）
"""
from datetime import date, datetime, timedelta
from typing import List, Optional
import hashlib
import re

import database
from models import RentalType

BASE_RENTALS = [RentalType.LOCKER, RentalType.STANDARD, RentalType.DOUBLE, RentalType.SPECIAL]


def is_gym_locker_eligible(membership_number: Optional[str]) -> bool:
    """
    會員號碼是否落在 GYM_LOCKER 的設定範圍內

    範圍格式："1000-1999,5000-5999"，未設定時一律不開放
    """
    if not membership_number:
        return False

    ranges = database.settings.gym_locker_eligible_ranges
    if not ranges.strip():
        return False

    try:
        number = int(membership_number)
    except ValueError:
        return False

    for part in ranges.split(","):
        part = part.strip()
        if not part or "-" not in part:
            continue
        start, _, end = part.partition("-")
        try:
            if int(start) <= number <= int(end):
                return True
        except ValueError:
            continue
    return False


def get_allowed_rentals(membership_number: Optional[str]) -> List[RentalType]:
    allowed = list(BASE_RENTALS)
    if is_gym_locker_eligible(membership_number):
        allowed.append(RentalType.GYM_LOCKER)
    return allowed


def parse_membership_number(scan_value: str) -> Optional[str]:
    """從會員卡掃描值取出會員號碼（預設只取數字）"""
    match = re.search(database.settings.membership_scan_pattern, scan_value)
    return match.group(0) if match else None


def normalize_scan_text(raw: str) -> str:
    """
    正規化證件掃描值：統一換行、合併行內空白、去掉行尾空白

    同一張證件不同掃描器的輸出正規化後應相同
    """
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    lines = [re.sub(r"[ \t]+", " ", line).rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def compute_id_scan_hash(raw: str) -> str:
    return hashlib.sha256(normalize_scan_text(raw).encode("utf-8")).hexdigest()


def calculate_age(dob: Optional[date], today: Optional[date] = None) -> Optional[int]:
    if dob is None:
        return None
    today = today or date.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return age


def membership_status(
    membership_number: Optional[str],
    valid_until: Optional[date],
    today: date,
) -> str:
    """
    會員狀態：NONE（沒有會員號碼）、ACTIVE、EXPIRED

    有會員號碼但沒有到期日視為 EXPIRED（需要重新購買）
    """
    if not membership_number:
        return "NONE"
    if valid_until is not None and valid_until >= today:
        return "ACTIVE"
    return "EXPIRED"


def add_months(value: date, months: int) -> date:
    """加月份，月底日期會落在目標月份的最後一天（例如 8/31 + 6 個月 -> 2/28）"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    for day in (value.day, 30, 29, 28):
        try:
            return value.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot add {months} months to {value}")


def round_up_to_quarter_hour(value: datetime) -> datetime:
    """
    往上取整到下一個 15 分鐘

    範例：
        10:00:00 -> 10:00:00
        10:00:01 -> 10:15:00
        10:44 -> 10:45
    """
    floored = value.replace(minute=(value.minute // 15) * 15, second=0, microsecond=0)
    if floored == value:
        return value
    return floored + timedelta(minutes=15)


def compute_block_end(starts_at: datetime) -> datetime:
    """check-in block 的結束時間：開始時間 + stay_hours，往上取整到 15 分鐘"""
    return round_up_to_quarter_hour(starts_at + timedelta(hours=database.settings.stay_hours))
