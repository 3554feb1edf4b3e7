"""
計價服務：產生付款意圖的報價

純計算邏輯，不碰資料庫。核心只依賴 quote["total"] 與 quote["lineItems"]，
其餘欄位當作不透明的 blob 原樣儲存並轉發給前端。
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from models import MembershipCardType, RentalType

QUOTE_VERSION = 1

RENTAL_PRICES = {
    RentalType.LOCKER: Decimal("24.00"),
    RentalType.GYM_LOCKER: Decimal("0.00"),
    RentalType.STANDARD: Decimal("30.00"),
    RentalType.DOUBLE: Decimal("40.00"),
    RentalType.SPECIAL: Decimal("50.00"),
}

DAILY_MEMBERSHIP_FEE = Decimal("13.00")
SIX_MONTH_MEMBERSHIP_FEE = Decimal("43.00")
YOUTH_MAX_AGE = 24
# 週一到週四 08:00-14:00 房間折扣
WEEKDAY_DISCOUNT = Decimal("3.00")


def _has_valid_membership(
    card_type: MembershipCardType,
    valid_until: Optional[date],
    today: date,
) -> bool:
    if card_type == MembershipCardType.NONE:
        return False
    return valid_until is not None and valid_until >= today


def _is_weekday_discount_window(check_in_time: datetime) -> bool:
    return check_in_time.weekday() <= 3 and 8 <= check_in_time.hour < 14


def calculate_price_quote(
    rental_type: RentalType,
    customer_age: Optional[int],
    check_in_time: datetime,
    membership_card_type: MembershipCardType = MembershipCardType.NONE,
    membership_valid_until: Optional[date] = None,
    include_six_month_membership_purchase: bool = False,
) -> Dict[str, Any]:
    """
    計算一次 check-in 的報價

    規則：
    - 租借費用依類型固定
    - 非會員、非年輕客（24 歲以下免）要付單日會員費
    - 加購半年會員時改收半年會員費，且不收單日會員費
    - 平日早上房間有折扣（置物櫃不打折）

    參數：
        rental_type: 租借類型
        customer_age: 客戶年齡（未知為 None）
        check_in_time: check-in 時間
        membership_card_type / membership_valid_until: 會員資料
        include_six_month_membership_purchase: 是否加購半年會員

    返回：
        {"total": float, "lineItems": [...], "messages": [...], "version": 1}
    """
    line_items = []
    messages = []

    rental_price = RENTAL_PRICES[rental_type]
    line_items.append({"description": rental_type.value.replace("_", " ").title(), "amount": rental_price})

    if not rental_type.is_locker and _is_weekday_discount_window(check_in_time):
        line_items.append({"description": "Weekday Discount", "amount": -WEEKDAY_DISCOUNT})
        messages.append("Weekday morning discount applied")

    is_youth = customer_age is not None and customer_age <= YOUTH_MAX_AGE
    is_member = _has_valid_membership(membership_card_type, membership_valid_until, check_in_time.date())

    if include_six_month_membership_purchase:
        line_items.append({"description": "6 Month Membership", "amount": SIX_MONTH_MEMBERSHIP_FEE})
    elif not is_member and not is_youth:
        line_items.append({"description": "Daily Membership", "amount": DAILY_MEMBERSHIP_FEE})
    elif is_youth and not is_member:
        messages.append("Youth: daily membership waived")

    total = sum((item["amount"] for item in line_items), Decimal("0"))
    total = max(total, Decimal("0"))

    return {
        "version": QUOTE_VERSION,
        "rentalType": rental_type.value,
        "total": float(total),
        "lineItems": [
            {"description": item["description"], "amount": float(item["amount"])}
            for item in line_items
        ],
        "messages": messages,
    }
