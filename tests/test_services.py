from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

import database
from models import MembershipCardType, RentalType, RoomTier
from services import late_fee_service, pricing_service, rental_service
from services.waitlist_service import compute_waitlist_info

from conftest import T0

MONDAY_MORNING = datetime(2026, 10, 19, 9, 30)
SATURDAY = datetime(2026, 10, 24, 18, 0)


# ============ Late fees ============

def test_late_minutes_is_zero_until_scheduled_end():
    scheduled = datetime(2026, 10, 19, 12, 0)
    assert late_fee_service.compute_late_minutes(scheduled - timedelta(hours=2), scheduled) == 0
    assert late_fee_service.compute_late_minutes(scheduled, scheduled) == 0
    assert late_fee_service.compute_late_minutes(scheduled + timedelta(seconds=59), scheduled) == 0


def test_late_minutes_grows_monotonically():
    scheduled = datetime(2026, 10, 19, 12, 0)
    values = [
        late_fee_service.compute_late_minutes(scheduled + timedelta(seconds=s), scheduled)
        for s in range(0, 3 * 3600, 37)
    ]
    assert values == sorted(values)
    assert values[-1] > 0


@pytest.mark.parametrize("minutes, fee, ban", [
    (0, "0", False),
    (29, "0", False),
    (30, "15.00", False),
    (59, "15.00", False),
    (60, "35.00", False),
    (89, "35.00", False),
    (90, "35.00", True),
    (600, "35.00", True),
])
def test_late_fee_table(minutes, fee, ban):
    assert late_fee_service.calculate_late_fee(minutes) == (Decimal(fee), ban)


def test_late_fee_is_waived_in_demo_mode(monkeypatch):
    monkeypatch.setattr(database.settings, "demo_mode", True)
    assert late_fee_service.calculate_late_fee(120) == (Decimal("0"), False)


def test_late_event_threshold():
    assert not late_fee_service.should_record_late_event(29)
    assert late_fee_service.should_record_late_event(30)


def test_system_note_lines_are_stripped_but_manual_notes_kept():
    note = late_fee_service.build_system_late_fee_note(45, date(2026, 10, 19), Decimal("15"))
    assert note == (
        "[SYSTEM_LATE_FEE_PENDING] Late fee ($15.00): customer was 45 minutes late "
        "on last visit on 2026-10-19."
    )

    notes = late_fee_service.append_note("VIP", note)
    assert notes == f"VIP\n{note}"
    assert late_fee_service.strip_system_late_fee_notes(notes) == "VIP"
    assert late_fee_service.strip_system_late_fee_notes(note) is None


# ============ Rentals ============

def test_gym_locker_eligibility_ranges(monkeypatch):
    assert RentalType.GYM_LOCKER not in rental_service.get_allowed_rentals("1500")

    monkeypatch.setattr(database.settings, "gym_locker_eligible_ranges", "1000-1999, 5000-5999")
    assert RentalType.GYM_LOCKER in rental_service.get_allowed_rentals("1500")
    assert RentalType.GYM_LOCKER in rental_service.get_allowed_rentals("5999")
    assert RentalType.GYM_LOCKER not in rental_service.get_allowed_rentals("2000")
    assert RentalType.GYM_LOCKER not in rental_service.get_allowed_rentals("ABC")
    assert RentalType.GYM_LOCKER not in rental_service.get_allowed_rentals(None)


def test_parse_membership_number():
    assert rental_service.parse_membership_number("%B00123^MEMBER?") == "00123"
    assert rental_service.parse_membership_number("no digits") is None


def test_id_scan_normalization():
    assert rental_service.normalize_scan_text("  A\t\tB  \r\nC   D\r\r") == "A B\nC D"
    assert rental_service.compute_id_scan_hash("A B\nC") == rental_service.compute_id_scan_hash("A  B\r\nC \n")
    assert len(rental_service.compute_id_scan_hash("A")) == 64


def test_calculate_age():
    assert rental_service.calculate_age(date(2002, 10, 20), date(2026, 10, 19)) == 23
    assert rental_service.calculate_age(date(2002, 10, 19), date(2026, 10, 19)) == 24
    assert rental_service.calculate_age(None) is None


def test_membership_status():
    today = date(2026, 10, 19)
    assert rental_service.membership_status(None, None, today) == "NONE"
    assert rental_service.membership_status("12", today, today) == "ACTIVE"
    assert rental_service.membership_status("12", today - timedelta(days=1), today) == "EXPIRED"
    assert rental_service.membership_status("12", None, today) == "EXPIRED"


def test_add_months_clamps_to_month_end():
    assert rental_service.add_months(date(2026, 8, 31), 6) == date(2027, 2, 28)
    assert rental_service.add_months(date(2026, 10, 19), 6) == date(2027, 4, 19)


def test_block_end_rounds_up_to_quarter_hour():
    assert rental_service.round_up_to_quarter_hour(datetime(2026, 10, 19, 10, 0)) == datetime(2026, 10, 19, 10, 0)
    assert rental_service.round_up_to_quarter_hour(datetime(2026, 10, 19, 10, 0, 1)) == datetime(2026, 10, 19, 10, 15)
    assert rental_service.round_up_to_quarter_hour(datetime(2026, 10, 19, 23, 50)) == datetime(2026, 10, 20, 0, 0)
    assert rental_service.compute_block_end(datetime(2026, 10, 19, 9, 7)) == datetime(2026, 10, 19, 15, 15)


# ============ Pricing ============

def _total(**kwargs):
    return pricing_service.calculate_price_quote(**kwargs)["total"]


def test_adult_non_member_pays_daily_membership():
    quote = pricing_service.calculate_price_quote(RentalType.STANDARD, 36, SATURDAY)
    assert quote["total"] == 43.0
    assert quote["version"] == 1
    assert quote["lineItems"] == [
        {"description": "Standard", "amount": 30.0},
        {"description": "Daily Membership", "amount": 13.0},
    ]


def test_youth_and_weekday_discount():
    assert _total(rental_type=RentalType.STANDARD, customer_age=20, check_in_time=MONDAY_MORNING) == 27.0
    # 置物櫃不打折
    assert _total(rental_type=RentalType.LOCKER, customer_age=20, check_in_time=MONDAY_MORNING) == 24.0


def test_active_member_pays_rental_only():
    total = _total(
        rental_type=RentalType.DOUBLE,
        customer_age=40,
        check_in_time=SATURDAY,
        membership_card_type=MembershipCardType.SIX_MONTH,
        membership_valid_until=date(2027, 1, 1),
    )
    assert total == 40.0


def test_six_month_purchase_replaces_daily_membership():
    total = _total(
        rental_type=RentalType.LOCKER,
        customer_age=40,
        check_in_time=SATURDAY,
        include_six_month_membership_purchase=True,
    )
    assert total == 67.0


# ============ Waitlist ETA ============

def test_waitlist_eta_uses_nth_soonest_ending_room(db, inventory, make_customer, checkin):
    first = checkin("L1", make_customer().id, now=T0)
    checkin("L2", make_customer().id, now=T0 + timedelta(hours=1))

    info = compute_waitlist_info(db, RoomTier.STANDARD, T0)
    assert info["position"] == 1
    assert info["estimatedReadyAt"] == (first["checkout_at"] + timedelta(minutes=15)).isoformat()


def test_waitlist_eta_unknown_without_enough_occupied_rooms(db, inventory, make_customer, checkin):
    checkin("L1", make_customer().id, RentalType.LOCKER, waitlist_desired_type=RentalType.DOUBLE)

    info = compute_waitlist_info(db, RoomTier.DOUBLE, T0)
    assert info == {"position": 2, "estimatedReadyAt": None}


def test_waitlist_position_ignores_entries_whose_stay_ended(db, inventory, make_customer, checkin):
    signed = checkin("L1", make_customer().id, RentalType.LOCKER, waitlist_desired_type=RentalType.DOUBLE)
    after_stay = signed["checkout_at"] + timedelta(minutes=1)

    assert compute_waitlist_info(db, RoomTier.DOUBLE, after_stay)["position"] == 1
