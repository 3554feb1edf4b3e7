from datetime import timedelta
from decimal import Decimal

import pytest

import database
from models import (
    AuditLog,
    Charge,
    CheckoutRequest,
    CheckoutStatus,
    Customer,
    LateCheckoutEvent,
    Locker,
    RentalType,
    Room,
    RoomStatus,
    Visit,
    WaitlistEntry,
    WaitlistStatus,
)
from core import checkout_manager
from core.checkout_manager import CheckoutManager
from core.exceptions import (
    ClaimHeldByOther,
    DuplicateCheckoutRequest,
    ErrorKind,
    InvalidStateTransition,
    ItemsNotConfirmed,
    KeyTagNotFound,
    LateFeeUnpaid,
    NotClaimOwner,
    OccupancyNotFound,
)


@pytest.fixture
def occupancy(db, inventory, customer, checkin):
    return checkin("L1", customer.id)


def _submit_late(db, occupancy, minutes):
    now = occupancy["checkout_at"] + timedelta(minutes=minutes)
    result = CheckoutManager.submit(db, occupancy["checkin_block_id"], kiosk_device_id="kiosk-1", now=now)
    return result["request_id"], now


def test_submit_computes_late_fee_at_submission(db, occupancy):
    request_id, _ = _submit_late(db, occupancy, 45)

    request = db.get(CheckoutRequest, request_id)
    assert request.status == CheckoutStatus.SUBMITTED
    assert request.late_minutes == 45
    assert request.late_fee_amount == Decimal("15.00")
    assert request.ban_applied is False
    assert request.key_tag_id is not None


def test_submit_on_time_has_no_fee(db, occupancy):
    now = occupancy["checkout_at"] - timedelta(minutes=10)
    result = CheckoutManager.submit(db, occupancy["checkin_block_id"], now=now)

    assert result["summary"]["lateMinutes"] == 0
    assert result["summary"]["lateFeeAmount"] == 0.0
    assert result["summary"]["roomNumber"] == "210"


def test_only_one_open_request_per_occupancy(db, occupancy):
    _submit_late(db, occupancy, 0)
    with pytest.raises(DuplicateCheckoutRequest) as excinfo:
        _submit_late(db, occupancy, 1)
    assert excinfo.value.kind == ErrorKind.CONFLICT


def test_claim_expires_after_two_minutes(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 0)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)

    with pytest.raises(ClaimHeldByOther) as excinfo:
        CheckoutManager.claim(db, request_id, "staff-b", now=now + timedelta(seconds=119))
    assert excinfo.value.kind == ErrorKind.CONFLICT

    result = CheckoutManager.claim(db, request_id, "staff-b", now=now + timedelta(seconds=121))
    assert result["claimed_by"] == "staff-b"
    assert db.get(CheckoutRequest, request_id).claimed_by_staff_id == "staff-b"


def test_claim_at_exact_expiry_is_still_held(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 0)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)

    with pytest.raises(ClaimHeldByOther):
        CheckoutManager.claim(db, request_id, "staff-b", now=now + timedelta(seconds=120))


def test_only_claim_owner_can_progress(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 0)

    with pytest.raises(NotClaimOwner):
        CheckoutManager.confirm_items(db, request_id, "staff-a")

    CheckoutManager.claim(db, request_id, "staff-a", now=now)

    with pytest.raises(NotClaimOwner) as excinfo:
        CheckoutManager.confirm_items(db, request_id, "staff-b")
    assert excinfo.value.kind == ErrorKind.FORBIDDEN
    with pytest.raises(NotClaimOwner):
        CheckoutManager.complete(db, request_id, "staff-b", now=now)


def test_complete_requires_items_and_fee(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 45)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)

    with pytest.raises(ItemsNotConfirmed):
        CheckoutManager.complete(db, request_id, "staff-a", now=now)

    CheckoutManager.confirm_items(db, request_id, "staff-a")
    with pytest.raises(LateFeeUnpaid):
        CheckoutManager.complete(db, request_id, "staff-a", now=now)


def test_late_completion_records_fee_note_and_event(db, occupancy, customer):
    request_id, now = _submit_late(db, occupancy, 45)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.mark_fee_paid(db, request_id, "staff-a")

    CheckoutManager.complete(db, request_id, "staff-a", now=now)

    request = db.get(CheckoutRequest, request_id)
    assert request.status == CheckoutStatus.VERIFIED
    assert request.completed_at == now

    room = db.get(Room, occupancy["resource_id"])
    assert room.status == RoomStatus.DIRTY
    assert room.assigned_to_customer_id is None
    assert db.get(Visit, occupancy["visit_id"]).ended_at == now

    stored = db.get(Customer, customer.id)
    assert stored.past_due_balance == Decimal("15.00")
    assert stored.banned_until is None
    assert stored.notes == (
        "[SYSTEM_LATE_FEE_PENDING] Late fee ($15.00): customer was 45 minutes late "
        "on last visit on 2026-10-24."
    )

    events = db.query(LateCheckoutEvent).all()
    assert len(events) == 1
    assert events[0].late_minutes == 45
    assert events[0].checkout_request_id == request_id

    charges = db.query(Charge).filter(Charge.type == "LATE_FEE").all()
    assert [charge.amount for charge in charges] == [Decimal("15.00")]


def test_completion_is_atomic(db, occupancy, customer, monkeypatch):
    request_id, now = _submit_late(db, occupancy, 45)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.mark_fee_paid(db, request_id, "staff-a")

    def explode(*args, **kwargs):
        raise RuntimeError("late event store unavailable")

    monkeypatch.setattr(checkout_manager, "_record_late_checkout_event", explode)

    with pytest.raises(RuntimeError):
        CheckoutManager.complete(db, request_id, "staff-a", now=now)

    assert db.get(CheckoutRequest, request_id).status == CheckoutStatus.CLAIMED
    room = db.get(Room, occupancy["resource_id"])
    assert room.status == RoomStatus.OCCUPIED
    assert room.assigned_to_customer_id == customer.id
    assert db.get(Customer, customer.id).past_due_balance == Decimal("0")
    assert db.get(Visit, occupancy["visit_id"]).ended_at is None
    assert db.query(Charge).filter(Charge.type == "LATE_FEE").count() == 0


def test_ninety_minutes_late_applies_ban(db, occupancy, customer):
    request_id, now = _submit_late(db, occupancy, 95)
    request = db.get(CheckoutRequest, request_id)
    assert request.late_fee_amount == Decimal("35.00")
    assert request.ban_applied is True

    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.mark_fee_paid(db, request_id, "staff-a")
    CheckoutManager.complete(db, request_id, "staff-a", now=now)

    assert db.get(Customer, customer.id).banned_until == now + timedelta(days=30)


def test_demo_mode_waives_fee_but_still_logs_late_event(db, occupancy, monkeypatch):
    monkeypatch.setattr(database.settings, "demo_mode", True)

    request_id, now = _submit_late(db, occupancy, 95)
    request = db.get(CheckoutRequest, request_id)
    assert request.late_fee_amount == Decimal("0")
    assert request.ban_applied is False

    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.complete(db, request_id, "staff-a", now=now)

    assert db.query(LateCheckoutEvent).count() == 1
    assert db.query(Charge).filter(Charge.type == "LATE_FEE").count() == 0


def test_completion_cancels_waitlist_for_visit(db, inventory, customer, checkin):
    signed = checkin("L1", customer.id, RentalType.STANDARD, waitlist_desired_type=RentalType.DOUBLE)
    now = signed["checkout_at"] - timedelta(minutes=30)
    request_id = CheckoutManager.submit(db, signed["checkin_block_id"], now=now)["request_id"]
    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")

    result = CheckoutManager.complete(db, request_id, "staff-a", now=now)

    entry = db.get(WaitlistEntry, signed["waitlist_entry_id"])
    assert entry.status == WaitlistStatus.CANCELLED
    assert result["cancelled_waitlist_ids"] == [entry.id]
    audit = db.query(AuditLog).filter(AuditLog.action == "WAITLIST_CANCELLED").one()
    assert audit.new_value["reason"] == "CHECKED_OUT"


def test_verified_request_cannot_be_reclaimed_or_resubmitted(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 0)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.complete(db, request_id, "staff-a", now=now)

    with pytest.raises(InvalidStateTransition):
        CheckoutManager.claim(db, request_id, "staff-b", now=now + timedelta(minutes=5))
    with pytest.raises(OccupancyNotFound):
        _submit_late(db, occupancy, 1)


def test_locker_release_goes_back_to_clean(db, inventory, customer, checkin):
    signed = checkin("L1", customer.id, RentalType.LOCKER)
    now = signed["checkout_at"]
    request_id = CheckoutManager.submit(db, signed["checkin_block_id"], now=now)["request_id"]
    CheckoutManager.claim(db, request_id, "staff-a", now=now)
    CheckoutManager.confirm_items(db, request_id, "staff-a")
    CheckoutManager.complete(db, request_id, "staff-a", now=now)

    locker = db.get(Locker, signed["resource_id"])
    assert locker.status == RoomStatus.CLEAN
    assert locker.assigned_to_customer_id is None


def test_resolve_key(db, occupancy):
    result = CheckoutManager.resolve_key(db, "ROOM-210", now=occupancy["checkout_at"] + timedelta(minutes=61))

    assert result["occupancyId"] == str(occupancy["checkin_block_id"])
    assert result["roomNumber"] == "210"
    assert result["lateMinutes"] == 61
    assert result["lateFeeAmount"] == 35.0

    with pytest.raises(OccupancyNotFound):
        CheckoutManager.resolve_key(db, "ROOM-211")
    with pytest.raises(KeyTagNotFound):
        CheckoutManager.resolve_key(db, "NO-SUCH-TAG")


def test_manual_checkout_is_idempotent(db, occupancy, customer):
    now = occupancy["checkout_at"] + timedelta(minutes=31)

    preview = CheckoutManager.manual_resolve(db, number=210, now=now)
    assert preview["occupancyId"] == str(occupancy["checkin_block_id"])
    assert preview["fee"] == 15.0

    first = CheckoutManager.manual_complete(db, occupancy["checkin_block_id"], "staff-a", now=now)
    assert first["already_checked_out"] is False
    assert first["fee_amount"] == Decimal("15.00")

    second = CheckoutManager.manual_complete(db, occupancy["checkin_block_id"], "staff-a", now=now)
    assert second["already_checked_out"] is True

    assert db.get(Customer, customer.id).past_due_balance == Decimal("15.00")
    assert db.get(Room, occupancy["resource_id"]).status == RoomStatus.DIRTY


def test_list_open_requests(db, occupancy):
    request_id, now = _submit_late(db, occupancy, 0)
    CheckoutManager.claim(db, request_id, "staff-a", now=now)

    open_requests = CheckoutManager.list_open_requests(db, now=now)
    assert [item["requestId"] for item in open_requests] == [str(request_id)]
    assert open_requests[0]["claimedBy"] == "staff-a"
