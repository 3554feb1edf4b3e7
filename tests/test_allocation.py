from datetime import timedelta

import pytest

from models import RentalType, ResourceKind, RoomStatus, RoomTier, WaitlistStatus
from core import waitlist
from core.allocation import allocate, room_tier_for, select_locker, select_room_for_new_checkin
from core.exceptions import CapacityExhausted, RentalNotAllowed

from conftest import T0


def test_lowest_numbered_room_without_waitlist(db, inventory):
    room = select_room_for_new_checkin(db, RoomTier.STANDARD, T0)
    assert room.number == 210


def test_active_waitlist_entry_skips_first_room(db, inventory, make_customer, checkin):
    waiting = make_customer("Waiting Customer")
    result = checkin("L1", waiting.id, RentalType.LOCKER, waitlist_desired_type=RentalType.STANDARD)
    assert result["waitlist_entry_id"] is not None

    kind, room = allocate(db, RentalType.STANDARD, T0)
    assert kind == ResourceKind.ROOM
    assert room.number == 211


def test_waitlist_demand_ignores_expired_stays(db, inventory, make_customer, checkin):
    waiting = make_customer("Waiting Customer")
    result = checkin("L1", waiting.id, RentalType.LOCKER, waitlist_desired_type=RentalType.STANDARD)

    after_stay = result["checkout_at"] + timedelta(minutes=1)
    assert waitlist.active_demand_count(db, RoomTier.STANDARD, after_stay) == 0
    assert select_room_for_new_checkin(db, RoomTier.STANDARD, after_stay).number == 210


def test_offered_room_is_excluded(db, inventory, make_customer, checkin):
    waiting = make_customer("Waiting Customer")
    result = checkin("L1", waiting.id, RentalType.LOCKER, waitlist_desired_type=RentalType.STANDARD)

    entry = waitlist.offer(db, result["waitlist_entry_id"], inventory["rooms"][210].id, staff_id="staff-1")
    db.commit()
    assert entry.status == WaitlistStatus.OFFERED

    # OFFERED 不再算需求，但 210 被釘住
    assert waitlist.active_demand_count(db, RoomTier.STANDARD, T0) == 0
    assert select_room_for_new_checkin(db, RoomTier.STANDARD, T0).number == 211


def test_capacity_exhausted_when_demand_covers_all_rooms(db, inventory, make_customer, checkin):
    waiting = make_customer("Waiting Customer")
    checkin("L1", waiting.id, RentalType.LOCKER, waitlist_desired_type=RentalType.DOUBLE)

    with pytest.raises(CapacityExhausted):
        allocate(db, RentalType.DOUBLE, T0)


def test_dirty_and_occupied_rooms_are_skipped(db, inventory):
    inventory["rooms"][210].status = RoomStatus.DIRTY
    inventory["rooms"][211].status = RoomStatus.OCCUPIED
    db.commit()

    assert select_room_for_new_checkin(db, RoomTier.STANDARD, T0).number == 212


def test_consecutive_checkins_never_share_a_room(db, inventory, make_customer, checkin):
    first = checkin("L1", make_customer().id)
    second = checkin("L2", make_customer().id)

    assert first["resource_id"] != second["resource_id"]
    assert {first["number"], second["number"]} == {210, 211}


def test_locker_selection(db, inventory):
    assert select_locker(db).number == 1

    inventory["lockers"][1].status = RoomStatus.OCCUPIED
    db.commit()
    kind, locker = allocate(db, RentalType.GYM_LOCKER, T0)
    assert kind == ResourceKind.LOCKER
    assert locker.number == 2


def test_locker_rentals_have_no_room_tier():
    assert room_tier_for(RentalType.SPECIAL) == RoomTier.SPECIAL
    with pytest.raises(RentalNotAllowed):
        room_tier_for(RentalType.LOCKER)
