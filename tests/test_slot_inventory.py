import pytest
from datetime import timedelta

from clinicbook.core.errors import (
    AuthorizationError, ConflictError, NotFoundError, SlotUnavailableError, ValidationError
)
from clinicbook.models.slot import Slot, SlotStatus
from clinicbook.services.slot_inventory import SlotInventory

def _status(db, slot_id):
    db.expire_all()
    return db.query(Slot).filter(Slot.id == slot_id).one().status

def _slot(db, doctor_id, day, label):
    db.expire_all()
    return db.query(Slot).filter(
        Slot.doctor_id == doctor_id, Slot.date == day, Slot.time_label == label
    ).one()

class TestGeneration:

    def test_generate_fixed_granularity(self, db, clinic, clock, visit_day):
        """Slots cover [start, end) at the configured granularity."""
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")

        assert [s.time_label for s in slots] == ["09:00", "09:15", "09:30", "09:45"]
        assert all(s.status == SlotStatus.OPEN for s in slots)
        assert all(s.doctor_id == clinic.house.doctor.id for s in slots)

    def test_generate_is_idempotent(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        first = inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")
        second = inventory.generate(clinic.house, None, visit_day, "09:00", "11:00", granularity_minutes=15)

        assert {s.id for s in first} <= {s.id for s in second}
        assert len(second) == 8
        assert db.query(Slot).count() == 8

    def test_generate_keeps_existing_status(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")
        inventory.reserve(clinic.house.doctor.id, visit_day, "09:30")

        inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")

        assert _slot(db, clinic.house.doctor.id, visit_day, "09:30").status == SlotStatus.BOOKED

    def test_generate_date_range_and_weekdays(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        date_to = visit_day + timedelta(days=6)
        slots = inventory.generate(
            clinic.house, None, visit_day, "09:00", "09:30",
            date_to=date_to, granularity_minutes=30, days_of_week=[visit_day.isoweekday()],
        )

        assert len(slots) == 1
        assert slots[0].date == visit_day

    @pytest.mark.parametrize("start,end", [("10:00", "09:00"), ("10:00", "10:00"), ("9:00", "10:00"), ("24:00", "25:00")])
    def test_generate_rejects_bad_times(self, db, clinic, clock, visit_day, start, end):
        with pytest.raises(ValidationError):
            SlotInventory(db, clock).generate(clinic.house, None, visit_day, start, end)

    def test_generate_rejects_long_ranges(self, db, clinic, clock, visit_day):
        with pytest.raises(ValidationError):
            SlotInventory(db, clock).generate(
                clinic.house, None, visit_day, "09:00", "10:00", date_to=visit_day + timedelta(days=200)
            )

    def test_generate_rejects_non_positive_granularity(self, db, clinic, clock, visit_day):
        with pytest.raises(ValidationError):
            SlotInventory(db, clock).generate(
                clinic.house, None, visit_day, "09:00", "10:00", granularity_minutes=-15
            )

    def test_patient_cannot_generate(self, db, clinic, clock, visit_day):
        with pytest.raises(AuthorizationError):
            SlotInventory(db, clock).generate(
                clinic.alice, clinic.house.doctor.id, visit_day, "09:00", "10:00"
            )

    def test_doctor_cannot_generate_for_colleague(self, db, clinic, clock, visit_day):
        with pytest.raises(AuthorizationError):
            SlotInventory(db, clock).generate(
                clinic.house, clinic.grey.doctor.id, visit_day, "09:00", "10:00"
            )

    def test_staff_must_name_doctor(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        with pytest.raises(ValidationError):
            inventory.generate(clinic.staff, None, visit_day, "09:00", "10:00")

        slots = inventory.generate(clinic.staff, clinic.grey.doctor.id, visit_day, "09:00", "10:00")
        assert len(slots) == 4

class TestReservation:

    def test_reserve_then_refuse_second(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "11:00")
        doctor_id = clinic.house.doctor.id

        handle = inventory.reserve(doctor_id, visit_day, "10:00")
        assert _status(db, handle.slot_id) == SlotStatus.BOOKED

        with pytest.raises(SlotUnavailableError):
            inventory.reserve(doctor_id, visit_day, "10:00")

    def test_reserve_missing_slot(self, db, clinic, clock, visit_day):
        with pytest.raises(SlotUnavailableError):
            SlotInventory(db, clock).reserve(clinic.house.doctor.id, visit_day, "07:00")

    def test_reserve_blocked_slot(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "10:00", "10:30")
        inventory.block(clinic.house, None, [slots[0].id], "Ward round")

        with pytest.raises(SlotUnavailableError):
            inventory.reserve(clinic.house.doctor.id, visit_day, "10:00")

    def test_release_returns_slot_to_open(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "11:00")
        handle = inventory.reserve(clinic.house.doctor.id, visit_day, "10:15")

        assert inventory.release_reservation(handle) is True
        assert _status(db, handle.slot_id) == SlotStatus.OPEN
        # Releasing an open slot is a no-op
        assert inventory.release_reservation(handle) is False
        assert _status(db, handle.slot_id) == SlotStatus.OPEN

    def test_release_leaves_blocked_slot(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "10:00", "10:30")
        inventory.block(clinic.house, None, [slots[0].id], "Ward round")

        assert inventory.release(clinic.house.doctor.id, visit_day, "10:00") is False
        assert _status(db, slots[0].id) == SlotStatus.BLOCKED

    def test_release_unknown_slot(self, db, clinic, clock, visit_day):
        with pytest.raises(NotFoundError):
            SlotInventory(db, clock).release(clinic.house.doctor.id, visit_day, "06:00")

    def test_reserve_duration_books_contiguous_run(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "11:00")
        doctor_id = clinic.house.doctor.id

        handle = inventory.reserve(doctor_id, visit_day, "10:00", duration_minutes=45)
        assert handle.time_labels == ("10:00", "10:15", "10:30")
        assert handle.slot_id == _slot(db, doctor_id, visit_day, "10:00").id
        assert [_slot(db, doctor_id, visit_day, label).status for label in handle.time_labels] == [SlotStatus.BOOKED] * 3
        assert _slot(db, doctor_id, visit_day, "10:45").status == SlotStatus.OPEN

        with pytest.raises(SlotUnavailableError):
            inventory.reserve(doctor_id, visit_day, "10:30", duration_minutes=30)

    def test_reserve_is_all_or_nothing(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "11:00")
        doctor_id = clinic.house.doctor.id
        inventory.reserve(doctor_id, visit_day, "10:15")

        with pytest.raises(SlotUnavailableError):
            inventory.reserve(doctor_id, visit_day, "10:00", duration_minutes=30)
        assert _slot(db, doctor_id, visit_day, "10:00").status == SlotStatus.OPEN

    def test_reserve_needs_unbroken_run(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "10:15")
        inventory.generate(clinic.house, None, visit_day, "10:30", "10:45")

        with pytest.raises(SlotUnavailableError):
            inventory.reserve(clinic.house.doctor.id, visit_day, "10:00", duration_minutes=30)
        assert _slot(db, clinic.house.doctor.id, visit_day, "10:00").status == SlotStatus.OPEN

    def test_reserve_past_midnight(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "23:00", "23:45")
        with pytest.raises(ValidationError):
            inventory.reserve(clinic.house.doctor.id, visit_day, "23:30", duration_minutes=45)

    def test_release_interval_and_reservation(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "10:00", "11:00")
        doctor_id = clinic.house.doctor.id

        inventory.reserve(doctor_id, visit_day, "10:00", duration_minutes=30)
        assert inventory.release(doctor_id, visit_day, "10:00", duration_minutes=30) is True
        assert _slot(db, doctor_id, visit_day, "10:15").status == SlotStatus.OPEN

        handle = inventory.reserve(doctor_id, visit_day, "10:30", duration_minutes=30)
        assert inventory.release_reservation(handle) is True
        assert _slot(db, doctor_id, visit_day, "10:30").status == SlotStatus.OPEN
        assert _slot(db, doctor_id, visit_day, "10:45").status == SlotStatus.OPEN

class TestBlocking:

    def test_block_and_unblock(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "14:00", "16:00")
        ids = [s.id for s in slots]

        blocked = inventory.block(clinic.house, None, ids, "Conference")
        assert all(s.status == SlotStatus.BLOCKED for s in blocked)
        assert all(s.block_reason == "Conference" for s in blocked)
        assert inventory.list_available(clinic.house.doctor.id, visit_day) == []

        reopened = inventory.unblock(clinic.house, None, ids)
        assert all(s.status == SlotStatus.OPEN for s in reopened)
        assert all(s.block_reason is None for s in reopened)
        assert len(inventory.list_available(clinic.house.doctor.id, visit_day)) == 8

    def test_block_requires_reason(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "14:00", "14:30")
        with pytest.raises(ValidationError):
            inventory.block(clinic.house, None, [slots[0].id], "   ")

    def test_block_with_booked_slot_changes_nothing(self, db, clinic, clock, visit_day):
        """Blocking is all-or-nothing."""
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "14:00", "15:00")
        inventory.reserve(clinic.house.doctor.id, visit_day, "14:30")

        with pytest.raises(ConflictError) as exc_info:
            inventory.block(clinic.house, None, [s.id for s in slots], "Conference")

        booked_id = next(s.id for s in slots if s.time_label == "14:30")
        assert exc_info.value.details["slot_ids"] == [booked_id]
        statuses = {s.id: _status(db, s.id) for s in slots}
        assert statuses[booked_id] == SlotStatus.BOOKED
        assert [st for sid, st in statuses.items() if sid != booked_id] == [SlotStatus.OPEN] * 3

    def test_unblock_refuses_booked_slot(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "14:00", "14:30")
        inventory.reserve(clinic.house.doctor.id, visit_day, "14:15")
        inventory.block(clinic.house, None, [slots[0].id], "Conference")

        with pytest.raises(ConflictError):
            inventory.unblock(clinic.house, None, [s.id for s in slots])
        assert _status(db, slots[0].id) == SlotStatus.BLOCKED

    def test_block_foreign_slot(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.grey, None, visit_day, "14:00", "14:30")
        with pytest.raises(AuthorizationError):
            inventory.block(clinic.house, None, [slots[0].id], "Conference")

    def test_block_unknown_slot(self, db, clinic, clock):
        with pytest.raises(NotFoundError):
            SlotInventory(db, clock).block(clinic.house, None, [9999], "Conference")

    def test_staff_cannot_block(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "14:00", "14:30")
        with pytest.raises(AuthorizationError):
            inventory.block(clinic.staff, clinic.house.doctor.id, [slots[0].id], "Conference")

    def test_quick_block_creates_missing_slots(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        blocked = inventory.quick_block(clinic.house, None, visit_day, "14:00", "16:00", "Conference")

        assert len(blocked) == 8
        assert all(s.status == SlotStatus.BLOCKED for s in blocked)

    def test_quick_block_over_booked_slot_changes_nothing(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "14:00", "15:00")
        inventory.reserve(clinic.house.doctor.id, visit_day, "14:45")

        with pytest.raises(ConflictError):
            inventory.quick_block(clinic.house, None, visit_day, "13:00", "15:00", "Conference")

        db.expire_all()
        slots = db.query(Slot).filter(Slot.date == visit_day).all()
        assert len(slots) == 4
        assert sorted(s.status.value for s in slots) == ["booked", "open", "open", "open"]

class TestQueries:

    def test_list_available_sorted_and_open_only(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")
        inventory.reserve(clinic.house.doctor.id, visit_day, "09:15")

        labels = [s.time_label for s in inventory.list_available(clinic.house.doctor.id, visit_day)]
        assert labels == ["09:00", "09:30", "09:45"]

    def test_list_available_unknown_doctor(self, db, clinic, clock, visit_day):
        with pytest.raises(NotFoundError):
            SlotInventory(db, clock).list_available(9999, visit_day)

    def test_schedule_summary(self, db, clinic, clock, visit_day):
        inventory = SlotInventory(db, clock)
        slots = inventory.generate(clinic.house, None, visit_day, "09:00", "10:00")
        inventory.reserve(clinic.house.doctor.id, visit_day, "09:00")
        inventory.block(clinic.house, None, [slots[-1].id], "Lunch")

        listed, summary = inventory.schedule(clinic.house, None, visit_day)
        assert len(listed) == 4
        assert summary["total"] == 4
        assert summary["open"] == 2
        assert summary["booked"] == 1
        assert summary["blocked"] == 1
        assert summary["by_date"] == {visit_day.isoformat(): 4}

    def test_patient_cannot_read_schedule(self, db, clinic, clock, visit_day):
        with pytest.raises(AuthorizationError):
            SlotInventory(db, clock).schedule(clinic.alice, clinic.house.doctor.id, visit_day)
