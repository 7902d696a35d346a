from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging

from ..core.config import settings
from ..core.errors import (
    AuthorizationError, ConflictError, NotFoundError, SlotUnavailableError, ValidationError
)
from ..core.security import UserRole, require_roles
from ..models.doctor import Doctor
from ..models.slot import Slot, SlotStatus
from ..models.user import User
from ..utils.timeslots import build_time_labels, covering_run, end_label, iter_dates, parse_time_label

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class SlotReservation:
    """Handle returned by ``reserve``; used to undo the reservation.

    ``slot_id`` is the slot at the start label; ``time_labels`` lists every
    slot the reservation booked.
    """
    slot_id: int
    doctor_id: int
    date: date
    time_label: str
    time_labels: Tuple[str, ...] = ()

class SlotInventory:
    """Bookable time units of each physician, one row per (doctor, date, time)."""

    def __init__(self, db: Session, now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.now = now

    # Generation
    @require_roles(UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN)
    def generate(
        self,
        actor: User,
        doctor_id: Optional[int],
        date_from: date,
        start_time: str,
        end_time: str,
        date_to: Optional[date] = None,
        granularity_minutes: Optional[int] = None,
        days_of_week: Optional[Iterable[int]] = None,
    ) -> List[Slot]:
        """Create the missing slots of a date range; existing labels are kept."""
        doctor_id = self.resolve_doctor_id(actor, doctor_id)
        slots = self._generate(
            doctor_id, date_from, date_to or date_from, start_time, end_time,
            granularity_minutes, days_of_week
        )
        self._commit("Slots were generated concurrently, please retry")
        return slots

    def _generate(self, doctor_id, date_from, date_to, start_time, end_time,
                  granularity_minutes=None, days_of_week=None) -> List[Slot]:
        granularity = granularity_minutes or settings.SLOT_GRANULARITY_MINUTES
        try:
            labels = build_time_labels(start_time, end_time, granularity)
        except ValueError as e:
            raise ValidationError(str(e))

        if date_to < date_from:
            raise ValidationError("End date must not be before start date")
        if (date_to - date_from).days + 1 > settings.MAX_SLOT_GENERATION_DAYS:
            raise ValidationError(
                f"Cannot generate more than {settings.MAX_SLOT_GENERATION_DAYS} days of slots at once"
            )
        if days_of_week and any(day not in range(1, 8) for day in days_of_week):
            raise ValidationError("Days of week must be ISO weekday numbers (1-7)")

        self._get_doctor(doctor_id)
        dates = list(iter_dates(date_from, date_to, days_of_week))
        if not dates:
            return []

        existing = {
            (row.date, row.time_label)
            for row in self.db.query(Slot.date, Slot.time_label).filter(
                Slot.doctor_id == doctor_id,
                Slot.date.in_(dates),
            )
        }

        created = 0
        for day in dates:
            for label in labels:
                if (day, label) in existing:
                    continue
                self.db.add(Slot(
                    doctor_id=doctor_id,
                    date=day,
                    time_label=label,
                    duration_minutes=granularity,
                    status=SlotStatus.OPEN,
                    version=0,
                ))
                created += 1
        self.db.flush()

        logger.info(
            f"Generated {created} slot(s) for doctor {doctor_id} "
            f"from {date_from} to {date_to} ({start_time}-{end_time}, every {granularity}m)"
        )

        return (
            self.db.query(Slot)
            .filter(
                Slot.doctor_id == doctor_id,
                Slot.date.in_(dates),
                Slot.time_label.in_(labels),
            )
            .order_by(Slot.date.asc(), Slot.time_label.asc())
            .all()
        )

    # Blocking
    @require_roles(UserRole.DOCTOR, UserRole.ADMIN)
    def block(self, actor: User, doctor_id: Optional[int], slot_ids: List[int], reason: str) -> List[Slot]:
        """Block every listed slot or none of them."""
        doctor_id = self.resolve_doctor_id(actor, doctor_id)
        ids = self._block(actor, doctor_id, slot_ids, reason)
        self._commit()
        logger.info(f"Doctor {doctor_id}: blocked {len(ids)} slot(s), reason: {reason.strip()}")
        return self._load(ids)

    def _block(self, actor: User, doctor_id: int, slot_ids: List[int], reason: str) -> List[int]:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to block slots")

        slots = self._owned_slots(doctor_id, slot_ids)
        booked = [slot.id for slot in slots if slot.status == SlotStatus.BOOKED]
        if booked:
            logger.warning(f"Doctor {doctor_id}: refused to block booked slot(s) {booked}")
            raise ConflictError(
                "Cannot block a slot that is already booked; cancel the appointment first",
                details={"slot_ids": booked},
            )

        ids = [slot.id for slot in slots]
        result = self.db.execute(
            update(Slot)
            .where(Slot.id.in_(ids), Slot.status.in_([SlotStatus.OPEN, SlotStatus.BLOCKED]))
            .values(
                status=SlotStatus.BLOCKED,
                block_reason=reason,
                blocked_by=actor.id,
                blocked_at=self.now(),
                version=Slot.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            self.db.rollback()
            raise ConflictError("Slots changed while blocking, please retry")
        return ids

    @require_roles(UserRole.DOCTOR, UserRole.ADMIN)
    def unblock(self, actor: User, doctor_id: Optional[int], slot_ids: List[int]) -> List[Slot]:
        """Return blocked slots to open; fails if any of them is booked."""
        doctor_id = self.resolve_doctor_id(actor, doctor_id)
        slots = self._owned_slots(doctor_id, slot_ids)
        booked = [slot.id for slot in slots if slot.status == SlotStatus.BOOKED]
        if booked:
            raise ConflictError(
                "Some slots were booked in the meantime and cannot be unblocked",
                details={"slot_ids": booked},
            )

        ids = [slot.id for slot in slots]
        result = self.db.execute(
            update(Slot)
            .where(Slot.id.in_(ids), Slot.status.in_([SlotStatus.OPEN, SlotStatus.BLOCKED]))
            .values(
                status=SlotStatus.OPEN,
                block_reason=None,
                blocked_by=None,
                blocked_at=None,
                version=Slot.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            self.db.rollback()
            raise ConflictError("Slots changed while unblocking, please retry")
        self._commit()

        logger.info(f"Doctor {doctor_id}: unblocked {len(ids)} slot(s)")
        return self._load(ids)

    @require_roles(UserRole.DOCTOR, UserRole.ADMIN)
    def quick_block(
        self,
        actor: User,
        doctor_id: Optional[int],
        day: date,
        start_time: str,
        end_time: str,
        reason: str,
    ) -> List[Slot]:
        """Generate and block a contiguous range in a single transaction."""
        doctor_id = self.resolve_doctor_id(actor, doctor_id)
        try:
            slots = self._generate(doctor_id, day, day, start_time, end_time)
            ids = self._block(actor, doctor_id, [slot.id for slot in slots], reason)
        except Exception:
            self.db.rollback()
            raise
        self._commit()

        logger.info(f"Doctor {doctor_id}: quick-blocked {day} {start_time}-{end_time}, reason: {reason.strip()}")
        return self._load(ids)

    # Queries
    def list_available(self, doctor_id: int, day: date) -> List[Slot]:
        self._get_doctor(doctor_id)
        return (
            self.db.query(Slot)
            .filter(
                Slot.doctor_id == doctor_id,
                Slot.date == day,
                Slot.status == SlotStatus.OPEN,
            )
            .order_by(Slot.time_label.asc())
            .all()
        )

    @require_roles(UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN)
    def schedule(
        self, actor: User, doctor_id: Optional[int], date_from: date, date_to: Optional[date] = None
    ) -> Tuple[List[Slot], Dict]:
        """All slots of a date range with a status summary."""
        doctor_id = self.resolve_doctor_id(actor, doctor_id)
        date_to = date_to or date_from
        if date_to < date_from:
            raise ValidationError("End date must not be before start date")

        slots = (
            self.db.query(Slot)
            .filter(
                Slot.doctor_id == doctor_id,
                Slot.date >= date_from,
                Slot.date <= date_to,
            )
            .order_by(Slot.date.asc(), Slot.time_label.asc())
            .all()
        )

        summary = {"total": len(slots), "by_date": {}}
        summary.update({status.value: 0 for status in SlotStatus})
        for slot in slots:
            summary[slot.status.value] += 1
            key = slot.date.isoformat()
            summary["by_date"][key] = summary["by_date"].get(key, 0) + 1
        return slots, summary

    # Reservation
    def reserve(
        self, doctor_id: int, day: date, time_label: str, duration_minutes: Optional[int] = None
    ) -> SlotReservation:
        """Atomically move the slots covering an appointment from open to booked.

        Without ``duration_minutes`` only the slot at ``time_label`` is taken.
        The guarded UPDATE is the only check: of two concurrent callers whose
        runs overlap, exactly one sees every row matched.
        """
        slots = self._day_slots(doctor_id, day, time_label, duration_minutes)
        labels = covering_run(
            [(slot.time_label, slot.duration_minutes) for slot in slots], time_label, duration_minutes
        )
        if not labels:
            logger.warning(f"No slots cover {doctor_id}/{day}/{time_label} ({duration_minutes}m)")
            raise SlotUnavailableError()

        ids = [slot.id for slot in slots if slot.time_label in labels]
        result = self.db.execute(
            update(Slot)
            .where(Slot.id.in_(ids), Slot.status == SlotStatus.OPEN)
            .values(status=SlotStatus.BOOKED, version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            self.db.rollback()
            logger.warning(f"Slots {doctor_id}/{day}/{'+'.join(labels)} are not all open, reservation refused")
            raise SlotUnavailableError()
        self.db.commit()

        logger.info(f"Reserved slot(s) {ids} ({doctor_id}/{day}/{'+'.join(labels)})")
        return SlotReservation(
            slot_id=ids[0],
            doctor_id=doctor_id,
            date=day,
            time_label=time_label,
            time_labels=tuple(labels),
        )

    def release(
        self,
        doctor_id: int,
        day: date,
        time_label: str,
        duration_minutes: Optional[int] = None,
        commit: bool = True,
    ) -> bool:
        """Move the booked slots of an interval back to open.

        Already open and independently blocked slots are left as they are.
        Returns whether any slot changed.
        """
        slots = self._day_slots(doctor_id, day, time_label, duration_minutes)
        if not slots or slots[0].time_label != time_label:
            raise NotFoundError("Slot not found")

        booked = [slot.id for slot in slots if slot.status == SlotStatus.BOOKED]
        if not booked:
            logger.info(f"Nothing booked at {doctor_id}/{day}/{time_label}, nothing to release")
            return False

        result = self.db.execute(
            update(Slot)
            .where(Slot.id.in_(booked), Slot.status == SlotStatus.BOOKED)
            .values(status=SlotStatus.OPEN, version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )
        for slot in slots:
            self.db.expire(slot)
        if commit:
            self.db.commit()

        released = result.rowcount > 0
        if released:
            logger.info(f"Released slot(s) {booked} ({doctor_id}/{day}/{time_label})")
        return released

    def release_reservation(self, reservation: SlotReservation, commit: bool = True) -> bool:
        """Undo ``reserve``: reopen exactly the slots it booked."""
        result = self.db.execute(
            update(Slot)
            .where(
                Slot.doctor_id == reservation.doctor_id,
                Slot.date == reservation.date,
                Slot.time_label.in_(reservation.time_labels or (reservation.time_label,)),
                Slot.status == SlotStatus.BOOKED,
            )
            .values(status=SlotStatus.OPEN, version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()

        released = result.rowcount > 0
        if released:
            logger.info(f"Released reservation of slot {reservation.slot_id} ({result.rowcount} slot(s))")
        return released

    def _day_slots(
        self, doctor_id: int, day: date, time_label: str, duration_minutes: Optional[int] = None
    ) -> List[Slot]:
        """Slots starting inside ``[time_label, time_label + duration)``, in order."""
        try:
            validate_time_label(time_label)
            end = end_label(time_label, duration_minutes) if duration_minutes else None
        except ValueError as e:
            raise ValidationError(str(e))

        query = self.db.query(Slot).filter(Slot.doctor_id == doctor_id, Slot.date == day)
        if end is None:
            query = query.filter(Slot.time_label == time_label)
        else:
            query = query.filter(Slot.time_label >= time_label, Slot.time_label < end)
        return query.order_by(Slot.time_label.asc()).all()

    # Helpers
    def resolve_doctor_id(self, actor: User, doctor_id: Optional[int]) -> int:
        """Doctors act on their own inventory; staff and admins must name one."""
        if actor.role == UserRole.DOCTOR:
            if actor.doctor is None:
                raise AuthorizationError("Doctor profile not found for this account")
            if doctor_id is not None and doctor_id != actor.doctor.id:
                raise AuthorizationError("Doctors can only manage their own slots")
            return actor.doctor.id

        if doctor_id is None:
            raise ValidationError("doctor_id is required")
        return doctor_id

    def _get_doctor(self, doctor_id: int) -> Doctor:
        doctor = self.db.query(Doctor).filter(Doctor.id == doctor_id).first()
        if not doctor:
            raise NotFoundError("Doctor not found")
        return doctor

    def _owned_slots(self, doctor_id: int, slot_ids: List[int]) -> List[Slot]:
        ids = sorted(set(slot_ids or []))
        if not ids:
            raise ValidationError("At least one slot id is required")

        slots = self.db.query(Slot).filter(Slot.id.in_(ids)).all()
        missing = sorted(set(ids) - {slot.id for slot in slots})
        if missing:
            raise NotFoundError("Slot not found", details={"slot_ids": missing})

        foreign = [slot.id for slot in slots if slot.doctor_id != doctor_id]
        if foreign:
            raise AuthorizationError("Unauthorized: not your slot", details={"slot_ids": foreign})
        return slots

    def _load(self, ids: List[int]) -> List[Slot]:
        return (
            self.db.query(Slot)
            .filter(Slot.id.in_(ids))
            .order_by(Slot.date.asc(), Slot.time_label.asc())
            .all()
        )

    def _commit(self, conflict_message: str = "Slots changed concurrently, please retry"):
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(conflict_message)

def validate_time_label(label: str) -> str:
    try:
        parse_time_label(label)
    except ValueError as e:
        raise ValidationError(str(e))
    return label
