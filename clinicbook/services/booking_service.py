from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple, Union
import logging

from ..core.config import settings
from ..core.errors import (
    AuthorizationError, ConflictError, NotFoundError, SlotUnavailableError, StateError, ValidationError
)
from ..core.security import UserRole, require_roles
from ..models.appointment import Appointment, AppointmentStatus, AppointmentType
from ..models.doctor import Doctor
from ..models.slot import Slot, SlotStatus
from ..models.user import User
from ..utils.timeslots import covering_run, slot_datetime
from .payment_authority import PaymentAuthority
from .payment_service import PaymentOption, PaymentRefundCoordinator
from .slot_inventory import SlotInventory, validate_time_label

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = (
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
)

@dataclass
class Alternative:
    """Another physician of the same department with an open slot that day."""
    doctor_id: int
    doctor_name: str
    department: str
    date: date
    time_label: str
    same_time: bool
    open_slots: List[str] = field(default_factory=list)

@dataclass
class BookingResult:
    appointment: Optional[Appointment] = None
    alternatives: List[Alternative] = field(default_factory=list)

    @property
    def booked(self) -> bool:
        return self.appointment is not None

class BookingCoordinator:
    """Reserves a slot and creates the appointment as one unit."""

    def __init__(
        self,
        db: Session,
        authority: Optional[PaymentAuthority] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.now = now
        self.inventory = SlotInventory(db, now)
        self.payments = PaymentRefundCoordinator(db, authority, now)
        self.lifecycle = self.payments.lifecycle

    @require_roles(UserRole.PATIENT)
    def create_appointment(
        self,
        actor: User,
        doctor_id: int,
        day: date,
        time_label: str,
        appointment_type: Union[str, AppointmentType],
        chief_complaint: str,
        department: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        payment_option: Union[str, PaymentOption] = PaymentOption.PAY_AT_HOSPITAL,
        payment_token: Optional[str] = None,
    ) -> BookingResult:
        """Book ``time_label`` with the doctor, or suggest alternatives.

        A taken slot is not an error: the result then carries the other
        physicians of the department who still have room that day.
        """
        patient = actor.patient
        if patient is None:
            raise AuthorizationError("Patient profile not found for this account")
        patient_id = patient.id

        if not isinstance(doctor_id, int) or isinstance(doctor_id, bool) or doctor_id <= 0:
            raise ValidationError("Valid doctor ID is required")
        validate_time_label(time_label)
        try:
            appointment_type = AppointmentType(appointment_type)
        except ValueError:
            raise ValidationError(f"Unknown appointment type '{appointment_type}'")
        chief_complaint = (chief_complaint or "").strip()
        if not chief_complaint:
            raise ValidationError("Chief complaint is required")
        duration_minutes = duration_minutes or settings.DEFAULT_APPOINTMENT_DURATION
        if duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        self._check_not_past(day, time_label)

        doctor = self.db.query(Doctor).filter(
            Doctor.id == doctor_id,
            Doctor.is_available == True,  # noqa: E712
        ).first()
        if not doctor:
            raise NotFoundError("Doctor not found")
        if department and department.strip().lower() != doctor.department.lower():
            raise ValidationError("Doctor does not belong to the requested department")
        department = doctor.department

        try:
            reservation = self.inventory.reserve(doctor.id, day, time_label, duration_minutes)
        except SlotUnavailableError:
            alternatives = self.find_alternatives(doctor, day, time_label, duration_minutes)
            logger.info(
                f"Slot {doctor.id}/{day}/{time_label} unavailable for patient {patient.id}, "
                f"offering {len(alternatives)} alternative(s)"
            )
            return BookingResult(alternatives=alternatives)

        appointment = None
        receipt = None
        try:
            appointment = Appointment(
                patient_id=patient.id,
                doctor_id=doctor.id,
                slot_id=reservation.slot_id,
                date=day,
                time_label=time_label,
                duration_minutes=duration_minutes,
                appointment_type=appointment_type,
                chief_complaint=chief_complaint,
                department=department,
                status=AppointmentStatus.SCHEDULED,
                consultation_fee=(
                    doctor.consultation_fee
                    if doctor.consultation_fee is not None
                    else settings.DEFAULT_CONSULTATION_FEE
                ),
            )
            self.db.add(appointment)
            self.db.flush()

            receipt = self.payments.attach_payment(appointment, payment_option, payment_token)
            self.db.commit()
        except Exception:
            reference = f"APT-{appointment.id}" if appointment is not None and appointment.id else "APT-unsaved"
            self.db.rollback()
            self.inventory.release_reservation(reservation)
            if receipt is not None:
                self.payments.void_charge(receipt, reference)
            logger.error(
                f"Booking {doctor_id}/{day}/{time_label} for patient {patient_id} failed, slot released"
            )
            raise

        self.db.refresh(appointment)
        logger.info(
            f"Appointment {appointment.id} booked: patient {patient.id} with doctor {doctor.id} "
            f"on {day} at {time_label} ({appointment.payment_status.value})"
        )
        return BookingResult(appointment=appointment)

    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def reschedule_appointment(self, actor: User, appointment_id: int, day: date, time_label: str) -> Appointment:
        """Move an appointment to another time with the same physician.

        The new slots are reserved first; the old ones are released in the
        same transaction that moves the appointment. If that fails the new
        reservation is undone.
        """
        validate_time_label(time_label)
        self._check_not_past(day, time_label)

        appointment = self.lifecycle.load(appointment_id)
        if actor.role == UserRole.PATIENT and not self.lifecycle.owns(actor, appointment):
            raise AuthorizationError("You can only reschedule your own appointments")
        self._check_reschedulable(appointment)
        if (appointment.date, appointment.time_label) == (day, time_label):
            raise ValidationError("Appointment is already at this time")

        doctor_id = appointment.doctor_id
        old_day, old_label = appointment.date, appointment.time_label
        reservation = self.inventory.reserve(doctor_id, day, time_label, appointment.duration_minutes)

        try:
            appointment = self.lifecycle.load(appointment_id, lock=True)
            self._check_reschedulable(appointment)
            self.inventory.release(
                doctor_id, old_day, old_label, appointment.duration_minutes, commit=False
            )
            appointment.slot_id = reservation.slot_id
            appointment.date = day
            appointment.time_label = time_label
            appointment.rescheduled_at = self.now()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.inventory.release_reservation(reservation)
            logger.error(
                f"Rescheduling appointment {appointment_id} to {day} {time_label} failed, new slot released"
            )
            if isinstance(e, StaleDataError):
                raise ConflictError("Appointment was modified by another request, please retry")
            raise

        self.db.refresh(appointment)
        logger.info(
            f"Appointment {appointment.id} rescheduled from {old_day} {old_label} to {day} {time_label} "
            f"by user {actor.id} ({actor.role.value})"
        )
        return appointment

    def find_alternatives(
        self, doctor: Doctor, day: date, time_label: str, duration_minutes: Optional[int] = None
    ) -> List[Alternative]:
        """Open slots of the department's other doctors on ``day``.

        Only doctors with room for the whole appointment are offered. Doctors
        free at the same time come first, then the rest by their earliest
        fitting start.
        """
        rows = (
            self.db.query(Doctor, Slot.time_label, Slot.duration_minutes)
            .join(Slot, Slot.doctor_id == Doctor.id)
            .filter(
                Doctor.department == doctor.department,
                Doctor.id != doctor.id,
                Doctor.is_available == True,  # noqa: E712
                Slot.date == day,
                Slot.status == SlotStatus.OPEN,
            )
            .order_by(Doctor.id.asc(), Slot.time_label.asc())
            .all()
        )

        open_by_doctor: Dict[int, List[Tuple[str, int]]] = {}
        doctors: Dict[int, Doctor] = {}
        for other, label, length in rows:
            doctors[other.id] = other
            open_by_doctor.setdefault(other.id, []).append((label, length))

        alternatives = []
        for other_id, slots in open_by_doctor.items():
            starts = [label for label, _ in slots if covering_run(slots, label, duration_minutes)]
            if not starts:
                continue
            other = doctors[other_id]
            same_time = time_label in starts
            alternatives.append(Alternative(
                doctor_id=other.id,
                doctor_name=other.full_name,
                department=other.department,
                date=day,
                time_label=time_label if same_time else starts[0],
                same_time=same_time,
                open_slots=[label for label, _ in slots],
            ))

        alternatives.sort(key=lambda alt: (not alt.same_time, alt.time_label, alt.doctor_id))
        return alternatives

    def _check_not_past(self, day: date, time_label: str):
        if slot_datetime(day, time_label) <= self.now():
            raise ValidationError("Cannot book appointments in the past")

    @staticmethod
    def _check_reschedulable(appointment: Appointment):
        if appointment.status not in RESCHEDULABLE_STATUSES:
            raise StateError(f"Cannot reschedule a {appointment.status.value} appointment")
        if appointment.checked_in_at is not None:
            raise StateError("Cannot reschedule an appointment after check-in")
