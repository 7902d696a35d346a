"""
Appointment status state machine.

``TRANSITIONS`` is the single authority on which status changes are legal;
role and timing guards are applied on top of it by ``AppointmentLifecycle``.
"""
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from datetime import date, datetime
from typing import Callable, List, Optional, Union
import logging

from ..core.errors import (
    AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError
)
from ..core.security import PRIVILEGED_ROLES, UserRole, require_roles
from ..models.appointment import Appointment, AppointmentStatus, PaymentStatus
from ..models.user import User
from ..utils.timeslots import slot_datetime
from .slot_inventory import SlotInventory

logger = logging.getLogger(__name__)

TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.PENDING_PAYMENT: {
        AppointmentStatus.CANCELLED,
    },
}

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

CLINICAL_ROLES = (UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN)

def parse_status(value: Union[str, AppointmentStatus]) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise StateError(f"Unknown appointment status '{value}'")

def can_transition(source: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS.get(source, set())

class AppointmentLifecycle:
    def __init__(self, db: Session, now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.now = now
        self.inventory = SlotInventory(db, now)

    def update_status(
        self,
        actor: User,
        appointment_id: int,
        status: Union[str, AppointmentStatus],
        reason: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to ``status`` and persist it.

        Cancelling also hands the booked slots back to the inventory in the same
        transaction.
        """
        target = parse_status(status)
        appointment = self.load(appointment_id, lock=True)
        source = appointment.status

        self.apply(actor, appointment, target, reason)
        if target == AppointmentStatus.CANCELLED:
            self.inventory.release(
                appointment.doctor_id, appointment.date, appointment.time_label,
                appointment.duration_minutes, commit=False,
            )

        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError("Appointment was modified by another request, please retry")
        self.db.refresh(appointment)

        logger.info(
            f"Appointment {appointment.id}: {source.value} -> {target.value} by user {actor.id} ({actor.role.value})"
        )
        return appointment

    def apply(
        self,
        actor: User,
        appointment: Appointment,
        target: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Check every guard for ``target`` and mutate the loaded appointment."""
        self.authorize(actor, appointment, target)

        source = appointment.status
        if source in TERMINAL_STATUSES:
            raise StateError(
                f"Appointment is already {source.value} and cannot change status",
                details={"from": source.value, "to": target.value},
            )
        if not can_transition(source, target):
            raise StateError(
                f"Cannot move appointment from {source.value} to {target.value}",
                details={"from": source.value, "to": target.value},
            )

        if target == AppointmentStatus.CANCELLED:
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("A cancellation reason is required")
            appointment.cancellation_reason = reason
            appointment.cancelled_by = actor.id
            appointment.cancelled_at = self.now()

        if target == AppointmentStatus.NO_SHOW:
            if appointment.checked_in_at is not None:
                raise StateError("Patient has checked in; appointment cannot be marked as no-show")
            if slot_datetime(appointment.date, appointment.time_label) > self.now():
                raise StateError("Appointment time has not passed yet")

        appointment.status = target
        return appointment

    def authorize(self, actor: User, appointment: Appointment, target: AppointmentStatus):
        if target == AppointmentStatus.CANCELLED:
            if actor.role in PRIVILEGED_ROLES:
                return
            if actor.role == UserRole.PATIENT and self.owns(actor, appointment):
                return
            raise AuthorizationError("Not authorized to cancel this appointment")

        if actor.role not in CLINICAL_ROLES:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in CLINICAL_ROLES]}"
            )
        if actor.role == UserRole.DOCTOR and not self.treats(actor, appointment):
            raise AuthorizationError("Doctors can only update their own appointments")

    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def check_in(self, actor: User, appointment_id: int) -> Appointment:
        appointment = self.load(appointment_id, lock=True)
        if actor.role == UserRole.PATIENT and not self.owns(actor, appointment):
            raise AuthorizationError("Not authorized to check-in")

        if appointment.status not in (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED):
            raise StateError(f"Cannot check in an appointment that is {appointment.status.value}")
        if appointment.checked_in_at is not None:
            raise ConflictError("Appointment is already checked in")
        if (
            appointment.consultation_fee
            and appointment.payment_status not in (PaymentStatus.PAID, PaymentStatus.PAY_AT_HOSPITAL)
        ):
            raise StateError("Payment required before check-in", code="NOT_PAID")

        appointment.checked_in_at = self.now()
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError("Appointment was modified by another request, please retry")
        self.db.refresh(appointment)

        logger.info(f"Appointment {appointment.id}: checked in by user {actor.id}")
        return appointment

    # Reads
    def get(self, actor: User, appointment_id: int) -> Appointment:
        appointment = self.load(appointment_id)
        if not self.can_view(actor, appointment):
            raise AuthorizationError("Not authorized to view this appointment")
        return appointment

    def list_for(
        self,
        actor: User,
        status: Optional[Union[str, AppointmentStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[Appointment]:
        query = self.db.query(Appointment)

        if actor.role == UserRole.PATIENT:
            if actor.patient is None:
                return []
            query = query.filter(Appointment.patient_id == actor.patient.id)
        elif actor.role == UserRole.DOCTOR:
            if actor.doctor is None:
                return []
            query = query.filter(Appointment.doctor_id == actor.doctor.id)

        if status is not None:
            query = query.filter(Appointment.status == parse_status(status))
        if date_from is not None:
            query = query.filter(Appointment.date >= date_from)
        if date_to is not None:
            query = query.filter(Appointment.date <= date_to)

        return query.order_by(Appointment.date.asc(), Appointment.time_label.asc()).all()

    def load(self, appointment_id: int, lock: bool = False) -> Appointment:
        query = self.db.query(Appointment).filter(Appointment.id == appointment_id)
        if lock:
            query = query.with_for_update()
        appointment = query.first()
        if not appointment:
            raise NotFoundError("Appointment not found")
        return appointment

    def can_view(self, actor: User, appointment: Appointment) -> bool:
        if actor.role == UserRole.PATIENT:
            return self.owns(actor, appointment)
        if actor.role == UserRole.DOCTOR:
            return self.treats(actor, appointment)
        return True

    @staticmethod
    def owns(actor: User, appointment: Appointment) -> bool:
        return actor.patient is not None and actor.patient.id == appointment.patient_id

    @staticmethod
    def treats(actor: User, appointment: Appointment) -> bool:
        return actor.doctor is not None and actor.doctor.id == appointment.doctor_id
