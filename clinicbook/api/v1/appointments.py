from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from datetime import date, datetime
from typing import Callable, Optional

from ...core.database import get_db
from ...core.errors import SlotUnavailableError
from ...api.deps import get_current_user, booking_rate_limit, get_authority, get_clock
from ...models.appointment import AppointmentStatus
from ...models.user import User
from ...schemas.appointment import (
    AppointmentCreate, AppointmentResponse, AlternativeResponse,
    CancelRequest, RescheduleRequest, StatusUpdate, PaymentSettle
)
from ...schemas.common import success_response
from ...services.booking_service import BookingCoordinator
from ...services.lifecycle import AppointmentLifecycle, parse_status
from ...services.payment_authority import PaymentAuthority
from ...services.payment_service import PaymentRefundCoordinator

router = APIRouter(prefix="/appointments", tags=["Appointments"])

def _dump(appointment) -> dict:
    return AppointmentResponse.model_validate(appointment).model_dump(mode="json")

@router.post("", status_code=status.HTTP_201_CREATED)
def create_appointment(
    appointment_data: AppointmentCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock),
    _: None = Depends(booking_rate_limit)
):
    """Book an appointment; a taken slot answers 409 with alternatives."""
    coordinator = BookingCoordinator(db, authority, now)
    result = coordinator.create_appointment(
        current_user,
        appointment_data.doctor_id,
        appointment_data.date,
        appointment_data.time_label,
        appointment_data.appointment_type,
        appointment_data.chief_complaint,
        department=appointment_data.department,
        duration_minutes=appointment_data.duration_minutes,
        payment_option=appointment_data.payment_option,
        payment_token=appointment_data.payment_token,
    )

    if not result.booked:
        raise SlotUnavailableError(alternatives=[
            AlternativeResponse.model_validate(alternative).model_dump(mode="json")
            for alternative in result.alternatives
        ])

    return success_response(_dump(result.appointment), "Appointment booked successfully")

@router.get("")
def list_appointments(
    status_filter: Optional[str] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the appointments visible to the current user."""
    appointments = AppointmentLifecycle(db).list_for(
        current_user, status_filter, date_from, date_to
    )
    return success_response([_dump(a) for a in appointments], f"{len(appointments)} appointment(s)")

@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    appointment = AppointmentLifecycle(db).get(current_user, appointment_id)
    return success_response(_dump(appointment), "Appointment retrieved")

@router.put("/{appointment_id}")
def reschedule_appointment(
    appointment_id: int,
    reschedule_data: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Move an appointment to another time with the same doctor."""
    appointment = BookingCoordinator(db, authority, now).reschedule_appointment(
        current_user, appointment_id, reschedule_data.date, reschedule_data.time_label
    )
    return success_response(_dump(appointment), "Appointment rescheduled successfully")

@router.post("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: int,
    cancel_data: CancelRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Cancel an appointment and free its slot."""
    appointment = PaymentRefundCoordinator(db, authority, now).cancel_appointment(
        current_user, appointment_id, cancel_data.reason
    )
    return success_response(_dump(appointment), "Appointment cancelled successfully")

@router.patch("/{appointment_id}/status")
def update_appointment_status(
    appointment_id: int,
    status_data: StatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Move an appointment through its lifecycle."""
    target = parse_status(status_data.status)
    if target == AppointmentStatus.CANCELLED:
        appointment = PaymentRefundCoordinator(db, authority, now).cancel_appointment(
            current_user, appointment_id, status_data.reason
        )
    else:
        appointment = AppointmentLifecycle(db, now).update_status(
            current_user, appointment_id, target, status_data.reason
        )
    return success_response(_dump(appointment), f"Appointment status updated to {target.value}")

@router.post("/{appointment_id}/check-in")
def check_in(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    appointment = AppointmentLifecycle(db, now).check_in(current_user, appointment_id)
    return success_response(_dump(appointment), "Checked in successfully")

@router.post("/{appointment_id}/payment")
def settle_payment(
    appointment_id: int,
    payment_data: PaymentSettle,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Pay a pay-later appointment, or record payment taken at the desk."""
    appointment = PaymentRefundCoordinator(db, authority, now).settle_payment(
        current_user, appointment_id, payment_data.method, payment_data.payment_token
    )
    return success_response(_dump(appointment), "Payment processed successfully")
