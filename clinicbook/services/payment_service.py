from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union
import logging

from ..core.errors import (
    AuthorizationError, ConflictError, DuplicateRefundError, NotFoundError,
    NotPaidError, PaymentError, StateError, ValidationError
)
from ..core.security import UserRole, require_roles
from ..models.appointment import Appointment, AppointmentStatus, PaymentStatus
from ..models.refund import ACTIVE_REFUND_STATUSES, RefundRequest, RefundStatus
from ..models.user import User
from .lifecycle import AppointmentLifecycle
from .payment_authority import PaymentAuthority, PaymentReceipt, get_payment_authority

logger = logging.getLogger(__name__)

class PaymentOption(str, Enum):
    CARD = "card"
    PAY_LATER = "pay-later"
    PAY_AT_HOSPITAL = "pay-at-hospital"

# paid -> pay-at-hospital and any move back towards pending are not allowed
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID},
    PaymentStatus.PAY_AT_HOSPITAL: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUND_PENDING},
    PaymentStatus.REFUND_PENDING: {PaymentStatus.REFUNDED},
}

CANCELLABLE_STATUSES = (
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.PENDING_PAYMENT,
)

def advance_payment_status(appointment: Appointment, target: PaymentStatus) -> None:
    current = appointment.payment_status
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        raise StateError(
            f"Payment status cannot change from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )
    appointment.payment_status = target

class PaymentRefundCoordinator:
    def __init__(
        self,
        db: Session,
        authority: Optional[PaymentAuthority] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.now = now
        self.authority = authority or get_payment_authority()
        self.lifecycle = AppointmentLifecycle(db, now)

    # Payment
    def attach_payment(
        self,
        appointment: Appointment,
        option: Union[str, PaymentOption],
        token: Optional[str] = None,
    ) -> Optional[PaymentReceipt]:
        """Set the initial payment status of a new, not yet committed appointment.

        Card payments are charged immediately; the receipt is returned so the
        caller can void it if the booking fails afterwards.
        """
        try:
            option = PaymentOption(option)
        except ValueError:
            raise ValidationError(f"Unknown payment option '{option}'")

        if option == PaymentOption.PAY_AT_HOSPITAL:
            appointment.payment_status = PaymentStatus.PAY_AT_HOSPITAL
            appointment.payment_method = option.value
            return None

        appointment.payment_status = PaymentStatus.PENDING
        if option == PaymentOption.PAY_LATER:
            appointment.payment_method = option.value
            return None

        receipt = self.authority.charge(
            appointment.consultation_fee, self._reference(appointment), token
        )
        self._record_receipt(appointment, receipt, option.value)
        return receipt

    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def settle_payment(
        self,
        actor: User,
        appointment_id: int,
        method: str = PaymentOption.CARD.value,
        token: Optional[str] = None,
    ) -> Appointment:
        """Collect a deferred payment (online for pay-later, at the desk for pay-at-hospital)."""
        appointment = self.lifecycle.load(appointment_id, lock=True)

        if actor.role == UserRole.PATIENT:
            if not self.lifecycle.owns(actor, appointment):
                raise AuthorizationError("Not authorized")
            if appointment.payment_status == PaymentStatus.PAY_AT_HOSPITAL:
                raise AuthorizationError("Payment at the hospital is collected by staff")

        if appointment.payment_status == PaymentStatus.PAID:
            raise ConflictError("Payment already processed")
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
            raise StateError(f"Cannot take payment for a {appointment.status.value} appointment")
        if PaymentStatus.PAID not in PAYMENT_TRANSITIONS.get(appointment.payment_status, set()):
            raise StateError(f"Cannot take payment while payment is {appointment.payment_status.value}")

        try:
            receipt = self.authority.charge(appointment.consultation_fee, self._reference(appointment), token)
        except PaymentError:
            self.db.rollback()
            raise
        self._record_receipt(appointment, receipt, method)
        self._commit()
        self.db.refresh(appointment)

        logger.info(f"Appointment {appointment.id}: payment settled ({method}) by user {actor.id}")
        return appointment

    def void_charge(self, receipt: PaymentReceipt, reference: str) -> None:
        """Give back a charge whose booking could not be stored."""
        try:
            self.authority.refund(receipt.transaction_id, receipt.amount, reference)
            logger.info(f"Voided charge {receipt.transaction_id} for {reference}")
        except PaymentError as e:
            logger.error(f"Failed to void charge {receipt.transaction_id} for {reference}: {e.message}")

    # Cancellation
    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def cancel_appointment(self, actor: User, appointment_id: int, reason: str) -> Appointment:
        """Cancel an appointment and release its slot.

        Payment status is left untouched; a paid appointment can then go
        through ``request_refund``.
        """
        if not (reason or "").strip():
            raise ValidationError("A cancellation reason is required")

        appointment = self.lifecycle.load(appointment_id)
        self.lifecycle.authorize(actor, appointment, AppointmentStatus.CANCELLED)
        if appointment.status not in CANCELLABLE_STATUSES:
            raise StateError(
                f"Cannot cancel an appointment that is {appointment.status.value}",
                details={"from": appointment.status.value, "to": AppointmentStatus.CANCELLED.value},
            )

        return self.lifecycle.update_status(
            actor, appointment_id, AppointmentStatus.CANCELLED, reason
        )

    # Refunds
    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def request_refund(
        self,
        actor: User,
        appointment_id: int,
        reason: str,
        description: Optional[str] = None,
    ) -> RefundRequest:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A refund reason is required")

        appointment = self.lifecycle.load(appointment_id, lock=True)
        if actor.role == UserRole.PATIENT and not self.lifecycle.owns(actor, appointment):
            raise AuthorizationError("Not authorized to request refund for this appointment")

        if self._active_refund(appointment.id) is not None:
            raise DuplicateRefundError()
        if appointment.payment_status != PaymentStatus.PAID:
            raise NotPaidError()

        refund = RefundRequest(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            requested_by=actor.id,
            reason=reason,
            description=(description or "").strip() or None,
            amount=appointment.consultation_fee,
            status=RefundStatus.PENDING,
        )
        self.db.add(refund)
        # Bump the appointment version so a concurrent request for the same
        # appointment fails at commit
        appointment.updated_at = self.now()

        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            if self._active_refund(appointment_id) is not None:
                raise DuplicateRefundError()
            raise ConflictError("Appointment was modified by another request, please retry")
        self.db.refresh(refund)

        logger.info(
            f"Refund {refund.id} requested for appointment {appointment.id} "
            f"by user {actor.id}: {refund.amount:.2f}"
        )
        return refund

    @require_roles(UserRole.STAFF, UserRole.ADMIN)
    def review_refund(
        self, actor: User, refund_id: int, action: str, comments: Optional[str] = None
    ) -> RefundRequest:
        """Approve or reject a pending refund; the appointment is not touched."""
        targets = {"approve": RefundStatus.APPROVED, "reject": RefundStatus.REJECTED}
        if action not in targets:
            raise ValidationError("Action must be 'approve' or 'reject'")

        refund = self._load_refund(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise StateError("Refund is not in pending status")

        refund.status = targets[action]
        refund.reviewed_by = actor.id
        refund.reviewed_at = self.now()
        refund.review_comments = comments
        self.db.commit()
        self.db.refresh(refund)

        logger.info(f"Refund {refund.id} {refund.status.value} by user {actor.id}")
        return refund

    @require_roles(UserRole.ADMIN, UserRole.MANAGER)
    def process_refund(self, actor: User, refund_id: int) -> RefundRequest:
        """Pay out an approved refund through the payment authority."""
        refund = self._load_refund(refund_id)
        if refund.status != RefundStatus.APPROVED:
            raise StateError("Only approved refunds can be processed")
        if refund.processed_at is not None:
            raise ConflictError("Refund has already been processed")

        appointment = self.lifecycle.load(refund.appointment_id, lock=True)
        if appointment.payment_status == PaymentStatus.PAID:
            advance_payment_status(appointment, PaymentStatus.REFUND_PENDING)
            self._commit()
        elif appointment.payment_status != PaymentStatus.REFUND_PENDING:
            raise StateError(
                f"Cannot refund an appointment whose payment is {appointment.payment_status.value}"
            )

        # A failed payout leaves the appointment refund-pending so it can be retried
        receipt = self.authority.refund(appointment.transaction_id, refund.amount, self._reference(appointment))

        advance_payment_status(appointment, PaymentStatus.REFUNDED)
        refund.refund_transaction_id = receipt.transaction_id
        refund.processed_at = self.now()
        self._commit()
        self.db.refresh(refund)

        logger.info(f"Refund {refund.id} processed by user {actor.id}: {receipt.transaction_id}")
        return refund

    @require_roles(UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN)
    def cancel_refund(self, actor: User, refund_id: int, reason: Optional[str] = None) -> RefundRequest:
        """Withdraw a pending or approved refund before it is paid out.

        A withdrawn refund is no longer active, so a new request for the
        appointment is accepted afterwards.
        """
        refund = self._load_refund(refund_id)
        if actor.role == UserRole.PATIENT and (actor.patient is None or actor.patient.id != refund.patient_id):
            raise AuthorizationError("Not authorized to cancel this refund")
        if refund.status not in ACTIVE_REFUND_STATUSES:
            raise StateError(f"Cannot cancel a {refund.status.value} refund")
        if refund.processed_at is not None:
            raise ConflictError("Refund has already been processed")

        appointment = self.lifecycle.load(refund.appointment_id)
        if appointment.payment_status == PaymentStatus.REFUND_PENDING:
            raise StateError("Refund payout is in progress and cannot be cancelled")

        refund.status = RefundStatus.CANCELLED
        refund.cancelled_by = actor.id
        refund.cancelled_at = self.now()
        refund.cancellation_reason = (reason or "").strip() or "Refund cancelled"
        self.db.commit()
        self.db.refresh(refund)

        logger.info(f"Refund {refund.id} cancelled by user {actor.id} ({actor.role.value})")
        return refund

    def list_refunds(
        self, actor: User, status: Optional[Union[str, RefundStatus]] = None
    ) -> List[RefundRequest]:
        query = self.db.query(RefundRequest)

        if actor.role == UserRole.PATIENT:
            if actor.patient is None:
                return []
            query = query.filter(RefundRequest.patient_id == actor.patient.id)
        elif actor.role not in (UserRole.STAFF, UserRole.ADMIN, UserRole.MANAGER):
            raise AuthorizationError("Not authorized to view refunds")

        if status is not None:
            try:
                query = query.filter(RefundRequest.status == RefundStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown refund status '{status}'")

        return query.order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc()).all()

    # Helpers
    def _active_refund(self, appointment_id: int) -> Optional[RefundRequest]:
        return self.db.query(RefundRequest).filter(
            RefundRequest.appointment_id == appointment_id,
            RefundRequest.status.in_(ACTIVE_REFUND_STATUSES),
        ).first()

    def _load_refund(self, refund_id: int) -> RefundRequest:
        refund = self.db.query(RefundRequest).filter(RefundRequest.id == refund_id).first()
        if not refund:
            raise NotFoundError("Refund not found")
        return refund

    def _record_receipt(self, appointment: Appointment, receipt: PaymentReceipt, method: str):
        if appointment.payment_status != PaymentStatus.PAID:
            advance_payment_status(appointment, PaymentStatus.PAID)
        appointment.payment_method = method
        appointment.transaction_id = receipt.transaction_id
        appointment.paid_at = self.now()

    def _commit(self):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError("Appointment was modified by another request, please retry")

    @staticmethod
    def _reference(appointment: Appointment) -> str:
        return f"APT-{appointment.id}"
