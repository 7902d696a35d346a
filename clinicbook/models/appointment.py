from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, Text, Numeric, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending-payment"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PAY_AT_HOSPITAL = "pay-at-hospital"
    REFUND_PENDING = "refund-pending"
    REFUNDED = "refunded"

class AppointmentType(str, enum.Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    CHECK_UP = "check-up"
    EMERGENCY = "emergency"
    ROUTINE = "routine"

def _values(enum_cls):
    return [member.value for member in enum_cls]

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=False, index=True)

    # Appointment details
    date = Column(Date, nullable=False, index=True)
    time_label = Column(String(5), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    appointment_type = Column(SQLEnum(AppointmentType, values_callable=_values), nullable=False)
    chief_complaint = Column(Text, nullable=False)
    department = Column(String(100), nullable=False)
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_values),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )

    # Payment
    consultation_fee = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    payment_status = Column(
        SQLEnum(PaymentStatus, values_callable=_values),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_method = Column(String(50), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Tracking
    version = Column(Integer, nullable=False)
    checked_in_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    rescheduled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")
    slot = relationship("Slot")
    treatment_plan = relationship("TreatmentPlan", back_populates="appointment", uselist=False)
    refund_requests = relationship("RefundRequest", back_populates="appointment")

    # Concurrent writers of the same row fail with StaleDataError
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Appointment(id={self.id}, patient_id={self.patient_id}, doctor_id={self.doctor_id}, date='{self.date}', time='{self.time_label}')>"
