from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import date, datetime
from typing import List, Optional

from ..models.appointment import AppointmentStatus, AppointmentType, PaymentStatus
from ..services.payment_service import PaymentOption

TIME_LABEL_REGEX = r"^([01]\d|2[0-3]):[0-5]\d$"

class AppointmentCreate(BaseModel):
    doctor_id: int = Field(..., gt=0)
    date: date
    time_label: str = Field(..., pattern=TIME_LABEL_REGEX)
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    chief_complaint: str = Field(..., min_length=10, max_length=500)
    department: Optional[str] = Field(None, max_length=100)
    duration_minutes: int = Field(30, ge=15, le=120)
    payment_option: PaymentOption = PaymentOption.PAY_AT_HOSPITAL
    payment_token: Optional[str] = None

    @field_validator("chief_complaint")
    @classmethod
    def strip_complaint(cls, v):
        v = v.strip()
        if len(v) < 10:
            raise ValueError("Chief complaint must be at least 10 characters")
        return v

class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    slot_id: int
    date: date
    time_label: str
    duration_minutes: int
    appointment_type: AppointmentType
    chief_complaint: str
    department: str
    status: AppointmentStatus
    consultation_fee: float
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    rescheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class AlternativeResponse(BaseModel):
    doctor_id: int
    doctor_name: str
    department: str
    date: date
    time_label: str
    same_time: bool
    open_slots: List[str] = []

    model_config = ConfigDict(from_attributes=True)

class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)

class RescheduleRequest(BaseModel):
    date: date
    time_label: str = Field(..., pattern=TIME_LABEL_REGEX)

class StatusUpdate(BaseModel):
    # Checked against the lifecycle transition table
    status: str
    reason: Optional[str] = Field(None, max_length=255)

class PaymentSettle(BaseModel):
    method: str = Field("card", max_length=50)
    payment_token: Optional[str] = None
