from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Literal, Optional

from ..models.refund import RefundStatus

class RefundCreate(BaseModel):
    # A client supplied amount is ignored; the stored consultation fee is refunded
    model_config = ConfigDict(extra="ignore")

    appointment_id: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)

class RefundReview(BaseModel):
    action: Literal["approve", "reject"]
    comments: Optional[str] = Field(None, max_length=2000)

class RefundCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)

class RefundResponse(BaseModel):
    id: int
    appointment_id: int
    patient_id: int
    reason: str
    description: Optional[str] = None
    amount: float
    status: RefundStatus
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_comments: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
