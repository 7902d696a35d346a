from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date, datetime
from typing import Dict, List, Optional

from ..models.slot import SlotStatus

TIME_LABEL_REGEX = r"^([01]\d|2[0-3]):[0-5]\d$"

class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    date: date
    time_label: str
    duration_minutes: int
    status: SlotStatus
    block_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class SlotGenerate(BaseModel):
    doctor_id: Optional[int] = Field(None, gt=0)
    date_from: date
    date_to: Optional[date] = None
    start_time: str = Field(..., pattern=TIME_LABEL_REGEX)
    end_time: str = Field(..., pattern=TIME_LABEL_REGEX)
    granularity_minutes: Optional[int] = Field(None, gt=0, le=240)
    days_of_week: Optional[List[int]] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

class SlotBlock(BaseModel):
    doctor_id: Optional[int] = Field(None, gt=0)
    slot_ids: List[int] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=255)

class SlotUnblock(BaseModel):
    doctor_id: Optional[int] = Field(None, gt=0)
    slot_ids: List[int] = Field(..., min_length=1)

class QuickBlock(BaseModel):
    doctor_id: Optional[int] = Field(None, gt=0)
    date: date
    start_time: str = Field(..., pattern=TIME_LABEL_REGEX)
    end_time: str = Field(..., pattern=TIME_LABEL_REGEX)
    reason: str = Field(..., min_length=1, max_length=255)

class ScheduleSummary(BaseModel):
    total: int
    open: int
    booked: int
    blocked: int
    by_date: Dict[str, int]

class ScheduleResponse(BaseModel):
    slots: List[SlotResponse]
    summary: ScheduleSummary
