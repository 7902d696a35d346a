from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import List, Optional

from ..models.treatment_plan import PlanPriority

class Medication(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    dosage: Optional[str] = Field(None, max_length=100)
    frequency: Optional[str] = Field(None, max_length=100)
    duration: Optional[str] = Field(None, max_length=100)
    instructions: Optional[str] = Field(None, max_length=500)

class TreatmentPlanCreate(BaseModel):
    appointment_id: int = Field(..., gt=0)
    diagnosis: str = Field(..., min_length=1, max_length=500)
    treatment: str = Field(..., min_length=1)
    medications: List[Medication] = []
    allergies: List[str] = []
    conditions: List[str] = []
    follow_up_date: Optional[date] = None
    priority: PlanPriority = PlanPriority.NORMAL

class TreatmentPlanUpdate(BaseModel):
    # appointment_id is not updatable
    model_config = ConfigDict(extra="forbid")

    diagnosis: Optional[str] = Field(None, min_length=1, max_length=500)
    treatment: Optional[str] = Field(None, min_length=1)
    medications: Optional[List[Medication]] = None
    allergies: Optional[List[str]] = None
    conditions: Optional[List[str]] = None
    follow_up_date: Optional[date] = None
    priority: Optional[PlanPriority] = None

class TreatmentPlanResponse(BaseModel):
    id: int
    appointment_id: int
    doctor_id: int
    patient_id: int
    diagnosis: str
    treatment: str
    medications: List[Medication] = []
    allergies: List[str] = []
    conditions: List[str] = []
    follow_up_date: Optional[date] = None
    priority: PlanPriority
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
