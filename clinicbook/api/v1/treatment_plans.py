from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Callable

from ...core.database import get_db
from ...api.deps import get_current_user, get_clock
from ...models.user import User
from ...schemas.common import success_response
from ...schemas.treatment_plan import (
    TreatmentPlanCreate, TreatmentPlanUpdate, TreatmentPlanResponse
)
from ...services.treatment_plan_service import TreatmentPlanLinker

router = APIRouter(prefix="/treatment-plans", tags=["Treatment Plans"])

def _dump(plan) -> dict:
    return TreatmentPlanResponse.model_validate(plan).model_dump(mode="json")

@router.post("", status_code=status.HTTP_201_CREATED)
def create_treatment_plan(
    plan_data: TreatmentPlanCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Attach a treatment plan to an appointment."""
    plan = TreatmentPlanLinker(db, now).create_treatment_plan(
        current_user,
        plan_data.appointment_id,
        plan_data.diagnosis,
        plan_data.treatment,
        medications=[m.model_dump() for m in plan_data.medications],
        allergies=plan_data.allergies,
        conditions=plan_data.conditions,
        follow_up_date=plan_data.follow_up_date,
        priority=plan_data.priority,
    )
    return success_response(_dump(plan), "Treatment plan created successfully")

@router.patch("/{plan_id}")
def update_treatment_plan(
    plan_id: int,
    plan_data: TreatmentPlanUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    changes = plan_data.model_dump(exclude_unset=True)
    plan = TreatmentPlanLinker(db, now).update_treatment_plan(current_user, plan_id, changes)
    return success_response(_dump(plan), "Treatment plan updated successfully")

@router.get("/by-appointment/{appointment_id}")
def get_treatment_plan(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    plan = TreatmentPlanLinker(db).get_for_appointment(current_user, appointment_id)
    return success_response(_dump(plan), "Treatment plan retrieved")
