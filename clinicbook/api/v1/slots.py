from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from datetime import date, datetime
from typing import Callable, Optional

from ...core.database import get_db
from ...core.errors import ValidationError
from ...api.deps import get_current_user, get_clock
from ...models.user import User
from ...schemas.common import success_response
from ...schemas.slot import (
    SlotResponse, SlotGenerate, SlotBlock, SlotUnblock, QuickBlock, ScheduleResponse
)
from ...services.slot_inventory import SlotInventory

router = APIRouter(prefix="/slots", tags=["Slots"])

def _dump(slots) -> list:
    return [SlotResponse.model_validate(slot).model_dump(mode="json") for slot in slots]

@router.post("/generate", status_code=status.HTTP_201_CREATED)
def generate_slots(
    slot_data: SlotGenerate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Create the bookable slots of a date range."""
    slots = SlotInventory(db, now).generate(
        current_user,
        slot_data.doctor_id,
        slot_data.date_from,
        slot_data.start_time,
        slot_data.end_time,
        date_to=slot_data.date_to,
        granularity_minutes=slot_data.granularity_minutes,
        days_of_week=slot_data.days_of_week,
    )
    return success_response(_dump(slots), f"{len(slots)} slot(s) in range")

@router.post("/block")
def block_slots(
    block_data: SlotBlock,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    slots = SlotInventory(db, now).block(
        current_user, block_data.doctor_id, block_data.slot_ids, block_data.reason
    )
    return success_response(_dump(slots), f"{len(slots)} slot(s) blocked")

@router.post("/unblock")
def unblock_slots(
    unblock_data: SlotUnblock,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    slots = SlotInventory(db, now).unblock(
        current_user, unblock_data.doctor_id, unblock_data.slot_ids
    )
    return success_response(_dump(slots), f"{len(slots)} slot(s) unblocked")

@router.post("/quick-block")
def quick_block(
    block_data: QuickBlock,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Block a time range of one day, creating missing slots first."""
    slots = SlotInventory(db, now).quick_block(
        current_user,
        block_data.doctor_id,
        block_data.date,
        block_data.start_time,
        block_data.end_time,
        block_data.reason,
    )
    return success_response(_dump(slots), f"{len(slots)} slot(s) blocked")

@router.get("/available")
def list_available(
    day: date = Query(..., alias="date"),
    doctor_id: Optional[int] = Query(None, gt=0),
    physician_id: Optional[int] = Query(None, gt=0),
    db: Session = Depends(get_db)
):
    """Open slots of a doctor on a date; ``physician_id`` is accepted as an alias."""
    doctor_id = doctor_id or physician_id
    if doctor_id is None:
        raise ValidationError("doctor_id is required")
    slots = SlotInventory(db).list_available(doctor_id, day)
    return success_response(_dump(slots), f"{len(slots)} open slot(s)")

@router.get("/schedule")
def get_schedule(
    date_from: date,
    date_to: Optional[date] = None,
    doctor_id: Optional[int] = Query(None, gt=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    slots, summary = SlotInventory(db).schedule(current_user, doctor_id, date_from, date_to)
    schedule = ScheduleResponse(
        slots=[SlotResponse.model_validate(slot) for slot in slots],
        summary=summary,
    )
    return success_response(schedule.model_dump(mode="json"), "Schedule retrieved")
