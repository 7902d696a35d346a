from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from ..core.errors import (
    AuthorizationError, DuplicateTreatmentPlan, NotFoundError, StateError, ValidationError
)
from ..core.security import UserRole, require_roles
from ..models.appointment import Appointment, AppointmentStatus
from ..models.treatment_plan import PlanPriority, TreatmentPlan
from ..models.user import User
from .lifecycle import AppointmentLifecycle

logger = logging.getLogger(__name__)

# Fields a doctor may change after creation; the appointment link is fixed
CLINICAL_FIELDS = (
    "diagnosis", "treatment", "medications", "allergies",
    "conditions", "follow_up_date", "priority",
)

class TreatmentPlanLinker:
    """Attaches at most one treatment plan to each appointment."""

    def __init__(self, db: Session, now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.now = now
        self.lifecycle = AppointmentLifecycle(db, now)

    @require_roles(UserRole.DOCTOR)
    def create_treatment_plan(
        self,
        actor: User,
        appointment_id: int,
        diagnosis: str,
        treatment: str,
        medications: Optional[List[Any]] = None,
        allergies: Optional[List[str]] = None,
        conditions: Optional[List[str]] = None,
        follow_up_date: Optional[date] = None,
        priority: Union[str, PlanPriority] = PlanPriority.NORMAL,
    ) -> TreatmentPlan:
        appointment = self.lifecycle.load(appointment_id)
        if not self.lifecycle.treats(actor, appointment):
            raise AuthorizationError("Only the appointment's doctor can write its treatment plan")

        diagnosis = self._required_text(diagnosis, "Diagnosis")
        treatment = self._required_text(treatment, "Treatment")
        priority = self._priority(priority)

        if self._plan_for(appointment.id) is not None:
            logger.warning(f"Appointment {appointment.id} already has a treatment plan")
            raise DuplicateTreatmentPlan()
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
            raise StateError(
                f"Cannot attach a treatment plan to a {appointment.status.value} appointment"
            )
        self._check_follow_up(appointment, follow_up_date)

        plan = TreatmentPlan(
            appointment_id=appointment.id,
            doctor_id=actor.doctor.id,
            patient_id=appointment.patient_id,
            diagnosis=diagnosis,
            treatment=treatment,
            medications=list(medications or []),
            allergies=list(allergies or []),
            conditions=list(conditions or []),
            follow_up_date=follow_up_date,
            priority=priority,
        )
        self.db.add(plan)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race against another plan for the same appointment
            self.db.rollback()
            raise DuplicateTreatmentPlan()
        self.db.refresh(plan)

        logger.info(f"Treatment plan {plan.id} created for appointment {appointment.id} by doctor {actor.doctor.id}")
        return plan

    @require_roles(UserRole.DOCTOR)
    def update_treatment_plan(self, actor: User, plan_id: int, changes: Dict[str, Any]) -> TreatmentPlan:
        """Change clinical fields of a plan written by ``actor``."""
        plan = self.db.query(TreatmentPlan).filter(TreatmentPlan.id == plan_id).first()
        if not plan:
            raise NotFoundError("Treatment plan not found")
        if actor.doctor is None or plan.doctor_id != actor.doctor.id:
            raise AuthorizationError("Only the authoring doctor can update this treatment plan")

        unknown = sorted(set(changes) - set(CLINICAL_FIELDS))
        if unknown:
            raise ValidationError(
                "Only clinical fields of a treatment plan can be changed",
                details={"fields": unknown},
            )

        if "diagnosis" in changes:
            changes["diagnosis"] = self._required_text(changes["diagnosis"], "Diagnosis")
        if "treatment" in changes:
            changes["treatment"] = self._required_text(changes["treatment"], "Treatment")
        if "priority" in changes:
            changes["priority"] = self._priority(changes["priority"])
        if changes.get("follow_up_date") is not None:
            self._check_follow_up(plan.appointment, changes["follow_up_date"])
        for key in ("medications", "allergies", "conditions"):
            if key in changes:
                changes[key] = list(changes[key] or [])

        for key, value in changes.items():
            setattr(plan, key, value)
        self.db.commit()
        self.db.refresh(plan)

        logger.info(f"Treatment plan {plan.id} updated by doctor {actor.doctor.id}: {sorted(changes)}")
        return plan

    def get_for_appointment(self, actor: User, appointment_id: int) -> TreatmentPlan:
        appointment = self.lifecycle.get(actor, appointment_id)
        plan = self._plan_for(appointment.id)
        if not plan:
            raise NotFoundError("No treatment plan for this appointment")
        return plan

    def _plan_for(self, appointment_id: int) -> Optional[TreatmentPlan]:
        return self.db.query(TreatmentPlan).filter(TreatmentPlan.appointment_id == appointment_id).first()

    @staticmethod
    def _required_text(value: Optional[str], label: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationError(f"{label} is required")
        return value

    @staticmethod
    def _priority(value: Union[str, PlanPriority]) -> PlanPriority:
        try:
            return PlanPriority(value)
        except ValueError:
            raise ValidationError(f"Unknown priority '{value}'")

    @staticmethod
    def _check_follow_up(appointment: Appointment, follow_up_date: Optional[date]):
        if follow_up_date is not None and follow_up_date < appointment.date:
            raise ValidationError("Follow-up date cannot be before the appointment")
