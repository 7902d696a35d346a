import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from clinicbook.core.errors import (
    AuthorizationError, BookingError, DuplicateTreatmentPlan, NotFoundError, StateError, ValidationError
)
from clinicbook.models.treatment_plan import PlanPriority, TreatmentPlan
from clinicbook.models.user import User
from clinicbook.services.booking_service import BookingCoordinator
from clinicbook.services.payment_service import PaymentRefundCoordinator
from clinicbook.services.slot_inventory import SlotInventory
from clinicbook.services.treatment_plan_service import TreatmentPlanLinker

from .conftest import TestingSessionLocal

COMPLAINT = "Persistent headaches for two weeks"
MEDICATIONS = [{"name": "Atorvastatin", "dosage": "20mg", "frequency": "daily"}]

@pytest.fixture
def appointments(db, clinic, authority, clock, visit_day):
    """Two appointments of Alice with Dr. House."""
    SlotInventory(db, clock).generate(clinic.house, None, visit_day, "09:00", "12:00")
    coordinator = BookingCoordinator(db, authority, clock)
    return [
        coordinator.create_appointment(
            clinic.alice, clinic.house.doctor.id, visit_day, label, "consultation", COMPLAINT
        ).appointment
        for label in ("09:00", "10:00")
    ]

@pytest.fixture
def linker(db, clock):
    return TreatmentPlanLinker(db, clock)

class TestCreateTreatmentPlan:

    def test_create_plan(self, clinic, appointments, linker, visit_day):
        plan = linker.create_treatment_plan(
            clinic.house, appointments[0].id, "Hypertension", "Low sodium diet",
            medications=MEDICATIONS, allergies=["penicillin"],
            follow_up_date=visit_day + timedelta(days=30), priority="high",
        )

        assert plan.appointment_id == appointments[0].id
        assert plan.doctor_id == clinic.house.doctor.id
        assert plan.patient_id == clinic.alice.patient.id
        assert plan.medications == MEDICATIONS
        assert plan.allergies == ["penicillin"]
        assert plan.conditions == []
        assert plan.priority == PlanPriority.HIGH

    def test_duplicate_plan_is_rejected(self, db, clinic, appointments, linker):
        """A second plan for the same appointment fails; another appointment is fine."""
        first, second = appointments
        linker.create_treatment_plan(clinic.house, first.id, "Hypertension", "Low sodium diet")

        with pytest.raises(DuplicateTreatmentPlan) as exc_info:
            linker.create_treatment_plan(clinic.house, first.id, "Arrhythmia", "Beta blockers")
        assert exc_info.value.code == "DUPLICATE_TREATMENT_PLAN"

        plan = linker.create_treatment_plan(clinic.house, second.id, "Arrhythmia", "Beta blockers")
        assert plan.appointment_id == second.id
        assert db.query(TreatmentPlan).count() == 2

    def test_only_treating_doctor(self, clinic, appointments, linker):
        with pytest.raises(AuthorizationError):
            linker.create_treatment_plan(clinic.grey, appointments[0].id, "Hypertension", "Diet")
        with pytest.raises(AuthorizationError):
            linker.create_treatment_plan(clinic.staff, appointments[0].id, "Hypertension", "Diet")

    def test_required_fields(self, clinic, appointments, linker):
        with pytest.raises(ValidationError):
            linker.create_treatment_plan(clinic.house, appointments[0].id, " ", "Diet")
        with pytest.raises(ValidationError):
            linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "")
        with pytest.raises(ValidationError):
            linker.create_treatment_plan(
                clinic.house, appointments[0].id, "Hypertension", "Diet", priority="whenever"
            )

    def test_follow_up_before_visit(self, clinic, appointments, linker, visit_day):
        with pytest.raises(ValidationError):
            linker.create_treatment_plan(
                clinic.house, appointments[0].id, "Hypertension", "Diet",
                follow_up_date=visit_day - timedelta(days=1),
            )

    def test_unknown_appointment(self, clinic, appointments, linker):
        with pytest.raises(NotFoundError):
            linker.create_treatment_plan(clinic.house, 9999, "Hypertension", "Diet")

    def test_cancelled_appointment(self, db, clinic, appointments, authority, clock, linker):
        PaymentRefundCoordinator(db, authority, clock).cancel_appointment(
            clinic.alice, appointments[0].id, "Personal emergency"
        )
        with pytest.raises(StateError):
            linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "Diet")

class TestUpdateTreatmentPlan:

    def test_update_clinical_fields(self, clinic, appointments, linker):
        plan = linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "Diet")

        updated = linker.update_treatment_plan(
            clinic.house, plan.id, {"treatment": "Diet and exercise", "conditions": ["obesity"]}
        )
        assert updated.treatment == "Diet and exercise"
        assert updated.conditions == ["obesity"]
        assert updated.appointment_id == appointments[0].id

    def test_link_cannot_be_moved(self, clinic, appointments, linker):
        plan = linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "Diet")
        with pytest.raises(ValidationError):
            linker.update_treatment_plan(clinic.house, plan.id, {"appointment_id": appointments[1].id})

    def test_only_author_updates(self, clinic, appointments, linker):
        plan = linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "Diet")
        with pytest.raises(AuthorizationError):
            linker.update_treatment_plan(clinic.grey, plan.id, {"treatment": "Surgery"})

    def test_get_for_appointment(self, clinic, appointments, linker):
        plan = linker.create_treatment_plan(clinic.house, appointments[0].id, "Hypertension", "Diet")

        assert linker.get_for_appointment(clinic.alice, appointments[0].id).id == plan.id
        assert linker.get_for_appointment(clinic.staff, appointments[0].id).id == plan.id
        with pytest.raises(AuthorizationError):
            linker.get_for_appointment(clinic.bob, appointments[0].id)
        with pytest.raises(NotFoundError):
            linker.get_for_appointment(clinic.house, appointments[1].id)

class TestConcurrentTreatmentPlans:

    def test_one_plan_when_created_simultaneously(self, db, clinic, appointments, clock):
        """Four simultaneous creations for one appointment: the unique link holds."""
        appointment_id = appointments[0].id
        user_id = clinic.house.id

        def create(diagnosis):
            session = TestingSessionLocal()
            try:
                actor = session.query(User).filter(User.id == user_id).one()
                TreatmentPlanLinker(session, clock).create_treatment_plan(
                    actor, appointment_id, diagnosis, "Low sodium diet"
                )
                return "ok"
            except BookingError as e:
                return e.code
            finally:
                session.close()

        diagnoses = ["Hypertension", "Arrhythmia", "Angina", "Tachycardia"]
        with ThreadPoolExecutor(max_workers=4) as executor:
            outcomes = list(executor.map(create, diagnoses))

        assert sorted(outcomes) == ["DUPLICATE_TREATMENT_PLAN"] * 3 + ["ok"]
        db.expire_all()
        assert db.query(TreatmentPlan).filter(TreatmentPlan.appointment_id == appointment_id).count() == 1
