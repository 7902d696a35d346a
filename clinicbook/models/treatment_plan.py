from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, Text, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class PlanPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

class TreatmentPlan(Base):
    __tablename__ = "treatment_plans"

    id = Column(Integer, primary_key=True, index=True)

    # One plan per appointment; set at creation and never re-pointed
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)

    # Clinical fields
    diagnosis = Column(String(500), nullable=False)
    treatment = Column(Text, nullable=False)
    medications = Column(JSON, nullable=False, default=list)
    allergies = Column(JSON, nullable=False, default=list)
    conditions = Column(JSON, nullable=False, default=list)
    follow_up_date = Column(Date, nullable=True)
    priority = Column(
        SQLEnum(PlanPriority, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PlanPriority.NORMAL,
    )

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    appointment = relationship("Appointment", back_populates="treatment_plan")

    def __repr__(self):
        return f"<TreatmentPlan(id={self.id}, appointment_id={self.appointment_id}, doctor_id={self.doctor_id})>"
