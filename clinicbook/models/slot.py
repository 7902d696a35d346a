from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, UniqueConstraint, Index, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class SlotStatus(str, enum.Enum):
    OPEN = "open"
    BOOKED = "booked"
    BLOCKED = "blocked"

class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("doctor_id", "date", "time_label", name="uq_slot_doctor_date_time"),
        Index("ix_slot_doctor_date_status", "doctor_id", "date", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)

    # Time unit
    date = Column(Date, nullable=False, index=True)
    time_label = Column(String(5), nullable=False)  # HH:MM, zero padded
    duration_minutes = Column(Integer, nullable=False, default=15)

    # State
    status = Column(
        SQLEnum(SlotStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SlotStatus.OPEN,
    )
    version = Column(Integer, nullable=False, default=0)

    # Blocking information
    block_reason = Column(String(255), nullable=True)
    blocked_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    blocked_at = Column(DateTime, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    doctor = relationship("Doctor", back_populates="slots")

    def __repr__(self):
        return f"<Slot(id={self.id}, doctor_id={self.doctor_id}, date='{self.date}', time='{self.time_label}', status='{self.status}')>"
