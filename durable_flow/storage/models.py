"""SQLAlchemy database models for the execution journal."""

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from ..models.core import utc_now
from .database import Base


class ExecutionModel(Base):
    """One row per execution: lease, fencing token and a status snapshot."""
    __tablename__ = "executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False)
    organization_id = Column(String)
    trigger_type = Column(String)
    status = Column(String, nullable=False)  # initialized, running, paused, succeeded, failed, cancelled
    error_message = Column(Text)
    lease_owner = Column(String)
    lease_token = Column(Integer, nullable=False, default=0)
    lease_expires_at = Column(DateTime)
    last_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
    completed_at = Column(DateTime)

    events = relationship(
        "JournalEventModel",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="JournalEventModel.sequence"
    )


class JournalEventModel(Base):
    """Append-only journal entry."""
    __tablename__ = "journal_events"
    __table_args__ = (
        UniqueConstraint("execution_id", "sequence", name="uq_journal_events_execution_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("executions.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    kind = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    lease_token = Column(Integer, nullable=False)  # fencing token of the writer

    execution = relationship("ExecutionModel", back_populates="events")
