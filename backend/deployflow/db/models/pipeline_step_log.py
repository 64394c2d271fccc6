"""
PipelineStepLog — one row per step per pipeline execution.

Enables querying/filtering by stage, step name, status and duration.
Linked to PipelineExecutionRecord via execution_id FK.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from deployflow.db.models.base import Base, generate_uuid


class PipelineStepLog(Base):
    """One row per step execution within a pipeline execution."""

    __tablename__ = "pipeline_step_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=generate_uuid)
    execution_id = Column(
        UUID(as_uuid=True),
        ForeignKey("pipeline_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # ── Position ──────────────────────────────
    stage_index = Column(Integer, nullable=False)
    stage_name = Column(String(200), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)
    step_name = Column(String(200), nullable=False, index=True)

    # ── Status ────────────────────────────────
    status = Column(String(50), nullable=False, index=True)
    exit_code = Column(Integer, nullable=True)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # ── Output / error ────────────────────────
    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    # ── Retry info ────────────────────────────
    retry_count = Column(Integer, default=0)
    attempts = Column(Integer, default=0)

    # ── Relationship ──────────────────────────
    execution = relationship("PipelineExecutionRecord", back_populates="step_logs")

    def __repr__(self) -> str:
        return f"<PipelineStepLog {self.stage_name}/{self.step_name} status={self.status}>"
