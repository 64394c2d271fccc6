"""
PipelineExecutionRecord — one row per finished pipeline execution.

Audit log of a run: identity and outcome as indexed columns, the full
stage/step log, metrics and rollback as JSONB (the `to_dict` form of
the execution records).
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from deployflow.db.models.base import Base, generate_uuid, utcnow


class PipelineExecutionRecord(Base):
    """One row per pipeline execution."""

    __tablename__ = "pipeline_executions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=generate_uuid)

    # ── Pipeline ─────────────────────────────
    pipeline_id = Column(String(64), nullable=False, index=True)
    pipeline_version = Column(Integer, nullable=False)
    number = Column(Integer, nullable=False)

    # ── Outcome ──────────────────────────────
    status = Column(String(50), nullable=False, index=True)
    reason = Column(Text, nullable=True)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # ── Snapshots ─────────────────────────────
    trigger = Column(JSONB, default=dict)
    variables = Column(JSONB, default=dict)
    stage_log = Column(JSONB, default=list)
    artifacts = Column(JSONB, default=list)
    metrics = Column(JSONB, default=dict)
    rollback = Column(JSONB, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # ── Relationships ─────────────────────────
    step_logs = relationship(
        "PipelineStepLog",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="PipelineStepLog.stage_index",
    )

    def __repr__(self) -> str:
        return (
            f"<PipelineExecutionRecord {self.id} pipeline={self.pipeline_id} "
            f"#{self.number} status={self.status}>"
        )
