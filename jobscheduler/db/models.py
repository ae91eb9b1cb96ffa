from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, Text, ForeignKey, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobscheduler.db.session import Base
from jobscheduler.db.types import JSONType, UTCDateTime
from jobscheduler.domain.states import (
    JobType, JobStatus, RuleKind, InvocationStatus, ErrorKind, SignalStatus
)
from jobscheduler.utils.timeutils import utcnow

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(String, default="")
    type: Mapped[JobType] = mapped_column(String, nullable=False, index=True)

    # Exactly one of these is set for cron/once jobs, neither for immediate
    schedule_expression: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    execute_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[JobStatus] = mapped_column(String, nullable=False, index=True)

    # Back-reference to the registered rule (once/cron)
    rule_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    invocation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

class Rule(Base):
    __tablename__ = "rules"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    kind: Mapped[RuleKind] = mapped_column(String, nullable=False)

    # one_shot: run_at; recurring: schedule_expression
    run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    schedule_expression: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    next_fire_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Input handed to the dispatcher on every fire
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        # Ticker query: enabled + next_fire_at <= now
        Index("ix_rules_due", "enabled", "next_fire_at"),
    )

class Invocation(Base):
    __tablename__ = "invocations"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    # No FK: history outlives the job
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    status: Mapped[InvocationStatus] = mapped_column(String, default=InvocationStatus.RUNNING)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    input: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    output: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[ErrorKind]] = mapped_column(String, nullable=True)
    error_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_invocations_job_started", "job_id", "started_at"),
    )

class DispatchSignal(Base):
    __tablename__ = "dispatch_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    rule_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    status: Mapped[SignalStatus] = mapped_column(String, default=SignalStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_dispatch_signals_poll", "status", "created_at"),
    )
