from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Integer, String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from supportdesk.database import Base

JOB_PENDING = "pending"
JOB_DISPATCHED = "dispatched"


class Job(Base):
    """One queued (event, handler) delivery.

    Rows are written in the same transaction as the change that caused them
    and relayed to Celery by ``supportdesk.tasks.event_tasks``.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    job: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_jobs_status_run_at", "status", "run_at"),
    )

    def __repr__(self) -> str:
        return f"<Job id={self.id} event={self.event!r} job={self.job!r} status={self.status!r}>"
