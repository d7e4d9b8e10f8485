"""Relay of queued event jobs to the Celery workers that handle them."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from supportdesk.celery_app import celery_app
from supportdesk.database import SessionLocal
from supportdesk.models.job import JOB_DISPATCHED, JOB_PENDING, Job

logger = logging.getLogger(__name__)

JOB_TASK_PREFIX = "supportdesk.jobs."
_BATCH_SIZE = 100


def get_due_jobs(db: Session, limit: int = _BATCH_SIZE) -> list[Job]:
    """Pending jobs whose ``run_at`` has passed, oldest first.

    Rows are locked for the current transaction and rows locked by another
    relay are skipped.
    """
    now = datetime.now(timezone.utc)
    return (
        db.query(Job)
        .filter(Job.status == JOB_PENDING, Job.run_at <= now)
        .order_by(Job.run_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )


@celery_app.task(name="supportdesk.tasks.event_tasks.dispatch_pending_jobs")
def dispatch_pending_jobs() -> int:
    """Send due jobs to their handler tasks and mark them dispatched.

    A crash after sending but before the commit leaves the job pending, so it
    is sent again on the next run; handlers must be idempotent.
    """
    db: Session = SessionLocal()
    dispatched = 0
    try:
        for job in get_due_jobs(db):
            celery_app.send_task(
                f"{JOB_TASK_PREFIX}{job.job}",
                kwargs={"event": job.event, "data": job.payload},
            )
            job.status = JOB_DISPATCHED
            job.attempts += 1
            job.dispatched_at = datetime.now(timezone.utc)
            dispatched += 1
        db.commit()
    finally:
        db.close()

    if dispatched:
        logger.info("dispatch_pending_jobs: dispatched %d job(s)", dispatched)
    return dispatched
