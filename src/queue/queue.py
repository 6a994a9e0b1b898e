"""
Table-backed at-least-once task queue.

Tasks live in `queued_tasks`. Workers claim them with a conditional UPDATE,
so several worker processes can poll the same table. Each queue name has a
parallelism limit: per-account queues keep one mailbox's work mostly serial.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.orm import Session, aliased

from src.database.models import QueuedTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)

PROCESS_MESSAGE = '/tasks/process-message'
PROCESS_HISTORY = '/tasks/process-history'
COMPILE_DIGEST = '/tasks/compile-digest'
BULK_ACTION = '/tasks/bulk-action'

SYSTEM_QUEUE = 'system'
CLAIM_BATCH = 20


def account_queue_name(account_id: int) -> str:
    return f"account-{account_id}"


def publish(db: Session, queue_name: str, url: str, body: Dict[str, Any], parallelism: int = 1,
            available_at: Optional[datetime] = None) -> QueuedTask:
    """Add a task in the caller's transaction; it is visible once the caller commits"""
    task = QueuedTask(
        queue_name=queue_name,
        parallelism=parallelism,
        url=url,
        body=body,
        status=TaskStatus.PENDING.value,
        available_at=available_at or utcnow(),
    )
    db.add(task)
    db.flush()
    logger.debug(f"Published {url} on {queue_name}: {body}")
    return task


def reclaim_stale(db: Session, lease_seconds: int, now: Optional[datetime] = None) -> int:
    """Return RUNNING tasks whose worker died to the pending pool"""
    now = now or utcnow()
    result = db.execute(
        update(QueuedTask)
        .where(QueuedTask.status == TaskStatus.RUNNING.value,
               QueuedTask.started_at < now - timedelta(seconds=lease_seconds))
        .values(status=TaskStatus.PENDING.value, available_at=now, last_error='lease expired')
    )
    db.commit()
    if result.rowcount:
        logger.warning(f"Reclaimed {result.rowcount} stale tasks")
    return result.rowcount


def _try_claim(db: Session, task: QueuedTask, now: datetime) -> bool:
    """Mark one task RUNNING if it is still pending and its queue has a free slot.

    The slot check is part of the UPDATE so two workers cannot both fill the
    last slot. PostgreSQL evaluates it against a statement snapshot, so claims
    on one queue are also serialized with a transaction-scoped advisory lock.
    """
    if db.get_bind().dialect.name == 'postgresql':
        db.execute(text('SELECT pg_advisory_xact_lock(hashtext(:queue_name))'), {'queue_name': task.queue_name})

    running = aliased(QueuedTask)
    running_count = select(func.count(running.id)).where(
        running.queue_name == task.queue_name,
        running.status == TaskStatus.RUNNING.value
    ).scalar_subquery()

    result = db.execute(
        update(QueuedTask)
        .where(QueuedTask.id == task.id,
               QueuedTask.status == TaskStatus.PENDING.value,
               running_count < task.parallelism)
        .values(status=TaskStatus.RUNNING.value, started_at=now, attempts=QueuedTask.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def claim(db: Session, now: Optional[datetime] = None) -> Optional[QueuedTask]:
    """Claim the oldest available task whose queue has a free slot"""
    now = now or utcnow()
    candidates = db.query(QueuedTask).filter(
        QueuedTask.status == TaskStatus.PENDING.value,
        QueuedTask.available_at <= now
    ).order_by(QueuedTask.available_at, QueuedTask.id).limit(CLAIM_BATCH).all()

    for task in candidates:
        if _try_claim(db, task, now):
            db.refresh(task)
            return task
        logger.debug(f"Task {task.id} not claimed: taken by another worker or queue {task.queue_name} is full")
    return None


def complete(db: Session, task: QueuedTask, now: Optional[datetime] = None) -> None:
    task.status = TaskStatus.DONE.value
    task.finished_at = now or utcnow()
    db.commit()


def fail(db: Session, task: QueuedTask, error: str, max_attempts: int, backoff_seconds: int,
         now: Optional[datetime] = None) -> None:
    """Schedule a retry with exponential backoff, or park the task"""
    now = now or utcnow()
    task.last_error = error[:1000]
    if task.attempts >= max_attempts:
        task.status = TaskStatus.PARKED.value
        task.finished_at = now
        logger.error(f"Parked task {task.id} ({task.url}) after {task.attempts} attempts: {error}")
    else:
        task.status = TaskStatus.PENDING.value
        task.available_at = now + timedelta(seconds=backoff_seconds * 2 ** (task.attempts - 1))
        logger.warning(f"Task {task.id} ({task.url}) failed, retry at {task.available_at}: {error}")
    db.commit()
