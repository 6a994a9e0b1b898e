"""
Periodic digest tick: enqueue a compile task for every due schedule
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from src.database.models import DigestSchedule, EmailAccount, utcnow
from src.queue.queue import COMPILE_DIGEST, account_queue_name, publish

from .schedule import is_due, next_slots

logger = logging.getLogger(__name__)


def tick(db: Session, now: Optional[datetime] = None, parallelism: int = 1) -> int:
    """Enqueue digests that are due and advance their schedules.

    The enqueue and the advance commit together, guarded by the old
    next_occurrence_at, so two concurrent ticks enqueue a slot only once.
    """
    now = now or utcnow()
    due = db.query(DigestSchedule).filter(
        DigestSchedule.next_occurrence_at.isnot(None),
        DigestSchedule.next_occurrence_at <= now
    ).all()

    enqueued = 0
    for schedule in due:
        if not is_due(schedule, now):
            # advanced by a concurrent tick since the query
            continue
        account = db.get(EmailAccount, schedule.account_id)
        old_next = schedule.next_occurrence_at
        last, next_occurrence = next_slots(schedule, now, account.timezone if account else None)

        result = db.execute(
            update(DigestSchedule)
            .where(DigestSchedule.id == schedule.id, DigestSchedule.next_occurrence_at == old_next)
            .values(last_occurrence_at=last, next_occurrence_at=next_occurrence)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Digest schedule {schedule.id} already advanced by another tick")
            db.rollback()
            continue

        publish(db, account_queue_name(schedule.account_id), COMPILE_DIGEST,
                {'accountId': schedule.account_id}, parallelism=parallelism)
        db.commit()
        enqueued += 1
        logger.info(f"Enqueued digest for account {schedule.account_id}, next at {next_occurrence}")

    return enqueued
