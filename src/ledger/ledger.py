"""
Execution ledger: the durable record of what ran on each message.

Every write is an upsert keyed by (account, thread, message) or
(executed rule, action), so a retried task converges on the same rows.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.database.models import (
    ActionStatus,
    DigestItem,
    ExecutedAction,
    ExecutedRule,
    ThreadTracker,
    utcnow,
)

logger = logging.getLogger(__name__)

REDACTED = '[REDACTED]'


class LedgerWriteError(Exception):
    """A ledger write failed; the task must not report success"""


@dataclass(frozen=True)
class MessageKey:
    account_id: int
    thread_id: str
    message_id: str

    def lock_name(self) -> str:
        return f"lock:message:{self.account_id}:{self.thread_id}:{self.message_id}"


def get_executed_rule(db: Session, key: MessageKey) -> Optional[ExecutedRule]:
    return db.query(ExecutedRule).filter(
        ExecutedRule.account_id == key.account_id,
        ExecutedRule.thread_id == key.thread_id,
        ExecutedRule.message_id == key.message_id
    ).first()


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerWriteError(f"Failed to write {what}: {e}") from e


def record_selection(db: Session, key: MessageKey, selection, automated: bool, status: str) -> ExecutedRule:
    """Upsert the ExecutedRule for a message from a Selection.

    An identical retry writes nothing. A different rule replaces the earlier
    selection and its PLANNED actions.
    """
    rule_id = selection.rule.id if selection.rule else None
    executed = get_executed_rule(db, key)

    if executed is not None and executed.rule_id == rule_id and executed.status == status \
            and executed.automated == automated:
        logger.debug(f"Selection for {key} unchanged, skipping write")
        return executed

    if executed is None:
        executed = ExecutedRule(
            account_id=key.account_id,
            thread_id=key.thread_id,
            message_id=key.message_id,
        )
        db.add(executed)
        try:
            db.flush()
        except IntegrityError:
            # Inserted concurrently; update the winner instead
            db.rollback()
            executed = get_executed_rule(db, key)
            if executed is None:
                raise LedgerWriteError(f"Could not upsert executed rule for {key}")
        except SQLAlchemyError as e:
            db.rollback()
            raise LedgerWriteError(f"Failed to write executed rule for {key}: {e}") from e

    if executed.rule_id is not None and executed.rule_id != rule_id:
        logger.info(f"Replacing selection of rule {executed.rule_id} with {rule_id} for {key}")
        for planned in [a for a in executed.actions if a.status == ActionStatus.PLANNED.value]:
            executed.actions.remove(planned)

    executed.rule_id = rule_id
    executed.status = status
    executed.automated = automated
    executed.match_type = selection.match_type
    executed.reason = (selection.reason or '')[:255]

    existing_action_ids = {a.action_id for a in executed.actions}
    for item in selection.action_items:
        if item.action_id in existing_action_ids:
            continue
        executed.actions.append(_executed_action_from_item(item, ActionStatus.PLANNED.value))

    _commit(db, f"executed rule for {key}")
    return executed


def _executed_action_from_item(item, status: str) -> ExecutedAction:
    action = ExecutedAction(action_id=item.action_id, position=item.position, type=item.type, status=status)
    for name, value in item.fields().items():
        setattr(action, name, value)
    return action


def find_executed_action(executed_rule: ExecutedRule, item) -> Optional[ExecutedAction]:
    for action in executed_rule.actions:
        if item.action_id is not None and action.action_id == item.action_id:
            return action
        if item.action_id is None and action.action_id is None and action.position == item.position:
            return action
    return None


def record_action(db: Session, executed_rule: ExecutedRule, item, status: str,
                  draft_id: Optional[str] = None, error: Optional[str] = None) -> ExecutedAction:
    """Upsert the outcome of one action, storing the fields it actually ran with"""
    action = find_executed_action(executed_rule, item)
    if action is None:
        action = _executed_action_from_item(item, status)
        executed_rule.actions.append(action)

    for name, value in item.fields().items():
        setattr(action, name, value)
    action.status = status
    action.error = error[:255] if error else None
    if draft_id:
        action.draft_id = draft_id

    _commit(db, f"action {item.type} for executed rule {executed_rule.id}")
    return action


def set_status(db: Session, executed_rule: ExecutedRule, status: str, reason: Optional[str] = None) -> None:
    executed_rule.status = status
    if reason:
        executed_rule.reason = reason[:255]
    _commit(db, f"status of executed rule {executed_rule.id}")


def upsert_digest_item(db: Session, executed_action: ExecutedAction, account_id: int, message_id: str,
                       thread_id: str, rule_name: str, sender: str, subject: str, content: str) -> DigestItem:
    item = db.query(DigestItem).filter(DigestItem.executed_action_id == executed_action.id).first()
    if item is None:
        item = DigestItem(executed_action_id=executed_action.id, account_id=account_id,
                          message_id=message_id, thread_id=thread_id)
        db.add(item)
    item.rule_name = rule_name
    item.sender = sender
    item.subject = subject
    item.content = content
    _commit(db, f"digest item for action {executed_action.id}")
    return item


def unconsumed_digest_items(db: Session, account_id: int) -> List[DigestItem]:
    return db.query(DigestItem).filter(
        DigestItem.account_id == account_id,
        DigestItem.consumed_at.is_(None)
    ).order_by(DigestItem.created_at, DigestItem.id).all()


def mark_digest_items_consumed(db: Session, items: List[DigestItem], now: Optional[datetime] = None) -> None:
    """Mark all items consumed and redact them in a single transaction"""
    now = now or utcnow()
    for item in items:
        item.consumed_at = now
        item.content = REDACTED
        item.subject = REDACTED
    _commit(db, f"{len(items)} digest items")


def resolve_thread_trackers(db: Session, account_id: int, thread_id: str) -> int:
    """The user replied in the thread: close every open tracker on it"""
    resolved = db.query(ThreadTracker).filter(
        ThreadTracker.account_id == account_id,
        ThreadTracker.thread_id == thread_id,
        ThreadTracker.resolved.is_(False)
    ).update({ThreadTracker.resolved: True}, synchronize_session=False)
    if resolved:
        _commit(db, f"trackers for thread {thread_id}")
        logger.info(f"Resolved {resolved} trackers for thread {thread_id}")
    return resolved
