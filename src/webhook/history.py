"""
History reconciliation: turn a provider notification into per-message tasks
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from src.config import Settings, get_settings
from src.database.models import EmailAccount, QueuedTask, utcnow
from src.providers.base import CursorExpiredError, EmailProvider, HistoryChange
from src.queue.queue import PROCESS_MESSAGE, account_queue_name, publish

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """A decoded mailbox change notification"""
    email_address: Optional[str] = None
    history_id: Optional[str] = None  # Gmail
    subscription_id: Optional[str] = None  # Outlook

    def to_body(self) -> dict:
        return {
            'emailAddress': self.email_address,
            'historyId': self.history_id,
            'subscriptionId': self.subscription_id,
        }

    @classmethod
    def from_body(cls, body: dict) -> 'Notification':
        return cls(
            email_address=body.get('emailAddress'),
            history_id=str(body['historyId']) if body.get('historyId') else None,
            subscription_id=body.get('subscriptionId'),
        )


def relevant_changes(changes: List[HistoryChange]) -> List[HistoryChange]:
    """Inbox (not draft) or sent messages, first occurrence of each message id"""
    seen = set()
    kept = []
    for change in changes:
        if change.message_id in seen:
            continue
        if change.is_draft:
            continue
        if not (change.is_inbox or change.is_sent):
            continue
        seen.add(change.message_id)
        kept.append(change)
    return kept


def _newer_cursor(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    # Gmail history ids only move forward; delta links are opaque
    if current and candidate and current.isdigit() and candidate.isdigit():
        return str(max(int(current), int(candidate)))
    return candidate or current


def resolve_account(db: Session, notification: Notification) -> Optional[EmailAccount]:
    if notification.subscription_id:
        return db.query(EmailAccount).filter(
            EmailAccount.outlook_subscription_id == notification.subscription_id
        ).first()
    if notification.email_address:
        return db.query(EmailAccount).filter(
            EmailAccount.email == notification.email_address.strip().lower()
        ).first()
    return None


class HistoryReconciler:
    """Lists what changed since the stored cursor and enqueues one task per message"""

    def __init__(self, db: Session, provider_factory: Callable[[EmailAccount], EmailProvider],
                 settings: Optional[Settings] = None):
        self.db = db
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()

    def resolve_account(self, notification: Notification) -> Optional[EmailAccount]:
        return resolve_account(self.db, notification)

    def process(self, notification: Notification) -> List[QueuedTask]:
        account = self.resolve_account(notification)
        if account is None:
            logger.warning(f"No account for notification {notification}")
            return []

        provider = self.provider_factory(account)
        try:
            changes, new_cursor = provider.list_changes_since(account.last_cursor, notification.history_id)
        except CursorExpiredError as e:
            logger.warning(f"History cursor unusable for {account.email} ({e}), resyncing recent messages")
            since = utcnow() - timedelta(days=self.settings.resync_window_days)
            changes = provider.list_recent_messages(since, self.settings.resync_max_messages)
            new_cursor = provider.reset_cursor(notification.history_id)

        kept = relevant_changes(changes)
        logger.info(f"{len(changes)} changes for {account.email}, {len(kept)} to process")

        tasks = []
        queue_name = account_queue_name(account.id)
        for change in kept:
            tasks.append(publish(self.db, queue_name, PROCESS_MESSAGE, {
                'accountId': account.id,
                'messageId': change.message_id,
                'threadId': change.thread_id,
            }, parallelism=self.settings.account_queue_parallelism))

        # Cursor and tasks commit together
        account.last_cursor = _newer_cursor(account.last_cursor, new_cursor)
        self.db.commit()
        return tasks
