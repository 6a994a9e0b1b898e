"""
Task handlers, looked up by the task's URL
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from src.ai.client import CompletionClient
from src.config import Settings
from src.database.models import EmailAccount
from src.digest.compile import compile_and_send
from src.pipeline import MessagePipeline
from src.providers.base import EmailProvider, NotFoundError
from src.webhook.history import HistoryReconciler, Notification

from .locks import MessageLocks
from .queue import BULK_ACTION, COMPILE_DIGEST, PROCESS_HISTORY, PROCESS_MESSAGE

logger = logging.getLogger(__name__)

BULK_ACTIONS = ('archive', 'mark_read')
BULK_MAX_THREADS = 500


@dataclass
class TaskContext:
    db: Session
    settings: Settings
    provider_factory: Callable[[EmailAccount], EmailProvider]
    ai: CompletionClient
    locks: MessageLocks
    http_client: Optional[Any] = None


def _account(ctx: TaskContext, body: Dict[str, Any]) -> Optional[EmailAccount]:
    account = ctx.db.get(EmailAccount, body['accountId'])
    if account is None:
        logger.warning(f"Account {body['accountId']} no longer exists, dropping task")
    return account


def handle_process_message(ctx: TaskContext, body: Dict[str, Any]) -> None:
    account = _account(ctx, body)
    if account is None:
        return
    pipeline = MessagePipeline(ctx.db, ctx.provider_factory(account), ctx.ai, ctx.locks, ctx.settings,
                               http_client=ctx.http_client)
    pipeline.process_message(account, body['messageId'], body['threadId'])


def handle_process_history(ctx: TaskContext, body: Dict[str, Any]) -> None:
    reconciler = HistoryReconciler(ctx.db, ctx.provider_factory, ctx.settings)
    reconciler.process(Notification.from_body(body))


def handle_compile_digest(ctx: TaskContext, body: Dict[str, Any]) -> None:
    account = _account(ctx, body)
    if account is None:
        return
    compile_and_send(ctx.db, account, ctx.provider_factory(account))


def handle_bulk_action(ctx: TaskContext, body: Dict[str, Any]) -> None:
    """Archive or mark read every inbox thread from one sender"""
    action = body['action']
    if action not in BULK_ACTIONS:
        raise ValueError(f"Unknown bulk action: {action}")
    account = _account(ctx, body)
    if account is None:
        return

    provider = ctx.provider_factory(account)
    thread_ids = provider.list_inbox_threads_from(body['from'], BULK_MAX_THREADS)
    for thread_id in thread_ids:
        try:
            if action == 'archive':
                provider.archive(thread_id)
            else:
                provider.mark_read(thread_id)
        except NotFoundError:
            logger.debug(f"Thread {thread_id} already gone")
    logger.info(f"Bulk {action} of {len(thread_ids)} threads from {body['from']} for {account.email}")


HANDLERS: Dict[str, Callable[[TaskContext, Dict[str, Any]], None]] = {
    PROCESS_MESSAGE: handle_process_message,
    PROCESS_HISTORY: handle_process_history,
    COMPILE_DIGEST: handle_compile_digest,
    BULK_ACTION: handle_bulk_action,
}


def dispatch(ctx: TaskContext, url: str, body: Dict[str, Any]) -> None:
    handler = HANDLERS.get(url)
    if handler is None:
        raise ValueError(f"No handler for task {url}")
    handler(ctx, body)
