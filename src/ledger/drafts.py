"""
Cleanup of AI drafts the user never touched
"""
import logging
import re
from datetime import datetime, timedelta
from difflib import SequenceMatcher
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from src.ai.prompts import strip_html, strip_quoted
from src.database.models import (
    ActionType,
    EmailAccount,
    ExecutedAction,
    ExecutedRule,
    utcnow,
)
from src.providers.base import EmailProvider, NotFoundError, ParsedMessage

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


def _normalize(text: Optional[str]) -> str:
    return _WHITESPACE.sub(' ', (text or '').lower()).strip()


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Case and whitespace insensitive similarity between 0.0 and 1.0; empty text scores 0.0"""
    a, b = _normalize(a), _normalize(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def draft_text(draft: ParsedMessage) -> str:
    return strip_quoted(draft.text_plain or strip_html(draft.text_html))


def is_unmodified(draft: ParsedMessage, generated: Optional[str]) -> bool:
    return similarity(draft_text(draft), strip_quoted(generated or '')) == 1.0


def delete_if_unmodified(db: Session, provider: EmailProvider, executed_action: ExecutedAction,
                         now: Optional[datetime] = None) -> bool:
    """Delete the draft when it still holds the generated text.

    Returns True when the action is now consumed (deleted or already gone).
    Edited drafts are never touched.
    """
    now = now or utcnow()
    draft = provider.get_draft(executed_action.draft_id)
    if draft is None:
        logger.debug(f"Draft {executed_action.draft_id} already sent or deleted")
        executed_action.consumed_at = now
        db.commit()
        return True

    if not is_unmodified(draft, executed_action.content):
        logger.debug(f"Draft {executed_action.draft_id} was edited, keeping it")
        return False

    try:
        provider.delete_draft(executed_action.draft_id)
    except NotFoundError:
        pass
    logger.info(f"Deleted unmodified draft {executed_action.draft_id}")
    executed_action.consumed_at = now
    db.commit()
    return True


def delete_previous_draft(db: Session, provider: EmailProvider, account_id: int, thread_id: str,
                          current_executed_rule_id: int) -> bool:
    """Remove the last unedited AI draft in a thread before a new one is created"""
    previous = db.query(ExecutedAction).join(ExecutedRule).filter(
        ExecutedRule.account_id == account_id,
        ExecutedRule.thread_id == thread_id,
        ExecutedRule.id != current_executed_rule_id,
        ExecutedAction.type == ActionType.DRAFT_EMAIL.value,
        ExecutedAction.draft_id.isnot(None),
        ExecutedAction.consumed_at.is_(None)
    ).order_by(ExecutedAction.created_at.desc(), ExecutedAction.id.desc()).first()
    if previous is None:
        return False
    return delete_if_unmodified(db, provider, previous)


def cleanup_stale_drafts(db: Session, provider_factory: Callable[[EmailAccount], EmailProvider],
                         stale_days: int, now: Optional[datetime] = None) -> Dict[str, int]:
    """Delete unmodified AI drafts older than `stale_days`"""
    now = now or utcnow()
    cutoff = now - timedelta(days=stale_days)
    stale = db.query(ExecutedAction).join(ExecutedRule).filter(
        ExecutedAction.type == ActionType.DRAFT_EMAIL.value,
        ExecutedAction.draft_id.isnot(None),
        ExecutedAction.consumed_at.is_(None),
        ExecutedAction.created_at < cutoff
    ).order_by(ExecutedRule.account_id, ExecutedAction.id).all()

    counts = {'checked': 0, 'consumed': 0, 'kept': 0}
    providers: Dict[int, EmailProvider] = {}
    for executed_action in stale:
        account_id = executed_action.executed_rule.account_id
        if account_id not in providers:
            account = db.get(EmailAccount, account_id)
            providers[account_id] = provider_factory(account)

        counts['checked'] += 1
        if delete_if_unmodified(db, providers[account_id], executed_action, now):
            counts['consumed'] += 1
        else:
            counts['kept'] += 1

    logger.info(f"Draft cleanup: {counts}")
    return counts
