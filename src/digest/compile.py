"""
Assemble and send the digest email
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from src.database.models import DigestItem, EmailAccount
from src.ledger.ledger import mark_digest_items_consumed, unconsumed_digest_items
from src.providers.base import EmailProvider

logger = logging.getLogger(__name__)


def render_digest(items: List[DigestItem]) -> str:
    """Plain-text digest grouped by rule name, in order of first appearance"""
    groups: 'OrderedDict[str, List[DigestItem]]' = OrderedDict()
    for item in items:
        groups.setdefault(item.rule_name or 'Other', []).append(item)

    lines = [f"You have {len(items)} new emails in your digest.", '']
    for rule_name, group in groups.items():
        lines.append(f"{rule_name} ({len(group)})")
        lines.append('-' * (len(rule_name) + len(str(len(group))) + 3))
        for item in group:
            lines.append(f"* {item.sender or 'Unknown sender'}: {item.subject or '(no subject)'}")
            lines.append(f"  {item.content}")
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def compile_and_send(db: Session, account: EmailAccount, provider: EmailProvider,
                     now: Optional[datetime] = None) -> int:
    """Send all pending digest items; they are consumed only after the send succeeds"""
    items = unconsumed_digest_items(db, account.id)
    if not items:
        logger.info(f"No digest items for {account.email}")
        return 0

    body = render_digest(items)
    provider.send_message(account.email, f"Your email digest ({len(items)})", body)
    mark_digest_items_consumed(db, items, now)
    logger.info(f"Sent digest with {len(items)} items to {account.email}")
    return len(items)
