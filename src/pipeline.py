"""
Per-message pipeline: lock, select a rule, record it, run its actions
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from src.actions.executor import ActionExecutor
from src.actions.templates import ActionItem
from src.ai.client import CompletionClient
from src.config import Settings, get_settings
from src.database.models import (
    EmailAccount,
    ExecutedRule,
    ExecutedRuleStatus,
    MatchType,
    Rule,
)
from src.ledger.ledger import (
    MessageKey,
    get_executed_rule,
    record_selection,
    resolve_thread_trackers,
    set_status,
)
from src.providers.base import EmailProvider, NotFoundError, ParsedMessage
from src.queue.locks import MessageLocks
from src.rules.patterns import learn_pattern
from src.rules.selector import RuleSelector

logger = logging.getLogger(__name__)

# Once a message reaches one of these it is never processed again
TERMINAL_STATUSES = (
    ExecutedRuleStatus.APPLIED.value,
    ExecutedRuleStatus.PARTIAL.value,
    ExecutedRuleStatus.ERROR.value,
    ExecutedRuleStatus.SKIPPED.value,
    ExecutedRuleStatus.PENDING.value,
)

CONFIRMING_STATUSES = (ExecutedRuleStatus.APPLIED.value, ExecutedRuleStatus.PARTIAL.value)


class MessageLocked(Exception):
    """Another worker is processing the message"""


class MessagePipeline:
    def __init__(self, db: Session, provider: EmailProvider, ai: CompletionClient, locks: MessageLocks,
                 settings: Optional[Settings] = None, http_client=None):
        self.db = db
        self.provider = provider
        self.ai = ai
        self.locks = locks
        self.settings = settings or get_settings()
        self.selector = RuleSelector(db, ai, self.settings)
        self.executor = ActionExecutor(db, provider, ai, self.settings, http_client=http_client)

    def process_message(self, account: EmailAccount, message_id: str, thread_id: str) -> Optional[ExecutedRule]:
        """Process one message at most once at a time.

        A held lock on a message the ledger already finished is a duplicate
        delivery and is dropped. A held lock on an unfinished message raises
        MessageLocked so the queue retries the task after its backoff.
        """
        key = MessageKey(account.id, thread_id, message_id)
        token = self.locks.acquire(key.lock_name())
        if token is None:
            existing = get_executed_rule(self.db, key)
            if existing is not None and existing.status in TERMINAL_STATUSES:
                logger.info(f"Message {message_id} is locked and already {existing.status}, dropping duplicate task")
                return existing
            raise MessageLocked(f"Message {message_id} is being processed")

        try:
            return self._process(account, key)
        finally:
            # An APPLYING ledger row is the resume point for a retry
            self.locks.release(key.lock_name(), token)

    def _process(self, account: EmailAccount, key: MessageKey) -> Optional[ExecutedRule]:
        existing = get_executed_rule(self.db, key)
        if existing is not None and existing.status in TERMINAL_STATUSES:
            logger.debug(f"Message {key.message_id} already {existing.status}, skipping")
            return existing

        try:
            message = self.provider.get_message(key.message_id)
        except NotFoundError:
            logger.info(f"Message {key.message_id} no longer exists, skipping")
            return None

        if existing is not None:
            # APPLYING: a previous attempt died mid-execution
            logger.info(f"Resuming actions for message {key.message_id}")
            items = [ActionItem.from_executed(a) for a in existing.actions]
            return self._execute(existing, items, message)

        rules = self.db.query(Rule).filter(
            Rule.account_id == account.id,
            Rule.enabled.is_(True)
        ).order_by(Rule.priority, Rule.id).all()

        if message.is_outbound:
            resolve_thread_trackers(self.db, account.id, key.thread_id)
            if not any(rule.applies_to_sent for rule in rules):
                logger.debug(f"Ignoring sent message {key.message_id}")
                return None

        selection = self.selector.select(account, rules, message)
        if not selection.matched:
            logger.info(f"No rule for message {key.message_id}: {selection.reason}")
            return record_selection(self.db, key, selection, automated=False,
                                    status=ExecutedRuleStatus.SKIPPED.value)

        rule = selection.rule
        if not rule.automate:
            logger.info(f"Rule {rule.name} planned for message {key.message_id}, awaiting approval")
            return record_selection(self.db, key, selection, automated=False,
                                    status=ExecutedRuleStatus.PENDING.value)

        executed = record_selection(self.db, key, selection, automated=True,
                                    status=ExecutedRuleStatus.APPLYING.value)
        return self._execute(executed, selection.action_items, message)

    def _execute(self, executed: ExecutedRule, items: List[ActionItem], message: ParsedMessage) -> ExecutedRule:
        status = self.executor.execute(executed, items, message)
        set_status(self.db, executed, status)
        logger.info(f"Rule {executed.rule_id} {status} for message {message.id}")

        learns = executed.match_type == MatchType.AI.value or not executed.automated
        if learns and status in CONFIRMING_STATUSES and executed.rule is not None:
            learn_pattern(self.db, executed.rule, message)
            self.db.commit()
        return executed

    def approve(self, executed: ExecutedRule) -> ExecutedRule:
        """Run a PENDING plan; approval also confirms the rule for this sender"""
        if executed.status != ExecutedRuleStatus.PENDING.value:
            raise ValueError(f"Executed rule {executed.id} is {executed.status}, not PENDING")

        key = MessageKey(executed.account_id, executed.thread_id, executed.message_id)
        token = self.locks.acquire(key.lock_name())
        if token is None:
            raise MessageLocked(f"Message {executed.message_id} is being processed")

        try:
            message = self.provider.get_message(executed.message_id)
            set_status(self.db, executed, ExecutedRuleStatus.APPLYING.value)
            items = [ActionItem.from_executed(a) for a in executed.actions]
            return self._execute(executed, items, message)
        finally:
            self.locks.release(key.lock_name(), token)
