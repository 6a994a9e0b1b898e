"""
Executes a selected rule's actions against the mailbox
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.ai.client import CompletionClient, Ok
from src.ai.prompts import DIGEST_SYSTEM, build_digest_prompt
from src.ai.schemas import DigestSummary
from src.config import Settings, get_settings
from src.database.models import (
    ActionStatus,
    ActionType,
    ExecutedRule,
    ExecutedRuleStatus,
    ThreadTracker,
)
from src.ledger.drafts import delete_previous_draft
from src.ledger.ledger import (
    find_executed_action,
    record_action,
    upsert_digest_item,
)
from src.providers.base import (
    EmailProvider,
    NotFoundError,
    ParsedMessage,
    ProviderError,
    TransientProviderError,
)

from .templates import ActionItem, render_item
from .webhook import build_payload, call_webhook

logger = logging.getLogger(__name__)

# Repeating these is harmless, so a missing target means the work is done
IDEMPOTENT_TYPES = (
    ActionType.LABEL.value,
    ActionType.ARCHIVE.value,
    ActionType.MARK_READ.value,
    ActionType.MARK_SPAM.value,
    ActionType.MOVE_FOLDER.value,
)

# Never take a message out of the inbox when its label could not be applied
REQUIRES_LABEL_TYPES = (ActionType.ARCHIVE.value, ActionType.MOVE_FOLDER.value)


class ActionFailed(Exception):
    """A non-provider action could not complete"""


def final_status(succeeded: int, failed: int) -> str:
    if failed == 0:
        return ExecutedRuleStatus.APPLIED.value
    if succeeded == 0:
        return ExecutedRuleStatus.ERROR.value
    return ExecutedRuleStatus.PARTIAL.value


class ActionExecutor:
    """Runs actions sequentially in declared order, recording each outcome"""

    def __init__(self, db: Session, provider: EmailProvider, ai: CompletionClient,
                 settings: Optional[Settings] = None, http_client=None):
        self.db = db
        self.provider = provider
        self.ai = ai
        self.settings = settings or get_settings()
        self.http_client = http_client

    def execute(self, executed_rule: ExecutedRule, items: List[ActionItem], message: ParsedMessage) -> str:
        """Run `items` for the message and return the final ExecutedRule status.

        TransientProviderError propagates so the task is retried; actions that
        already succeeded are skipped on the retry.
        """
        succeeded = failed = 0
        label_failed = False

        for item in sorted(items, key=lambda i: i.position):
            existing = find_executed_action(executed_rule, item)
            if existing is not None and existing.status == ActionStatus.SUCCEEDED.value:
                logger.debug(f"Action {item.type} already succeeded, skipping")
                succeeded += 1
                continue

            if item.type in REQUIRES_LABEL_TYPES and label_failed:
                logger.warning(f"Skipping {item.type} for message {message.id}: label failed")
                record_action(self.db, executed_rule, item, ActionStatus.SKIPPED.value,
                              error='precondition_failed: label not applied')
                failed += 1
                continue

            rendered = render_item(item, message)
            draft_id, error = None, None
            try:
                draft_id = self._dispatch(executed_rule, rendered, message)
                status = ActionStatus.SUCCEEDED.value
            except TransientProviderError:
                raise
            except NotFoundError as e:
                if rendered.type in IDEMPOTENT_TYPES:
                    logger.debug(f"{rendered.type} target gone, treating as done: {e}")
                    status = ActionStatus.SUCCEEDED.value
                else:
                    logger.error(f"Action {rendered.type} failed for message {message.id}: {e}")
                    status, error = ActionStatus.FAILED.value, 'not_found'
            except ProviderError as e:
                logger.error(f"Action {rendered.type} failed for message {message.id}: {e}")
                status, error = ActionStatus.FAILED.value, f"provider_error: {e.status or 'unknown'}"
            except ActionFailed as e:
                logger.error(f"Action {rendered.type} failed for message {message.id}: {e}")
                status, error = ActionStatus.FAILED.value, str(e)

            record_action(self.db, executed_rule, rendered, status, draft_id=draft_id, error=error)
            if status == ActionStatus.SUCCEEDED.value:
                logger.debug(f"Action {rendered.type} succeeded")
                succeeded += 1
            else:
                failed += 1
                if rendered.type == ActionType.LABEL.value:
                    label_failed = True

        return final_status(succeeded, failed)

    def _dispatch(self, executed_rule: ExecutedRule, item: ActionItem, message: ParsedMessage) -> Optional[str]:
        """Perform one action; returns a draft id for DRAFT_EMAIL"""
        action_type = item.type
        thread_id = message.thread_id

        if action_type == ActionType.ARCHIVE.value:
            self.provider.archive(thread_id)
        elif action_type == ActionType.LABEL.value:
            if not item.label:
                raise ActionFailed('missing_label')
            self.provider.apply_label(message.id, item.label)
        elif action_type == ActionType.DRAFT_EMAIL.value:
            return self._draft(executed_rule, item, message)
        elif action_type == ActionType.REPLY.value:
            if not item.content:
                raise ActionFailed('missing_content')
            self.provider.reply_to_message(message, item.content, cc=item.cc, bcc=item.bcc)
        elif action_type == ActionType.SEND_EMAIL.value:
            if not item.to:
                raise ActionFailed('missing_recipient')
            self.provider.send_message(item.to, item.subject or '', item.content or '', cc=item.cc, bcc=item.bcc)
        elif action_type == ActionType.FORWARD.value:
            if not item.to:
                raise ActionFailed('missing_recipient')
            self.provider.forward_message(message, item.to, content=item.content, cc=item.cc, bcc=item.bcc)
        elif action_type == ActionType.MARK_READ.value:
            self.provider.mark_read(thread_id)
        elif action_type == ActionType.MARK_SPAM.value:
            self.provider.mark_spam(thread_id)
        elif action_type == ActionType.CALL_WEBHOOK.value:
            self._call_webhook(executed_rule, item, message)
        elif action_type == ActionType.DIGEST.value:
            self._digest(executed_rule, item, message)
        elif action_type == ActionType.TRACK_THREAD.value:
            self._track_thread(executed_rule, message)
        elif action_type == ActionType.MOVE_FOLDER.value:
            if not item.folder_name:
                raise ActionFailed('missing_folder')
            self.provider.move_to_folder(thread_id, item.folder_name)
        else:
            raise ValueError(f"Unknown action type: {action_type}")
        return None

    def _draft(self, executed_rule: ExecutedRule, item: ActionItem, message: ParsedMessage) -> str:
        if not item.content:
            raise ActionFailed('missing_content')
        try:
            delete_previous_draft(self.db, self.provider, executed_rule.account_id, message.thread_id,
                                  executed_rule.id)
        except TransientProviderError:
            raise
        except ProviderError as e:
            logger.warning(f"Could not clean up previous draft in thread {message.thread_id}: {e}")
        return self.provider.create_draft(message, item.content, to=item.to, subject=item.subject)

    def _call_webhook(self, executed_rule: ExecutedRule, item: ActionItem, message: ParsedMessage) -> None:
        if not item.url:
            raise ActionFailed('missing_url')
        fields = {k: v for k, v in item.non_empty_fields().items() if k != 'url'}
        payload = build_payload(message.id, message.thread_id, executed_rule.rule_id, item.type, fields)
        if not call_webhook(item.url, payload, timeout=self.settings.webhook_timeout_seconds,
                            client=self.http_client):
            raise ActionFailed('webhook_failed')

    def _digest(self, executed_rule: ExecutedRule, item: ActionItem, message: ParsedMessage) -> None:
        result = self.ai.complete(DIGEST_SYSTEM, build_digest_prompt(message, self.settings.ai_max_body_chars),
                                  DigestSummary, tool_name='summarize_for_digest')
        if isinstance(result, Ok) and result.data.content.strip():
            content = result.data.content.strip()
        else:
            logger.warning(f"Digest summary unavailable for message {message.id}, using subject: {result}")
            content = message.subject or '(no subject)'

        executed_action = find_executed_action(executed_rule, item)
        if executed_action is None:
            executed_action = record_action(self.db, executed_rule, item, ActionStatus.PLANNED.value)
        rule_name = executed_rule.rule.name if executed_rule.rule else ''
        upsert_digest_item(self.db, executed_action, executed_rule.account_id, message.id, message.thread_id,
                           rule_name, message.from_address, message.subject, content)

    def _track_thread(self, executed_rule: ExecutedRule, message: ParsedMessage) -> None:
        exists = self.db.query(ThreadTracker).filter(
            ThreadTracker.account_id == executed_rule.account_id,
            ThreadTracker.thread_id == message.thread_id,
            ThreadTracker.message_id == message.id
        ).first()
        if exists:
            return
        try:
            with self.db.begin_nested():
                self.db.add(ThreadTracker(account_id=executed_rule.account_id, thread_id=message.thread_id,
                                          message_id=message.id))
        except IntegrityError:
            logger.debug(f"Thread {message.thread_id} already tracked")
