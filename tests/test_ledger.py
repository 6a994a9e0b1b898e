"""
Tests for the execution ledger and draft cleanup
"""
import os
import sys
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.exc import OperationalError

from src.actions.templates import ActionItem
from src.database.models import DigestItem, ExecutedAction, ExecutedRule
from src.ledger.drafts import cleanup_stale_drafts, delete_if_unmodified, similarity
from src.ledger.ledger import (
    REDACTED,
    LedgerWriteError,
    MessageKey,
    mark_digest_items_consumed,
    record_action,
    record_selection,
    set_status,
    unconsumed_digest_items,
    upsert_digest_item,
)
from src.providers.base import NotFoundError
from src.rules.selector import Selection
from tests.helpers import make_account, make_message, make_provider, make_rule, make_session_factory


def _selection(rule):
    return Selection(rule=rule, action_items=[ActionItem.from_action(a) for a in rule.actions],
                     reason='Matched static conditions', match_type='STATIC')


class TestRecordSelection(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.account = make_account(self.db)
        self.key = MessageKey(self.account.id, 'thread-1', 'msg-1')
        self.rule = make_rule(self.db, self.account, 'Newsletter',
                              actions=[{'type': 'LABEL', 'label': 'News'}, {'type': 'ARCHIVE'}])

    def tearDown(self):
        self.db.close()

    def test_lock_name(self):
        self.assertEqual(self.key.lock_name(), f"lock:message:{self.account.id}:thread-1:msg-1")

    def test_creates_planned_actions(self):
        executed = record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')

        self.assertEqual(executed.rule_id, self.rule.id)
        self.assertEqual(executed.match_type, 'STATIC')
        self.assertEqual([(a.type, a.status) for a in executed.actions],
                         [('LABEL', 'PLANNED'), ('ARCHIVE', 'PLANNED')])

    def test_identical_retry_is_a_no_op(self):
        first = record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')
        self.db.commit = MagicMock()

        second = record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')

        self.assertEqual(first.id, second.id)
        self.db.commit.assert_not_called()

    def test_single_row_per_message(self):
        record_selection(self.db, self.key, _selection(self.rule), False, 'PENDING')
        record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')

        self.assertEqual(self.db.query(ExecutedRule).count(), 1)
        self.assertEqual(self.db.query(ExecutedAction).count(), 2)

    def test_different_rule_replaces_planned_actions(self):
        other = make_rule(self.db, self.account, 'Receipt', actions=[{'type': 'MARK_READ'}])
        executed = record_selection(self.db, self.key, _selection(self.rule), False, 'PENDING')

        executed = record_selection(self.db, self.key, _selection(other), False, 'PENDING')

        self.assertEqual(executed.rule_id, other.id)
        self.assertEqual([a.type for a in executed.actions], ['MARK_READ'])
        self.assertEqual(self.db.query(ExecutedAction).count(), 1)

    def test_record_action_upserts(self):
        executed = record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')
        item = ActionItem.from_action(self.rule.actions[0])

        record_action(self.db, executed, item, 'FAILED', error='provider_error: 500')
        record_action(self.db, executed, item, 'SUCCEEDED')

        label = executed.actions[0]
        self.assertEqual(label.status, 'SUCCEEDED')
        self.assertIsNone(label.error)
        self.assertEqual(self.db.query(ExecutedAction).count(), 2)

    def test_write_failure_raises(self):
        executed = record_selection(self.db, self.key, _selection(self.rule), True, 'APPLYING')
        self.db.commit = MagicMock(side_effect=OperationalError('UPDATE', {}, Exception('disk I/O error')))

        with self.assertRaises(LedgerWriteError):
            set_status(self.db, executed, 'APPLIED')


class TestDigestItems(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.account = make_account(self.db)
        rule = make_rule(self.db, self.account, 'Newsletter', actions=[{'type': 'DIGEST'}])
        key = MessageKey(self.account.id, 'thread-1', 'msg-1')
        self.executed = record_selection(self.db, key, _selection(rule), True, 'APPLYING')

    def tearDown(self):
        self.db.close()

    def test_upsert_and_consume(self):
        action = self.executed.actions[0]
        upsert_digest_item(self.db, action, self.account.id, 'msg-1', 'thread-1', 'Newsletter',
                           'news@letters.example.com', 'This week', 'First summary')
        upsert_digest_item(self.db, action, self.account.id, 'msg-1', 'thread-1', 'Newsletter',
                           'news@letters.example.com', 'This week', 'Second summary')

        items = unconsumed_digest_items(self.db, self.account.id)
        self.assertEqual([i.content for i in items], ['Second summary'])

        now = datetime(2024, 3, 4, 9, 0)
        mark_digest_items_consumed(self.db, items, now)

        item = self.db.query(DigestItem).one()
        self.assertEqual(item.consumed_at, now)
        self.assertEqual(item.content, REDACTED)
        self.assertEqual(item.subject, REDACTED)
        self.assertEqual(unconsumed_digest_items(self.db, self.account.id), [])


class TestSimilarity(unittest.TestCase):
    def test_similarity(self):
        test_cases = [
            ('Thanks for reaching out!', 'Thanks for reaching out!', 1.0),
            ('Thanks  for\nreaching out!', 'thanks for reaching out!', 1.0),
            ('', '', 0.0),
            (None, None, 0.0),
            ('  ', '\n', 0.0),
            ('Thanks', '', 0.0),
            (None, 'Thanks', 0.0),
        ]
        for a, b, expected in test_cases:
            with self.subTest(a=a, b=b):
                self.assertEqual(similarity(a, b), expected)

    def test_edited_text_is_below_one(self):
        self.assertLess(similarity('Thanks for reaching out!', 'Thanks for reaching out! See you Monday.'), 1.0)


class TestDraftCleanup(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.account = make_account(self.db)
        rule = make_rule(self.db, self.account, 'Reply',
                         actions=[{'type': 'DRAFT_EMAIL', 'content': 'Thanks for reaching out!'}])
        key = MessageKey(self.account.id, 'thread-1', 'msg-1')
        self.executed = record_selection(self.db, key, _selection(rule), True, 'APPLYING')
        self.action = self.executed.actions[0]
        self.action.draft_id = 'draft-1'
        self.action.status = 'SUCCEEDED'
        self.action.created_at = datetime(2024, 3, 1, 9, 0)
        self.db.commit()
        self.provider = make_provider()
        self.now = datetime(2024, 3, 5, 9, 0)

    def tearDown(self):
        self.db.close()

    def _draft(self, text):
        return make_message(id='draft-msg', text_plain=text)

    def test_unmodified_draft_is_deleted(self):
        quoted = 'Thanks for reaching out!\n\nOn Mon, Mar 04, 2024 at 08:30, Weekly News wrote:\n> Hello'
        self.provider.get_draft.return_value = self._draft(quoted)

        self.assertTrue(delete_if_unmodified(self.db, self.provider, self.action, self.now))

        self.provider.delete_draft.assert_called_once_with('draft-1')
        self.assertEqual(self.action.consumed_at, self.now)

    def test_edited_draft_is_kept(self):
        self.provider.get_draft.return_value = self._draft('Thanks for reaching out! Call me tomorrow.')

        self.assertFalse(delete_if_unmodified(self.db, self.provider, self.action, self.now))

        self.provider.delete_draft.assert_not_called()
        self.assertIsNone(self.action.consumed_at)

    def test_missing_draft_is_consumed(self):
        self.provider.get_draft.return_value = None

        self.assertTrue(delete_if_unmodified(self.db, self.provider, self.action, self.now))

        self.provider.delete_draft.assert_not_called()
        self.assertEqual(self.action.consumed_at, self.now)

    def test_draft_deleted_concurrently(self):
        self.provider.get_draft.return_value = self._draft('Thanks for reaching out!')
        self.provider.delete_draft.side_effect = NotFoundError('gone', status=404)

        self.assertTrue(delete_if_unmodified(self.db, self.provider, self.action, self.now))
        self.assertEqual(self.action.consumed_at, self.now)

    def test_cleanup_respects_age(self):
        self.provider.get_draft.return_value = self._draft('Thanks for reaching out!')
        factory = MagicMock(return_value=self.provider)

        counts = cleanup_stale_drafts(self.db, factory, stale_days=7, now=self.now)
        self.assertEqual(counts, {'checked': 0, 'consumed': 0, 'kept': 0})

        counts = cleanup_stale_drafts(self.db, factory, stale_days=3, now=self.now)
        self.assertEqual(counts, {'checked': 1, 'consumed': 1, 'kept': 0})
        factory.assert_called_once()

        counts = cleanup_stale_drafts(self.db, factory, stale_days=3, now=self.now + timedelta(days=1))
        self.assertEqual(counts['checked'], 0)


if __name__ == '__main__':
    unittest.main()
