"""
Tests for turning mailbox notifications into per-message tasks
"""
import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.database.models import EmailAccount, QueuedTask
from src.providers.base import CursorExpiredError, HistoryChange
from src.queue.queue import PROCESS_MESSAGE
from src.webhook.history import HistoryReconciler, Notification, relevant_changes
from tests.helpers import make_account, make_provider, make_session_factory, make_settings


class TestRelevantChanges(unittest.TestCase):
    def test_filters_and_dedupes(self):
        changes = [
            HistoryChange('m-1', 't-1', ['INBOX', 'UNREAD']),
            HistoryChange('m-2', 't-2', ['DRAFT']),
            HistoryChange('m-3', 't-3', ['SENT']),
            HistoryChange('m-1', 't-1', ['INBOX']),
            HistoryChange('m-4', 't-4', ['CATEGORY_UPDATES']),
            HistoryChange('m-5', 't-5', folder='inbox'),
            HistoryChange('m-6', 't-6', ['INBOX', 'DRAFT']),
        ]
        self.assertEqual([c.message_id for c in relevant_changes(changes)], ['m-1', 'm-3', 'm-5'])


class TestNotification(unittest.TestCase):
    def test_body_round_trip_normalizes_history_id(self):
        notification = Notification.from_body({'emailAddress': 'user@example.com', 'historyId': 12345})
        self.assertEqual(notification.history_id, '12345')
        self.assertEqual(notification.to_body(), {'emailAddress': 'user@example.com', 'historyId': '12345',
                                                  'subscriptionId': None})


class TestHistoryReconciler(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.account = make_account(self.db, email='user@example.com', last_cursor='100')
        self.provider = make_provider()
        self.reconciler = HistoryReconciler(self.db, lambda account: self.provider, make_settings())

    def tearDown(self):
        self.db.close()

    def test_enqueues_one_task_per_message(self):
        self.provider.list_changes_since.return_value = ([
            HistoryChange('m-1', 't-1', ['INBOX']),
            HistoryChange('m-2', 't-2', ['DRAFT']),
            HistoryChange('m-1', 't-1', ['INBOX', 'UNREAD']),
        ], '200')

        tasks = self.reconciler.process(Notification(email_address='User@Example.com', history_id='200'))

        self.provider.list_changes_since.assert_called_once_with('100', '200')
        self.assertEqual(len(tasks), 1)
        task = self.db.query(QueuedTask).one()
        self.assertEqual(task.url, PROCESS_MESSAGE)
        self.assertEqual(task.queue_name, f"account-{self.account.id}")
        self.assertEqual(task.body, {'accountId': self.account.id, 'messageId': 'm-1', 'threadId': 't-1'})
        self.assertEqual(self.db.get(EmailAccount, self.account.id).last_cursor, '200')

    def test_cursor_never_moves_backwards(self):
        self.account.last_cursor = '500'
        self.db.commit()
        self.provider.list_changes_since.return_value = ([], '300')

        self.reconciler.process(Notification(email_address='user@example.com', history_id='300'))

        self.assertEqual(self.db.get(EmailAccount, self.account.id).last_cursor, '500')

    def test_expired_cursor_resyncs_recent_messages(self):
        self.provider.list_changes_since.side_effect = CursorExpiredError('history too old', status=404)
        self.provider.list_recent_messages.return_value = [
            HistoryChange('m-7', 't-7', ['INBOX']),
            HistoryChange('m-8', 't-8', ['SENT']),
        ]
        self.provider.reset_cursor.return_value = '900'

        tasks = self.reconciler.process(Notification(email_address='user@example.com', history_id='900'))

        self.assertEqual(len(tasks), 2)
        since, max_results = self.provider.list_recent_messages.call_args.args
        self.assertEqual(max_results, 50)
        self.provider.reset_cursor.assert_called_once_with('900')
        self.assertEqual(self.db.get(EmailAccount, self.account.id).last_cursor, '900')

    def test_outlook_subscription_lookup(self):
        outlook = make_account(self.db, email='person@contoso.com', provider='microsoft',
                               outlook_subscription_id='sub-1')
        self.provider.list_changes_since.return_value = ([HistoryChange('m-1', 't-1', folder='inbox')],
                                                         'https://graph.microsoft.com/delta?token=2')

        self.reconciler.process(Notification(subscription_id='sub-1'))

        self.assertEqual(self.db.query(QueuedTask).one().body['accountId'], outlook.id)
        self.assertEqual(self.db.get(EmailAccount, outlook.id).last_cursor,
                         'https://graph.microsoft.com/delta?token=2')

    def test_unknown_account(self):
        tasks = self.reconciler.process(Notification(email_address='nobody@example.com', history_id='1'))

        self.assertEqual(tasks, [])
        self.provider.list_changes_since.assert_not_called()


if __name__ == '__main__':
    unittest.main()
