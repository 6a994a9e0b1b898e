"""
Tests for the Gmail adapter against a mocked API service
"""
import base64
import os
import sys
import unittest
from datetime import datetime
from email import message_from_bytes
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from googleapiclient.errors import HttpError

from src.providers.base import CursorExpiredError, NotFoundError, ProviderError, TransientProviderError
from src.providers.gmail import GmailProvider, _map_http_error
from tests.helpers import make_message


def http_error(status, content=b''):
    return HttpError(resp=MagicMock(status=status, reason='error'), content=content)


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip('=')


class TestErrorMapping(unittest.TestCase):
    def test_map_http_error(self):
        test_cases = [
            (404, b'', NotFoundError),
            (429, b'', TransientProviderError),
            (500, b'', TransientProviderError),
            (503, b'', TransientProviderError),
            (403, b'{"error": {"errors": [{"reason": "rateLimitExceeded"}]}}', TransientProviderError),
            (403, b'{"error": {"message": "Insufficient Permission"}}', ProviderError),
            (400, b'', ProviderError),
        ]
        for status, content, expected in test_cases:
            with self.subTest(status=status, content=content):
                error = _map_http_error(http_error(status, content))
                self.assertIs(type(error), expected)
                self.assertEqual(error.status, status)


class TestGmailProvider(unittest.TestCase):
    def setUp(self):
        self.service = MagicMock()
        self.users = self.service.users.return_value
        self.provider = GmailProvider(self.service, 'user@example.com')

    def test_changes_require_a_cursor(self):
        with self.assertRaises(CursorExpiredError):
            self.provider.list_changes_since(None, '200')

    def test_changes_paginate(self):
        history = self.users.history.return_value
        history.list.return_value.execute.side_effect = [
            {'history': [{'messagesAdded': [{'message': {'id': 'm-1', 'threadId': 't-1', 'labelIds': ['INBOX']}}]}],
             'historyId': '150', 'nextPageToken': 'page-2'},
            {'history': [{'messagesAdded': [{'message': {'id': 'm-2', 'threadId': 't-2', 'labelIds': ['SENT']}}]}],
             'historyId': '210'},
        ]

        changes, cursor = self.provider.list_changes_since('100', '200')

        self.assertEqual([c.message_id for c in changes], ['m-1', 'm-2'])
        self.assertEqual(changes[1].label_ids, ['SENT'])
        self.assertEqual(cursor, '210')
        first_call = history.list.call_args_list[0].kwargs
        self.assertEqual(first_call['startHistoryId'], '100')
        self.assertEqual(first_call['historyTypes'], ['messageAdded'])
        self.assertEqual(history.list.call_args_list[-1].kwargs['pageToken'], 'page-2')

    def test_large_gap_is_bounded(self):
        history = self.users.history.return_value
        history.list.return_value.execute.return_value = {'historyId': '1000'}

        changes, cursor = self.provider.list_changes_since('100', '1000')

        self.assertEqual(changes, [])
        self.assertEqual(cursor, '1000')
        self.assertEqual(history.list.call_args.kwargs['startHistoryId'], '500')

    def test_expired_history_id(self):
        self.users.history.return_value.list.return_value.execute.side_effect = http_error(404)

        with self.assertRaises(CursorExpiredError):
            self.provider.list_changes_since('100', '200')

    def test_thread_operations(self):
        test_cases = [
            ('archive', (), {'addLabelIds': [], 'removeLabelIds': ['INBOX']}),
            ('mark_read', (), {'addLabelIds': [], 'removeLabelIds': ['UNREAD']}),
            ('mark_spam', (), {'addLabelIds': ['SPAM'], 'removeLabelIds': ['INBOX']}),
        ]
        threads = self.users.threads.return_value
        for method, args, body in test_cases:
            with self.subTest(method=method):
                threads.modify.reset_mock()
                getattr(self.provider, method)('t-1', *args)
                threads.modify.assert_called_once_with(userId='me', id='t-1', body=body)

    def test_apply_label_creates_missing_label(self):
        labels = self.users.labels.return_value
        labels.list.return_value.execute.return_value = {'labels': [{'name': 'INBOX', 'id': 'INBOX'}]}
        labels.create.return_value.execute.return_value = {'id': 'Label_7', 'name': 'Newsletter'}

        self.provider.apply_label('m-1', 'Newsletter')
        self.provider.apply_label('m-2', 'Newsletter')

        labels.create.assert_called_once()
        self.assertEqual(labels.list.call_count, 1)
        self.users.messages.return_value.modify.assert_called_with(
            userId='me', id='m-2', body={'addLabelIds': ['Label_7']})

    def test_not_found_is_raised(self):
        self.users.threads.return_value.modify.return_value.execute.side_effect = http_error(404)
        with self.assertRaises(NotFoundError):
            self.provider.archive('t-1')

    def test_missing_draft_returns_none(self):
        self.users.drafts.return_value.get.return_value.execute.side_effect = http_error(404)
        self.assertIsNone(self.provider.get_draft('draft-1'))

    def test_create_draft_replies_in_thread(self):
        drafts = self.users.drafts.return_value
        drafts.create.return_value.execute.return_value = {'id': 'draft-9'}

        draft_id = self.provider.create_draft(make_message(), 'Thanks for the update!')

        self.assertEqual(draft_id, 'draft-9')
        body = drafts.create.call_args.kwargs['body']
        self.assertEqual(body['message']['threadId'], 'thread-1')
        mime = message_from_bytes(base64.urlsafe_b64decode(body['message']['raw']))
        self.assertEqual(mime['Subject'], 'Re: This week in tech')
        self.assertEqual(mime['To'], 'Weekly News <news@letters.example.com>')
        self.assertEqual(mime['In-Reply-To'], '<abc@letters.example.com>')

    def test_parse_message(self):
        resource = {
            'id': 'm-1',
            'threadId': 't-1',
            'labelIds': ['INBOX', 'UNREAD'],
            'snippet': 'Hello there',
            'internalDate': '1709541000000',
            'payload': {
                'mimeType': 'multipart/mixed',
                'headers': [
                    {'name': 'From', 'value': 'Ana <ana@example.com>'},
                    {'name': 'To', 'value': 'user@example.com'},
                    {'name': 'Subject', 'value': 'Team sync'},
                    {'name': 'Message-ID', 'value': '<id-1@example.com>'},
                ],
                'parts': [
                    {'mimeType': 'multipart/alternative', 'parts': [
                        {'mimeType': 'text/plain', 'body': {'data': b64('Hello there, see you soon')}},
                        {'mimeType': 'text/html', 'body': {'data': b64('<p>Hello there</p>')}},
                    ]},
                    {'mimeType': 'text/calendar', 'filename': 'invite.ics', 'body': {'attachmentId': 'a-1'}},
                ],
            },
        }

        message = self.provider.parse_message(resource)

        self.assertEqual(message.sender_email, 'ana@example.com')
        self.assertEqual(message.sender_name, 'Ana')
        self.assertEqual(message.subject, 'Team sync')
        self.assertEqual(message.text_plain, 'Hello there, see you soon')
        self.assertEqual(message.text_html, '<p>Hello there</p>')
        self.assertEqual(message.attachments, ['invite.ics'])
        self.assertEqual(message.date, datetime(2024, 3, 4, 8, 30))
        self.assertEqual(message.header_message_id, '<id-1@example.com>')
        self.assertFalse(message.is_outbound)

    def test_parse_sent_message_date_header(self):
        message = self.provider.parse_message({
            'id': 'm-2',
            'labelIds': ['SENT'],
            'payload': {'headers': [{'name': 'Date', 'value': 'Mon, 4 Mar 2024 10:30:00 +0200'}]},
        })
        self.assertTrue(message.is_outbound)
        self.assertEqual(message.date, datetime(2024, 3, 4, 8, 30))


if __name__ == '__main__':
    unittest.main()
