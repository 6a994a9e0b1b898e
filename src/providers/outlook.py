"""
Microsoft Graph adapter for Outlook mailboxes
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import httpx
from dateutil import parser as date_parser

from .base import (
    CursorExpiredError,
    EmailProvider,
    HistoryChange,
    NotFoundError,
    ParsedMessage,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

GRAPH_URL = 'https://graph.microsoft.com/v1.0'
INBOX_DELTA_PATH = '/me/mailFolders/inbox/messages/delta'
MESSAGE_FIELDS = ('id,conversationId,subject,bodyPreview,body,from,toRecipients,ccRecipients,'
                  'receivedDateTime,hasAttachments,internetMessageId,isDraft,categories,parentFolderId')


def _format_address(recipient: Optional[Dict]) -> str:
    if not recipient:
        return ''
    address = recipient.get('emailAddress', {})
    name, email = address.get('name'), address.get('address', '')
    if name and name != email:
        return f"{name} <{email}>"
    return email


def _recipients(addresses: Optional[str]) -> List[Dict]:
    if not addresses:
        return []
    return [{'emailAddress': {'address': a.strip()}} for a in addresses.split(',') if a.strip()]


class OutlookProvider(EmailProvider):
    """Graph API client for mailbox operations"""

    name = 'microsoft'

    def __init__(self, access_token: str, user_email: str = '', timeout: float = 30.0,
                 client: Optional[httpx.Client] = None):
        self.user_email = user_email.lower()
        self.client = client or httpx.Client(
            base_url=GRAPH_URL,
            headers={'Authorization': f"Bearer {access_token}"},
            timeout=timeout,
        )
        self._folder_ids: Dict[str, str] = {}

    def _request(self, method: str, url: str, **kwargs) -> Dict:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Graph request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Graph transport error: {e}") from e

        status = response.status_code
        if status == 404:
            raise NotFoundError(f"Graph resource not found: {url}", status)
        if status == 429 or status >= 500:
            raise TransientProviderError(f"Graph API error {status}", status)
        if status >= 400:
            raise ProviderError(f"Graph API error {status}: {response.text[:200]}", status)
        if status == 204 or not response.content:
            return {}
        return response.json()

    # Reading

    def get_message(self, message_id: str) -> ParsedMessage:
        message = self._request('GET', f"/me/messages/{message_id}", params={'$select': MESSAGE_FIELDS})
        attachments = []
        if message.get('hasAttachments'):
            result = self._request('GET', f"/me/messages/{message_id}/attachments",
                                   params={'$select': 'name'})
            attachments = [a.get('name', '') for a in result.get('value', [])]
        return self.parse_message(message, attachments)

    def get_thread(self, thread_id: str) -> List[ParsedMessage]:
        result = self._request('GET', '/me/messages', params={
            '$filter': f"conversationId eq '{thread_id}'",
            '$select': MESSAGE_FIELDS,
        })
        messages = [self.parse_message(m) for m in result.get('value', [])]
        return sorted(messages, key=lambda m: m.date or datetime.min)

    def list_changes_since(self, cursor: Optional[str],
                           latest_cursor: Optional[str] = None) -> Tuple[List[HistoryChange], str]:
        if not cursor:
            raise CursorExpiredError("No stored delta link")

        changes: List[HistoryChange] = []
        url = cursor
        while True:
            try:
                result = self._request('GET', url)
            except ProviderError as e:
                if isinstance(e, TransientProviderError):
                    raise
                # 410 Gone or a malformed token: start over
                raise CursorExpiredError(f"Delta link rejected: {e}", e.status) from e

            for message in result.get('value', []):
                if '@removed' in message:
                    continue
                changes.append(HistoryChange(
                    message_id=message['id'],
                    thread_id=message.get('conversationId', ''),
                    folder='draft' if message.get('isDraft') else 'inbox',
                ))

            if result.get('@odata.nextLink'):
                url = result['@odata.nextLink']
                continue
            return changes, result.get('@odata.deltaLink', cursor)

    def reset_cursor(self, latest_cursor: Optional[str]) -> Optional[str]:
        """Walk a fresh delta query to its end and return the delta link"""
        result = self._request('GET', INBOX_DELTA_PATH, params={'$select': 'id'})
        while result.get('@odata.nextLink'):
            result = self._request('GET', result['@odata.nextLink'])
        return result.get('@odata.deltaLink') or latest_cursor

    def list_recent_messages(self, since: datetime, max_results: int) -> List[HistoryChange]:
        since_str = since.replace(tzinfo=timezone.utc).isoformat().replace('+00:00', 'Z')
        result = self._request('GET', '/me/mailFolders/inbox/messages', params={
            '$filter': f"receivedDateTime ge {since_str}",
            '$select': 'id,conversationId,isDraft',
            '$top': max_results,
        })
        return [
            HistoryChange(
                message_id=m['id'],
                thread_id=m.get('conversationId', ''),
                folder='draft' if m.get('isDraft') else 'inbox',
            )
            for m in result.get('value', [])
        ]

    def list_inbox_threads_from(self, sender: str, max_results: int) -> List[str]:
        result = self._request('GET', '/me/mailFolders/inbox/messages', params={
            '$filter': f"from/emailAddress/address eq '{sender}'",
            '$select': 'conversationId',
            '$top': max_results,
        })
        thread_ids: List[str] = []
        for message in result.get('value', []):
            if message.get('conversationId') and message['conversationId'] not in thread_ids:
                thread_ids.append(message['conversationId'])
        return thread_ids

    def _conversation_message_ids(self, thread_id: str) -> List[str]:
        result = self._request('GET', '/me/messages', params={
            '$filter': f"conversationId eq '{thread_id}'",
            '$select': 'id',
        })
        ids = [m['id'] for m in result.get('value', [])]
        if not ids:
            raise NotFoundError(f"Conversation {thread_id} has no messages", 404)
        return ids

    # Categories and folders

    def apply_label(self, message_id: str, label_name: str) -> None:
        message = self._request('GET', f"/me/messages/{message_id}", params={'$select': 'categories'})
        categories = message.get('categories', [])
        if label_name in categories:
            return
        self._request('PATCH', f"/me/messages/{message_id}", json={'categories': categories + [label_name]})

    def _move_thread(self, thread_id: str, destination_id: str) -> None:
        for message_id in self._conversation_message_ids(thread_id):
            self._request('POST', f"/me/messages/{message_id}/move", json={'destinationId': destination_id})

    def archive(self, thread_id: str) -> None:
        self._move_thread(thread_id, 'archive')

    def mark_read(self, thread_id: str) -> None:
        for message_id in self._conversation_message_ids(thread_id):
            self._request('PATCH', f"/me/messages/{message_id}", json={'isRead': True})

    def mark_spam(self, thread_id: str) -> None:
        self._move_thread(thread_id, 'junkemail')

    def get_or_create_folder(self, folder_name: str) -> str:
        if folder_name in self._folder_ids:
            return self._folder_ids[folder_name]
        result = self._request('GET', '/me/mailFolders', params={
            '$filter': f"displayName eq '{folder_name}'",
        })
        folders = result.get('value', [])
        if folders:
            folder_id = folders[0]['id']
        else:
            folder_id = self._request('POST', '/me/mailFolders', json={'displayName': folder_name})['id']
            logger.debug(f"Created folder {folder_name} with ID {folder_id}")
        self._folder_ids[folder_name] = folder_id
        return folder_id

    def move_to_folder(self, thread_id: str, folder_name: str) -> None:
        self._move_thread(thread_id, self.get_or_create_folder(folder_name))

    # Drafts and sending

    def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None,
                     subject: Optional[str] = None) -> str:
        draft = self._request('POST', f"/me/messages/{message.id}/createReply", json={'comment': content})
        updates = {}
        if to:
            updates['toRecipients'] = _recipients(to)
        if subject:
            updates['subject'] = subject
        if updates:
            self._request('PATCH', f"/me/messages/{draft['id']}", json=updates)
        return draft['id']

    def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        try:
            message = self._request('GET', f"/me/messages/{draft_id}", params={'$select': MESSAGE_FIELDS})
        except NotFoundError:
            return None
        if not message.get('isDraft'):
            return None
        return self.parse_message(message)

    def delete_draft(self, draft_id: str) -> None:
        self._request('DELETE', f"/me/messages/{draft_id}")

    def send_message(self, to: str, subject: str, content: str, cc: Optional[str] = None,
                     bcc: Optional[str] = None) -> str:
        self._request('POST', '/me/sendMail', json={
            'message': {
                'subject': subject,
                'body': {'contentType': 'Text', 'content': content},
                'toRecipients': _recipients(to),
                'ccRecipients': _recipients(cc),
                'bccRecipients': _recipients(bcc),
            },
            'saveToSentItems': True,
        })
        # sendMail returns 202 with no body
        return ''

    def reply_to_message(self, message: ParsedMessage, content: str, cc: Optional[str] = None,
                         bcc: Optional[str] = None) -> str:
        body = {'comment': content}
        if cc or bcc:
            body['message'] = {'ccRecipients': _recipients(cc), 'bccRecipients': _recipients(bcc)}
        self._request('POST', f"/me/messages/{message.id}/reply", json=body)
        return ''

    def forward_message(self, message: ParsedMessage, to: str, content: Optional[str] = None,
                        cc: Optional[str] = None, bcc: Optional[str] = None) -> str:
        body = {'comment': content or '', 'toRecipients': _recipients(to)}
        if cc or bcc:
            body['message'] = {'ccRecipients': _recipients(cc), 'bccRecipients': _recipients(bcc)}
        self._request('POST', f"/me/messages/{message.id}/forward", json=body)
        return ''

    # Parsing

    def parse_message(self, message: Dict, attachments: Optional[List[str]] = None) -> ParsedMessage:
        """Convert a Graph message resource to a ParsedMessage"""
        body = message.get('body') or {}
        is_html = body.get('contentType', '').lower() == 'html'
        from_address = _format_address(message.get('from'))
        received = message.get('receivedDateTime')
        date = None
        if received:
            date = date_parser.isoparse(received).astimezone(timezone.utc).replace(tzinfo=None)

        folder = 'draft' if message.get('isDraft') else None
        return ParsedMessage(
            id=message['id'],
            thread_id=message.get('conversationId', ''),
            from_address=from_address,
            to=', '.join(_format_address(r) for r in message.get('toRecipients', [])),
            cc=', '.join(_format_address(r) for r in message.get('ccRecipients', [])),
            subject=message.get('subject') or '',
            snippet=message.get('bodyPreview', ''),
            text_plain='' if is_html else body.get('content', ''),
            text_html=body.get('content', '') if is_html else '',
            date=date,
            label_ids=list(message.get('categories', [])) + ([folder.upper()] if folder else []),
            headers={'message-id': message.get('internetMessageId', '')},
            attachments=attachments or [],
            is_outbound=bool(self.user_email) and self.user_email in from_address.lower(),
        )
