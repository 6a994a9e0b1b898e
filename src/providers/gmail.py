"""
Gmail API adapter
"""
import base64
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

from dateutil import parser as date_parser
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

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

# Never walk back more than this many history ids from the notification
MAX_HISTORY_GAP = 500


def _map_http_error(e: HttpError) -> ProviderError:
    status = getattr(e.resp, 'status', None)
    message = f"Gmail API error {status}: {e}"
    if status == 404:
        return NotFoundError(message, status)
    if status in (429, 500, 502, 503, 504):
        return TransientProviderError(message, status)
    if status == 403 and 'rateLimitExceeded' in str(e.content):
        return TransientProviderError(message, status)
    return ProviderError(message, status)


def _decode_body(data: str) -> str:
    if not data:
        return ''
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode('utf-8', errors='replace')


def _encode_message(mime: EmailMessage) -> str:
    return base64.urlsafe_b64encode(mime.as_bytes()).decode()


class GmailProvider(EmailProvider):
    """Gmail API client for mailbox operations"""

    name = 'google'

    def __init__(self, service: Resource, user_email: str = ''):
        self.service = service
        self.user_id = 'me'
        self.user_email = user_email
        self._label_ids: Dict[str, str] = {}

    def _execute(self, request):
        try:
            return request.execute()
        except HttpError as e:
            raise _map_http_error(e) from e

    # Reading

    def get_message(self, message_id: str) -> ParsedMessage:
        message = self._execute(self.service.users().messages().get(
            userId=self.user_id,
            id=message_id,
            format='full'
        ))
        return self.parse_message(message)

    def get_thread(self, thread_id: str) -> List[ParsedMessage]:
        thread = self._execute(self.service.users().threads().get(
            userId=self.user_id,
            id=thread_id,
            format='full'
        ))
        return [self.parse_message(m) for m in thread.get('messages', [])]

    def list_changes_since(self, cursor: Optional[str],
                           latest_cursor: Optional[str] = None) -> Tuple[List[HistoryChange], str]:
        if not cursor:
            raise CursorExpiredError("No stored history id")

        start = int(cursor)
        if latest_cursor and int(latest_cursor) - start > MAX_HISTORY_GAP:
            bounded = int(latest_cursor) - MAX_HISTORY_GAP
            logger.warning(f"Skipping {bounded - start} history items due to large gap")
            start = bounded

        changes: List[HistoryChange] = []
        new_cursor = latest_cursor or cursor
        page_token = None
        while True:
            try:
                response = self._execute(self.service.users().history().list(
                    userId=self.user_id,
                    startHistoryId=str(start),
                    historyTypes=['messageAdded'],
                    maxResults=500,
                    pageToken=page_token
                ))
            except NotFoundError as e:
                # History ids are only valid for about a week
                raise CursorExpiredError(f"History id {start} expired", e.status) from e

            for record in response.get('history', []):
                for added in record.get('messagesAdded', []):
                    message = added.get('message', {})
                    changes.append(HistoryChange(
                        message_id=message['id'],
                        thread_id=message.get('threadId', ''),
                        label_ids=message.get('labelIds', []),
                    ))

            if response.get('historyId'):
                new_cursor = str(max(int(response['historyId']), int(new_cursor)))
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        logger.debug(f"Fetched {len(changes)} history changes since {start}")
        return changes, new_cursor

    def list_recent_messages(self, since: datetime, max_results: int) -> List[HistoryChange]:
        after = int(since.replace(tzinfo=timezone.utc).timestamp())
        response = self._execute(self.service.users().messages().list(
            userId=self.user_id,
            q=f"after:{after}",
            maxResults=max_results
        ))
        changes = []
        for item in response.get('messages', []):
            message = self._execute(self.service.users().messages().get(
                userId=self.user_id,
                id=item['id'],
                format='minimal'
            ))
            changes.append(HistoryChange(
                message_id=message['id'],
                thread_id=message.get('threadId', ''),
                label_ids=message.get('labelIds', []),
            ))
        return changes

    def list_inbox_threads_from(self, sender: str, max_results: int) -> List[str]:
        thread_ids: List[str] = []
        page_token = None
        while len(thread_ids) < max_results:
            response = self._execute(self.service.users().threads().list(
                userId=self.user_id,
                q=f"from:{sender} in:inbox",
                maxResults=min(500, max_results - len(thread_ids)),
                pageToken=page_token
            ))
            thread_ids.extend(t['id'] for t in response.get('threads', []))
            page_token = response.get('nextPageToken')
            if not page_token:
                break
        return thread_ids

    # Labels

    def get_label_id(self, label_name: str) -> Optional[str]:
        """Get the ID of a Gmail label by name"""
        if label_name in self._label_ids:
            return self._label_ids[label_name]

        results = self._execute(self.service.users().labels().list(userId=self.user_id))
        for label in results.get('labels', []):
            self._label_ids[label['name']] = label['id']
        return self._label_ids.get(label_name)

    def get_or_create_label(self, label_name: str) -> str:
        label_id = self.get_label_id(label_name)
        if label_id:
            return label_id

        label = {
            'name': label_name,
            'labelListVisibility': 'labelShow',
            'messageListVisibility': 'show'
        }
        try:
            result = self._execute(self.service.users().labels().create(
                userId=self.user_id,
                body=label
            ))
        except ProviderError as e:
            # 409: created concurrently by another worker
            if e.status != 409:
                raise
            self._label_ids.clear()
            label_id = self.get_label_id(label_name)
            if not label_id:
                raise
            return label_id

        logger.debug(f"Created label {label_name} with ID {result['id']}")
        self._label_ids[label_name] = result['id']
        return result['id']

    def _modify_thread(self, thread_id: str, add: Optional[List[str]] = None,
                       remove: Optional[List[str]] = None) -> None:
        self._execute(self.service.users().threads().modify(
            userId=self.user_id,
            id=thread_id,
            body={
                'addLabelIds': add or [],
                'removeLabelIds': remove or []
            }
        ))

    def apply_label(self, message_id: str, label_name: str) -> None:
        label_id = self.get_or_create_label(label_name)
        self._execute(self.service.users().messages().modify(
            userId=self.user_id,
            id=message_id,
            body={'addLabelIds': [label_id]}
        ))

    def archive(self, thread_id: str) -> None:
        self._modify_thread(thread_id, remove=['INBOX'])

    def mark_read(self, thread_id: str) -> None:
        self._modify_thread(thread_id, remove=['UNREAD'])

    def mark_spam(self, thread_id: str) -> None:
        self._modify_thread(thread_id, add=['SPAM'], remove=['INBOX'])

    def move_to_folder(self, thread_id: str, folder_name: str) -> None:
        # Gmail has no folders: label it and take it out of the inbox
        label_id = self.get_or_create_label(folder_name)
        self._modify_thread(thread_id, add=[label_id], remove=['INBOX'])

    # Drafts and sending

    def _reply_mime(self, message: ParsedMessage, content: str, to: Optional[str] = None,
                    subject: Optional[str] = None, cc: Optional[str] = None,
                    bcc: Optional[str] = None) -> EmailMessage:
        mime = EmailMessage()
        mime['To'] = to or message.headers.get('reply-to') or message.from_address
        original_subject = message.subject or ''
        if subject:
            mime['Subject'] = subject
        elif original_subject.lower().startswith('re:'):
            mime['Subject'] = original_subject
        else:
            mime['Subject'] = f"Re: {original_subject}"
        if cc:
            mime['Cc'] = cc
        if bcc:
            mime['Bcc'] = bcc
        if message.header_message_id:
            mime['In-Reply-To'] = message.header_message_id
            references = message.headers.get('references', '')
            mime['References'] = f"{references} {message.header_message_id}".strip()
        mime.set_content(content)
        return mime

    def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None,
                     subject: Optional[str] = None) -> str:
        mime = self._reply_mime(message, content, to=to, subject=subject)
        draft = self._execute(self.service.users().drafts().create(
            userId=self.user_id,
            body={'message': {'raw': _encode_message(mime), 'threadId': message.thread_id}}
        ))
        return draft['id']

    def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        try:
            draft = self._execute(self.service.users().drafts().get(
                userId=self.user_id,
                id=draft_id,
                format='full'
            ))
        except NotFoundError:
            return None
        return self.parse_message(draft['message'])

    def delete_draft(self, draft_id: str) -> None:
        self._execute(self.service.users().drafts().delete(userId=self.user_id, id=draft_id))

    def _send(self, mime: EmailMessage, thread_id: Optional[str] = None) -> str:
        body = {'raw': _encode_message(mime)}
        if thread_id:
            body['threadId'] = thread_id
        result = self._execute(self.service.users().messages().send(userId=self.user_id, body=body))
        return result['id']

    def send_message(self, to: str, subject: str, content: str, cc: Optional[str] = None,
                     bcc: Optional[str] = None) -> str:
        mime = EmailMessage()
        mime['To'] = to
        mime['Subject'] = subject
        if cc:
            mime['Cc'] = cc
        if bcc:
            mime['Bcc'] = bcc
        mime.set_content(content)
        return self._send(mime)

    def reply_to_message(self, message: ParsedMessage, content: str, cc: Optional[str] = None,
                         bcc: Optional[str] = None) -> str:
        mime = self._reply_mime(message, content, cc=cc, bcc=bcc)
        return self._send(mime, thread_id=message.thread_id)

    def forward_message(self, message: ParsedMessage, to: str, content: Optional[str] = None,
                        cc: Optional[str] = None, bcc: Optional[str] = None) -> str:
        mime = EmailMessage()
        mime['To'] = to
        mime['Subject'] = f"Fwd: {message.subject}"
        if cc:
            mime['Cc'] = cc
        if bcc:
            mime['Bcc'] = bcc
        forwarded = "\n".join([
            content or '',
            '',
            '---------- Forwarded message ---------',
            f"From: {message.from_address}",
            f"Date: {message.headers.get('date', '')}",
            f"Subject: {message.subject}",
            f"To: {message.to}",
            '',
            message.text_plain,
        ])
        mime.set_content(forwarded)
        return self._send(mime, thread_id=message.thread_id)

    # Parsing

    def parse_message(self, message: Dict) -> ParsedMessage:
        """Convert a Gmail API message resource to a ParsedMessage"""
        payload = message.get('payload', {})
        headers = {h['name'].lower(): h['value'] for h in payload.get('headers', [])}
        text_plain, text_html, attachments = self._walk_parts(payload)
        label_ids = message.get('labelIds', [])

        return ParsedMessage(
            id=message['id'],
            thread_id=message.get('threadId', ''),
            from_address=headers.get('from', ''),
            to=headers.get('to', ''),
            cc=headers.get('cc', ''),
            subject=headers.get('subject', ''),
            snippet=message.get('snippet', ''),
            text_plain=text_plain,
            text_html=text_html,
            date=self._parse_date(message, headers),
            label_ids=label_ids,
            headers=headers,
            attachments=attachments,
            is_outbound='SENT' in label_ids,
        )

    def _walk_parts(self, part: Dict) -> Tuple[str, str, List[str]]:
        text_plain, text_html, attachments = '', '', []
        if part.get('filename'):
            attachments.append(part['filename'])
        mime_type = part.get('mimeType', '')
        data = part.get('body', {}).get('data', '')
        if mime_type == 'text/plain' and data and not part.get('filename'):
            text_plain = _decode_body(data)
        elif mime_type == 'text/html' and data and not part.get('filename'):
            text_html = _decode_body(data)

        for child in part.get('parts', []):
            child_plain, child_html, child_attachments = self._walk_parts(child)
            text_plain = text_plain or child_plain
            text_html = text_html or child_html
            attachments.extend(child_attachments)
        return text_plain, text_html, attachments

    def _parse_date(self, message: Dict, headers: Dict[str, str]) -> Optional[datetime]:
        internal_date = message.get('internalDate')
        if internal_date:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc).replace(tzinfo=None)
        date_str = headers.get('date')
        if not date_str:
            return None
        try:
            parsed = date_parser.parse(date_str)
        except (ValueError, OverflowError):
            return None
        if parsed.tzinfo:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
