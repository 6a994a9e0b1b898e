"""
Provider-agnostic mailbox interface shared by the Gmail and Outlook adapters
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr
from typing import Dict, List, Optional, Tuple


class ProviderError(Exception):
    """Base class for mailbox provider failures"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ProviderError):
    """The target message, thread, draft or label no longer exists"""


class TransientProviderError(ProviderError):
    """Rate limits, 5xx responses and timeouts; the task should be retried"""


class CursorExpiredError(ProviderError):
    """The stored history cursor is too old or invalid"""


@dataclass
class ParsedMessage:
    id: str
    thread_id: str
    from_address: str = ''
    to: str = ''
    cc: str = ''
    subject: str = ''
    snippet: str = ''
    text_plain: str = ''
    text_html: str = ''
    date: Optional[datetime] = None
    label_ids: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    attachments: List[str] = field(default_factory=list)
    is_outbound: bool = False

    @property
    def sender_email(self) -> str:
        return parseaddr(self.from_address)[1].lower()

    @property
    def sender_name(self) -> str:
        name, address = parseaddr(self.from_address)
        return name or address

    @property
    def header_message_id(self) -> str:
        return self.headers.get('message-id', '')


@dataclass
class HistoryChange:
    """A message added to the mailbox since the previous cursor"""
    message_id: str
    thread_id: str
    label_ids: List[str] = field(default_factory=list)
    folder: Optional[str] = None  # inbox | sent | draft, when the provider reports folders

    @property
    def is_draft(self) -> bool:
        return 'DRAFT' in self.label_ids or self.folder == 'draft'

    @property
    def is_inbox(self) -> bool:
        return 'INBOX' in self.label_ids or self.folder == 'inbox'

    @property
    def is_sent(self) -> bool:
        return 'SENT' in self.label_ids or self.folder == 'sent'


class EmailProvider(ABC):
    """Uniform operations over a connected mailbox"""

    name: str = ''

    @abstractmethod
    def get_message(self, message_id: str) -> ParsedMessage:
        ...

    @abstractmethod
    def get_thread(self, thread_id: str) -> List[ParsedMessage]:
        ...

    @abstractmethod
    def list_changes_since(self, cursor: Optional[str],
                           latest_cursor: Optional[str] = None) -> Tuple[List[HistoryChange], str]:
        """Return changes after `cursor` and the cursor to store next.

        Raises CursorExpiredError when `cursor` is missing, expired or invalid.
        """

    @abstractmethod
    def list_recent_messages(self, since: datetime, max_results: int) -> List[HistoryChange]:
        """Bounded resync used when the history cursor cannot be used"""

    @abstractmethod
    def list_inbox_threads_from(self, sender: str, max_results: int) -> List[str]:
        """Thread ids of inbox mail from `sender`, used by bulk actions"""

    def reset_cursor(self, latest_cursor: Optional[str]) -> Optional[str]:
        """Cursor to store after a resync"""
        return latest_cursor

    @abstractmethod
    def apply_label(self, message_id: str, label_name: str) -> None:
        ...

    @abstractmethod
    def archive(self, thread_id: str) -> None:
        ...

    @abstractmethod
    def mark_read(self, thread_id: str) -> None:
        ...

    @abstractmethod
    def mark_spam(self, thread_id: str) -> None:
        ...

    @abstractmethod
    def move_to_folder(self, thread_id: str, folder_name: str) -> None:
        ...

    @abstractmethod
    def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None,
                     subject: Optional[str] = None) -> str:
        """Create a reply draft in the message's thread and return its draft id"""

    @abstractmethod
    def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        """Return the draft, or None when it was sent or deleted"""

    @abstractmethod
    def delete_draft(self, draft_id: str) -> None:
        ...

    @abstractmethod
    def send_message(self, to: str, subject: str, content: str, cc: Optional[str] = None,
                     bcc: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def reply_to_message(self, message: ParsedMessage, content: str, cc: Optional[str] = None,
                         bcc: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def forward_message(self, message: ParsedMessage, to: str, content: Optional[str] = None,
                        cc: Optional[str] = None, bcc: Optional[str] = None) -> str:
        ...
