"""
Action items and {{...}} template handling
"""
import re
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from src.database.models import Action, ActionType, ExecutedAction
from src.providers.base import ParsedMessage

# Variables filled from the message itself; anything else is left to the AI
CONTEXT_VARS = ('sender_name', 'sender_email', 'subject', 'date', 'thread_id', 'quoted_content')
TEMPLATE_FIELDS = ('label', 'subject', 'content', 'to', 'cc', 'bcc', 'url', 'folder_name')
PLACEHOLDER = re.compile(r'\{\{\s*(.*?)\s*\}\}', re.DOTALL)

# Actions whose empty content is written by the AI
GENERATED_CONTENT_TYPES = (ActionType.DRAFT_EMAIL.value, ActionType.REPLY.value)


@dataclass(frozen=True)
class ActionItem:
    """An action with its fields resolved for one message"""
    action_id: Optional[int]
    type: str
    position: int = 0
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    folder_name: Optional[str] = None

    @classmethod
    def from_action(cls, action: Action) -> 'ActionItem':
        return cls(
            action_id=action.id,
            type=action.type,
            position=action.position,
            **{name: getattr(action, name) for name in TEMPLATE_FIELDS},
        )

    @classmethod
    def from_executed(cls, executed: ExecutedAction) -> 'ActionItem':
        return cls(
            action_id=executed.action_id,
            type=executed.type,
            position=executed.position,
            **{name: getattr(executed, name) for name in TEMPLATE_FIELDS},
        )

    def fields(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in TEMPLATE_FIELDS}

    def non_empty_fields(self) -> Dict[str, str]:
        return {k: v for k, v in self.fields().items() if v}


def placeholders(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return PLACEHOLDER.findall(value)


def needs_ai(value: Optional[str]) -> bool:
    return any(name not in CONTEXT_VARS for name in placeholders(value))


def arg_requests(items: Iterable[ActionItem]) -> List[Tuple[int, str, str, str]]:
    """(action_id, type, field, template) for every field the AI has to fill"""
    requests = []
    for item in items:
        for name, value in item.fields().items():
            if needs_ai(value):
                requests.append((item.action_id, item.type, name, value))
        if item.type in GENERATED_CONTENT_TYPES and not item.content:
            requests.append((item.action_id, item.type, 'content', ''))
    return requests


def apply_ai_args(items: List[ActionItem], action_args) -> List[ActionItem]:
    """Merge AI-filled values (objects with action_id, field, value) into the items"""
    by_action: Dict[int, Dict[str, str]] = {}
    for arg in action_args:
        if arg.field in TEMPLATE_FIELDS:
            by_action.setdefault(arg.action_id, {})[arg.field] = arg.value

    merged = []
    for item in items:
        updates = by_action.get(item.action_id)
        merged.append(replace(item, **updates) if updates else item)
    return merged


def quote_message(message: ParsedMessage) -> str:
    body = message.text_plain or message.snippet
    when = message.date.strftime('%a, %b %d, %Y at %H:%M') if message.date else 'an earlier date'
    quoted = '\n'.join(f"> {line}" for line in body.splitlines())
    return f"On {when}, {message.from_address} wrote:\n{quoted}"


def context_values(message: ParsedMessage) -> Dict[str, str]:
    return {
        'sender_name': message.sender_name,
        'sender_email': message.sender_email,
        'subject': message.subject,
        'date': message.date.isoformat() if message.date else '',
        'thread_id': message.thread_id,
        'quoted_content': quote_message(message),
    }


def render(value: Optional[str], message: ParsedMessage) -> Optional[str]:
    """Substitute context variables; other placeholders are left as written"""
    if not value:
        return value
    values = context_values(message)

    def substitute(match):
        name = match.group(1)
        return values[name] if name in values else match.group(0)

    return PLACEHOLDER.sub(substitute, value)


def render_item(item: ActionItem, message: ParsedMessage) -> ActionItem:
    return replace(item, **{name: render(value, message) for name, value in item.fields().items()})
