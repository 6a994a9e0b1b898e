"""
Shared builders for the test suite: in-memory database, accounts, rules, messages
"""
import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.config import Settings
from src.database.models import Action, Base, EmailAccount, Rule
from src.providers.base import EmailProvider, ParsedMessage


def make_session_factory() -> sessionmaker:
    """Fresh in-memory SQLite database shared across threads"""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url='sqlite://',
        anthropic_api_key='test-key',
        retry_backoff_seconds=10,
        max_task_attempts=3,
        task_timeout_seconds=5,
    )
    values.update(overrides)
    return Settings(**values)


def make_account(db, email='user@example.com', provider='google', **kwargs) -> EmailAccount:
    account = EmailAccount(email=email, provider=provider, **kwargs)
    db.add(account)
    db.commit()
    return account


def make_rule(db, account, name='Rule', actions=(), **kwargs) -> Rule:
    """`actions` is a list of dicts of Action fields; positions follow list order"""
    kwargs.setdefault('identifier', name.lower().replace(' ', '-'))
    rule = Rule(account_id=account.id, name=name, **kwargs)
    for position, fields in enumerate(actions):
        rule.actions.append(Action(position=position, **fields))
    db.add(rule)
    db.commit()
    return rule


def make_message(**kwargs) -> ParsedMessage:
    defaults = dict(
        id='msg-1',
        thread_id='thread-1',
        from_address='Weekly News <news@letters.example.com>',
        to='user@example.com',
        subject='This week in tech',
        snippet='The top stories this week',
        text_plain='The top stories this week.\n\nRead more online.',
        date=datetime(2024, 3, 4, 8, 30),
        label_ids=['INBOX', 'UNREAD'],
        headers={'message-id': '<abc@letters.example.com>'},
    )
    defaults.update(kwargs)
    return ParsedMessage(**defaults)


def make_provider(message=None) -> MagicMock:
    provider = MagicMock(spec=EmailProvider)
    if message is not None:
        provider.get_message.return_value = message
    provider.create_draft.return_value = 'draft-1'
    return provider


def make_locks(acquired=True) -> MagicMock:
    locks = MagicMock()
    locks.acquire.return_value = 'token' if acquired else None
    locks.release.return_value = True
    return locks


class FakeLocks:
    """In-memory SET NX locks that keep their state between calls, like Redis"""

    def __init__(self):
        self.held = {}

    def acquire(self, name):
        if name in self.held:
            return None
        token = f"token-{len(self.held) + 1}"
        self.held[name] = token
        return token

    def release(self, name, token):
        if self.held.get(name) != token:
            return False
        del self.held[name]
        return True
