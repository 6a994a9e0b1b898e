"""
Database models for the inbound email rules pipeline
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ActionType(str, enum.Enum):
    ARCHIVE = 'ARCHIVE'
    LABEL = 'LABEL'
    DRAFT_EMAIL = 'DRAFT_EMAIL'
    REPLY = 'REPLY'
    SEND_EMAIL = 'SEND_EMAIL'
    FORWARD = 'FORWARD'
    MARK_READ = 'MARK_READ'
    MARK_SPAM = 'MARK_SPAM'
    CALL_WEBHOOK = 'CALL_WEBHOOK'
    DIGEST = 'DIGEST'
    TRACK_THREAD = 'TRACK_THREAD'
    MOVE_FOLDER = 'MOVE_FOLDER'


class SystemType(str, enum.Enum):
    NEWSLETTER = 'NEWSLETTER'
    MARKETING = 'MARKETING'
    CALENDAR = 'CALENDAR'
    RECEIPT = 'RECEIPT'
    NOTIFICATION = 'NOTIFICATION'
    COLD_EMAIL = 'COLD_EMAIL'
    TO_REPLY = 'TO_REPLY'


class LogicalOperator(str, enum.Enum):
    AND = 'AND'
    OR = 'OR'


class GroupItemType(str, enum.Enum):
    FROM = 'FROM'
    SUBJECT = 'SUBJECT'


class ExecutedRuleStatus(str, enum.Enum):
    PENDING = 'PENDING'      # planned, waiting for manual approval
    APPLYING = 'APPLYING'    # selection recorded, actions running
    APPLIED = 'APPLIED'
    PARTIAL = 'PARTIAL'
    ERROR = 'ERROR'
    SKIPPED = 'SKIPPED'      # no rule matched


class ActionStatus(str, enum.Enum):
    PLANNED = 'PLANNED'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'
    SKIPPED = 'SKIPPED'


class MatchType(str, enum.Enum):
    LEARNED_PATTERN = 'LEARNED_PATTERN'
    STATIC = 'STATIC'
    PRESET = 'PRESET'
    AI = 'AI'


class TaskStatus(str, enum.Enum):
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    DONE = 'DONE'
    PARKED = 'PARKED'


class EmailAccount(Base):
    """A connected mailbox"""
    __tablename__ = 'email_accounts'

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)  # always lower-case
    name = Column(String(255))
    provider = Column(String(50), nullable=False, default='google')  # google | microsoft
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    last_cursor = Column(Text)  # Gmail historyId or Graph delta link
    outlook_subscription_id = Column(String(255), unique=True)
    timezone = Column(String(64))
    created_at = Column(DateTime, default=utcnow)

    rules = relationship('Rule', back_populates='account', cascade='all, delete-orphan')
    digest_schedule = relationship('DigestSchedule', back_populates='account', uselist=False,
                                   cascade='all, delete-orphan')


class Rule(Base):
    """A user-defined condition-to-action mapping"""
    __tablename__ = 'rules'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    identifier = Column(String(255), nullable=False)  # Permanent ID from rules.json
    name = Column(String(255), nullable=False)
    instructions = Column(Text)
    from_filter = Column(String(512))
    to_filter = Column(String(512))
    subject_filter = Column(String(512))
    body_filter = Column(String(512))
    conditional_operator = Column(String(10), nullable=False, default=LogicalOperator.AND.value)
    enabled = Column(Boolean, nullable=False, default=True)
    automate = Column(Boolean, nullable=False, default=True)
    system_type = Column(String(50))
    priority = Column(Integer, nullable=False, default=0)
    applies_to_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship('EmailAccount', back_populates='rules')
    actions = relationship('Action', back_populates='rule', cascade='all, delete-orphan',
                           order_by='Action.position')
    group = relationship('Group', back_populates='rule', uselist=False, cascade='all, delete-orphan')

    __table_args__ = (
        UniqueConstraint('account_id', 'identifier', name='uix_rule_account_identifier'),
    )


class Action(Base):
    """One step of a rule; only the fields relevant to its type are set"""
    __tablename__ = 'actions'

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey('rules.id'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    type = Column(String(50), nullable=False)
    label = Column(String(255))
    subject = Column(Text)
    content = Column(Text)
    to = Column(String(512))
    cc = Column(String(512))
    bcc = Column(String(512))
    url = Column(String(2048))
    folder_name = Column(String(255))

    rule = relationship('Rule', back_populates='actions')


class Group(Base):
    """Learned patterns for exactly one rule"""
    __tablename__ = 'groups'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    rule_id = Column(Integer, ForeignKey('rules.id'), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    rule = relationship('Rule', back_populates='group')
    items = relationship('GroupItem', back_populates='group', cascade='all, delete-orphan')


class GroupItem(Base):
    __tablename__ = 'group_items'

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    type = Column(String(20), nullable=False)
    value = Column(String(512), nullable=False)
    exclude = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    group = relationship('Group', back_populates='items')

    __table_args__ = (
        UniqueConstraint('group_id', 'type', 'value', name='uix_group_item'),
    )


class ExecutedRule(Base):
    """Execution ledger entry: at most one per (account, thread, message)"""
    __tablename__ = 'executed_rules'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    thread_id = Column(String(255), nullable=False)
    message_id = Column(String(255), nullable=False)
    rule_id = Column(Integer, ForeignKey('rules.id'))
    status = Column(String(20), nullable=False, default=ExecutedRuleStatus.PENDING.value)
    automated = Column(Boolean, nullable=False, default=False)
    match_type = Column(String(30))
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rule = relationship('Rule')
    actions = relationship('ExecutedAction', back_populates='executed_rule', cascade='all, delete-orphan',
                           order_by='ExecutedAction.position')

    __table_args__ = (
        UniqueConstraint('account_id', 'thread_id', 'message_id', name='uix_executed_rule_message'),
    )


class ExecutedAction(Base):
    """One action attempted (or planned) for an executed rule"""
    __tablename__ = 'executed_actions'

    id = Column(Integer, primary_key=True)
    executed_rule_id = Column(Integer, ForeignKey('executed_rules.id'), nullable=False)
    action_id = Column(Integer, ForeignKey('actions.id'))
    position = Column(Integer, nullable=False, default=0)
    type = Column(String(50), nullable=False)
    label = Column(String(255))
    subject = Column(Text)
    content = Column(Text)
    to = Column(String(512))
    cc = Column(String(512))
    bcc = Column(String(512))
    url = Column(String(2048))
    folder_name = Column(String(255))
    draft_id = Column(String(255))
    status = Column(String(20), nullable=False, default=ActionStatus.PLANNED.value)
    error = Column(String(255))
    consumed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    executed_rule = relationship('ExecutedRule', back_populates='actions')

    __table_args__ = (
        UniqueConstraint('executed_rule_id', 'action_id', name='uix_executed_action'),
    )


class DigestSchedule(Base):
    __tablename__ = 'digest_schedules'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False, unique=True)
    interval_days = Column(Integer)
    days_of_week = Column(Integer)  # bitmask, Sunday = 64 ... Saturday = 1
    time_of_day = Column(Time)
    last_occurrence_at = Column(DateTime)
    next_occurrence_at = Column(DateTime)

    account = relationship('EmailAccount', back_populates='digest_schedule')


class DigestItem(Base):
    """A summarized message waiting for the next digest email"""
    __tablename__ = 'digest_items'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    executed_action_id = Column(Integer, ForeignKey('executed_actions.id'), nullable=False, unique=True)
    message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255), nullable=False)
    rule_name = Column(String(255))
    sender = Column(String(255))
    subject = Column(Text)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    consumed_at = Column(DateTime)


class ThreadTracker(Base):
    """Threads flagged by TRACK_THREAD for follow-up"""
    __tablename__ = 'thread_trackers'

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    thread_id = Column(String(255), nullable=False)
    message_id = Column(String(255), nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('account_id', 'thread_id', 'message_id', name='uix_thread_tracker'),
    )


class QueuedTask(Base):
    """A unit of work on the at-least-once task queue"""
    __tablename__ = 'queued_tasks'

    id = Column(Integer, primary_key=True)
    queue_name = Column(String(255), nullable=False, index=True)
    parallelism = Column(Integer, nullable=False, default=1)
    url = Column(String(255), nullable=False)
    body = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
