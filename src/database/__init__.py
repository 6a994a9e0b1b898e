"""
Database package for the rules pipeline
"""
from .connection import get_db_session, get_session_factory, init_db, session_scope
from .models import (
    Action,
    ActionStatus,
    ActionType,
    Base,
    DigestItem,
    DigestSchedule,
    EmailAccount,
    ExecutedAction,
    ExecutedRule,
    ExecutedRuleStatus,
    Group,
    GroupItem,
    GroupItemType,
    LogicalOperator,
    MatchType,
    QueuedTask,
    Rule,
    SystemType,
    TaskStatus,
    ThreadTracker,
    utcnow,
)

__all__ = [
    'Base',
    'EmailAccount',
    'Rule',
    'Action',
    'Group',
    'GroupItem',
    'ExecutedRule',
    'ExecutedAction',
    'DigestSchedule',
    'DigestItem',
    'ThreadTracker',
    'QueuedTask',
    'ActionType',
    'ActionStatus',
    'ExecutedRuleStatus',
    'GroupItemType',
    'LogicalOperator',
    'MatchType',
    'SystemType',
    'TaskStatus',
    'utcnow',
    'init_db',
    'get_db_session',
    'get_session_factory',
    'session_scope',
]
