"""
Learned patterns: per-rule sender and subject memories that skip the AI
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.database.models import Group, GroupItem, GroupItemType, Rule
from src.providers.base import ParsedMessage

logger = logging.getLogger(__name__)


@dataclass
class PatternCheck:
    rule: Optional[Rule] = None
    item: Optional[GroupItem] = None
    excluded_rule_ids: Set[int] = field(default_factory=set)


def item_matches(item: GroupItem, message: ParsedMessage) -> bool:
    value = (item.value or '').strip().lower()
    if not value:
        return False

    if item.type == GroupItemType.FROM.value:
        sender = message.sender_email
        if value.startswith('@'):
            return sender.endswith(value)
        if '@' in value:
            return sender == value
        # bare domain
        return sender.endswith(f"@{value}")
    if item.type == GroupItemType.SUBJECT.value:
        return value in (message.subject or '').lower()
    return False


def check_patterns(db: Session, rules: List[Rule], message: ParsedMessage) -> PatternCheck:
    """Find the first rule, in the order of `rules`, whose learned pattern matches.

    Exclusion items veto their rule entirely: it is reported in
    `excluded_rule_ids` and must not be selected by any later stage.
    """
    result = PatternCheck()
    rules_by_id = {rule.id: rule for rule in rules}
    if not rules_by_id:
        return result

    position = {rule.id: index for index, rule in enumerate(rules)}
    groups = db.query(Group).filter(Group.rule_id.in_(rules_by_id.keys())).all()
    for group in sorted(groups, key=lambda g: (position[g.rule_id], g.id)):
        items = group.items
        if any(i.exclude and item_matches(i, message) for i in items):
            logger.debug(f"Rule {group.rule_id} excluded by learned pattern")
            result.excluded_rule_ids.add(group.rule_id)
            continue
        if result.rule is not None:
            continue
        for item in items:
            if not item.exclude and item_matches(item, message):
                logger.debug(f"Learned pattern {item.type}:{item.value} matched rule {group.rule_id}")
                result.rule = rules_by_id[group.rule_id]
                result.item = item
                break
    return result


def learn_pattern(db: Session, rule: Rule, message: ParsedMessage) -> Optional[GroupItem]:
    """Remember the sender for `rule`; returns the new item or None if already known"""
    sender = message.sender_email
    if not sender:
        return None

    group = db.query(Group).filter(Group.rule_id == rule.id).first()
    if group is None:
        group = Group(account_id=rule.account_id, rule_id=rule.id, name=rule.name)
        db.add(group)
        db.flush()

    existing = db.query(GroupItem).filter(
        GroupItem.group_id == group.id,
        GroupItem.type == GroupItemType.FROM.value,
        GroupItem.value == sender
    ).first()
    if existing:
        return None

    item = GroupItem(group_id=group.id, type=GroupItemType.FROM.value, value=sender)
    try:
        with db.begin_nested():
            db.add(item)
    except IntegrityError:
        # Learned concurrently by another worker
        logger.debug(f"Pattern {sender} already learned for rule {rule.id}")
        return None

    logger.info(f"Learned pattern FROM:{sender} for rule {rule.name}")
    return item
