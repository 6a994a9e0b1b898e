"""
Sync a rules file into the database for one account
"""
import json
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from src.config import get_settings
from src.database.models import (
    Action,
    DigestSchedule,
    EmailAccount,
    ExecutedAction,
    Rule,
    utcnow,
)
from src.digest.schedule import calculate_next_occurrence, days_to_bitmask

from .schema import RuleAction, RulesConfig

logger = logging.getLogger(__name__)


def read_rules_file(rules_file: str) -> RulesConfig:
    with open(rules_file, 'r') as f:
        rules_data = json.load(f)
    return RulesConfig(**rules_data)


def _sync_actions(db: Session, rule: Rule, actions: List[RuleAction]) -> None:
    existing = {action.position: action for action in rule.actions}

    for position, action_config in enumerate(actions):
        action = existing.pop(position, None)
        if action is None:
            action = Action(position=position)
            rule.actions.append(action)
        action.type = action_config.type.value
        for name in ('label', 'subject', 'content', 'to', 'cc', 'bcc', 'url', 'folder_name'):
            setattr(action, name, getattr(action_config, name))

    # History keeps its resolved fields; only the link to the removed action goes
    for stale in existing.values():
        db.query(ExecutedAction).filter(ExecutedAction.action_id == stale.id).update(
            {ExecutedAction.action_id: None}, synchronize_session=False
        )
        rule.actions.remove(stale)


def sync_rules(db: Session, account: EmailAccount, rules_config: RulesConfig) -> int:
    """Upsert rules by identifier; rules missing from the file are disabled.

    Rules are never deleted because execution history references them.
    """
    existing = {rule.identifier: rule for rule in db.query(Rule).filter(Rule.account_id == account.id).all()}
    seen = set()

    for rule_config in rules_config.rules:
        rule = existing.get(rule_config.identifier)
        if rule is None:
            rule = Rule(account_id=account.id, identifier=rule_config.identifier)
            db.add(rule)
            logger.debug(f"Creating rule {rule_config.identifier}")
        rule.name = rule_config.name
        rule.instructions = rule_config.instructions
        rule.from_filter = rule_config.from_filter
        rule.to_filter = rule_config.to_filter
        rule.subject_filter = rule_config.subject_filter
        rule.body_filter = rule_config.body_filter
        rule.conditional_operator = rule_config.conditional_operator
        rule.enabled = rule_config.enabled
        rule.automate = rule_config.automate
        rule.system_type = rule_config.system_type.value if rule_config.system_type else None
        rule.priority = rule_config.priority
        rule.applies_to_sent = rule_config.applies_to_sent
        db.flush()  # Get the rule ID

        _sync_actions(db, rule, rule_config.actions)
        seen.add(rule_config.identifier)

    for identifier, rule in existing.items():
        if identifier not in seen and rule.enabled:
            logger.info(f"Disabling rule {identifier} missing from rules file")
            rule.enabled = False

    if rules_config.timezone:
        account.timezone = rules_config.timezone
    if rules_config.digest:
        _sync_digest_schedule(db, account, rules_config)

    db.commit()
    return len(rules_config.rules)


def _sync_digest_schedule(db: Session, account: EmailAccount, rules_config: RulesConfig) -> None:
    digest = rules_config.digest
    schedule = db.query(DigestSchedule).filter(DigestSchedule.account_id == account.id).first()
    if schedule is None:
        schedule = DigestSchedule(account_id=account.id)
        db.add(schedule)

    schedule.interval_days = digest.interval_days
    schedule.days_of_week = days_to_bitmask(digest.days_of_week) if digest.days_of_week else None
    schedule.time_of_day = digest.time_of_day
    schedule.next_occurrence_at = calculate_next_occurrence(schedule, utcnow(), account.timezone)


def load_rules(db: Session, account: EmailAccount, rules_file: Optional[str] = None) -> RulesConfig:
    """Load rules from a configuration file and sync them for `account`"""
    rules_file = rules_file or get_settings().rules_file
    rules_config = read_rules_file(rules_file)
    sync_rules(db, account, rules_config)
    logger.info(f"Synced {len(rules_config.rules)} rules for {account.email}")
    return rules_config
