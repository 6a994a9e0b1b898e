"""
Rule selection: learned patterns, presets, static filters, then the AI
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from src.actions.templates import ActionItem, apply_ai_args, arg_requests
from src.ai.client import CompletionClient, Ok, UpstreamError
from src.ai.prompts import (
    ACTION_ARGS_SYSTEM,
    CHOOSE_RULE_SYSTEM,
    build_action_args_prompt,
    build_choose_rule_prompt,
)
from src.ai.schemas import ActionArgsResponse, ChooseRuleResponse
from src.config import Settings, get_settings
from src.database.models import EmailAccount, MatchType, Rule, SystemType
from src.providers.base import ParsedMessage

from .filters import evaluate_conditions, has_ics_attachment
from .patterns import check_patterns

logger = logging.getLogger(__name__)


@dataclass
class Selection:
    rule: Optional[Rule]
    action_items: List[ActionItem] = field(default_factory=list)
    reason: str = ''
    match_type: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule is not None


def break_tie(rules: List[Rule]) -> Rule:
    """Longest instructions win, then the lowest priority number, then the oldest rule"""
    if len(rules) > 1:
        logger.warning(f"Ambiguous selection between rules {[r.id for r in rules]}")
    return min(rules, key=lambda r: (-len(r.instructions or ''), r.priority, r.id))


class RuleSelector:
    """Selects at most one rule for a message"""

    def __init__(self, db: Session, ai: CompletionClient, settings: Optional[Settings] = None):
        self.db = db
        self.ai = ai
        self.settings = settings or get_settings()

    def select(self, account: EmailAccount, rules: List[Rule], message: ParsedMessage) -> Selection:
        candidates = [
            rule for rule in rules
            if rule.enabled and (rule.applies_to_sent or not message.is_outbound)
        ]
        candidates.sort(key=lambda r: (r.priority, r.id))
        logger.debug(f"Selecting among {len(candidates)} rules for message {message.id} ({account.email})")
        if not candidates:
            return Selection(rule=None, reason='No enabled rules apply')

        # Learned patterns
        patterns = check_patterns(self.db, candidates, message)
        if patterns.rule is not None:
            item = patterns.item
            return self._matched(patterns.rule, message, MatchType.LEARNED_PATTERN,
                                 f"Matched learned pattern {item.type}: {item.value}")
        if patterns.excluded_rule_ids:
            candidates = [r for r in candidates if r.id not in patterns.excluded_rule_ids]

        # Presets
        if has_ics_attachment(message):
            calendar_rules = [r for r in candidates if r.system_type == SystemType.CALENDAR.value]
            if calendar_rules:
                return self._matched(break_tie(calendar_rules), message, MatchType.PRESET,
                                     'Calendar invite attached')

        # Static filters
        static_matches, ai_candidates = [], []
        for rule in candidates:
            result = evaluate_conditions(rule, message)
            logger.debug(f"Rule {rule.name}: matched={result.matched} needs_ai={result.needs_ai}")
            if result.matched:
                static_matches.append(rule)
            elif result.needs_ai:
                ai_candidates.append(rule)

        if static_matches:
            return self._matched(break_tie(static_matches), message, MatchType.STATIC,
                                 'Matched static conditions')
        if not ai_candidates:
            return Selection(rule=None, reason='No rule conditions matched')

        return self._choose_with_ai(ai_candidates, message)

    def _choose_with_ai(self, rules: List[Rule], message: ParsedMessage) -> Selection:
        items_by_rule = {rule.id: [ActionItem.from_action(a) for a in rule.actions] for rule in rules}
        requests = [req for items in items_by_rule.values() for req in arg_requests(items)]

        prompt = build_choose_rule_prompt(rules, message, self.settings.ai_max_body_chars, requests)
        result = self.ai.complete(CHOOSE_RULE_SYSTEM, prompt, ChooseRuleResponse, tool_name='choose_rule')

        if not isinstance(result, Ok):
            logger.warning(f"Rule selection for message {message.id} got no decision: {result}")
            if isinstance(result, UpstreamError):
                reason = 'AI classification timed out' if result.timed_out else 'AI classification unavailable'
            else:
                reason = 'AI response was invalid'
            return Selection(rule=None, reason=reason)

        response: ChooseRuleResponse = result.data
        if response.no_match or response.need_more_information or not response.rule_ids:
            reason = response.reason or 'AI found no matching rule'
            return Selection(rule=None, reason=reason[:255])

        by_id = {rule.id: rule for rule in rules}
        chosen = [by_id[rule_id] for rule_id in response.rule_ids if rule_id in by_id]
        if not chosen:
            logger.warning(f"AI chose unknown rules {response.rule_ids} for message {message.id}")
            return Selection(rule=None, reason='AI chose a rule that is not available')

        rule = break_tie(chosen)
        items = apply_ai_args(items_by_rule[rule.id], response.action_args)
        return Selection(rule=rule, action_items=items, reason=(response.reason or 'Chosen by AI')[:255],
                         match_type=MatchType.AI.value)

    def _matched(self, rule: Rule, message: ParsedMessage, match_type: MatchType, reason: str) -> Selection:
        items = [ActionItem.from_action(a) for a in rule.actions]
        requests = arg_requests(items)
        if requests:
            items = self._generate_args(rule, message, items, requests)
        logger.debug(f"Selected rule {rule.name} for message {message.id} via {match_type.value}")
        return Selection(rule=rule, action_items=items, reason=reason, match_type=match_type.value)

    def _generate_args(self, rule: Rule, message: ParsedMessage, items: List[ActionItem],
                       requests) -> List[ActionItem]:
        prompt = build_action_args_prompt(rule, message, self.settings.ai_max_body_chars, requests)
        result = self.ai.complete(ACTION_ARGS_SYSTEM, prompt, ActionArgsResponse, tool_name='fill_action_args')
        if not isinstance(result, Ok):
            logger.warning(f"Could not generate action arguments for rule {rule.name}: {result}")
            return items
        return apply_ai_args(items, result.data.action_args)
