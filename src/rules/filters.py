"""
Static rule conditions: structured from/to/subject/body filters
"""
import logging
import re
from dataclasses import dataclass
from typing import List

from src.database.models import LogicalOperator, Rule
from src.providers.base import ParsedMessage

logger = logging.getLogger(__name__)

# "@a.com|@b.com", "@a.com, @b.com" and "@a.com OR @b.com" all mean any of
_EMAIL_SEPARATORS = re.compile(r'\s*\bor\b\s*|[|,]', re.IGNORECASE)


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of evaluating a rule's structured filters and instructions"""
    matched: bool
    needs_ai: bool


def split_email_patterns(pattern: str) -> List[str]:
    return [p.strip() for p in _EMAIL_SEPARATORS.split(pattern) if p and p.strip()]


def wildcard_match(pattern: str, text: str) -> bool:
    """Substring match where '*' matches any run of characters"""
    regex = '.*'.join(re.escape(part) for part in pattern.split('*'))
    return re.search(regex, text or '', re.IGNORECASE | re.DOTALL) is not None


def has_static_conditions(rule: Rule) -> bool:
    return any([rule.from_filter, rule.to_filter, rule.subject_filter, rule.body_filter])


def has_ai_conditions(rule: Rule) -> bool:
    return bool(rule.instructions and rule.instructions.strip())


def matches_static(rule: Rule, message: ParsedMessage) -> bool:
    """All set filters must match; a rule without filters never matches"""
    if not has_static_conditions(rule):
        return False

    checks = []
    if rule.from_filter:
        checks.append(any(wildcard_match(p, message.from_address)
                          for p in split_email_patterns(rule.from_filter)))
    if rule.to_filter:
        checks.append(any(wildcard_match(p, message.to)
                          for p in split_email_patterns(rule.to_filter)))
    if rule.subject_filter:
        checks.append(wildcard_match(rule.subject_filter, message.subject))
    if rule.body_filter:
        checks.append(wildcard_match(rule.body_filter, message.text_plain or message.snippet))

    logger.debug(f"Static filter results for rule {rule.name}: {checks}")
    return all(checks)


def evaluate_conditions(rule: Rule, message: ParsedMessage) -> ConditionResult:
    """Combine static filters and AI instructions using the rule's operator"""
    has_static = has_static_conditions(rule)
    has_ai = has_ai_conditions(rule)
    static_match = matches_static(rule, message) if has_static else False

    if rule.conditional_operator == LogicalOperator.OR.value:
        if static_match:
            return ConditionResult(matched=True, needs_ai=False)
        return ConditionResult(matched=False, needs_ai=has_ai)

    # AND
    if has_static and not static_match:
        return ConditionResult(matched=False, needs_ai=False)
    if has_ai:
        return ConditionResult(matched=False, needs_ai=True)
    return ConditionResult(matched=static_match, needs_ai=False)


def has_ics_attachment(message: ParsedMessage) -> bool:
    return any(name.lower().endswith('.ics') for name in message.attachments)
