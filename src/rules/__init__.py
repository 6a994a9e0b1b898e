"""
Rule selection and rules file handling
"""
from .loader import load_rules, sync_rules
from .schema import Rule, RuleAction, RulesConfig
from .selector import RuleSelector, Selection

__all__ = ['RuleSelector', 'Selection', 'load_rules', 'sync_rules', 'Rule', 'RuleAction', 'RulesConfig']
