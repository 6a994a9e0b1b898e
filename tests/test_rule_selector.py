"""
Tests for rule selection order and the AI fallback
"""
import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.ai.client import Ok, SchemaInvalid, UpstreamError
from src.ai.schemas import ActionArg, ActionArgsResponse, ChooseRuleResponse
from src.database.models import Group, GroupItem, Rule
from src.rules.selector import RuleSelector, break_tie
from tests.helpers import make_account, make_message, make_rule, make_session_factory, make_settings


class TestRuleSelector(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.account = make_account(self.db)
        self.ai = MagicMock()
        self.selector = RuleSelector(self.db, self.ai, make_settings())
        self.message = make_message()

    def tearDown(self):
        self.db.close()

    def _learn(self, rule, value, exclude=False):
        group = Group(account_id=self.account.id, rule_id=rule.id, name=rule.name)
        group.items.append(GroupItem(type='FROM', value=value, exclude=exclude))
        self.db.add(group)
        self.db.commit()

    def test_learned_pattern_skips_ai(self):
        rule = make_rule(self.db, self.account, 'Newsletter', instructions='Newsletters and digests',
                         actions=[{'type': 'ARCHIVE'}])
        self._learn(rule, 'news@letters.example.com')

        selection = self.selector.select(self.account, [rule], self.message)

        self.assertEqual(selection.rule.id, rule.id)
        self.assertEqual(selection.match_type, 'LEARNED_PATTERN')
        self.assertEqual([i.type for i in selection.action_items], ['ARCHIVE'])
        self.ai.complete.assert_not_called()

    def test_learned_sender_for_two_rules_follows_priority(self):
        reading = make_rule(self.db, self.account, 'Reading', priority=2, actions=[{'type': 'MARK_READ'}])
        newsletter = make_rule(self.db, self.account, 'Newsletter', priority=1, actions=[{'type': 'ARCHIVE'}])
        self._learn(reading, 'news@letters.example.com')
        self._learn(newsletter, 'news@letters.example.com')

        selection = self.selector.select(self.account, [reading, newsletter], self.message)

        self.assertEqual(selection.rule.id, newsletter.id)
        self.assertEqual(selection.match_type, 'LEARNED_PATTERN')

    def test_exclusion_vetoes_rule(self):
        rule = make_rule(self.db, self.account, 'Newsletter', from_filter='@letters.example.com',
                         actions=[{'type': 'ARCHIVE'}])
        self._learn(rule, '@letters.example.com', exclude=True)

        selection = self.selector.select(self.account, [rule], self.message)

        self.assertFalse(selection.matched)
        self.ai.complete.assert_not_called()

    def test_static_match_without_ai(self):
        rule = make_rule(self.db, self.account, 'Newsletter', from_filter='@letters.example.com',
                         actions=[{'type': 'LABEL', 'label': 'Newsletter'}, {'type': 'ARCHIVE'}])

        selection = self.selector.select(self.account, [rule], self.message)

        self.assertEqual(selection.rule.id, rule.id)
        self.assertEqual(selection.match_type, 'STATIC')
        self.assertEqual([i.type for i in selection.action_items], ['LABEL', 'ARCHIVE'])
        self.ai.complete.assert_not_called()

    def test_calendar_preset(self):
        calendar = make_rule(self.db, self.account, 'Calendar', system_type='CALENDAR',
                             instructions='Meeting invites', actions=[{'type': 'LABEL', 'label': 'Calendar'}])
        message = make_message(attachments=['invite.ics'])

        selection = self.selector.select(self.account, [calendar], message)

        self.assertEqual(selection.rule.id, calendar.id)
        self.assertEqual(selection.match_type, 'PRESET')
        self.ai.complete.assert_not_called()

    def test_ai_choice(self):
        newsletter = make_rule(self.db, self.account, 'Newsletter', instructions='Newsletters',
                               actions=[{'type': 'ARCHIVE'}])
        receipt = make_rule(self.db, self.account, 'Receipt', instructions='Receipts and invoices',
                            actions=[{'type': 'LABEL', 'label': 'Receipts'}])
        self.ai.complete.return_value = Ok(ChooseRuleResponse(reason='A weekly newsletter',
                                                              rule_ids=[newsletter.id]))

        selection = self.selector.select(self.account, [newsletter, receipt], self.message)

        self.assertEqual(selection.rule.id, newsletter.id)
        self.assertEqual(selection.match_type, 'AI')
        self.assertEqual(selection.reason, 'A weekly newsletter')
        self.ai.complete.assert_called_once()
        self.assertEqual(self.ai.complete.call_args.kwargs['tool_name'], 'choose_rule')

    def test_ai_without_decision(self):
        rule = make_rule(self.db, self.account, 'Newsletter', instructions='Newsletters',
                         actions=[{'type': 'ARCHIVE'}])
        test_cases = [
            (UpstreamError(error='timeout', timed_out=True), 'AI classification timed out'),
            (UpstreamError(error='APIConnectionError'), 'AI classification unavailable'),
            (SchemaInvalid(error='bad'), 'AI response was invalid'),
            (Ok(ChooseRuleResponse(reason='Nothing fits', no_match=True)), 'Nothing fits'),
            (Ok(ChooseRuleResponse(need_more_information=True)), 'AI found no matching rule'),
            (Ok(ChooseRuleResponse(rule_ids=[9999])), 'AI chose a rule that is not available'),
        ]
        for result, reason in test_cases:
            with self.subTest(result=result):
                self.ai.complete.return_value = result
                selection = self.selector.select(self.account, [rule], self.message)
                self.assertFalse(selection.matched)
                self.assertEqual(selection.reason, reason)

    def test_outbound_messages_need_applies_to_sent(self):
        inbound_only = make_rule(self.db, self.account, 'Inbound', from_filter='@letters.example.com')
        sent = make_rule(self.db, self.account, 'Sent', from_filter='@letters.example.com',
                         applies_to_sent=True)
        message = make_message(is_outbound=True)

        selection = self.selector.select(self.account, [inbound_only, sent], message)
        self.assertEqual(selection.rule.id, sent.id)

        selection = self.selector.select(self.account, [inbound_only], message)
        self.assertFalse(selection.matched)

    def test_disabled_rules_are_ignored(self):
        rule = make_rule(self.db, self.account, 'Newsletter', from_filter='@letters.example.com',
                         enabled=False)
        selection = self.selector.select(self.account, [rule], self.message)
        self.assertFalse(selection.matched)
        self.assertEqual(selection.reason, 'No enabled rules apply')

    def test_generates_action_args_for_static_match(self):
        rule = make_rule(self.db, self.account, 'Reply', from_filter='@letters.example.com',
                         actions=[{'type': 'LABEL', 'label': '{{topic}}'}, {'type': 'DRAFT_EMAIL'}])
        label_action, draft_action = rule.actions
        self.ai.complete.return_value = Ok(ActionArgsResponse(action_args=[
            ActionArg(action_id=label_action.id, field='label', value='Tech'),
            ActionArg(action_id=draft_action.id, field='content', value='Thanks for the update!'),
        ]))

        selection = self.selector.select(self.account, [rule], self.message)

        self.assertEqual(self.ai.complete.call_args.kwargs['tool_name'], 'fill_action_args')
        label_item, draft_item = selection.action_items
        self.assertEqual(label_item.label, 'Tech')
        self.assertEqual(draft_item.content, 'Thanks for the update!')

    def test_failed_args_call_keeps_templates(self):
        rule = make_rule(self.db, self.account, 'Label', from_filter='@letters.example.com',
                         actions=[{'type': 'LABEL', 'label': '{{topic}}'}])
        self.ai.complete.return_value = UpstreamError(error='timeout', timed_out=True)

        selection = self.selector.select(self.account, [rule], self.message)

        self.assertTrue(selection.matched)
        self.assertEqual(selection.action_items[0].label, '{{topic}}')


class TestBreakTie(unittest.TestCase):
    def test_ordering(self):
        test_cases = [
            ([Rule(id=1, priority=0, instructions='Short'),
              Rule(id=2, priority=0, instructions='Much longer instructions')], 2, 'longest instructions'),
            ([Rule(id=1, priority=5, instructions='Same'),
              Rule(id=2, priority=1, instructions='Same')], 2, 'lowest priority'),
            ([Rule(id=7, priority=0, instructions=None),
              Rule(id=3, priority=0, instructions=None)], 3, 'oldest rule'),
        ]
        for rules, expected_id, description in test_cases:
            with self.subTest(case=description):
                self.assertEqual(break_tie(rules).id, expected_id)


if __name__ == '__main__':
    unittest.main()
