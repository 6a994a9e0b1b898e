"""
Prompt builders for rule selection, action arguments and digest summaries
"""
import re
from html.parser import HTMLParser
from typing import Iterable, List, Sequence, Tuple

from src.providers.base import ParsedMessage

CHOOSE_RULE_SYSTEM = (
    "You are an email assistant that sorts incoming email using the user's rules. "
    "Pick the rule or rules whose conditions clearly apply to the email. "
    "If none apply, set no_match. If the email is too ambiguous to decide, set "
    "need_more_information. Never pick a rule just because it is the closest."
)

ACTION_ARGS_SYSTEM = (
    "You fill in templated fields for actions that will run on an email. "
    "Replace every {{...}} placeholder following the instruction written inside it. "
    "Keep any text outside the placeholders exactly as given. "
    "For an empty reply content field, write a short, polite reply to the email."
)

DIGEST_SYSTEM = (
    "You summarize emails for a periodic digest. Write two or three plain-text "
    "sentences with the key facts. No greetings, no markdown."
)

# Lines that open a quoted reply block
_QUOTE_HEADER = re.compile(r'^(On .+ wrote:|-{2,} ?Original Message ?-{2,}|From: .+)$', re.IGNORECASE)


class _HTMLStripper(HTMLParser):
    """Collects visible text nodes"""

    def __init__(self):
        super().__init__()
        self._parts: List[str] = []
        self._skip = 0

    def handle_starttag(self, tag, attrs):
        if tag in ('script', 'style'):
            self._skip += 1

    def handle_endtag(self, tag):
        if tag in ('script', 'style') and self._skip:
            self._skip -= 1

    def handle_data(self, data):
        text = data.strip()
        if text and not self._skip:
            self._parts.append(text)

    def get_text(self) -> str:
        return ' '.join(self._parts)


def strip_html(text: str) -> str:
    if '<' not in text:
        return text
    stripper = _HTMLStripper()
    stripper.feed(text)
    stripper.close()
    return stripper.get_text()


def strip_quoted(text: str) -> str:
    """Drop quoted replies: '>' lines and everything after a reply header"""
    kept = []
    for line in text.splitlines():
        stripped = line.strip()
        if _QUOTE_HEADER.match(stripped):
            break
        if stripped.startswith('>'):
            continue
        kept.append(line)
    return '\n'.join(kept).strip()


def message_body_text(message: ParsedMessage) -> str:
    body = message.text_plain or strip_html(message.text_html)
    return strip_quoted(body)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + '...'


def format_email(message: ParsedMessage, max_body_chars: int) -> str:
    """Render the normalized email fields for a prompt"""
    lines = [
        f"From: {message.from_address}",
        f"To: {message.to}",
    ]
    if message.cc:
        lines.append(f"Cc: {message.cc}")
    lines.append(f"Subject: {message.subject}")
    if message.date:
        lines.append(f"Date: {message.date.isoformat()}")
    if message.attachments:
        lines.append(f"Attachments: {', '.join(message.attachments)}")
    lines.append('')
    lines.append(truncate(message_body_text(message) or message.snippet, max_body_chars))
    return '\n'.join(lines)


def _format_arg_requests(arg_requests: Sequence[Tuple[int, str, str, str]]) -> str:
    lines = []
    for action_id, action_type, field, template in arg_requests:
        shown = template if template else '(empty: write the reply)'
        lines.append(f"- action_id={action_id} type={action_type} field={field}: {shown}")
    return '\n'.join(lines)


def build_choose_rule_prompt(rules: Iterable, message: ParsedMessage, max_body_chars: int,
                             arg_requests: Sequence[Tuple[int, str, str, str]] = ()) -> str:
    """`rules` are Rule rows; `arg_requests` are (action_id, type, field, template)"""
    rule_lines = []
    for rule in rules:
        rule_lines.append(f"<rule id=\"{rule.id}\" name=\"{rule.name}\">\n{rule.instructions or ''}\n</rule>")

    prompt = [
        "<rules>",
        '\n'.join(rule_lines),
        "</rules>",
        "",
        "<email>",
        format_email(message, max_body_chars),
        "</email>",
    ]
    if arg_requests:
        prompt += [
            "",
            "If you pick a rule, also fill these fields for that rule's actions:",
            _format_arg_requests(arg_requests),
        ]
    return '\n'.join(prompt)


def build_action_args_prompt(rule, message: ParsedMessage, max_body_chars: int,
                             arg_requests: Sequence[Tuple[int, str, str, str]]) -> str:
    return '\n'.join([
        f"The rule \"{rule.name}\" matched this email.",
        "",
        "<email>",
        format_email(message, max_body_chars),
        "</email>",
        "",
        "Fill these fields:",
        _format_arg_requests(arg_requests),
    ])


def build_digest_prompt(message: ParsedMessage, max_body_chars: int) -> str:
    return '\n'.join([
        "<email>",
        format_email(message, max_body_chars),
        "</email>",
    ])
