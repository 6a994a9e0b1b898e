"""
Structured response schemas for the AI completion tools
"""
from typing import List

from pydantic import BaseModel, Field


class ActionArg(BaseModel):
    """A filled-in template field for one action"""
    action_id: int = Field(..., description="Id of the action whose field is being filled")
    field: str = Field(..., description="One of label, subject, content, to, cc, bcc, url")
    value: str = Field(..., description="The full field value with every {{...}} placeholder replaced")


class ChooseRuleResponse(BaseModel):
    reason: str = Field('', description="One short sentence explaining the choice")
    rule_ids: List[int] = Field(default_factory=list, description="Ids of the rules that apply")
    no_match: bool = Field(False, description="True when no rule applies")
    need_more_information: bool = Field(False, description="True when the email is too ambiguous to decide")
    action_args: List[ActionArg] = Field(default_factory=list)


class ActionArgsResponse(BaseModel):
    action_args: List[ActionArg] = Field(default_factory=list)


class DigestSummary(BaseModel):
    content: str = Field(..., description="Two or three plain-text sentences summarizing the email")
