"""
JSON schema for the rules file
"""
from datetime import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from src.database.models import ActionType, SystemType


class RuleAction(BaseModel):
    """Schema for a rule action; only the fields its type uses are set"""
    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    folder_name: Optional[str] = None

    @model_validator(mode='after')
    def check_required_fields(self) -> 'RuleAction':
        required = {
            ActionType.LABEL: 'label',
            ActionType.FORWARD: 'to',
            ActionType.SEND_EMAIL: 'to',
            ActionType.CALL_WEBHOOK: 'url',
            ActionType.MOVE_FOLDER: 'folder_name',
        }.get(self.type)
        if required and not getattr(self, required):
            raise ValueError(f"{self.type.value} action requires '{required}'")
        return self


class Rule(BaseModel):
    """Schema for a single rule"""
    identifier: str  # Permanent identifier for the rule
    name: str
    instructions: Optional[str] = None
    from_filter: Optional[str] = Field(None, alias='from')
    to_filter: Optional[str] = Field(None, alias='to')
    subject_filter: Optional[str] = Field(None, alias='subject')
    body_filter: Optional[str] = Field(None, alias='body')
    conditional_operator: Literal['AND', 'OR'] = 'AND'
    actions: List[RuleAction]
    enabled: bool = True
    automate: bool = True
    system_type: Optional[SystemType] = None
    priority: int = 0
    applies_to_sent: bool = False

    model_config = {'populate_by_name': True}


class DigestScheduleConfig(BaseModel):
    """Either every `interval_days` or on the listed weekdays, at `time_of_day`"""
    interval_days: Optional[int] = Field(None, ge=1)
    days_of_week: List[Literal['SUN', 'MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT']] = Field(default_factory=list)
    time_of_day: time = time(9, 0)

    @model_validator(mode='after')
    def check_pattern(self) -> 'DigestScheduleConfig':
        if not self.interval_days and not self.days_of_week:
            raise ValueError("digest schedule needs interval_days or days_of_week")
        return self


class RulesConfig(BaseModel):
    """Schema for the entire rules configuration"""
    rules: List[Rule]
    digest: Optional[DigestScheduleConfig] = None
    timezone: Optional[str] = None
