"""
AI completion boundary.

Every call returns one of three results instead of raising, so callers can
treat a malformed or failed completion as "no decision" without a try block.
Anthropic's tool_use with a forced tool_choice keeps the response
machine-readable; pydantic validates the tool input against the schema.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Type, Union

import anthropic
from anthropic.types import ToolUseBlock
from pydantic import BaseModel, ValidationError

from src.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    data: BaseModel


@dataclass(frozen=True)
class SchemaInvalid:
    error: str


@dataclass(frozen=True)
class UpstreamError:
    error: str
    timed_out: bool = False


CompletionResult = Union[Ok, SchemaInvalid, UpstreamError]


class CompletionClient:
    """Synchronous Anthropic client returning discriminated results"""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[anthropic.Anthropic] = None):
        self.settings = settings or get_settings()
        self._client = client or anthropic.Anthropic(
            api_key=self.settings.anthropic_api_key,
            timeout=self.settings.ai_timeout_seconds,
            max_retries=1,
        )

    def complete(self, system: str, prompt: str, schema: Type[BaseModel],
                 tool_name: Optional[str] = None) -> CompletionResult:
        tool_name = tool_name or f"record_{schema.__name__.lower()}"
        tool = {
            'name': tool_name,
            'description': schema.__doc__ or f"Record the {schema.__name__}",
            'input_schema': schema.model_json_schema(),
        }

        try:
            response = self._client.messages.create(
                model=self.settings.ai_model,
                max_tokens=self.settings.ai_max_tokens,
                system=system,
                tools=[tool],
                tool_choice={'type': 'tool', 'name': tool_name},
                messages=[{'role': 'user', 'content': prompt}],
            )
        except anthropic.APITimeoutError as e:
            logger.warning(f"AI completion timed out: {e}")
            return UpstreamError(error='timeout', timed_out=True)
        except anthropic.APIError as e:
            logger.warning(f"AI completion failed: {e}")
            return UpstreamError(error=type(e).__name__)

        for block in response.content:
            if isinstance(block, ToolUseBlock) and block.name == tool_name:
                try:
                    return Ok(schema.model_validate(block.input))
                except ValidationError as e:
                    logger.warning(f"AI response failed validation for {tool_name}: {e}")
                    return SchemaInvalid(error=f"{e.error_count()} validation errors")

        logger.warning(f"AI did not call {tool_name} (stop_reason={response.stop_reason!r})")
        return SchemaInvalid(error=f"missing {tool_name} tool call")
