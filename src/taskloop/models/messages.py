"""Typed view of the agent CLI's ``stream-json`` output."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.type_adapter import TypeAdapter

LOGGER = logging.getLogger(__name__)

ASK_USER_TOOL_NAME = "AskUserQuestion"


class StreamModel(BaseModel):
    """Lenient base: the CLI adds fields between releases."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Usage(StreamModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def prompt_tokens(self) -> int:
        """Size of the prompt the model saw, cached portions included."""
        return self.input_tokens + self.cache_creation_input_tokens + self.cache_read_input_tokens


class TextBlock(StreamModel):
    type: Literal["text"]
    text: str


class AskUserOption(StreamModel):
    label: str
    description: str = ""


class AskUserQuestionItem(StreamModel):
    question: str
    header: str = ""
    options: List[AskUserOption] = Field(default_factory=list)
    multi_select: bool = Field(False, alias="multiSelect")


class AskUserQuestionInput(StreamModel):
    questions: List[AskUserQuestionItem] = Field(default_factory=list)


class ToolUseBlock(StreamModel):
    type: Literal["tool_use"]
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_ask_user_question(self) -> bool:
        return self.name == ASK_USER_TOOL_NAME

    def ask_user_input(self) -> Optional[AskUserQuestionInput]:
        """Decode the ask-user payload, or ``None`` when it is malformed."""

        if not self.is_ask_user_question:
            return None
        try:
            return AskUserQuestionInput.model_validate(self.input)
        except ValidationError as error:
            LOGGER.warning("Malformed %s payload: %s", ASK_USER_TOOL_NAME, error)
            return None


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock], Field(discriminator="type")]
_KNOWN_BLOCKS = {"text", "tool_use"}


class AssistantContent(StreamModel):
    content: List[ContentBlock] = Field(default_factory=list)
    usage: Optional[Usage] = None

    @field_validator("content", mode="before")
    @classmethod
    def _drop_unknown_blocks(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [
                block
                for block in value
                if isinstance(block, dict) and block.get("type") in _KNOWN_BLOCKS
            ]
        return value


class SystemMessage(StreamModel):
    type: Literal["system"]
    subtype: str = ""
    session_id: Optional[str] = None


class AssistantMessage(StreamModel):
    type: Literal["assistant"]
    message: AssistantContent
    session_id: Optional[str] = None

    @property
    def text_blocks(self) -> List[TextBlock]:
        return [block for block in self.message.content if isinstance(block, TextBlock)]

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.message.content if isinstance(block, ToolUseBlock)]


class UserMessage(StreamModel):
    type: Literal["user"]
    session_id: Optional[str] = None


class ResultMessage(StreamModel):
    type: Literal["result"]
    subtype: str = ""
    is_error: bool = False
    duration_ms: int = 0
    result: str = ""
    session_id: str = ""
    total_cost_usd: float = 0.0
    usage: Usage = Field(default_factory=Usage)


StreamMessage = Annotated[
    Union[SystemMessage, AssistantMessage, UserMessage, ResultMessage],
    Field(discriminator="type"),
]

_STREAM_ADAPTER: TypeAdapter[StreamMessage] = TypeAdapter(StreamMessage)


def parse_stream_message(payload: Dict[str, Any]) -> Optional[StreamMessage]:
    try:
        return _STREAM_ADAPTER.validate_python(payload)
    except ValidationError as error:
        LOGGER.debug("Ignoring unrecognised stream payload: %s", error)
        return None


def parse_stream_line(line: str) -> Optional[StreamMessage]:
    """Parse one line of ``stream-json`` output; blank or foreign lines yield ``None``."""

    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        LOGGER.debug("Skipping non-JSON output line: %s", text[:200])
        return None
    if not isinstance(payload, dict):
        return None
    return parse_stream_message(payload)


__all__ = [
    "ASK_USER_TOOL_NAME",
    "AskUserOption",
    "AskUserQuestionInput",
    "AskUserQuestionItem",
    "AssistantContent",
    "AssistantMessage",
    "ContentBlock",
    "ResultMessage",
    "StreamMessage",
    "SystemMessage",
    "TextBlock",
    "ToolUseBlock",
    "Usage",
    "UserMessage",
    "parse_stream_line",
    "parse_stream_message",
]
