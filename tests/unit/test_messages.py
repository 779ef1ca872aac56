from __future__ import annotations

import json

from taskloop.models.messages import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
    parse_stream_line,
)


def test_system_line_carries_session_id() -> None:
    message = parse_stream_line('{"type": "system", "subtype": "init", "session_id": "abc"}')

    assert isinstance(message, SystemMessage)
    assert message.session_id == "abc"


def test_assistant_line_keeps_known_blocks_and_usage() -> None:
    payload = {
        "type": "assistant",
        "session_id": "abc",
        "message": {
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Working on it"},
                {"type": "tool_use", "id": "t1", "name": "Edit", "input": {"file_path": "a.py"}},
            ],
            "usage": {
                "input_tokens": 10,
                "output_tokens": 5,
                "cache_creation_input_tokens": 100,
                "cache_read_input_tokens": 1000,
                "service_tier": "standard",
            },
        },
    }

    message = parse_stream_line(json.dumps(payload))

    assert isinstance(message, AssistantMessage)
    assert [type(block) for block in message.message.content] == [TextBlock, ToolUseBlock]
    assert message.text_blocks[0].text == "Working on it"
    assert message.tool_uses[0].name == "Edit"
    assert not message.tool_uses[0].is_ask_user_question
    assert message.message.usage is not None
    assert message.message.usage.prompt_tokens == 1110


def test_ask_user_payload_is_decoded() -> None:
    payload = {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": "toolu_9",
                    "name": "AskUserQuestion",
                    "input": {
                        "questions": [
                            {
                                "question": "Which storage?",
                                "header": "Storage",
                                "options": [{"label": "Disk", "description": "Local files"}, {"label": "S3"}],
                                "multiSelect": True,
                            }
                        ]
                    },
                }
            ]
        },
    }

    message = parse_stream_line(json.dumps(payload))

    assert isinstance(message, AssistantMessage)
    block = message.tool_uses[0]
    assert block.is_ask_user_question
    decoded = block.ask_user_input()
    assert decoded is not None
    item = decoded.questions[0]
    assert item.header == "Storage"
    assert item.multi_select is True
    assert [option.label for option in item.options] == ["Disk", "S3"]
    assert item.options[1].description == ""


def test_malformed_ask_user_payload_yields_none() -> None:
    block = ToolUseBlock(type="tool_use", id="t", name="AskUserQuestion", input={"questions": "nope"})

    assert block.ask_user_input() is None


def test_result_line_defaults_missing_fields() -> None:
    message = parse_stream_line('{"type": "result", "result": "ok", "session_id": "abc"}')

    assert isinstance(message, ResultMessage)
    assert message.is_error is False
    assert message.total_cost_usd == 0.0
    assert message.usage.input_tokens == 0


def test_foreign_lines_are_skipped() -> None:
    assert parse_stream_line("") is None
    assert parse_stream_line("   ") is None
    assert parse_stream_line("not json at all") is None
    assert parse_stream_line("[1, 2, 3]") is None
    assert parse_stream_line('{"type": "stream_event"}') is None
