"""Tests for src/providers/messages.py — Messages-style request/response translation."""

import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.providers.messages import ANTHROPIC_VERSION, MessagesAdapter, format_messages
from src.proxy.errors import UserInputError
from tests.conftest import sse_lines


@pytest.fixture
def adapter():
    return MessagesAdapter()


def sys_msg(text):
    return {"role": "system", "content": text}


def user(text):
    return {"role": "user", "content": text}


def bot(text):
    return {"role": "assistant", "content": text}


class TestFormatMessages:

    def test_leading_system_becomes_system_field(self):
        system, conversation = format_messages([sys_msg("a"), sys_msg("b"), user("hi")])
        assert system == "a\n\nb"
        assert conversation == [user("hi")]

    def test_later_system_prefixes_next_user(self):
        system, conversation = format_messages([sys_msg("S1"), user("U1"), sys_msg("S2"), user("U2")])
        assert system == "S1"
        assert conversation == [user("U1\n\nS2\n\nU2")]

    def test_later_system_after_assistant(self):
        system, conversation = format_messages([sys_msg("S1"), user("U1"), bot("A1"), sys_msg("S2"), user("U2")])
        assert system == "S1"
        assert conversation == [user("U1"), bot("A1"), user("S2\n\nU2")]

    def test_trailing_system_becomes_user_turn(self):
        _, conversation = format_messages([user("U1"), bot("A1"), sys_msg("note")])
        assert conversation == [user("U1"), bot("A1"), user("note")]

    def test_same_role_merged(self):
        _, conversation = format_messages([user("a"), user("b"), bot("c"), bot("d")])
        assert conversation == [user("a\n\nb"), bot("c\n\nd")]

    def test_empty_messages_dropped(self):
        system, conversation = format_messages([sys_msg(""), user("  "), user("x"), bot("")])
        assert system is None
        assert conversation == [user("x")]

    def test_list_content_flattened(self):
        _, conversation = format_messages([
            {"role": "user", "content": [{"type": "text", "text": "a"}, {"type": "image_url"}, {"type": "text", "text": "b"}]},
        ])
        assert conversation == [user("ab")]

    def test_conversation_alternates(self):
        _, conversation = format_messages([
            user("1"), sys_msg("2"), bot("3"), bot("4"), {"role": "tool", "content": "5"}, user("6"),
        ])
        roles = [m["role"] for m in conversation]
        assert all(a != b for a, b in zip(roles, roles[1:]))


class TestBuildRequest:

    def test_defaults(self, adapter, claude_config):
        forward = adapter.build_request([sys_msg("be nice"), user("hi")], {"model": "ignored"}, claude_config)
        assert forward == {
            "model": "claude-3-opus-20240229",
            "messages": [user("hi")],
            "max_tokens": 4096,
            "stream": False,
            "system": "be nice",
        }

    def test_output_ceiling_wins(self, adapter, claude_config):
        config = replace(claude_config, max_output_tokens=300)
        forward = adapter.build_request([user("hi")], {"max_tokens": 1000}, config)
        assert forward["max_tokens"] == 300

    def test_caller_max_tokens_used_without_ceiling(self, adapter, claude_config):
        forward = adapter.build_request([user("hi")], {"max_tokens": 1000}, claude_config)
        assert forward["max_tokens"] == 1000

    def test_sampling_params_and_stop(self, adapter, claude_config):
        forward = adapter.build_request(
            [user("hi")],
            {"temperature": 0.5, "top_p": 0.9, "top_k": 40, "stop": "END", "presence_penalty": 1},
            claude_config,
        )
        assert forward["temperature"] == 0.5
        assert forward["top_p"] == 0.9
        assert forward["top_k"] == 40
        assert forward["stop_sequences"] == ["END"]
        assert "presence_penalty" not in forward

    def test_nothing_to_send(self, adapter, claude_config):
        with pytest.raises(UserInputError, match="No valid messages"):
            adapter.build_request([user(""), bot("  ")], {}, claude_config)

    def test_headers(self, adapter):
        headers = adapter.headers("sk-ant")
        assert headers["x-api-key"] == "sk-ant"
        assert headers["anthropic-version"] == ANTHROPIC_VERSION


class TestParseResponse:

    def test_translated_to_chat_completion(self, adapter, claude_config):
        data = {
            "id": "msg_1",
            "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
            "stop_reason": "max_tokens",
            "usage": {"input_tokens": 12, "output_tokens": 5},
        }
        body = adapter.parse_response(data, claude_config)
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello there"}
        assert body["choices"][0]["finish_reason"] == "length"
        assert body["usage"] == {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17}

    async def test_chat_completion_counts_usage(self, adapter, claude_config):
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {
            "content": [{"type": "text", "text": "ok"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 4, "output_tokens": 1},
        }
        mock_client = AsyncMock()
        mock_client.is_closed = False
        mock_client.post.return_value = response
        adapter._client = mock_client

        result = await adapter.chat_completion([user("hi")], {}, "sk-ant", claude_config)

        assert (result.prompt_tokens, result.completion_tokens) == (4, 1)
        assert mock_client.post.call_args.args[0] == "https://api.anthropic.com/v1/messages"


class TestParseStreamChunk:

    def test_text_delta(self, adapter, claude_config):
        payload = json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
        chunk = adapter.parse_stream_chunk(payload, claude_config)
        data = json.loads(chunk.data)
        assert chunk.text_delta == "Hi"
        assert data["object"] == "chat.completion.chunk"
        assert data["choices"][0]["delta"] == {"content": "Hi"}

    def test_stop_reason(self, adapter, claude_config):
        payload = json.dumps({"type": "message_delta", "delta": {"stop_reason": "end_turn"}})
        data = json.loads(adapter.parse_stream_chunk(payload, claude_config).data)
        assert data["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.parametrize("event", [
        {"type": "message_start", "message": {}},
        {"type": "ping"},
        {"type": "content_block_delta", "delta": {"type": "input_json_delta"}},
        {"type": "message_stop"},
    ])
    def test_other_events_dropped(self, adapter, claude_config, event):
        assert adapter.parse_stream_chunk(json.dumps(event), claude_config) is None

    def test_bad_json_dropped(self, adapter, claude_config):
        assert adapter.parse_stream_chunk("{not json", claude_config) is None

    async def test_stream_ends_with_done(self, adapter, claude_config):
        lines = sse_lines(
            json.dumps({"type": "message_start", "message": {}}),
            json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Yo"}}),
            json.dumps({"type": "message_stop"}),
        )
        mock_response = AsyncMock()
        mock_response.status_code = 200
        mock_response.aiter_lines = MagicMock(return_value=_async_iter(lines))
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=False)
        mock_client = AsyncMock()
        mock_client.stream = MagicMock(return_value=mock_response)
        mock_client.is_closed = False
        adapter._client = mock_client

        chunks = [c async for c in adapter.chat_completion_stream([user("hi")], {}, "k", claude_config)]

        assert [c.text_delta for c in chunks] == ["Yo", ""]
        assert chunks[-1].data == "[DONE]"
        assert mock_client.stream.call_args.kwargs["json"]["stream"] is True


class TestHealthCheckBody:

    def test_uses_configured_model(self, adapter, claude_config):
        body = adapter.health_check_body(claude_config)
        assert body["model"] == "claude-3-opus-20240229"
        assert body["max_tokens"] == 2


async def _async_iter(items):
    for item in items:
        yield item
