"""Messages-style wire family (Anthropic Messages API).

Callers always speak the OpenAI chat shape. Outbound, system text moves to a
dedicated ``system`` field and the conversation is normalized to strictly
alternating user/assistant turns. Inbound, responses and stream events are
rewritten into OpenAI chat completion objects.
"""

import json
import time
import uuid

from src.keys.pool import ProviderConfig
from src.logging.audit import get_logger
from src.providers.base import StreamChunk, WireAdapter
from src.proxy.errors import UserInputError

logger = get_logger("providers")

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _text(content) -> str:
    """Flatten OpenAI content (string or list of parts) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return str(content)


def _append(conversation: list[dict], role: str, text: str) -> None:
    if conversation and conversation[-1]["role"] == role:
        conversation[-1]["content"] += "\n\n" + text
    else:
        conversation.append({"role": role, "content": text})


def format_messages(messages: list[dict]) -> tuple[str | None, list[dict]]:
    """Split OpenAI-shaped messages into (system text, alternating conversation).

    Leading system messages form the system text. A later system message is
    folded into the next user message as a prefix; with no later user
    message it becomes a user turn of its own. Adjacent same-role turns are
    merged and empty messages dropped.
    """
    system_parts: list[str] = []
    pending_system: list[str] = []
    conversation: list[dict] = []
    started = False

    for message in messages:
        role = message.get("role")
        text = _text(message.get("content"))

        if role == "system":
            if not text.strip():
                continue
            if started:
                pending_system.append(text)
            else:
                system_parts.append(text)
            continue

        started = True
        if not text.strip():
            continue

        role = "assistant" if role == "assistant" else "user"
        if role == "user" and pending_system:
            text = "\n\n".join(pending_system + [text])
            pending_system = []
        _append(conversation, role, text)

    if pending_system:
        _append(conversation, "user", "\n\n".join(pending_system))

    system = "\n\n".join(system_parts) if system_parts else None
    return system, conversation


def _completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


class MessagesAdapter(WireAdapter):
    """Translates OpenAI-shaped requests to the Messages API and back."""

    def endpoint(self, config: ProviderConfig) -> str:
        return f"{config.base_url.rstrip('/')}/v1/messages"

    def headers(self, api_key: str) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_request(self, messages: list[dict], body: dict, config: ProviderConfig) -> dict:
        system, conversation = format_messages(messages)
        if not conversation and not system:
            raise UserInputError(
                "Invalid request: No valid messages or system prompt to send after processing."
            )

        forward = {
            "model": config.model_id or body.get("model"),
            "messages": conversation,
            "max_tokens": config.max_output_tokens or body.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "stream": bool(body.get("stream", False)),
        }
        if system:
            forward["system"] = system

        for key in ("temperature", "top_p", "top_k"):
            if body.get(key) is not None:
                forward[key] = body[key]

        stop = body.get("stop_sequences") or body.get("stop")
        if stop:
            forward["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)

        return forward

    def parse_response(self, data: dict, config: ProviderConfig) -> dict:
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        stop_reason = data.get("stop_reason")
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("input_tokens") or 0
        completion_tokens = usage.get("output_tokens") or 0

        return {
            "id": data.get("id") or _completion_id(),
            "object": "chat.completion",
            "created": int(time.time()),
            "model": config.model_id or data.get("model", ""),
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": FINISH_REASONS.get(stop_reason, stop_reason),
            }],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }

    def _chunk(self, config: ProviderConfig, delta: dict, finish_reason: str | None) -> str:
        return json.dumps({
            "id": _completion_id(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": config.model_id or "",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        })

    def parse_stream_chunk(self, payload: str, config: ProviderConfig) -> StreamChunk | None:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable stream event", extra={"audit_data": {
                "provider": config.provider_id, "payload": payload[:200],
            }})
            return None

        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") != "text_delta":
                return None
            text = delta.get("text", "")
            return StreamChunk(
                data=self._chunk(config, {"content": text}, None),
                is_done=False,
                text_delta=text,
            )

        if event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if not stop_reason:
                return None
            return StreamChunk(
                data=self._chunk(config, {}, FINISH_REASONS.get(stop_reason, stop_reason)),
                is_done=False,
                text_delta="",
            )

        # message_start, content_block_start/stop, ping, message_stop
        return None

    def health_check_body(self, config: ProviderConfig) -> dict:
        return {
            "model": config.health_model,
            "messages": [{"role": "user", "content": "hello"}],
            "max_tokens": 2,
        }
