"""Summarizer requests: detection and assembly from a summarizer structure."""

import re

from src.prompts.parser import message_text
from src.store.models import PromptBlock

SUMMARIZER_TRIGGER = re.compile(r"Create a brief, focused summary", re.IGNORECASE)
SUMMARY_TAG = re.compile(r"<summary>([\s\S]*?)</summary>")

HISTORY_MARKER = "<<CHAT_HISTORY>>"
SUMMARY_MARKER = "<<SUMMARY>>"


def detect_summary_request(messages: list[dict]) -> dict | None:
    """Return the trigger message when the last message asks for a summary."""
    if not messages:
        return None
    last = messages[-1]
    if last.get("role") == "user" and SUMMARIZER_TRIGGER.search(message_text(last)):
        return last
    return None


def format_history(messages: list[dict]) -> str:
    """Render messages as ``Role: content`` lines."""
    return "\n".join(
        f"{(m.get('role') or '').capitalize()}: {message_text(m)}" for m in messages
    )


def build_summarizer_messages(
    blocks: list[PromptBlock], messages: list[dict], trigger: dict
) -> list[dict]:
    """Fill the summarizer blocks with the trigger's instructions and the rendered history."""
    match = SUMMARY_TAG.search(message_text(trigger))
    summary_info = match.group(1).strip() if match else ""
    history = format_history([m for m in messages if m is not trigger])

    final_messages = []
    for block in blocks:
        if not block.content:
            continue
        content = block.content.replace(SUMMARY_MARKER, summary_info).replace(HISTORY_MARKER, history)
        if content.strip():
            final_messages.append({"role": block.role, "content": content})
    return final_messages
