"""Parsing of the tagged spans chat clients embed in message text.

Structured context (persona, user persona, scenario, summary, custom prompt)
arrives inline as pseudo-XML spans rather than as request fields. This module
pulls those out once into a ``ParsedInput``; everything downstream works on
that struct and the cleaned history, never on the raw text.

Unbalanced or malformed tags simply fail to match and count as absent.
"""

import re
from dataclasses import dataclass, field

DEFAULT_CHARACTER_NAME = "Character"
THINKING_MARKER = "<w>"

PERSONA_PATTERN = re.compile(r"<([^<>/]+?)'s Persona>([\s\S]*?)</\1's Persona>")
COMMAND_TAG_PATTERN = re.compile(r"<([A-Z0-9_]+)>")

# ParsedInput attribute -> tag name
SECTION_TAGS = {
    "user_info": "UserPersona",
    "scenario_info": "scenario",
    "summary_info": "summary",
    "custom_prompt": "Custom_Prompt",
}
SECTION_PATTERNS = {
    attr: re.compile(rf"<{tag}>([\s\S]*?)</{tag}>") for attr, tag in SECTION_TAGS.items()
}


@dataclass
class ParsedInput:
    character_name: str = DEFAULT_CHARACTER_NAME
    character_info: str = ""
    user_info: str = ""
    scenario_info: str = ""
    summary_info: str = ""
    custom_prompt: str = ""
    unparsed_text: str = ""  # what is left of a leading system message
    chat_history: list[dict] = field(default_factory=list)


def message_text(message: dict) -> str:
    """Plain text of a message whose content is a string or a list of parts."""
    content = message.get("content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)


def _strip_once(messages: list[dict], span: str) -> None:
    for message in messages:
        if span in message["content"]:
            message["content"] = message["content"].replace(span, "", 1)
            return


def strip_thinking(content: str) -> str:
    """Keep only what follows the last thinking marker."""
    if THINKING_MARKER not in content:
        return content
    return content.rsplit(THINKING_MARKER, 1)[1].strip()


def parse_embedded_metadata(messages: list[dict]) -> ParsedInput:
    """Extract tagged spans and split the conversation into setup text and history.

    Spans are searched in the concatenation of every message (first match
    wins per tag) and removed from the message that held them. A leading
    ``system`` message is the setup message: its remaining text becomes
    ``unparsed_text`` and the history starts after it. Only a ``system``
    message qualifies: a conversation that opens with a user turn is all
    history, so no turn is ever taken out of it. Assistant messages
    lose any thinking prefix.
    """
    copies = [{**m, "content": message_text(m)} for m in messages]
    joined = "\n".join(m["content"] for m in copies)
    parsed = ParsedInput()

    persona = PERSONA_PATTERN.search(joined)
    if persona:
        parsed.character_name = persona.group(1).strip() or DEFAULT_CHARACTER_NAME
        parsed.character_info = persona.group(2).strip()
        _strip_once(copies, persona.group(0))

    for attr, pattern in SECTION_PATTERNS.items():
        match = pattern.search(joined)
        if match:
            setattr(parsed, attr, match.group(1).strip())
            _strip_once(copies, match.group(0))

    for message in copies:
        if message.get("role") == "assistant":
            message["content"] = strip_thinking(message["content"])

    if copies and copies[0].get("role") == "system":
        parsed.unparsed_text = copies[0]["content"].strip()
        parsed.chat_history = copies[1:]
    else:
        parsed.chat_history = copies

    return parsed


def parse_command_tags(messages: list[dict]) -> frozenset[str]:
    """Distinct ``<TAG>`` names (upper-case letters, digits, underscore) across all messages."""
    tags = set()
    for message in messages:
        tags.update(COMMAND_TAG_PATTERN.findall(message_text(message)))
    return frozenset(tags)
