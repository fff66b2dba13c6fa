"""Prompt assembly: stored block structure + commands + conversation → final messages.

The pipeline runs strictly in order:

1. Parse embedded metadata and the command tag set from the raw messages.
2. Resolve the tags to command definitions; more than one Prefill command
   is a caller error. Bucket the rest by injectable kind.
3. Load the provider's enabled blocks, falling back to ``default``; with no
   blocks at all the request passes through unchanged.
4. Walk the blocks once, emitting messages (placeholders, then macros, then
   the ``<<CHAT_HISTORY>>`` split).
5. Append the chat history at the end if no block placed it.
"""

import re
from dataclasses import dataclass, field

from src.logging.audit import get_logger
from src.prompts.macros import MacroScope
from src.prompts.parser import ParsedInput, parse_command_tags, parse_embedded_metadata
from src.prompts.summarizer import build_summarizer_messages, detect_summary_request
from src.proxy.errors import UserInputError
from src.store.models import BlockType, CommandDefinition, PromptBlock
from src.store.store import RecordStore

logger = get_logger("prompts")

DEFAULT_STRUCTURE = "default"
HISTORY_MARKER = "<<CHAT_HISTORY>>"

# Placeholder -> ParsedInput attribute; replaced in one pass so values are never rescanned
PLACEHOLDERS = {
    "{{char}}": "character_name",
    "<<USER_INFO>>": "user_info",
    "<<CUSTOM_PROMPT>>": "custom_prompt",
    "<<CHARACTER_INFO>>": "character_info",
    "<<SCENARIO_INFO>>": "scenario_info",
    "<<SUMMARY>>": "summary_info",
}
PLACEHOLDER_PATTERN = re.compile("|".join(re.escape(p) for p in PLACEHOLDERS))


@dataclass
class AssemblyResult:
    messages: list[dict]
    character_name: str
    command_tags: frozenset[str] = field(default_factory=frozenset)
    is_summary: bool = False


@dataclass
class CommandBuckets:
    jailbreak: list[CommandDefinition] = field(default_factory=list)
    additional: list[CommandDefinition] = field(default_factory=list)
    prefill: list[CommandDefinition] = field(default_factory=list)
    resolved: list[CommandDefinition] = field(default_factory=list)

    @property
    def has_prefill(self) -> bool:
        return bool(self.prefill)

    def for_block(self, block_type: str) -> list[CommandDefinition]:
        return {
            BlockType.JAILBREAK: self.jailbreak,
            BlockType.ADDITIONAL_COMMANDS: self.additional,
            BlockType.PREFILL: self.prefill,
        }[block_type]

    def by_command_id(self, command_id: str) -> CommandDefinition | None:
        for command in self.resolved:
            if command.command_id == command_id:
                return command
        return None


def bucket_commands(commands: list[CommandDefinition]) -> CommandBuckets:
    """Group resolved commands by injectable kind, keeping lookup order.

    Raises UserInputError when more than one Prefill command is present.
    """
    prefills = [c for c in commands if c.command_type == BlockType.PREFILL]
    if len(prefills) > 1:
        tags = ", ".join(f"<{c.command_tag}>" for c in prefills)
        raise UserInputError(f"Only 1 Prefill command is allowed. Found: {tags}.")

    buckets = CommandBuckets(resolved=list(commands))
    for command in commands:
        if command.command_type == BlockType.JAILBREAK:
            buckets.jailbreak.append(command)
        elif command.command_type == BlockType.ADDITIONAL_COMMANDS:
            buckets.additional.append(command)
        elif command.command_type == BlockType.PREFILL:
            buckets.prefill.append(command)
    return buckets


def substitute_placeholders(text: str, parsed: ParsedInput) -> str:
    def _replace(match: re.Match) -> str:
        placeholder = match.group(0)
        value = getattr(parsed, PLACEHOLDERS[placeholder])
        if not value:
            logger.warning("Placeholder has no parsed value", extra={"audit_data": {
                "placeholder": placeholder,
            }})
        return value

    return PLACEHOLDER_PATTERN.sub(_replace, text)


class _BlockWalk:
    """State for step 4: one walk over the blocks of a single request."""

    def __init__(self, parsed: ParsedInput, buckets: CommandBuckets):
        self.parsed = parsed
        self.buckets = buckets
        self.macros = MacroScope()
        self.messages: list[dict] = []
        self.history_injected = False

    def emit(self, role: str, raw_content: str) -> None:
        content = substitute_placeholders(raw_content or "", self.parsed)
        content = self.macros.process(content)

        if HISTORY_MARKER in content:
            before, _, after = content.partition(HISTORY_MARKER)
            if before.strip():
                self.messages.append({"role": role, "content": before})
            self.messages.extend(self.parsed.chat_history)
            if after.strip():
                self.messages.append({"role": role, "content": after})
            self.history_injected = True
        elif content.strip():
            self.messages.append({"role": role, "content": content})

    def visit(self, block: PromptBlock) -> None:
        block_type = block.block_type

        if block_type == BlockType.UNPARSED_TEXT_INJECTION:
            if self.parsed.unparsed_text:
                self.messages.append({"role": block.role, "content": self.parsed.unparsed_text})
            return

        if block_type == BlockType.CONDITIONAL_PREFILL and self.buckets.has_prefill:
            return

        if block_type in BlockType.INJECTABLE:
            for command in self.buckets.for_block(block_type):
                # Additional Commands pin the injected role to the block's own
                role = block.role if block_type == BlockType.ADDITIONAL_COMMANDS else command.block_role
                self.emit(role, command.block_content)
            return

        content = block.content
        if block_type == BlockType.PROMPTING_FALLBACK and block.replacement_command_id:
            override = self.buckets.by_command_id(block.replacement_command_id)
            if override is not None:
                logger.info("Fallback block overridden by command", extra={"audit_data": {
                    "block": block.name, "command_tag": override.command_tag,
                }})
                content = override.block_content
        self.emit(block.role, content)

    def finish(self) -> list[dict]:
        if not self.history_injected:
            self.messages.extend(self.parsed.chat_history)
        return self.messages


class PromptAssembler:
    """Builds the outbound message list for one request."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def _enabled_blocks(self, getter, provider_id: str) -> list[PromptBlock]:
        blocks = [b for b in await getter(provider_id) if b.is_enabled]
        if not blocks and provider_id != DEFAULT_STRUCTURE:
            blocks = [b for b in await getter(DEFAULT_STRUCTURE) if b.is_enabled]
        return blocks

    async def _resolve_commands(self, tags: frozenset[str]) -> list[CommandDefinition]:
        if not tags:
            return []
        return await self._store.get_commands(tags)

    async def build_final_messages(self, provider_id: str, messages: list[dict]) -> AssemblyResult:
        """Run steps 1-5 for a chat request."""
        parsed = parse_embedded_metadata(messages)
        command_tags = parse_command_tags(messages)

        buckets = bucket_commands(await self._resolve_commands(command_tags))

        blocks = await self._enabled_blocks(self._store.get_structure, provider_id)
        if not blocks:
            logger.info("No prompt structure; passing messages through", extra={"audit_data": {
                "provider": provider_id,
            }})
            return AssemblyResult(list(messages), parsed.character_name, command_tags)

        walk = _BlockWalk(parsed, buckets)
        for block in blocks:
            walk.visit(block)
        final_messages = walk.finish()

        if not walk.history_injected:
            logger.warning("Structure has no chat history marker; history appended", extra={
                "audit_data": {"provider": provider_id},
            })
        logger.info("Prompt assembled", extra={"audit_data": {
            "provider": provider_id,
            "message_count": len(final_messages),
            "command_tags": sorted(command_tags),
        }})
        return AssemblyResult(final_messages, parsed.character_name, command_tags)

    async def assemble(self, provider_id: str, messages: list[dict]) -> AssemblyResult:
        """Entry point for the route: summarizer requests first, then the chat pipeline."""
        trigger = detect_summary_request(messages)
        if trigger is not None:
            blocks = await self._enabled_blocks(self._store.get_summarizer_structure, provider_id)
            if blocks:
                parsed = parse_embedded_metadata(messages)
                logger.info("Summarizer request assembled", extra={"audit_data": {
                    "provider": provider_id,
                }})
                return AssemblyResult(
                    build_summarizer_messages(blocks, messages, trigger),
                    parsed.character_name,
                    is_summary=True,
                )
            logger.info("No summarizer structure; using chat assembly", extra={"audit_data": {
                "provider": provider_id,
            }})

        return await self.build_final_messages(provider_id, messages)
