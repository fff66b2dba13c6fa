"""Record store abstraction + JSON file implementation."""

import asyncio
import json
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from src.logging.audit import get_logger
from src.store.models import (
    PROMPT_INJECTING,
    CallerToken,
    CommandDefinition,
    CustomProvider,
    PromptBlock,
    RequestLogEntry,
    utcnow,
)

logger = get_logger("store")


def renumber(provider: str, blocks: Iterable[PromptBlock]) -> list[PromptBlock]:
    """Copy blocks for ``provider`` with dense 0..N-1 positions in list order."""
    return [
        PromptBlock.from_dict({**block.to_dict(), "provider": provider, "position": i})
        for i, block in enumerate(blocks)
    ]


def validate_command(command: CommandDefinition) -> CommandDefinition:
    if not command.command_id and command.command_type == PROMPT_INJECTING:
        raise ValueError('A Command ID is required for the "Prompt Injecting" type.')
    return CommandDefinition.from_dict({
        **command.to_dict(),
        "command_tag": command.command_tag.strip().upper(),
    })


class RecordStore(ABC):
    """Persistence for structures, commands, custom providers, tokens and request logs."""

    # --- Prompt structures ---

    @abstractmethod
    async def get_structure(self, provider: str) -> list[PromptBlock]:
        """All blocks for a provider ordered by position (enabled or not)."""
        ...

    @abstractmethod
    async def set_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        """Replace every block for a provider in one step, renumbering positions."""
        ...

    @abstractmethod
    async def get_summarizer_structure(self, provider: str) -> list[PromptBlock]:
        ...

    @abstractmethod
    async def set_summarizer_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        ...

    # --- Commands ---

    @abstractmethod
    async def get_commands(self, tags: Iterable[str] | None = None) -> list[CommandDefinition]:
        """Commands sorted by tag, optionally restricted to a tag set."""
        ...

    @abstractmethod
    async def save_command(self, command: CommandDefinition) -> CommandDefinition:
        ...

    @abstractmethod
    async def delete_command(self, command_id: str) -> None:
        ...

    # --- Custom providers ---

    @abstractmethod
    async def get_custom_providers(self, enabled_only: bool = True) -> list[CustomProvider]:
        ...

    @abstractmethod
    async def save_custom_provider(self, provider: CustomProvider) -> CustomProvider:
        ...

    @abstractmethod
    async def delete_custom_provider(self, record_id: str) -> None:
        ...

    # --- Caller tokens ---

    @abstractmethod
    async def get_tokens(self) -> list[CallerToken]:
        ...

    @abstractmethod
    async def save_token(self, token: CallerToken) -> CallerToken:
        """Insert when ``token.id`` is None, otherwise update in place."""
        ...

    @abstractmethod
    async def delete_token(self, token_id: str) -> None:
        ...

    # --- Request logs ---

    @abstractmethod
    async def insert_log(self, entry: RequestLogEntry) -> None:
        ...

    @abstractmethod
    async def update_log(self, request_id: str, status_code: int, payload: dict | None) -> None:
        ...

    @abstractmethod
    async def purge_logs(self, older_than: datetime) -> int:
        """Delete log entries created before ``older_than``. Returns the count removed."""
        ...


class JSONRecordStore(RecordStore):
    """File-backed record store. Reloads on mtime change, writes atomically."""

    SECTIONS = (
        "structures",
        "summarizer_structures",
        "commands",
        "custom_providers",
        "tokens",
        "request_logs",
    )

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()
        self._data: dict = self._empty()
        self._last_mtime: float = 0.0
        self._load()

    @classmethod
    def _empty(cls) -> dict:
        return {
            section: {} if section.endswith("structures") else []
            for section in cls.SECTIONS
        }

    def _load(self) -> None:
        """Load the document from disk if it changed since the last read."""
        try:
            mtime = os.path.getmtime(self._path)
        except OSError:
            return

        if mtime == self._last_mtime:
            return

        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)

        merged = self._empty()
        merged.update({k: v for k, v in data.items() if k in self.SECTIONS})
        self._data = merged
        self._last_mtime = mtime

    def _write(self) -> None:
        """Write the whole document via temp file + rename so readers never see a partial file."""
        directory = os.path.dirname(os.path.abspath(self._path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, default=str)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self._last_mtime = os.path.getmtime(self._path)

    def _read_section(self, section: str):
        with self._lock:
            self._load()
            return json.loads(json.dumps(self._data[section]))

    def _apply(self, change):
        """Run ``change`` on the freshly loaded document and write it back unless it returns False."""
        with self._lock:
            self._load()
            result = change(self._data)
            if result is not False:
                self._write()
        return result

    # Disk I/O runs in a worker thread
    async def _read(self, section: str):
        return await asyncio.to_thread(self._read_section, section)

    async def _mutate(self, change):
        return await asyncio.to_thread(self._apply, change)

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex[:12]

    # --- Prompt structures ---

    async def _get_blocks(self, section: str, provider: str) -> list[PromptBlock]:
        rows = (await self._read(section)).get(provider, [])
        blocks = [PromptBlock.from_dict(row) for row in rows]
        return sorted(blocks, key=lambda b: b.position)

    async def _set_blocks(self, section: str, provider: str, blocks: list[PromptBlock]) -> None:
        rows = [b.to_dict() for b in renumber(provider, blocks)]

        def change(data):
            data[section][provider] = rows

        await self._mutate(change)
        logger.info("Structure replaced", extra={"audit_data": {
            "section": section, "provider": provider, "block_count": len(rows),
        }})

    async def get_structure(self, provider: str) -> list[PromptBlock]:
        return await self._get_blocks("structures", provider)

    async def set_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        await self._set_blocks("structures", provider, blocks)

    async def get_summarizer_structure(self, provider: str) -> list[PromptBlock]:
        return await self._get_blocks("summarizer_structures", provider)

    async def set_summarizer_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        await self._set_blocks("summarizer_structures", provider, blocks)

    # --- Commands ---

    async def get_commands(self, tags: Iterable[str] | None = None) -> list[CommandDefinition]:
        commands = [CommandDefinition.from_dict(row) for row in await self._read("commands")]
        if tags is not None:
            wanted = {t.upper() for t in tags}
            commands = [c for c in commands if c.command_tag in wanted]
        return sorted(commands, key=lambda c: c.command_tag)

    async def save_command(self, command: CommandDefinition) -> CommandDefinition:
        command = validate_command(command)

        def change(data):
            rows = data["commands"]
            for row in rows:
                if row["command_tag"] == command.command_tag and row.get("id") != command.id:
                    raise ValueError(f"Command tag <{command.command_tag}> already exists.")
            if command.id is None:
                command.id = self._new_id()
                rows.append(command.to_dict())
                return
            for i, row in enumerate(rows):
                if row.get("id") == command.id:
                    rows[i] = command.to_dict()
                    return
            raise KeyError(f"Command {command.id} not found")

        await self._mutate(change)
        return command

    async def delete_command(self, command_id: str) -> None:
        def change(data):
            data["commands"] = [r for r in data["commands"] if r.get("id") != command_id]

        await self._mutate(change)

    # --- Custom providers ---

    async def get_custom_providers(self, enabled_only: bool = True) -> list[CustomProvider]:
        providers = [CustomProvider.from_dict(row) for row in await self._read("custom_providers")]
        if enabled_only:
            providers = [p for p in providers if p.is_enabled]
        return sorted(providers, key=lambda p: p.display_name or p.provider_id)

    async def save_custom_provider(self, provider: CustomProvider) -> CustomProvider:
        def change(data):
            rows = data["custom_providers"]
            for row in rows:
                if row["provider_id"] == provider.provider_id and row.get("id") != provider.id:
                    raise ValueError(f"Provider id '{provider.provider_id}' already exists.")
            if provider.id is None:
                provider.id = self._new_id()
                rows.append(provider.to_dict())
                return
            for i, row in enumerate(rows):
                if row.get("id") == provider.id:
                    rows[i] = provider.to_dict()
                    return
            raise KeyError(f"Custom provider {provider.id} not found")

        await self._mutate(change)
        return provider

    async def delete_custom_provider(self, record_id: str) -> None:
        def change(data):
            data["custom_providers"] = [
                r for r in data["custom_providers"] if r.get("id") != record_id
            ]

        await self._mutate(change)

    # --- Caller tokens ---

    async def get_tokens(self) -> list[CallerToken]:
        tokens = [CallerToken.from_dict(row) for row in await self._read("tokens")]
        return sorted(tokens, key=lambda t: t.name)

    async def save_token(self, token: CallerToken) -> CallerToken:
        now = utcnow()
        token.updated_at = now

        def change(data):
            rows = data["tokens"]
            if token.id is None:
                token.id = self._new_id()
                token.created_at = now
                rows.append(token.to_dict())
                return
            for i, row in enumerate(rows):
                if row.get("id") == token.id:
                    token.created_at = token.created_at or CallerToken.from_dict(row).created_at
                    rows[i] = token.to_dict()
                    return
            raise KeyError(f"Token {token.id} not found")

        await self._mutate(change)
        return token

    async def delete_token(self, token_id: str) -> None:
        def change(data):
            data["tokens"] = [r for r in data["tokens"] if r.get("id") != token_id]

        await self._mutate(change)

    # --- Request logs ---

    async def insert_log(self, entry: RequestLogEntry) -> None:
        entry.created_at = entry.created_at or utcnow()
        row = entry.to_dict()
        await self._mutate(lambda data: data["request_logs"].append(row))

    async def update_log(self, request_id: str, status_code: int, payload: dict | None) -> None:
        def change(data):
            for row in data["request_logs"]:
                if row["request_id"] == request_id:
                    row["status_code"] = status_code
                    row["response_payload"] = payload
                    return
            return False

        await self._mutate(change)

    async def purge_logs(self, older_than: datetime) -> int:
        def change(data):
            rows = data["request_logs"]
            kept = []
            for row in rows:
                created_at = RequestLogEntry.from_dict(row).created_at
                if created_at is None or created_at >= older_than:
                    kept.append(row)
            removed = len(rows) - len(kept)
            if not removed:
                return False
            data["request_logs"] = kept
            return removed

        return await self._mutate(change) or 0
