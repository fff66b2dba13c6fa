"""Record models persisted by the record store."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal


class BlockType:
    STANDARD = "Standard"
    CONDITIONAL_PREFILL = "Conditional Prefill"
    JAILBREAK = "Jailbreak"
    ADDITIONAL_COMMANDS = "Additional Commands"
    PREFILL = "Prefill"
    PROMPTING_FALLBACK = "Prompting Fallback"
    UNPARSED_TEXT_INJECTION = "Unparsed Text Injection"

    # Kinds whose content comes from the request's resolved commands
    INJECTABLE = (JAILBREAK, ADDITIONAL_COMMANDS, PREFILL)


PROMPT_INJECTING = "Prompt Injecting"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _plain(value):
    """Undo DynamoDB's Decimal wrapping so records come back as ints."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class Record:
    """Mixin: dict round-tripping that tolerates unknown keys and datetimes."""

    _datetime_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in self._datetime_fields:
            if data.get(name) is not None:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        kwargs = {k: _plain(v) for k, v in data.items() if k in known}
        for name in cls._datetime_fields:
            if name in kwargs:
                kwargs[name] = to_datetime(kwargs[name])
        return cls(**kwargs)


@dataclass
class PromptBlock(Record):
    provider: str
    name: str = ""
    role: str = "system"  # "system" | "user" | "assistant"
    content: str = ""
    position: int = 0
    is_enabled: bool = True
    block_type: str = BlockType.STANDARD
    replacement_command_id: str | None = None


@dataclass
class CommandDefinition(Record):
    command_tag: str
    command_type: str = BlockType.JAILBREAK
    block_role: str = "system"
    block_content: str = ""
    block_name: str = ""
    command_id: str | None = None  # matched by Prompting Fallback blocks
    id: str | None = None


@dataclass
class CustomProvider(Record):
    provider_id: str
    api_base_url: str
    api_keys: str = ""  # comma-separated
    display_name: str = ""
    model_id: str = ""
    model_display_name: str = ""
    is_enabled: bool = True
    enforced_model_name: str | None = None
    max_context_tokens: int | None = None
    max_output_tokens: int | None = None
    provider_type: str = "openai"  # "openai" | "messages" ("claude" accepted)
    id: str | None = None

    @property
    def key_list(self) -> list[str]:
        return [k.strip() for k in (self.api_keys or "").split(",") if k.strip()]


@dataclass
class CallerToken(Record):
    name: str
    token: str
    rpm: int = 60
    is_enabled: bool = True
    expires_at: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _datetime_fields = ("expires_at", "created_at", "updated_at")

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())


@dataclass
class RequestLogEntry(Record):
    request_id: str
    provider: str = ""
    token_name: str = ""
    request_payload: dict = field(default_factory=dict)
    status_code: int = 0  # 0 = pending
    response_payload: dict | None = None
    character_name: str = ""
    detected_commands: str = ""
    created_at: datetime | None = None

    _datetime_fields = ("created_at",)
