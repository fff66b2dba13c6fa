"""Adapter registry — singleton map of wire family → adapter instance."""

from src.providers.base import WIRE_MESSAGES, WIRE_OPENAI, WireAdapter
from src.providers.messages import MessagesAdapter
from src.providers.openai import OpenAICompatibleAdapter

_adapters: dict[str, WireAdapter] = {}

# Custom providers may register with older type names
_ALIASES = {
    "claude": WIRE_MESSAGES,
    "anthropic": WIRE_MESSAGES,
    "openai-compatible": WIRE_OPENAI,
}


def normalize_wire_family(name: str | None) -> str:
    """Map a registration's provider type onto a known wire family."""
    family = (name or WIRE_OPENAI).strip().lower()
    family = _ALIASES.get(family, family)
    if family not in (WIRE_OPENAI, WIRE_MESSAGES):
        raise ValueError(f"Unknown wire family: {name}")
    return family


def get_adapter(wire_family: str) -> WireAdapter:
    """Get or create the adapter for a wire family."""
    family = normalize_wire_family(wire_family)
    if family in _adapters:
        return _adapters[family]

    if family == WIRE_OPENAI:
        _adapters[family] = OpenAICompatibleAdapter()
    else:
        _adapters[family] = MessagesAdapter()

    return _adapters[family]


async def close_all_adapters() -> None:
    """Gracefully shut down all adapter connections."""
    for adapter in _adapters.values():
        await adapter.close()
    _adapters.clear()
