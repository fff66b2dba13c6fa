"""Shared fixtures for the Yomi Proxy test suite."""

import json

import pytest

from src.config.settings import get_settings
from src.keys.pool import ACTIVE, CredentialPool, ProviderConfig
from src.providers.base import StreamChunk
from src.store.store import JSONRecordStore


@pytest.fixture
def chat_request_body() -> dict:
    """Standard chat completions request body."""
    return {
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Hello, how are you?"},
        ],
    }


@pytest.fixture
def json_store(tmp_path) -> JSONRecordStore:
    """Empty JSON record store backed by a temp file."""
    return JSONRecordStore(str(tmp_path / "proxy_data.json"))


@pytest.fixture
def openai_config() -> ProviderConfig:
    return ProviderConfig(
        provider_id="openai",
        display_name="OpenAI",
        wire_family="openai",
        base_url="https://api.openai.com",
        probe_model="gpt-3.5-turbo",
    )


@pytest.fixture
def claude_config() -> ProviderConfig:
    return ProviderConfig(
        provider_id="claude",
        display_name="Anthropic Claude",
        wire_family="messages",
        base_url="https://api.anthropic.com",
        model_id="claude-3-opus-20240229",
    )


def make_pool(config: ProviderConfig, keys: list[str], status: str = ACTIVE) -> CredentialPool:
    """Pool with one provider whose credentials all start in ``status``."""
    pool = CredentialPool()
    pool.reload([(config, keys)])
    for key in keys:
        pool.record_health(config.provider_id, key, status)
    return pool


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(SECURITY_MODE="token", OPENAI_KEY="sk-1,sk-2")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


def make_stream_chunks(text: str, chunk_size: int = 5) -> list[StreamChunk]:
    """Build a list of StreamChunk objects from text, splitting into small deltas."""
    chunks = []
    for i in range(0, len(text), chunk_size):
        delta = text[i:i + chunk_size]
        data = json.dumps({
            "id": "chatcmpl-test",
            "object": "chat.completion.chunk",
            "choices": [{"index": 0, "delta": {"content": delta}, "finish_reason": None}],
        })
        chunks.append(StreamChunk(data=data, is_done=False, text_delta=delta))
    # Finish reason chunk
    finish_data = json.dumps({
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    })
    chunks.append(StreamChunk(data=finish_data, is_done=False, text_delta=""))
    # [DONE] sentinel
    chunks.append(StreamChunk(data="[DONE]", is_done=True, text_delta=""))
    return chunks


def sse_lines(*payloads: str) -> list[str]:
    """Upstream SSE lines as ``aiter_lines`` would yield them."""
    lines = []
    for payload in payloads:
        lines.append(f"data: {payload}")
        lines.append("")
    return lines
