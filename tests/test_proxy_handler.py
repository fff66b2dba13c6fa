"""Tests for src/proxy/handler.py — adapter dispatch and outcome reporting."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.keys.pool import ACTIVE, OVER_QUOTA, REVOKED, Credential
from src.providers.base import ProviderResponse, StreamChunk
from src.proxy.handler import close_client, forward_to_provider, open_stream, report_outcome
from tests.conftest import make_pool


def _status(pool, value):
    return pool._providers["openai"].find(value).status


class TestReportOutcome:

    def test_success_resets_failures(self, openai_config):
        pool = make_pool(openai_config, ["k1"])
        report_outcome(pool, "openai", "k1", 429)
        report_outcome(pool, "openai", "k1", 200)
        assert pool._providers["openai"].find("k1").consecutive_failures == 0

    def test_402_marks_over_quota(self, openai_config):
        pool = make_pool(openai_config, ["k1"])
        report_outcome(pool, "openai", "k1", 402)
        assert _status(pool, "k1") == OVER_QUOTA

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_failures_revoke(self, openai_config, status_code):
        pool = make_pool(openai_config, ["k1"])
        report_outcome(pool, "openai", "k1", status_code)
        assert _status(pool, "k1") == REVOKED

    def test_429_counts_toward_threshold(self, openai_config):
        pool = make_pool(openai_config, ["k1"])
        report_outcome(pool, "openai", "k1", 429)
        credential = pool._providers["openai"].find("k1")
        assert credential.consecutive_failures == 1
        assert credential.status == ACTIVE

    @pytest.mark.parametrize("status_code", [400, 404, 500, 502])
    def test_other_failures_leave_credential_alone(self, openai_config, status_code):
        pool = make_pool(openai_config, ["k1"])
        report_outcome(pool, "openai", "k1", status_code)
        credential = pool._providers["openai"].find("k1")
        assert credential.status == ACTIVE
        assert credential.consecutive_failures == 0


class TestForwardToProvider:

    async def test_routes_by_wire_family(self, claude_config):
        mock_adapter = AsyncMock()
        mock_adapter.chat_completion.return_value = ProviderResponse(status_code=200, body={"choices": []})
        credential = Credential(value="sk-up", provider_id="claude", status=ACTIVE)
        messages = [{"role": "user", "content": "hi"}]

        with patch("src.proxy.handler.get_adapter", return_value=mock_adapter) as mock_get:
            result = await forward_to_provider(messages, {"model": "x"}, credential, claude_config)

        mock_get.assert_called_once_with("messages")
        mock_adapter.chat_completion.assert_called_once_with(
            messages, {"model": "x"}, "sk-up", claude_config,
        )
        assert result.status_code == 200


class TestOpenStream:

    async def test_primes_first_chunk(self, openai_config):
        async def fake_stream(*args):
            yield StreamChunk(data="{}", is_done=False, text_delta="Hi")
            yield StreamChunk(data="[DONE]", is_done=True, text_delta="")

        adapter = MagicMock()
        adapter.chat_completion_stream = fake_stream
        credential = Credential(value="sk-up", provider_id="openai", status=ACTIVE)

        with patch("src.proxy.handler.get_adapter", return_value=adapter):
            first, stream = await open_stream([], {}, credential, openai_config)

        assert first.text_delta == "Hi"
        rest = [chunk async for chunk in stream]
        assert [c.is_done for c in rest] == [True]

    async def test_empty_stream(self, openai_config):
        async def fake_stream(*args):
            return
            yield

        adapter = MagicMock()
        adapter.chat_completion_stream = fake_stream
        credential = Credential(value="sk-up", provider_id="openai", status=ACTIVE)

        with patch("src.proxy.handler.get_adapter", return_value=adapter):
            first, _ = await open_stream([], {}, credential, openai_config)

        assert first is None


class TestCloseClient:

    async def test_delegates_to_close_all(self):
        with patch("src.proxy.handler.close_all_adapters", new_callable=AsyncMock) as mock_close:
            await close_client()
            mock_close.assert_called_once()
