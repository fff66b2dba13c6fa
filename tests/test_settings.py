"""Tests for src/config/settings.py — Settings, key lists and token ceilings."""

import pytest

from src.config.settings import Settings, get_settings, parse_token_limit


class TestSettings:

    def test_defaults(self, override_settings):
        override_settings()
        s = Settings(_env_file=None)
        assert s.security_mode == "none"
        assert s.store_backend == "json"
        assert s.request_log_mode == "disabled"
        assert s.failure_threshold == 20
        assert s.log_level == "INFO"

    def test_env_override(self, override_settings):
        override_settings(SECURITY_MODE="token", UPSTREAM_TIMEOUT="5", REQUEST_LOG_PURGE_HOURS="6")
        s = get_settings()
        assert s.security_mode == "token"
        assert s.upstream_timeout == 5.0
        assert s.request_log_purge_hours == 6


class TestProviderKeys:

    def test_single(self, override_settings):
        override_settings(OPENAI_KEY="sk-1")
        assert get_settings().provider_keys("openai") == ["sk-1"]

    def test_multiple_stripped(self, override_settings):
        override_settings(DEEPSEEK_KEY="k1, k2 ,,k3,")
        assert get_settings().provider_keys("deepseek") == ["k1", "k2", "k3"]

    def test_unknown_provider_empty(self):
        assert Settings(_env_file=None).provider_keys("nobody") == []


class TestTokenCeilings:

    @pytest.mark.parametrize("raw,expected", [
        ("Unlimited", None),
        ("unlimited", None),
        ("", None),
        (None, None),
        ("abc", None),
        ("0", None),
        ("-5", None),
        ("8192", 8192),
        (4096, 4096),
    ])
    def test_parse_token_limit(self, raw, expected):
        assert parse_token_limit(raw) == expected

    def test_per_provider_ceiling(self, override_settings):
        override_settings(MAX_OUTPUT_CLAUDE="1024")
        s = get_settings()
        assert s.token_ceiling("output", "claude") == 1024
        assert s.token_ceiling("context", "claude") is None
