"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

UNLIMITED = "Unlimited"


class Settings(BaseSettings):
    # Inbound security
    security_mode: str = "none"  # none | password | token
    proxy_password: str = ""

    # Built-in providers: comma-separated upstream keys
    openai_key: str = ""
    deepseek_key: str = ""
    openrouter_key: str = ""
    mistral_key: str = ""
    claude_key: str = ""
    claude_model_id: str = "claude-3-opus-20240229"

    # Token ceilings per built-in provider ("Unlimited" or an integer)
    max_context_openai: str = UNLIMITED
    max_output_openai: str = UNLIMITED
    max_context_deepseek: str = UNLIMITED
    max_output_deepseek: str = UNLIMITED
    max_context_openrouter: str = UNLIMITED
    max_output_openrouter: str = UNLIMITED
    max_context_mistral: str = UNLIMITED
    max_output_mistral: str = UNLIMITED
    max_context_claude: str = UNLIMITED
    max_output_claude: str = UNLIMITED

    # Record store
    store_backend: str = "json"  # "json" | "dynamodb"
    store_path: str = "proxy_data.json"
    dynamodb_table_name: str = "yomi-proxy"
    aws_region: str = "us-east-1"

    # Upstream + background timing
    upstream_timeout: float = 20.0
    health_check_timeout: float = 20.0
    failure_threshold: int = 20
    rate_window_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0

    # Request log collaborator
    request_log_mode: str = "disabled"  # disabled | enabled | auto_purge
    request_log_purge_hours: int = 24

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def provider_keys(self, provider_id: str) -> list[str]:
        """Parse the comma-separated key list for a built-in provider."""
        raw = getattr(self, f"{provider_id}_key", "") or ""
        return [k.strip() for k in raw.split(",") if k.strip()]

    def token_ceiling(self, kind: str, provider_id: str) -> int | None:
        """Return max_context/max_output for a built-in provider, None when unlimited."""
        return parse_token_limit(getattr(self, f"max_{kind}_{provider_id}", UNLIMITED))


def parse_token_limit(value) -> int | None:
    """Normalize a configured ceiling. Empty, "Unlimited" or garbage means no ceiling."""
    if value is None or value == "" or str(value).strip().lower() == UNLIMITED.lower():
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return None
    return limit if limit > 0 else None


@lru_cache
def get_settings() -> Settings:
    return Settings()
