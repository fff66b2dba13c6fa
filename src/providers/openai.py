"""OpenAI-compatible wire family (OpenAI, DeepSeek, OpenRouter, Mistral, custom)."""

import json

from src.keys.pool import ProviderConfig
from src.providers.base import StreamChunk, WireAdapter
from src.proxy.errors import UserInputError


class OpenAICompatibleAdapter(WireAdapter):
    """Forwards requests to OpenAI-compatible chat completion APIs."""

    def endpoint(self, config: ProviderConfig) -> str:
        return f"{config.base_url.rstrip('/')}/v1/chat/completions"

    def headers(self, api_key: str) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def build_request(self, messages: list[dict], body: dict, config: ProviderConfig) -> dict:
        requested = body.get("model")
        if config.enforced_model_name and requested != config.enforced_model_name:
            raise UserInputError(
                f"The model `{requested}` does not exist for this provider. "
                f"Please use the correct model: `{config.enforced_model_name}`."
            )

        forward = {**body, "messages": messages}
        if config.model_id:
            forward["model"] = config.model_id
        if config.max_output_tokens is not None:
            forward["max_tokens"] = config.max_output_tokens
        return forward

    def parse_response(self, data: dict, config: ProviderConfig) -> dict:
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens") or 0
        completion_tokens = usage.get("completion_tokens") or 0
        data["usage"] = {
            **usage,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": usage.get("total_tokens") or prompt_tokens + completion_tokens,
        }
        return data

    def parse_stream_chunk(self, payload: str, config: ProviderConfig) -> StreamChunk | None:
        # Chunks are forwarded untouched; the delta is only read for accounting
        text_delta = ""
        try:
            chunk = json.loads(payload)
            choices = chunk.get("choices", [])
            if choices:
                delta = choices[0].get("delta", {})
                text_delta = delta.get("content", "") or ""
        except (json.JSONDecodeError, AttributeError):
            pass

        return StreamChunk(data=payload, is_done=False, text_delta=text_delta)

    def health_check_body(self, config: ProviderConfig) -> dict:
        return {
            "model": config.health_model,
            "messages": [{"role": "user", "content": "hello"}],
            "max_tokens": 1,
        }
