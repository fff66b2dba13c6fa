"""Error types the route boundary distinguishes before generic handling."""

import json


class UserInputError(Exception):
    """A caller mistake (conflicting commands, wrong model, nothing to send).

    Always answered with 400 and never counted against credential health.
    """

    def __init__(self, message: str, error_type: str = "invalid_request_error"):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class UpstreamError(Exception):
    """The upstream provider answered with a non-2xx status."""

    def __init__(self, status_code: int, body: dict):
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body


def parse_error_body(raw: str, status_code: int) -> dict:
    """Best-effort decode of an upstream error body, falling back to raw text."""
    if not raw or not raw.strip():
        return {"error": f"Upstream provider returned HTTP {status_code} with an empty body."}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"error": "Failed to parse error response from provider", "detail": raw}
    return parsed if isinstance(parsed, dict) else {"error": parsed}
