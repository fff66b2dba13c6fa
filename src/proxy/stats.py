"""Process-wide usage counters."""

import threading


class ProxyStats:
    def __init__(self):
        self._lock = threading.Lock()
        self._prompt_count = 0
        self._input_tokens = 0
        self._output_tokens = 0

    def increment_prompt_count(self) -> None:
        with self._lock:
            self._prompt_count += 1

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            self._input_tokens += max(0, input_tokens)
            self._output_tokens += max(0, output_tokens)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "prompt_count": self._prompt_count,
                "input_tokens": self._input_tokens,
                "output_tokens": self._output_tokens,
            }


_stats: ProxyStats | None = None


def get_stats() -> ProxyStats:
    global _stats
    if _stats is None:
        _stats = ProxyStats()
    return _stats
