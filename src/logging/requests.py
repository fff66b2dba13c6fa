"""Per-request log records written to the record store in the background.

Request handling never waits on these writes. A failed write is logged and
dropped; the proxy keeps serving with a gap in the request log.
"""

import asyncio
from datetime import datetime, timedelta

from src.logging.audit import get_logger
from src.store.models import RequestLogEntry, utcnow
from src.store.store import RecordStore

logger = get_logger("requests")

DISABLED = "disabled"
ENABLED = "enabled"
AUTO_PURGE = "auto_purge"
MODES = (DISABLED, ENABLED, AUTO_PURGE)

PURGE_INTERVAL_SECONDS = 3600.0


class RequestLogService:
    def __init__(self, store: RecordStore, mode: str = DISABLED, purge_hours: int = 24):
        if mode not in MODES:
            raise ValueError(f"Unknown request log mode: {mode}")
        self._store = store
        self.mode = mode
        self.purge_hours = purge_hours if purge_hours > 0 else 24
        self._begins: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.mode != DISABLED

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def begin(
        self,
        request_id: str,
        provider: str,
        caller_name: str,
        payload: dict,
        character_name: str = "",
        detected_commands=(),
    ) -> None:
        """Record a pending entry (status 0) for a request that is about to be dispatched."""
        if not self.enabled:
            return
        entry = RequestLogEntry(
            request_id=request_id,
            provider=provider,
            token_name=caller_name,
            request_payload=payload,
            character_name=character_name,
            detected_commands=", ".join(sorted(detected_commands)),
        )
        self._begins[request_id] = self._spawn(self._insert(entry))

    def end(self, request_id: str, status_code: int, payload: dict | None) -> None:
        """Complete the entry; the update waits for its own insert to land first."""
        if not self.enabled:
            return
        begin = self._begins.pop(request_id, None)
        self._spawn(self._update(begin, request_id, status_code, payload))

    async def _insert(self, entry: RequestLogEntry) -> None:
        try:
            await self._store.insert_log(entry)
        except Exception:
            logger.exception("Failed to create request log entry", extra={"audit_data": {
                "log_request_id": entry.request_id,
            }})

    async def _update(
        self, begin: asyncio.Task | None, request_id: str, status_code: int, payload: dict | None
    ) -> None:
        if begin is not None:
            await begin
        try:
            await self._store.update_log(request_id, status_code, payload)
        except Exception:
            logger.exception("Failed to update request log entry", extra={"audit_data": {
                "log_request_id": request_id,
            }})

    async def drain(self) -> None:
        """Wait for every pending write."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def purge_old(self, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(hours=self.purge_hours)
        try:
            removed = await self._store.purge_logs(cutoff)
        except Exception:
            logger.exception("Request log purge failed")
            return 0
        if removed:
            logger.info("Purged old request logs", extra={"audit_data": {
                "removed": removed, "older_than_hours": self.purge_hours,
            }})
        return removed


async def run_purger(service: RequestLogService, interval: float = PURGE_INTERVAL_SECONDS) -> None:
    """Background task: purge old entries every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        if service.mode == AUTO_PURGE:
            await service.purge_old()


_service: RequestLogService | None = None


def get_request_log() -> RequestLogService:
    global _service
    if _service is None:
        from src.config.settings import get_settings
        from src.store.factory import get_record_store

        settings = get_settings()
        _service = RequestLogService(
            get_record_store(),
            mode=settings.request_log_mode,
            purge_hours=settings.request_log_purge_hours,
        )
    return _service
