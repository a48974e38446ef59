import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .file_store import TRANSFORMATION_PREFIX, FileStore
from .schemas import utc_now
from .session_store import SessionStore


logger = logging.getLogger("uvicorn.error")


class SessionReaper:
    """Periodically drops sessions idle for longer than ``inactivity_hours``."""

    def __init__(
        self,
        store: SessionStore,
        file_store: FileStore,
        *,
        interval_s: float = 3600.0,
        inactivity_hours: float = 24.0,
    ):
        self.store = store
        self.file_store = file_store
        self.interval_s = interval_s
        self.inactivity_hours = inactivity_hours
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Session cleanup failed")

    async def sweep_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        threshold = timedelta(hours=self.inactivity_hours)
        removed = await self.store.reap_inactive(threshold, now or utc_now())
        in_use = await self.store.referenced_file_ids()
        orphaned = await self.file_store.sweep(self.inactivity_hours, kind=TRANSFORMATION_PREFIX, keep=in_use)
        if removed or orphaned:
            logger.info(
                "Cleanup removed %d inactive session(s) and %d old transformation file(s)",
                len(removed),
                orphaned,
            )
        return {"sessions": removed, "transformation_files": orphaned}
