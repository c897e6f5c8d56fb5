import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from . import config
from .jobs import JobService

logger = logging.getLogger("webm-converter.sweeper")


class Sweeper:
    """Periodic reaper for artifacts that outlived the retention window.

    Finished jobs are reclaimed whether or not anyone downloaded them.
    Jobs still processing belong to their orchestrator and are left alone.
    Files no live job refers to (e.g. left over from a crash) go too.
    """

    def __init__(
        self,
        service: JobService,
        retention_seconds: float = config.RETENTION_SECONDS,
        interval_seconds: float = config.SWEEP_INTERVAL_SECONDS,
    ):
        self.service = service
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds

    def sweep_once(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = datetime.fromtimestamp(now - self.retention_seconds, tz=timezone.utc)
        reclaimed = 0
        live_paths = set()
        for job in self.service.registry.snapshot():
            if not job.is_terminal or job.created_at > cutoff:
                live_paths.update(p for p in (job.input_path, job.output_path) if p)
                continue
            if not self.service.claim(job.id, "reclaim"):
                logger.info("Job %s: delivery in progress, skipping this sweep", job.id)
                live_paths.update(p for p in (job.input_path, job.output_path) if p)
                continue
            try:
                current = self.service.registry.get(job.id)
                if current is not None:
                    self.service.reclaim(current)
                    reclaimed += 1
                    logger.info("Job %s: expired after %gs, reclaimed", job.id, self.retention_seconds)
            finally:
                self.service.unclaim(job.id)
        reclaimed += self._sweep_orphans(now, live_paths)
        return reclaimed

    def _sweep_orphans(self, now: float, live_paths: set) -> int:
        removed = 0
        for path, mtime in self.service.storage.artifacts():
            if str(path) in live_paths or now - mtime <= self.retention_seconds:
                continue
            # Recheck against the registry: a job may have been created since the snapshot.
            if any(str(path) in (j.input_path, j.output_path) for j in self.service.registry.snapshot()):
                continue
            if self.service.storage.release(path):
                removed += 1
                logger.info("Removed orphaned artifact %s", path.name)
        return removed

    async def run_forever(self) -> None:
        logger.info(
            "Sweeper started (retention=%gs, interval=%gs)",
            self.retention_seconds, self.interval_seconds,
        )
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Sweep failed; retrying next interval")
