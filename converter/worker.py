import asyncio
import logging
import os
from typing import Optional

from .app import config
from .app.errors import EncodingError, InvalidStateTransition, NotFound, StorageError
from .app.state import JobRegistry
from .app.storage import TempStorage
from .providers.ffmpeg import compute_progress

logger = logging.getLogger("webm-converter.worker")

CANCELLED_DIAGNOSTIC = "conversion cancelled: service shutting down"
INTERNAL_DIAGNOSTIC = "internal error during conversion"


class ConversionWorker:
    """Drives one job at a time from staged input to a finished WebM.

    Each job runs as its own task through `run_job`; that task is the only
    writer of the job's record and the only owner of its encoder process.
    """

    def __init__(
        self,
        registry: JobRegistry,
        storage: TempStorage,
        encoder,
        sampler,
        slots: asyncio.Semaphore,
        encode_timeout: float = config.ENCODE_TIMEOUT_SECONDS,
        sample_timeout: float = config.SAMPLE_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.storage = storage
        self.encoder = encoder
        self.sampler = sampler
        self.slots = slots
        self.encode_timeout = encode_timeout
        self.sample_timeout = sample_timeout

    async def run_job(self, job_id: str) -> None:
        job = self.registry.get(job_id)
        if job is None:
            logger.warning("Job %s vanished before processing started", job_id)
            return
        input_path: Optional[str] = job.input_path
        output_path: Optional[str] = None
        try:
            if self.slots.locked():
                logger.info("Job %s: waiting for a free encoder slot", job_id)
            async with self.slots:
                logger.info(
                    "Job %s: started (crf=%s, audio=%s, detect_green=%s)",
                    job_id, job.options.crf, job.options.audio_bitrate, job.options.detect_green,
                )
                duration = await self.encoder.probe_duration(input_path)
                if job.options.detect_green:
                    await self._sample_color(job_id, input_path, duration)
                output_path = str(self.storage.allocate_output(job_id))
                await asyncio.wait_for(
                    self._encode(job_id, input_path, output_path, job.options, duration),
                    self.encode_timeout,
                )
            size = self._verify_output(output_path)
            # Input is never needed again once the encoder has exited.
            self.storage.release(input_path)
            input_path = None
            finished = output_path
            self.registry.update(job_id, lambda j: j.complete(finished))
            output_path = None
            logger.info("Job %s: complete (%d bytes)", job_id, size)
        except asyncio.CancelledError:
            self._fail(job_id, CANCELLED_DIAGNOSTIC)
            raise
        except asyncio.TimeoutError:
            self._fail(job_id, f"encoder timed out after {self.encode_timeout:g}s")
        except EncodingError as e:
            self._fail(job_id, e.diagnostic)
        except StorageError as e:
            self._fail(job_id, f"storage error: {e}")
        except OSError as e:
            self._fail(job_id, f"storage error: {e}")
        except Exception:
            logger.exception("Job %s: unexpected failure", job_id)
            self._fail(job_id, INTERNAL_DIAGNOSTIC)
        finally:
            self.storage.release(input_path)
            if output_path:
                self.storage.release(output_path)

    async def _encode(self, job_id, input_path, output_path, options, duration) -> None:
        stream = self.encoder.transcode(input_path, output_path, options)
        try:
            async for processed in stream:
                progress = compute_progress(processed, duration)
                self.registry.update(job_id, lambda j: j.with_progress(progress))
        finally:
            await stream.aclose()

    async def _sample_color(self, job_id: str, input_path: str, duration: float) -> None:
        try:
            color = await asyncio.wait_for(
                self.sampler.sample(input_path, duration), self.sample_timeout
            )
        except Exception as e:
            logger.warning("Job %s: color sampling failed, continuing without it: %s", job_id, e)
            return
        self.registry.update(job_id, lambda j: j.with_color(color))
        logger.info("Job %s: detected corner color %s", job_id, color)

    @staticmethod
    def _verify_output(output_path: str) -> int:
        # A zero exit alone is not trusted; a killed or truncated run can still exit 0.
        try:
            size = os.path.getsize(output_path)
        except FileNotFoundError:
            raise EncodingError("encoder exited cleanly but produced no output file")
        if size == 0:
            raise EncodingError("encoder exited cleanly but the output file is empty")
        return size

    def _fail(self, job_id: str, diagnostic: str) -> None:
        try:
            self.registry.update(job_id, lambda j: j.fail(diagnostic))
        except (NotFound, InvalidStateTransition) as e:
            logger.warning("Job %s: could not record failure (%s): %s", job_id, e, diagnostic)
            return
        logger.info("Job %s: failed: %s", job_id, diagnostic)
