import asyncio
import logging
import re
import threading
import weakref
from typing import AsyncIterable, BinaryIO, Dict, Iterator, Optional, Set

import pydantic

from ..providers.corner_color import CornerColorSampler
from ..providers.ffmpeg import FfmpegEncoder
from ..worker import ConversionWorker
from . import config
from .errors import NotFound, NotReady, StorageError, ValidationError
from .models import DEFAULT_AUDIO_BITRATE, DEFAULT_CRF, ConversionOptions
from .state import Job, JobRegistry, JobStatus
from .storage import TempStorage

logger = logging.getLogger("webm-converter")

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def parse_options(
    crf: Optional[str] = None,
    audio_bitrate: Optional[str] = None,
    detect_green: Optional[str] = None,
) -> ConversionOptions:
    """Build options from raw form values; blanks fall back to defaults."""
    values: Dict[str, object] = {}
    if crf is not None and str(crf).strip() != "":
        try:
            values["crf"] = int(str(crf).strip())
        except ValueError:
            raise ValidationError(f"crf must be an integer, got {crf!r}")
    else:
        values["crf"] = DEFAULT_CRF
    if audio_bitrate is not None and audio_bitrate.strip() != "":
        values["audio_bitrate"] = audio_bitrate
    else:
        values["audio_bitrate"] = DEFAULT_AUDIO_BITRATE
    if detect_green is not None:
        values["detect_green"] = detect_green
    try:
        return ConversionOptions(**values)
    except pydantic.ValidationError as e:
        msgs = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise ValidationError(msgs) from e


def validate_job_id(job_id: Optional[str]) -> Optional[str]:
    if job_id is None or job_id == "":
        return None
    if not _JOB_ID_RE.match(job_id):
        raise ValidationError("X-Job-Id must be 1-64 characters of [A-Za-z0-9_-]")
    return job_id


def _drop_delivery(service: "JobService", job_id: str, handle: BinaryIO) -> None:
    handle.close()
    service._abort_delivery(job_id)


class Delivery:
    """One claimed download. Finishing the stream reclaims the job.

    The claim is released exactly once: by a full transfer, by `close()`, or
    when the delivery is garbage collected without ever being streamed.
    """

    def __init__(self, service: "JobService", job: Job, handle: BinaryIO, chunk_size: int):
        self.service = service
        self.job = job
        self._handle = handle
        self._chunk_size = chunk_size
        self._release = weakref.finalize(self, _drop_delivery, service, job.id, handle)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def detected_color(self) -> Optional[str]:
        return self.job.detected_color

    @property
    def active(self) -> bool:
        return self._release.alive

    def chunks(self) -> Iterator[bytes]:
        delivered = False
        try:
            while chunk := self._handle.read(self._chunk_size):
                yield chunk
            delivered = True
        finally:
            # detach() returns None if close() already released the claim.
            if delivered and self._release.detach() is not None:
                self._handle.close()
                self.service._finish_delivery(self.job)
            else:
                self.close()

    def close(self) -> None:
        """Abandon the delivery; the output stays for another attempt. Idempotent."""
        self._release()


class JobService:
    """Submission, status and delivery for conversion jobs.

    Owns the orchestration tasks and the per-job claims that keep a delivery
    and a sweeper reclaim from touching the same job at once.
    """

    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        storage: Optional[TempStorage] = None,
        encoder=None,
        sampler=None,
        max_concurrent: int = config.MAX_CONCURRENT_ENCODES,
        encode_timeout: float = config.ENCODE_TIMEOUT_SECONDS,
        sample_timeout: float = config.SAMPLE_TIMEOUT_SECONDS,
        chunk_size: int = config.DOWNLOAD_CHUNK_BYTES,
    ):
        self.registry = registry or JobRegistry()
        self.storage = storage or TempStorage()
        self.chunk_size = chunk_size
        self.worker = ConversionWorker(
            self.registry,
            self.storage,
            encoder or FfmpegEncoder(),
            sampler or CornerColorSampler(),
            asyncio.Semaphore(max_concurrent),
            encode_timeout=encode_timeout,
            sample_timeout=sample_timeout,
        )
        self._tasks: Set[asyncio.Task] = set()
        self._claims: Dict[str, str] = {}
        self._claims_lock = threading.Lock()

    # --- submission -------------------------------------------------------

    async def submit(
        self,
        chunks: AsyncIterable[bytes],
        options: ConversionOptions,
        job_id: Optional[str] = None,
    ) -> str:
        job_id = validate_job_id(job_id)
        if job_id is not None and self.registry.was_issued(job_id):
            raise ValidationError(f"Job id already in use: {job_id}")
        input_path = await self.storage.stage(chunks)
        try:
            job_id = self.registry.create(options, input_path=str(input_path), job_id=job_id)
        except ValidationError:
            self.storage.release(input_path)
            raise
        task = asyncio.create_task(self.worker.run_job(job_id), name=f"convert-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Job %s: queued", job_id)
        return job_id

    # --- reads ------------------------------------------------------------

    def status(self, job_id: str) -> Job:
        return self.registry.require(job_id)

    def health(self) -> Dict[str, str]:
        return {"status": "ok", "version": config.VERSION}

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    # --- delivery and reclaim claims ---------------------------------------

    def claim(self, job_id: str, purpose: str) -> bool:
        with self._claims_lock:
            if job_id in self._claims:
                return False
            self._claims[job_id] = purpose
            return True

    def unclaim(self, job_id: str) -> None:
        with self._claims_lock:
            self._claims.pop(job_id, None)

    def open_delivery(self, job_id: str) -> Delivery:
        job = self.registry.require(job_id)
        if job.status != JobStatus.COMPLETE:
            raise NotReady(job_id, job.status.value, job.progress, job.error)
        if not self.claim(job_id, "delivery"):
            raise NotReady(job_id, job.status.value, job.progress, reason="Delivery already in progress")
        try:
            # The sweeper may have reclaimed the job between the read and the claim.
            job = self.registry.require(job_id)
            try:
                handle = open(job.output_path, "rb")
            except FileNotFoundError:
                raise NotFound(job_id)
            except OSError as e:
                raise StorageError(f"Failed to read result file: {e}") from e
        except BaseException:
            self.unclaim(job_id)
            raise
        return Delivery(self, job, handle, self.chunk_size)

    def reclaim(self, job: Job) -> None:
        """Release a job's artifacts and evict its record. Caller holds the claim."""
        for path in (job.output_path, job.input_path):
            if path and self.storage.owns(path):
                self.storage.release(path)
            elif path:
                logger.warning("Job %s: not deleting %s, outside the data dir", job.id, path)
        self.registry.remove(job.id)

    def _finish_delivery(self, job: Job) -> None:
        try:
            self.reclaim(job)
            logger.info("Job %s: delivered and cleaned up", job.id)
        finally:
            self.unclaim(job.id)

    def _abort_delivery(self, job_id: str) -> None:
        logger.warning("Job %s: download interrupted, output kept for another attempt", job_id)
        self.unclaim(job_id)

    # --- lifecycle --------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel in-flight conversions; each task kills its encoder and discards partial output."""
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("Cancelling %d in-flight conversion(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
