import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from .errors import InvalidStateTransition, NotFound, ValidationError
from .models import ConversionOptions


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset([JobStatus.COMPLETE, JobStatus.FAILED])
# Reserved for the complete transition so pollers never see 100 before the file is final.
MAX_RUNNING_PROGRESS = 99


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """Immutable snapshot of a job. Transitions return a new snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus = JobStatus.PROCESSING
    progress: int = 0
    options: ConversionOptions
    created_at: datetime
    input_path: str | None = None
    output_path: str | None = None
    detected_color: str | None = None
    error: str | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _require_processing(self, target: JobStatus) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(self.id, self.status.value, target.value)

    def with_progress(self, progress: int) -> "Job":
        self._require_processing(JobStatus.PROCESSING)
        progress = max(self.progress, min(MAX_RUNNING_PROGRESS, int(progress)))
        if progress == self.progress:
            return self
        return self.model_copy(update={"progress": progress})

    def with_color(self, color: str) -> "Job":
        self._require_processing(JobStatus.PROCESSING)
        return self.model_copy(update={"detected_color": color})

    def complete(self, output_path: str) -> "Job":
        self._require_processing(JobStatus.COMPLETE)
        return self.model_copy(
            update={
                "status": JobStatus.COMPLETE,
                "progress": 100,
                "output_path": output_path,
                "finished_at": _now(),
            }
        )

    def fail(self, error: str) -> "Job":
        self._require_processing(JobStatus.FAILED)
        return self.model_copy(
            update={
                "status": JobStatus.FAILED,
                "error": error or "conversion failed",
                "finished_at": _now(),
            }
        )


class JobRegistry:
    """In-memory job table.

    Writers serialize on a lock and swap in a new immutable snapshot; readers
    do a plain dict lookup and never wait on a writer.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        # Ids stay issued after their record is evicted.
        self._issued: Set[str] = set()
        self._write_lock = threading.Lock()

    def create(
        self,
        options: ConversionOptions,
        input_path: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        job_id = job_id or uuid.uuid4().hex
        with self._write_lock:
            if job_id in self._issued:
                raise ValidationError(f"Job id already in use: {job_id}")
            self._jobs[job_id] = Job(
                id=job_id,
                options=options,
                input_path=input_path,
                created_at=_now(),
            )
            self._issued.add(job_id)
        return job_id

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def was_issued(self, job_id: str) -> bool:
        return job_id in self._issued

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def update(self, job_id: str, mutator: Callable[[Job], Job]) -> Job:
        with self._write_lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise NotFound(job_id)
            updated = mutator(current)
            if updated is not current:
                self._jobs[job_id] = updated
            return updated

    def remove(self, job_id: str) -> Optional[Job]:
        with self._write_lock:
            return self._jobs.pop(job_id, None)

    def snapshot(self) -> List[Job]:
        with self._write_lock:
            return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)
