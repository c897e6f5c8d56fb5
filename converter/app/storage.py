import logging
import os
import uuid
from pathlib import Path
from typing import AsyncIterable, Iterator, Optional, Tuple

from . import config
from .errors import StorageError, UploadTooLarge, ValidationError

logger = logging.getLogger("webm-converter")


class TempStorage:
    """On-disk artifacts for uploads and encoder output.

    Inputs live under `<root>/inputs`, outputs under `<root>/outputs`. Every
    path handed out is fresh for this process.
    """

    def __init__(self, root: Optional[str] = None, max_upload_bytes: int = config.MAX_UPLOAD_BYTES):
        self.root = Path(root or config.DATA_DIR)
        self.input_dir = self.root / "inputs"
        self.output_dir = self.root / "outputs"
        self.max_upload_bytes = max_upload_bytes
        self.input_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    async def stage(self, chunks: AsyncIterable[bytes]) -> Path:
        """Write an upload stream to a fresh input file and return its path.

        Fails fast once the stream passes `max_upload_bytes`; the partial
        file is removed on every error path.
        """
        path = self.input_dir / f"{uuid.uuid4().hex}.upload"
        total = 0
        try:
            with open(path, "wb") as f:
                async for chunk in chunks:
                    total += len(chunk)
                    if total > self.max_upload_bytes:
                        raise UploadTooLarge(self.max_upload_bytes)
                    f.write(chunk)
        except OSError as e:
            self.release(path)
            raise StorageError(f"Failed to save upload: {e}") from e
        except BaseException:
            self.release(path)
            raise
        if total == 0:
            self.release(path)
            raise ValidationError("Uploaded file is empty")
        logger.info("Staged upload %s (%d bytes)", path.name, total)
        return path

    def allocate_output(self, job_id: str) -> Path:
        return self.output_dir / f"{job_id}-{uuid.uuid4().hex[:8]}.webm"

    def release(self, path) -> bool:
        """Delete one artifact. Already gone counts as success."""
        if not path:
            return False
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            return False

    def owns(self, path) -> bool:
        try:
            resolved = Path(path).resolve()
        except OSError:
            return False
        return any(
            resolved.is_relative_to(d.resolve()) for d in (self.input_dir, self.output_dir)
        )

    def artifacts(self) -> Iterator[Tuple[Path, float]]:
        for d in (self.input_dir, self.output_dir):
            try:
                entries = list(d.iterdir())
            except FileNotFoundError:
                continue
            for p in entries:
                try:
                    st = p.stat()
                except FileNotFoundError:
                    continue
                if p.is_file():
                    yield p, st.st_mtime
