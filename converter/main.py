import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from .app import config
from .app.errors import NotFound, NotReady, StorageError, UploadTooLarge, ValidationError
from .app.jobs import JobService, parse_options
from .app.models import HealthResponse, StatusResponse, UploadResponse
from .app.sweeper import Sweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("webm-converter")

UPLOAD_READ_BYTES = 1024 * 1024


async def _iter_upload(file: UploadFile):
    while chunk := await file.read(UPLOAD_READ_BYTES):
        yield chunk


def create_app(service: Optional[JobService] = None, sweeper: Optional[Sweeper] = None) -> FastAPI:
    service = service or JobService()
    sweeper = sweeper or Sweeper(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task = asyncio.create_task(sweeper.run_forever(), name="sweeper")
        try:
            yield
        finally:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
            await service.shutdown()

    app = FastAPI(title="WebM Converter", version=config.VERSION, lifespan=lifespan)
    app.state.service = service
    app.state.sweeper = sweeper

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        status_code = 413 if isinstance(exc, UploadTooLarge) else 400
        return JSONResponse({"error": str(exc)}, status_code=status_code)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return JSONResponse({"error": "Job not found"}, status_code=404)

    @app.exception_handler(NotReady)
    async def _not_ready(request: Request, exc: NotReady):
        body = {"error": str(exc), "status": exc.status, "progress": exc.progress}
        if exc.error:
            body["details"] = exc.error
        return JSONResponse(body, status_code=409)

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=500)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return service.health()

    @app.post("/upload", response_model=UploadResponse)
    async def upload_video(
        file: UploadFile = File(...),
        crf: Optional[str] = Form(default=None),
        audio_bitrate: Optional[str] = Form(default=None),
        detect_green: Optional[str] = Form(default=None),
        x_job_id: Optional[str] = Header(default=None),
    ):
        options = parse_options(crf, audio_bitrate, detect_green)
        if file.size is not None and file.size > service.storage.max_upload_bytes:
            raise UploadTooLarge(service.storage.max_upload_bytes)
        job_id = await service.submit(_iter_upload(file), options, job_id=x_job_id)
        return UploadResponse(job_id=job_id, status="processing")

    @app.get("/status/{job_id}", response_model=StatusResponse)
    def check_status(job_id: str):
        job = service.status(job_id)
        return StatusResponse(
            status=job.status.value,
            progress=job.progress,
            detected_color=job.detected_color,
            error=job.error,
        )

    @app.get("/download/{job_id}")
    def download_result(job_id: str):
        delivery = service.open_delivery(job_id)
        headers = {"Content-Disposition": f'attachment; filename="{job_id}.webm"'}
        if delivery.detected_color:
            headers["X-Detected-Color"] = delivery.detected_color
        return StreamingResponse(delivery.chunks(), media_type="video/webm", headers=headers)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
