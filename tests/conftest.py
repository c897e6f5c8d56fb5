"""Pytest configuration and shared fixtures."""

import asyncio
import os
import threading
import time
from pathlib import Path

import pytest

from converter.app.errors import EncodingError
from converter.app.jobs import JobService
from converter.app.storage import TempStorage

FAKE_WEBM = b"\x1aE\xdf\xa3" + b"fake-webm-payload" * 64


class FakeEncoder:
    """Stands in for FfmpegEncoder: same coroutine surface, no subprocess."""

    def __init__(
        self,
        duration: float = 2.0,
        steps=(0.5, 1.0, 1.5, 2.0),
        output: bytes | None = FAKE_WEBM,
        fail_with: str | None = None,
        probe_error: str | None = None,
        raise_exc: BaseException | None = None,
        delay: float = 0.0,
    ):
        self.duration = duration
        self.steps = steps
        self.output = output
        self.fail_with = fail_with
        self.probe_error = probe_error
        self.raise_exc = raise_exc
        self.delay = delay
        # Set from the test thread to let a held conversion finish.
        self.release = threading.Event()
        self.release.set()
        self.started = threading.Event()
        self.calls = []
        self.closed = 0

    def hold(self):
        self.release.clear()
        return self

    async def probe_duration(self, input_path):
        if self.probe_error:
            raise EncodingError(self.probe_error)
        return self.duration

    async def transcode(self, input_path, output_path, options):
        self.calls.append((input_path, output_path, options))
        self.started.set()
        try:
            for processed in self.steps:
                while not self.release.is_set():
                    await asyncio.sleep(0.01)
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield processed
            # Write first so failure paths have a partial artifact to discard.
            if self.output is not None:
                Path(output_path).write_bytes(self.output)
            if self.raise_exc is not None:
                raise self.raise_exc
            if self.fail_with:
                raise EncodingError(self.fail_with)
        finally:
            self.closed += 1


class FakeSampler:
    def __init__(self, color: str = "0x00FF00", error: BaseException | None = None):
        self.color = color
        self.error = error
        self.calls = 0

    async def sample(self, input_path, duration):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.color


@pytest.fixture
def storage(tmp_path: Path) -> TempStorage:
    return TempStorage(root=str(tmp_path / "data"), max_upload_bytes=64 * 1024)


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def service(storage, encoder, sampler) -> JobService:
    return JobService(storage=storage, encoder=encoder, sampler=sampler, max_concurrent=2)


async def chunks_of(data: bytes, size: int = 1024):
    for i in range(0, len(data), size):
        yield data[i:i + size]


def run(coro):
    return asyncio.run(coro)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met before timeout")


def write_stub(path: Path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body)
    os.chmod(path, 0o755)
    return str(path)
