import asyncio
import gc
import os
import time

import pytest

from conftest import FAKE_WEBM, FakeEncoder, FakeSampler, chunks_of, run
from converter.app.errors import NotFound, NotReady, UploadTooLarge, ValidationError
from converter.app.jobs import JobService
from converter.app.models import ConversionOptions
from converter.app.state import JobStatus
from converter.app.sweeper import Sweeper


async def _submit_and_finish(service, payloads, **kwargs):
    ids = await asyncio.gather(
        *(service.submit(chunks_of(p), ConversionOptions(), **kwargs) for p in payloads)
    )
    while service.active_tasks:
        await asyncio.sleep(0.01)
    return ids


def test_concurrent_submissions_get_distinct_ids(service):
    ids = run(_submit_and_finish(service, [b"same-bytes"] * 8))
    assert len(set(ids)) == 8
    for job_id in ids:
        assert service.status(job_id).status == JobStatus.COMPLETE
    outputs = {service.status(i).output_path for i in ids}
    assert len(outputs) == 8


def test_submit_rejects_oversize_without_a_record(service):
    with pytest.raises(UploadTooLarge):
        run(service.submit(chunks_of(b"x" * (service.storage.max_upload_bytes + 10)), ConversionOptions()))
    assert len(service.registry) == 0
    assert list(service.storage.input_dir.iterdir()) == []


def test_duplicate_supplied_id_is_rejected_and_releases_nothing_extra(service):
    run(_submit_and_finish(service, [b"one"], job_id="abc"))
    with pytest.raises(ValidationError):
        run(service.submit(chunks_of(b"two"), ConversionOptions(), job_id="abc"))
    assert len(service.registry) == 1
    assert list(service.storage.input_dir.iterdir()) == []


def test_delivery_streams_then_reclaims(service):
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    output = service.status(job_id).output_path
    delivery = service.open_delivery(job_id)
    assert b"".join(delivery.chunks()) == FAKE_WEBM
    with pytest.raises(NotFound):
        service.status(job_id)
    assert not os.path.exists(output)


def test_only_one_delivery_at_a_time(service):
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    first = service.open_delivery(job_id)
    with pytest.raises(NotReady) as exc:
        service.open_delivery(job_id)
    assert exc.value.status == "complete"
    # The first caller still gets the whole file.
    assert b"".join(first.chunks()) == FAKE_WEBM


def test_interrupted_delivery_keeps_the_output(service):
    service.chunk_size = 16
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    stream = service.open_delivery(job_id).chunks()
    next(stream)
    stream.close()
    # Claim released; a retry can download the full file.
    retry = service.open_delivery(job_id)
    assert b"".join(retry.chunks()) == FAKE_WEBM


def test_delivery_of_unfinished_or_failed_job(storage):
    service = JobService(storage=storage, encoder=FakeEncoder(fail_with="boom"), sampler=FakeSampler())
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    with pytest.raises(NotReady) as exc:
        service.open_delivery(job_id)
    assert exc.value.status == "failed"
    assert exc.value.error == "boom"


def test_delivery_when_output_vanished(service):
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    service.storage.release(service.status(job_id).output_path)
    with pytest.raises(NotFound):
        service.open_delivery(job_id)
    # The claim does not leak.
    assert service.claim(job_id, "reclaim")


def test_shutdown_cancels_running_tasks(storage):
    encoder = FakeEncoder().hold()
    service = JobService(storage=storage, encoder=encoder, sampler=FakeSampler())

    async def scenario():
        job_id = await service.submit(chunks_of(b"clip"), ConversionOptions())
        while not encoder.started.is_set():
            await asyncio.sleep(0.01)
        await service.shutdown()
        return job_id

    job_id = run(scenario())
    assert service.status(job_id).status == JobStatus.FAILED
    assert service.active_tasks == 0


def test_delivery_never_streamed_releases_claim_when_dropped(service):
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    delivery = service.open_delivery(job_id)
    # Response torn down before the body started: the generator is closed unstarted.
    delivery.chunks().close()
    assert delivery.active
    del delivery
    gc.collect()
    retry = service.open_delivery(job_id)
    assert b"".join(retry.chunks()) == FAKE_WEBM


def test_closed_delivery_frees_the_job_for_the_sweeper(service):
    (job_id,) = run(_submit_and_finish(service, [b"clip"]))
    output = service.status(job_id).output_path
    delivery = service.open_delivery(job_id)
    delivery.close()
    delivery.close()
    assert not delivery.active
    assert Sweeper(service, retention_seconds=0).sweep_once(now=time.time() + 10) >= 1
    with pytest.raises(NotFound):
        service.status(job_id)
    assert not os.path.exists(output)


def test_delivered_id_cannot_be_reused(service):
    run(_submit_and_finish(service, [b"one"], job_id="abc"))
    assert b"".join(service.open_delivery("abc").chunks()) == FAKE_WEBM
    with pytest.raises(ValidationError):
        run(service.submit(chunks_of(b"two"), ConversionOptions(), job_id="abc"))
    with pytest.raises(NotFound):
        service.status("abc")
    assert list(service.storage.input_dir.iterdir()) == []


def test_reclaim_leaves_files_outside_the_data_dir(service, tmp_path):
    outside = tmp_path / "elsewhere.webm"
    outside.write_bytes(b"not ours")
    job_id = service.registry.create(ConversionOptions())
    job = service.registry.update(job_id, lambda j: j.complete(str(outside)))
    service.reclaim(job)
    assert outside.exists()
    assert service.registry.get(job_id) is None
