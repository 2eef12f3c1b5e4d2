import io

import numpy as np
import pytest
from PIL import Image

from common.errors import TransientIOError
from common.job_schema import JobStatus, Tile, TileStatus
from worker import canvas as canvas_io
from worker.compositor import CompositeOutcome, checkpoint_path, expected_tile_size
from worker.worker import build_handlers, drain_tasks

from conftest import gradient_png, png_bytes


def decode(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def run_until_done(registry, compositor, watchdog, job_id, max_rounds=50):
    handlers = build_handlers(compositor, watchdog)
    for _ in range(max_rounds):
        if registry.get_job(job_id).status in (JobStatus.COMPLETE, JobStatus.FAILED):
            return registry.get_job(job_id)
        drain_tasks(registry, handlers)
    raise AssertionError("compositing did not finish")


GRID_2x2 = ((0, 0), (1, 0), (0, 1), (1, 1))
COLOURS = ((255, 0, 0, 255), (0, 255, 0, 255), (0, 0, 255, 255), (255, 255, 0, 255))


def coloured(index, size):
    return png_bytes(size, COLOURS[index])


def checkpoint_blobs(store, compositor, job):
    folder = store.root / compositor.checkpoint_bucket / job.user_id / job.id
    return sorted(p.name for p in folder.glob("*.png")) if folder.exists() else []


def assert_tile_colours(store, job):
    """Centre of each 128px tile on the 224px canvas that no later tile covers."""
    final = np.asarray(decode(store.fetch(job.final_image_url)), dtype=np.int16)
    for (y, x), colour in zip(((64, 64), (64, 160), (160, 64), (160, 160)), COLOURS):
        assert np.abs(final[y, x] - colour[:3]).max() <= 16, (x, y)


def test_worked_example_composites_fully_opaque_canvas(make_job, make_compositor, registry, store, watchdog):
    job = make_job(cells=GRID_2x2, tile_size=768, overlap=96, scale=2.0, canvas=(2048, 2048))
    assert expected_tile_size(job) == (1536, 1536)
    compositor = make_compositor(batch_size=2)

    assert compositor.composite(job.id) is CompositeOutcome.CHECKPOINTED
    saved = registry.get_job(job.id)
    checkpoint = decode(store.get(compositor.checkpoint_bucket, saved.checkpoint_path))
    assert checkpoint.mode == "RGB"
    assert checkpoint.size == (2048, 2048)

    done = run_until_done(registry, compositor, watchdog, job.id)
    assert done.status is JobStatus.COMPLETE
    assert done.final_image_url.endswith("tiled-upscale-final-2048x2048.jpg")
    final = decode(store.fetch(done.final_image_url))
    assert final.size == (2048, 2048)
    assert final.mode == "RGB"


def test_single_pass_completes_and_clears_lease(make_job, compositor, registry, store):
    job = make_job(cells=GRID_2x2)

    assert compositor.composite(job.id) is CompositeOutcome.COMPLETED

    done = registry.get_job(job.id)
    assert done.status is JobStatus.COMPLETE
    assert done.lease_owner is None
    assert done.lease_expires_at is None
    assert done.checkpoint_path is None
    assert done.comp_next_index == 4
    assert decode(store.fetch(done.final_image_url)).size == (job.canvas_width, job.canvas_height)


def test_single_shot_engine_reuses_tile_url_without_canvas(make_job, compositor, registry, monkeypatch):
    job = make_job(cells=((0, 0),), tile_size=None, overlap=0, canvas=(300, 200), engine="comfyui_full")
    tile = registry.get_tiles(job.id)[0]

    def no_canvas(*args, **kwargs):
        raise AssertionError("canvas allocated on the single-shot path")
    monkeypatch.setattr(canvas_io, "new_canvas", no_canvas)

    assert compositor.composite(job.id) is CompositeOutcome.COMPLETED
    done = registry.get_job(job.id)
    assert done.status is JobStatus.COMPLETE
    assert done.final_image_url == tile.result_url
    assert done.lease_owner is None


def test_full_size_tile_with_tiled_engine_goes_through_canvas(make_job, compositor, registry, store):
    job = make_job(cells=((0, 0),), tile_size=None, overlap=0, canvas=(300, 200))

    assert compositor.composite(job.id) is CompositeOutcome.COMPLETED
    done = registry.get_job(job.id)
    assert done.final_image_url != registry.get_tiles(job.id)[0].result_url
    assert decode(store.fetch(done.final_image_url)).size == (300, 200)


def test_live_lease_held_elsewhere_is_a_noop(make_job, compositor, registry, queue):
    job = make_job(cells=GRID_2x2)
    assert registry.claim_job(job.id, [JobStatus.COMPOSITING], "someone-else", 60)

    assert compositor.composite(job.id) is CompositeOutcome.SKIPPED

    untouched = registry.get_job(job.id)
    assert untouched.status is JobStatus.COMPOSITING
    assert untouched.lease_owner == "someone-else"
    assert untouched.comp_next_index == 0
    assert registry.pending_tasks() == []


def test_job_not_compositing_is_a_noop(make_job, compositor, registry):
    job = make_job(cells=GRID_2x2, status=JobStatus.GENERATING)

    assert compositor.composite(job.id) is CompositeOutcome.SKIPPED
    assert registry.get_job(job.id).status is JobStatus.GENERATING


def test_redundant_invocation_during_a_run_does_no_work(make_job, make_compositor, registry, store):
    job = make_job(cells=GRID_2x2)
    compositor = make_compositor(batch_size=1)

    assert compositor.composite(job.id) is CompositeOutcome.CHECKPOINTED
    # a second trigger (e.g. a duplicate watchdog invocation) while the lease is live
    assert compositor.composite(job.id) is CompositeOutcome.SKIPPED
    assert registry.get_job(job.id).comp_next_index == 1

    [task] = registry.pending_tasks()
    assert task.name == "compositor"
    continuation = {"lease_owner": task.payload["lease_owner"], "next_index": task.payload["next_index"]}
    assert compositor.composite(job.id, **continuation) is CompositeOutcome.CHECKPOINTED
    assert registry.get_job(job.id).comp_next_index == 2

    # the same continue message delivered a second time
    assert compositor.composite(job.id, **continuation) is CompositeOutcome.SKIPPED
    saved = registry.get_job(job.id)
    assert saved.comp_next_index == 2
    assert checkpoint_blobs(store, compositor, job) == [saved.checkpoint_path.rsplit("/", 1)[1]]


def test_checkpoint_advances_pointer_and_queues_continuation(make_job, make_compositor, registry, store, clock):
    job = make_job(cells=GRID_2x2)
    compositor = make_compositor(batch_size=3, continue_delay=2, lease_seconds=60)

    assert compositor.composite(job.id) is CompositeOutcome.CHECKPOINTED

    saved = registry.get_job(job.id)
    assert saved.comp_next_index == 3
    assert saved.checkpoint_path == checkpoint_path(job, 3, saved.lease_owner)
    assert saved.lease_expires_at == pytest.approx(clock.now + 60)
    assert store.get(compositor.checkpoint_bucket, saved.checkpoint_path)

    [task] = registry.pending_tasks()
    assert task.payload == {"parent_job_id": job.id, "lease_owner": saved.lease_owner, "next_index": 3}
    assert task.run_after == pytest.approx(clock.now + 2)


def test_resumed_run_matches_uninterrupted_run(make_job, make_compositor, registry, store, watchdog):
    image = lambda index, size: gradient_png(size, index)
    one_shot = make_job(cells=GRID_2x2, image=image)
    resumed = make_job(cells=GRID_2x2, image=image)

    assert make_compositor(batch_size=10).composite(one_shot.id) is CompositeOutcome.COMPLETED
    done = run_until_done(registry, make_compositor(batch_size=1), watchdog, resumed.id)

    a = np.asarray(decode(store.fetch(registry.get_job(one_shot.id).final_image_url)), dtype=np.int16)
    b = np.asarray(decode(store.fetch(done.final_image_url)), dtype=np.int16)
    assert a.shape == b.shape
    assert np.abs(a - b).max() <= 2


def test_checkpoint_blob_deleted_on_completion(make_job, make_compositor, registry, store, watchdog):
    job = make_job(cells=GRID_2x2)
    compositor = make_compositor(batch_size=2)

    compositor.composite(job.id)
    path = registry.get_job(job.id).checkpoint_path
    assert store.get(compositor.checkpoint_bucket, path)

    run_until_done(registry, compositor, watchdog, job.id)
    with pytest.raises(FileNotFoundError):
        store.get(compositor.checkpoint_bucket, path)
    assert checkpoint_blobs(store, compositor, job) == []


def test_no_valid_tiles_fails_job(make_job, compositor, registry):
    job = make_job(cells=((0, 0),))
    tile = registry.get_tiles(job.id)[0]
    registry.update_tile(tile.id, {"result_url": None})

    assert compositor.composite(job.id) is CompositeOutcome.FAILED
    failed = registry.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_message.startswith("Compositor failed:")
    assert failed.final_image_url is None


def test_tiles_without_coordinates_are_excluded(make_job, compositor, registry):
    job = make_job(cells=((0, 0), (1, 0)))
    registry.create_tiles([Tile(
        id=f"{job.id}-stray", parent_job_id=job.id, tile_index=9, x=None, y=None,
        status=TileStatus.COMPLETE, result_url="local://tiles/missing.png",
    )])

    assert compositor.composite(job.id) is CompositeOutcome.COMPLETED
    assert registry.get_job(job.id).comp_next_index == 2


def test_missing_tile_blob_fails_job_without_publishing(make_job, compositor, registry, store):
    job = make_job(cells=((0, 0), (1, 0)))
    store.delete("tiles", f"{job.id}/tile-1.png")

    assert compositor.composite(job.id) is CompositeOutcome.FAILED
    failed = registry.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.final_image_url is None
    with pytest.raises(FileNotFoundError):
        store.get(compositor.output_bucket, f"{job.user_id}/{job.id}/tiled-upscale-final-224x128.jpg")


def test_resume_without_checkpoint_fails_job(make_job, compositor, registry):
    job = make_job(cells=GRID_2x2)
    registry.update_job(job.id, {"comp_next_index": 2})

    assert compositor.composite(job.id) is CompositeOutcome.FAILED
    assert "no checkpoint" in registry.get_job(job.id).error_message


def test_resume_reflattens_transparent_checkpoint(make_job, compositor, registry, store):
    job = make_job(cells=((0, 0), (1, 0)))
    w, h = job.canvas_width, job.canvas_height
    buf = io.BytesIO()
    Image.new("RGBA", (w, h), (0, 0, 0, 0)).save(buf, format="PNG")
    path = f"{job.user_id}/{job.id}/checkpoint-00001-manual.png"
    store.put(compositor.checkpoint_bucket, path, buf.getvalue(), "image/png")
    registry.update_job(job.id, {"comp_next_index": 1, "checkpoint_path": path})

    assert compositor.composite(job.id) is CompositeOutcome.COMPLETED
    final = np.asarray(decode(store.fetch(registry.get_job(job.id).final_image_url)))
    # the transparent region left of tile 1 was flattened onto white, not black
    assert final[h // 2, 2].min() > 240


def test_oversized_canvas_is_refused(make_job, make_compositor, registry):
    job = make_job(cells=((0, 0),))
    compositor = make_compositor(mem_limit_mb=0.01)

    assert compositor.composite(job.id) is CompositeOutcome.FAILED
    assert "exceeds limit" in registry.get_job(job.id).error_message


def test_duplicate_continuation_during_a_run_is_skipped(make_job, make_compositor, registry, store, watchdog,
                                                        monkeypatch):
    job = make_job(cells=GRID_2x2, image=coloured)
    compositor = make_compositor(batch_size=1)
    assert compositor.composite(job.id) is CompositeOutcome.CHECKPOINTED
    [task] = registry.pending_tasks()
    continuation = {"lease_owner": task.payload["lease_owner"], "next_index": task.payload["next_index"]}

    fetch = store.fetch
    redelivered = []

    def fetch_with_redelivery(url):
        if not redelivered:
            redelivered.append(compositor.composite(job.id, **continuation))
        return fetch(url)
    monkeypatch.setattr(store, "fetch", fetch_with_redelivery)

    assert compositor.composite(job.id, **continuation) is CompositeOutcome.CHECKPOINTED
    assert redelivered == [CompositeOutcome.SKIPPED]
    saved = registry.get_job(job.id)
    assert saved.comp_next_index == 2
    assert checkpoint_blobs(store, compositor, job) == [saved.checkpoint_path.rsplit("/", 1)[1]]

    done = run_until_done(registry, compositor, watchdog, job.id)
    assert done.status is JobStatus.COMPLETE
    assert_tile_colours(store, done)


def test_stale_run_cannot_overwrite_a_newer_checkpoint(make_job, make_compositor, registry, store, watchdog, clock,
                                                       monkeypatch):
    job = make_job(cells=GRID_2x2, image=coloured)
    stale = make_compositor(batch_size=2, lease_seconds=60)
    taker = make_compositor(batch_size=1, lease_seconds=60)

    fetch = store.fetch
    calls = []
    taken_over = []

    def fetch_with_takeover(url):
        calls.append(url)
        if len(calls) == 2:
            # the first run stalls past its lease on the second tile
            clock.advance(61)
            taken_over.append(taker.composite(job.id))
        return fetch(url)
    monkeypatch.setattr(store, "fetch", fetch_with_takeover)

    assert stale.composite(job.id) is CompositeOutcome.SKIPPED
    assert taken_over == [CompositeOutcome.CHECKPOINTED]

    saved = registry.get_job(job.id)
    assert saved.status is JobStatus.COMPOSITING
    assert saved.comp_next_index == 1
    # only the live run's blob is left; the stale run removed its own
    assert checkpoint_blobs(store, stale, job) == [saved.checkpoint_path.rsplit("/", 1)[1]]

    done = run_until_done(registry, make_compositor(batch_size=1), watchdog, job.id)
    assert done.status is JobStatus.COMPLETE
    assert done.comp_next_index == 4
    assert_tile_colours(store, done)
    assert checkpoint_blobs(store, stale, job) == []


def test_stale_run_error_does_not_fail_a_taken_over_job(make_job, make_compositor, registry, store, watchdog, clock,
                                                        monkeypatch):
    job = make_job(cells=GRID_2x2, image=coloured)
    stale = make_compositor(batch_size=4, lease_seconds=60)
    taker = make_compositor(batch_size=1, lease_seconds=60)

    fetch = store.fetch
    calls = []
    taken_over = []

    def fetch_then_time_out(url):
        calls.append(url)
        if len(calls) == 1:
            clock.advance(61)
            taken_over.append(taker.composite(job.id))
            raise TransientIOError("download timed out")
        return fetch(url)
    monkeypatch.setattr(store, "fetch", fetch_then_time_out)

    assert stale.composite(job.id) is CompositeOutcome.SKIPPED
    assert taken_over == [CompositeOutcome.CHECKPOINTED]

    saved = registry.get_job(job.id)
    assert saved.status is JobStatus.COMPOSITING
    assert saved.error_message is None
    assert saved.lease_owner is not None
    assert saved.comp_next_index == 1

    done = run_until_done(registry, make_compositor(batch_size=1), watchdog, job.id)
    assert done.status is JobStatus.COMPLETE
    assert_tile_colours(store, done)


def test_error_under_own_lease_still_fails_the_job(make_job, compositor, registry, store, monkeypatch):
    job = make_job(cells=GRID_2x2)

    def timed_out(url):
        raise TransientIOError("download timed out")
    monkeypatch.setattr(store, "fetch", timed_out)

    assert compositor.composite(job.id) is CompositeOutcome.FAILED
    failed = registry.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.lease_owner is None
