"""
Resumable tiled-image compositor.

One invocation composites at most `batch_size` tiles onto the job canvas. If
tiles remain, the canvas is checkpointed to the object store, the checkpoint
pointer is advanced under the job lease, and a continue message is sent to
the task trigger. The watchdog re-invokes the compositor if that message is
lost and the lease runs out.
"""
from enum import Enum
from typing import List, Optional, Set, Tuple

import structlog
from PIL import Image

from common.config import (
    CHECKPOINT_BUCKET,
    COMPOSITOR_BATCH_SIZE,
    COMPOSITOR_CONTINUE_DELAY_SECONDS,
    COMPOSITOR_JPEG_QUALITY,
    COMPOSITOR_LEASE_SECONDS,
    COMPOSITOR_MAX_FEATHER_PX,
    COMPOSITOR_MEM_LIMIT_MB,
    OUTPUT_BUCKET,
    SINGLE_SHOT_ENGINES,
)
from common.errors import LeaseConflict, TransientIOError, ValidationError
from common.job_schema import Job, JobStatus, Tile, TileSizeMode, TileStatus, grid_cell, row_major_key
from common.registry import Registry
from common.retry import lease_expiry, new_lease_owner
from common.storage import ObjectStore
from common.trigger import COMPOSITOR, TaskTrigger
from worker import canvas as canvas_io
from worker.feather import apply_feather, feather_band

log = structlog.get_logger()


class CompositeOutcome(str, Enum):
    SKIPPED = "skipped"            # not claimable, or lease lost mid-run
    CHECKPOINTED = "checkpointed"  # batch done, continuation queued
    COMPLETED = "completed"
    FAILED = "failed"


def expected_tile_size(job: Job) -> Tuple[int, int]:
    """Pixel size of one generated tile on the output canvas."""
    if job.tile_mode is TileSizeMode.FULL_SIZE:
        return job.canvas_width, job.canvas_height
    side = int(round(job.tile_size * job.scale_factor))
    return side, side


def checkpoint_path(job: Job, next_index: int, owner: str) -> str:
    # one blob per writer: a stale run can never replace the blob the pointer names
    return f"{job.user_id}/{job.id}/checkpoint-{next_index:05d}-{owner[:12]}.png"


def final_image_path(job: Job) -> str:
    return f"{job.user_id}/{job.id}/tiled-upscale-final-{job.canvas_width}x{job.canvas_height}.jpg"


class Compositor:
    def __init__(
        self,
        registry: Registry,
        store: ObjectStore,
        trigger: TaskTrigger,
        batch_size: int = COMPOSITOR_BATCH_SIZE,
        lease_seconds: float = COMPOSITOR_LEASE_SECONDS,
        continue_delay: float = COMPOSITOR_CONTINUE_DELAY_SECONDS,
        max_feather: int = COMPOSITOR_MAX_FEATHER_PX,
        jpeg_quality: int = COMPOSITOR_JPEG_QUALITY,
        mem_limit_mb: float = COMPOSITOR_MEM_LIMIT_MB,
        single_shot_engines=SINGLE_SHOT_ENGINES,
        output_bucket: str = OUTPUT_BUCKET,
        checkpoint_bucket: str = CHECKPOINT_BUCKET,
    ):
        self.registry = registry
        self.store = store
        self.trigger = trigger
        self.batch_size = max(1, batch_size)
        self.lease_seconds = lease_seconds
        self.continue_delay = continue_delay
        self.max_feather = max_feather
        self.jpeg_quality = jpeg_quality
        self.mem_limit_mb = mem_limit_mb
        self.single_shot_engines = frozenset(single_shot_engines)
        self.output_bucket = output_bucket
        self.checkpoint_bucket = checkpoint_bucket

    def composite(self, job_id: str, lease_owner: Optional[str] = None,
                  next_index: Optional[int] = None) -> CompositeOutcome:
        """
        Composite the next batch of tiles for `job_id`.

        Safe to call concurrently or redundantly: only the invocation holding the
        job lease does any work. Every invocation runs under a fresh owner token.
        A continuation passes the checkpointing run's `lease_owner` and the
        `next_index` it saved; the lease is handed over only if both still match,
        so a duplicate delivery of the same continue message is a no-op.
        """
        owner = new_lease_owner()
        if lease_owner:
            claimed = self.registry.handoff_lease(job_id, lease_owner, owner, self.lease_seconds, next_index)
        else:
            claimed = self.registry.claim_job(job_id, [JobStatus.COMPOSITING], owner, self.lease_seconds)
        if not claimed:
            log.info("compositor_claim_skipped", job_id=job_id, continuation=bool(lease_owner))
            return CompositeOutcome.SKIPPED

        log.info("compositor_claimed", job_id=job_id, owner=owner)
        try:
            return self._run(job_id, owner)
        except LeaseConflict as exc:
            log.warning("compositor_lease_lost", job_id=job_id, owner=owner, err=str(exc))
            return CompositeOutcome.SKIPPED
        except Exception as exc:
            log.exception("compositor_failed", job_id=job_id)
            if not self.registry.fail_job(job_id, f"Compositor failed: {exc}", owner=owner):
                # the lease moved on; the current holder decides the job's fate
                log.warning("compositor_failure_ignored", job_id=job_id, owner=owner)
                return CompositeOutcome.SKIPPED
            return CompositeOutcome.FAILED

    def _run(self, job_id: str, owner: str) -> CompositeOutcome:
        job = self.registry.get_job(job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} not found")

        tiles = self._load_tiles(job)
        if job.engine in self.single_shot_engines and len(tiles) == 1:
            self._finish_single_shot(job, tiles[0], owner)
            return CompositeOutcome.COMPLETED

        tiles.sort(key=lambda t: row_major_key(t, job))
        tile_size = expected_tile_size(job)
        est_mb = canvas_io.estimate_memory_mb(job.canvas_width, job.canvas_height, max(tile_size))
        if est_mb > self.mem_limit_mb:
            raise ValidationError(f"Estimated RAM {est_mb:.1f}MB exceeds limit {self.mem_limit_mb}MB.")

        start = job.comp_next_index
        if start > len(tiles):
            raise ValidationError(f"Checkpoint index {start} is beyond the {len(tiles)} valid tiles")

        canvas = self._load_canvas(job)
        occupied = {grid_cell(t, job) for t in tiles}
        band = feather_band(job.tile_overlap, job.scale_factor, min(tile_size), self.max_feather)
        end = min(start + self.batch_size, len(tiles))

        for tile in tiles[start:end]:
            self._renew_lease(job.id, owner)
            self._place(canvas, tile, job, occupied, band, tile_size)

        if end < len(tiles):
            self._checkpoint(job, canvas, end, owner)
            log.info("compositor_batch_done", job_id=job.id, next_index=end, total=len(tiles))
            return CompositeOutcome.CHECKPOINTED

        self._finalize(job, canvas, len(tiles), owner)
        return CompositeOutcome.COMPLETED

    def _load_tiles(self, job: Job) -> List[Tile]:
        complete = self.registry.get_tiles(job.id, TileStatus.COMPLETE)
        tiles = [t for t in complete if t.is_compositable]
        if len(tiles) != len(complete):
            log.warning("compositor_tiles_dropped", job_id=job.id, dropped=len(complete) - len(tiles))
        if not tiles:
            raise ValidationError("No completed tiles with coordinates and a result were found for this job.")
        return tiles

    def _finish_single_shot(self, job: Job, tile: Tile, owner: str) -> None:
        done = self.registry.update_job(job.id, {
            "status": JobStatus.COMPLETE,
            "final_image_url": tile.result_url,
            "lease_owner": None,
            "lease_expires_at": None,
            "error_message": None,
        }, expect={"lease_owner": owner})
        if not done:
            raise LeaseConflict(f"lease on {job.id} lost before completion")
        log.info("compositor_single_shot_complete", job_id=job.id, final_image_url=tile.result_url)

    def _load_canvas(self, job: Job) -> Image.Image:
        if job.comp_next_index == 0:
            return canvas_io.new_canvas(job.canvas_width, job.canvas_height)
        if not job.checkpoint_path:
            raise ValidationError(f"Job {job.id} resumes at tile {job.comp_next_index} but has no checkpoint")
        data = self.store.get(self.checkpoint_bucket, job.checkpoint_path)
        log.info("compositor_checkpoint_loaded", job_id=job.id, next_index=job.comp_next_index)
        return canvas_io.decode_checkpoint(data, (job.canvas_width, job.canvas_height))

    def _renew_lease(self, job_id: str, owner: str) -> None:
        if not self.registry.claim_job(job_id, [JobStatus.COMPOSITING], owner, self.lease_seconds):
            raise LeaseConflict(f"lease on {job_id} taken over")

    def _place(self, canvas: Image.Image, tile: Tile, job: Job, occupied: Set[Tuple[int, int]],
               band: int, tile_size: Tuple[int, int]) -> None:
        px = int(round(tile.x * job.scale_factor))
        py = int(round(tile.y * job.scale_factor))
        if px < 0 or py < 0:
            raise ValidationError(f"Tile {tile.id} has negative coordinates ({tile.x}, {tile.y})")

        img = canvas_io.fit_tile(canvas_io.decode_tile(self.store.fetch(tile.result_url)), tile_size)
        col, row = grid_cell(tile, job)
        img = apply_feather(img, band, left=(col - 1, row) in occupied, top=(col, row - 1) in occupied)

        w = min(img.width, canvas.width - px)
        h = min(img.height, canvas.height - py)
        if w <= 0 or h <= 0:
            log.warning("compositor_tile_off_canvas", job_id=job.id, tile_id=tile.id, x=px, y=py)
            return
        if (w, h) != img.size:
            img = img.crop((0, 0, w, h))
        canvas.alpha_composite(img, dest=(px, py))

    def _checkpoint(self, job: Job, canvas: Image.Image, next_index: int, owner: str) -> None:
        path = checkpoint_path(job, next_index, owner)
        self.store.put(self.checkpoint_bucket, path, canvas_io.encode_checkpoint(canvas), canvas_io.PNG)
        # only advance the pointer once the checkpoint upload returned, and only
        # from the index this run resumed at
        saved = self.registry.update_job(job.id, {
            "comp_next_index": next_index,
            "checkpoint_path": path,
            "lease_expires_at": lease_expiry(self.registry.now(), self.lease_seconds),
        }, expect={
            "lease_owner": owner,
            "comp_next_index": job.comp_next_index,
            "comp_next_index_max": next_index,
        })
        if not saved:
            self._discard_checkpoint(job.id, path)
            raise LeaseConflict(f"lease on {job.id} lost before checkpoint {next_index}")
        if job.checkpoint_path and job.checkpoint_path != path:
            self._discard_checkpoint(job.id, job.checkpoint_path)
        self.trigger.invoke(COMPOSITOR, {"parent_job_id": job.id, "lease_owner": owner, "next_index": next_index},
                            delay_seconds=self.continue_delay)

    def _discard_checkpoint(self, job_id: str, path: str) -> None:
        try:
            self.store.delete(self.checkpoint_bucket, path)
        except (TransientIOError, OSError) as exc:
            log.warning("compositor_checkpoint_cleanup_failed", job_id=job_id, path=path, err=str(exc))

    def _finalize(self, job: Job, canvas: Image.Image, total: int, owner: str) -> None:
        quality = canvas_io.jpeg_quality(job.canvas_width, job.canvas_height, self.jpeg_quality)
        path = final_image_path(job)
        self.store.put(self.output_bucket, path, canvas_io.encode_final(canvas, quality), canvas_io.JPEG)
        url = self.store.public_url(self.output_bucket, path)

        done = self.registry.update_job(job.id, {
            "status": JobStatus.COMPLETE,
            "final_image_url": url,
            "comp_next_index": total,
            "checkpoint_path": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "error_message": None,
        }, expect={"lease_owner": owner, "comp_next_index": job.comp_next_index, "comp_next_index_max": total})
        if not done:
            raise LeaseConflict(f"lease on {job.id} lost before completion")
        log.info("compositor_complete", job_id=job.id, final_image_url=url, quality=quality)

        if job.checkpoint_path:
            self._discard_checkpoint(job.id, job.checkpoint_path)
