"""
Periodic reconciler for tiled upscale jobs.

A pass is guarded by a registry-wide advisory lock so overlapping scheduler
ticks do not duplicate work. Every phase is independently fallible: an error
is recorded in the report and the remaining phases still run; the next pass
retries whatever was missed.
"""
from typing import Callable, Dict, List, Tuple

import structlog
from pydantic import BaseModel, Field

from common.config import (
    ANALYSIS_STALL_SECONDS,
    COMPOSITOR_LEASE_SECONDS,
    CONCURRENCY_LIMIT_KEY,
    DEFAULT_CONCURRENCY_LIMIT,
    DISPATCH_BATCH_SIZE,
    GENERATION_STALL_SECONDS,
    JOB_STALL_SECONDS,
    TILE_FAILURE_CLEANUP_SECONDS,
    WATCHDOG_LOCK_TTL_SECONDS,
)
from common.job_schema import ACTIVE_JOB_STATUSES, JobStatus, TileStatus
from common.registry import Registry
from common.retry import lease_expired, new_lease_owner
from common.trigger import COMPOSITOR, TILE_ANALYZER, TILE_GENERATOR, TILER, TaskTrigger

log = structlog.get_logger()

LOCK_NAME = "tiled_upscale_watchdog"

COMPOSITOR_CANDIDATE_STATUSES = (
    JobStatus.GENERATING,
    JobStatus.QUEUED_FOR_GENERATION,
    JobStatus.COMPOSITING,
)


class ReconcileReport(BaseModel):
    ran: bool = False
    actions: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class Watchdog:
    def __init__(
        self,
        registry: Registry,
        trigger: TaskTrigger,
        job_stall_seconds: float = JOB_STALL_SECONDS,
        tile_failure_cleanup_seconds: float = TILE_FAILURE_CLEANUP_SECONDS,
        analysis_stall_seconds: float = ANALYSIS_STALL_SECONDS,
        generation_stall_seconds: float = GENERATION_STALL_SECONDS,
        dispatch_batch_size: int = DISPATCH_BATCH_SIZE,
        default_concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        lock_ttl_seconds: float = WATCHDOG_LOCK_TTL_SECONDS,
        compositor_grace_seconds: float = COMPOSITOR_LEASE_SECONDS,
    ):
        self.registry = registry
        self.trigger = trigger
        self.job_stall_seconds = job_stall_seconds
        self.tile_failure_cleanup_seconds = tile_failure_cleanup_seconds
        self.analysis_stall_seconds = analysis_stall_seconds
        self.generation_stall_seconds = generation_stall_seconds
        self.dispatch_batch_size = dispatch_batch_size
        self.default_concurrency_limit = default_concurrency_limit
        self.lock_ttl_seconds = lock_ttl_seconds
        self.compositor_grace_seconds = compositor_grace_seconds

    def phases(self) -> List[Tuple[str, Callable[[ReconcileReport], None]]]:
        return [
            ("stalled_jobs", self.fail_stalled_jobs),
            ("failed_tile_cleanup", self.fail_jobs_with_failed_tiles),
            ("admission", self.admit_pending_jobs),
            ("stalled_tiles", self.reset_stalled_tiles),
            ("dispatch", self.dispatch_pending_tiles),
            ("compositor_trigger", self.trigger_compositors),
        ]

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        token = new_lease_owner()
        if not self.registry.try_acquire_lock(LOCK_NAME, token, self.lock_ttl_seconds):
            log.info("watchdog_lock_held")
            return report

        report.ran = True
        log.info("watchdog_lock_acquired")
        try:
            for name, phase in self.phases():
                try:
                    phase(report)
                except Exception as exc:
                    log.exception("watchdog_phase_failed", phase=name)
                    report.errors[name] = str(exc)
        finally:
            self.registry.release_lock(LOCK_NAME, token)
        log.info("watchdog_pass_complete", actions=len(report.actions), errors=len(report.errors))
        return report

    def fail_stalled_jobs(self, report: ReconcileReport) -> None:
        threshold = self.registry.now() - self.job_stall_seconds
        ids = self.registry.transition_jobs(
            ACTIVE_JOB_STATUSES, JobStatus.FAILED, updated_before=threshold,
            error_message=f"Job stalled: no progress for {int(self.job_stall_seconds)} seconds.",
        )
        if ids:
            log.warning("watchdog_stalled_jobs_failed", job_ids=ids)
            report.actions.append(f"Failed {len(ids)} stalled job(s).")

    def fail_jobs_with_failed_tiles(self, report: ReconcileReport) -> None:
        threshold = self.registry.now() - self.tile_failure_cleanup_seconds
        candidates = self.registry.jobs_with_failed_tiles(older_than=threshold)
        if not candidates:
            return
        ids = self.registry.transition_jobs(
            ACTIVE_JOB_STATUSES, JobStatus.FAILED, job_ids=candidates,
            error_message="One or more tiles failed; the job cannot be completed.",
        )
        if ids:
            log.warning("watchdog_failed_tile_jobs_failed", job_ids=ids)
            report.actions.append(f"Failed {len(ids)} job(s) with failed tiles.")

    def concurrency_limit(self) -> int:
        config = self.registry.get_config(CONCURRENCY_LIMIT_KEY)
        if isinstance(config, dict) and config.get("limit") is not None:
            return int(config["limit"])
        if isinstance(config, (int, float)):
            return int(config)
        return self.default_concurrency_limit

    def admit_pending_jobs(self, report: ReconcileReport) -> None:
        limit = self.concurrency_limit()
        active = self.registry.count_jobs(ACTIVE_JOB_STATUSES)
        slots = limit - active
        if slots <= 0:
            log.info("watchdog_no_slots", limit=limit, active=active)
            return
        claimed = self.registry.claim_pending_jobs(slots)
        for job in claimed:
            self.trigger.invoke(TILER, {"parent_job_id": job.id})
        if claimed:
            log.info("watchdog_jobs_admitted", job_ids=[j.id for j in claimed], limit=limit, active=active)
            report.actions.append(f"Started {len(claimed)} pending job(s).")

    def reset_stalled_tiles(self, report: ReconcileReport) -> None:
        now = self.registry.now()
        analyzing = self.registry.transition_tiles(
            TileStatus.ANALYZING, TileStatus.ANALYSIS_FAILED,
            updated_before=now - self.analysis_stall_seconds,
            error_message="Reset by watchdog due to stall in analysis.",
        )
        generating = self.registry.transition_tiles(
            TileStatus.GENERATING, TileStatus.GENERATION_FAILED,
            updated_before=now - self.generation_stall_seconds,
            error_message="Reset by watchdog due to stall in generation.",
        )
        if analyzing or generating:
            log.warning("watchdog_stalled_tiles_reset", analyzing=analyzing, generating=generating)
            report.actions.append(f"Reset {analyzing + generating} stalled tile(s).")

    def dispatch_pending_tiles(self, report: ReconcileReport) -> None:
        to_analyze = self.registry.list_tiles([TileStatus.PENDING_ANALYSIS], limit=self.dispatch_batch_size)
        for tile in to_analyze:
            self.trigger.invoke(TILE_ANALYZER, {"tile_id": tile.id})
        to_generate = self.registry.list_tiles(
            [TileStatus.PENDING_GENERATION], limit=self.dispatch_batch_size, with_source=True,
        )
        for tile in to_generate:
            self.trigger.invoke(TILE_GENERATOR, {"tile_id": tile.id})
        if to_analyze or to_generate:
            report.actions.append(
                f"Dispatched {len(to_analyze)} analysis and {len(to_generate)} generation task(s)."
            )

    def trigger_compositors(self, report: ReconcileReport) -> None:
        now = self.registry.now()
        for job in self.registry.list_jobs(COMPOSITOR_CANDIDATE_STATUSES):
            if job.status is JobStatus.COMPOSITING:
                if job.lease_owner:
                    stalled = lease_expired(job.lease_expires_at, now)
                else:
                    # claimed for compositing but the first invocation never arrived
                    stalled = job.updated_at < now - self.compositor_grace_seconds
                if stalled:
                    log.warning("watchdog_compositor_stalled", job_id=job.id, next_index=job.comp_next_index)
                    self.trigger.invoke(COMPOSITOR, {"parent_job_id": job.id})
                    report.actions.append(f"Re-invoked stalled compositor for {job.id}.")
                continue

            counts = self.registry.count_tiles_by_status(job.id)
            complete = counts.get(TileStatus.COMPLETE, 0)
            if job.total_tiles <= 0 or complete != job.total_tiles:
                continue
            if self.registry.try_set_compositing(job.id):
                log.info("watchdog_compositing_claimed", job_id=job.id, tiles=complete)
                self.trigger.invoke(COMPOSITOR, {"parent_job_id": job.id})
                report.actions.append(f"Started compositing {job.id}.")
            else:
                log.info("watchdog_compositing_claimed_elsewhere", job_id=job.id)
