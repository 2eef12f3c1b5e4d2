import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from common.config import DEFAULT_UPSCALER_ENGINE, TILE_OVERLAP
from common.errors import ValidationError
from common.job_schema import Job, JobStatus
from common.registry import Registry
from common.services import get_registry, get_store, get_trigger
from common.storage import ObjectStore
from common.trigger import WATCHDOG, TaskTrigger
from worker.compositor import Compositor
from worker.watchdog import ReconcileReport, Watchdog

app = FastAPI(title="Tiled Upscale API")


class JobCreate(BaseModel):
    user_id: str
    source_url: str
    width: int = Field(gt=0)    # source image, pixels
    height: int = Field(gt=0)
    scale_factor: float = Field(2.0, gt=0)
    tile_size: Optional[int] = Field(None, ge=0)  # None or 0: one full-size tile
    engine: Optional[str] = None


class CompositorRequest(BaseModel):
    parent_job_id: str
    lease_owner: Optional[str] = None
    next_index: Optional[int] = None


def build_job(req: JobCreate) -> Job:
    canvas_width = int(round(req.width * req.scale_factor))
    canvas_height = int(round(req.height * req.scale_factor))
    if canvas_width <= 0 or canvas_height <= 0:
        raise ValidationError(f"Canvas would be {canvas_width}x{canvas_height}")
    tile_size = req.tile_size or None
    overlap = min(TILE_OVERLAP, tile_size - 1) if tile_size else 0
    return Job(
        id=str(uuid.uuid4()),
        user_id=req.user_id,
        source_url=req.source_url,
        status=JobStatus.PENDING,
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        scale_factor=req.scale_factor,
        tile_size=tile_size,
        tile_overlap=overlap,
        engine=req.engine or DEFAULT_UPSCALER_ENGINE,
    )


# ---------- Job endpoints ----------

@app.post("/jobs")
def create_job(req: JobCreate, registry: Registry = Depends(get_registry),
               trigger: TaskTrigger = Depends(get_trigger)):
    try:
        job = registry.create_job(build_job(req))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    # admission happens on the next watchdog pass; nudge it now
    trigger.invoke(WATCHDOG, {})
    return {"job_id": job.id, "status": job.status}


@app.get("/jobs/{job_id}")
def read_job(job_id: str, registry: Registry = Depends(get_registry)):
    job = registry.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    counts = registry.count_tiles_by_status(job_id)
    return {"job": job, "tiles": {status.value: n for status, n in counts.items()}}


# ---------- Task trigger endpoints ----------

@app.post("/functions/compositor")
def run_compositor(req: CompositorRequest, registry: Registry = Depends(get_registry),
                   store: ObjectStore = Depends(get_store), trigger: TaskTrigger = Depends(get_trigger)):
    outcome = Compositor(registry, store, trigger).composite(
        req.parent_job_id, lease_owner=req.lease_owner, next_index=req.next_index,
    )
    return {"parent_job_id": req.parent_job_id, "outcome": outcome}


@app.post("/functions/watchdog", response_model=ReconcileReport)
def run_watchdog(registry: Registry = Depends(get_registry), trigger: TaskTrigger = Depends(get_trigger)):
    return Watchdog(registry, trigger).reconcile()
