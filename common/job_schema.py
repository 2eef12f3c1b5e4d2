from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, Field

from common.errors import IllegalTransition


class JobStatus(str, Enum):
    PENDING = "pending"
    TILING = "tiling"
    QUEUED_FOR_GENERATION = "queued_for_generation"
    GENERATING = "generating"
    COMPOSITING = "compositing"
    COMPLETE = "complete"
    FAILED = "failed"


class TileStatus(str, Enum):
    PENDING_ANALYSIS = "pending_analysis"
    ANALYZING = "analyzing"
    ANALYSIS_FAILED = "analysis_failed"
    PENDING_GENERATION = "pending_generation"
    GENERATING = "generating"
    GENERATION_FAILED = "generation_failed"
    COMPLETE = "complete"


class TileSizeMode(str, Enum):
    FIXED = "fixed"
    FULL_SIZE = "full_size"


ACTIVE_JOB_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.TILING,
    JobStatus.QUEUED_FOR_GENERATION,
    JobStatus.GENERATING,
    JobStatus.COMPOSITING,
})
TERMINAL_JOB_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETE, JobStatus.FAILED})
FAILED_TILE_STATUSES: FrozenSet[TileStatus] = frozenset({
    TileStatus.ANALYSIS_FAILED,
    TileStatus.GENERATION_FAILED,
})

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.TILING}),
    JobStatus.TILING: frozenset({JobStatus.QUEUED_FOR_GENERATION}),
    JobStatus.QUEUED_FOR_GENERATION: frozenset({JobStatus.GENERATING, JobStatus.COMPOSITING}),
    JobStatus.GENERATING: frozenset({JobStatus.COMPOSITING}),
    JobStatus.COMPOSITING: frozenset({JobStatus.COMPLETE}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
}
# failed is reachable from every non-terminal status
for _status, _targets in list(JOB_TRANSITIONS.items()):
    if _status not in TERMINAL_JOB_STATUSES:
        JOB_TRANSITIONS[_status] = _targets | {JobStatus.FAILED}

TILE_TRANSITIONS: Dict[TileStatus, FrozenSet[TileStatus]] = {
    TileStatus.PENDING_ANALYSIS: frozenset({TileStatus.ANALYZING}),
    TileStatus.ANALYZING: frozenset({
        TileStatus.COMPLETE,
        TileStatus.ANALYSIS_FAILED,
        TileStatus.PENDING_GENERATION,
    }),
    TileStatus.ANALYSIS_FAILED: frozenset(),
    TileStatus.PENDING_GENERATION: frozenset({TileStatus.GENERATING}),
    TileStatus.GENERATING: frozenset({TileStatus.COMPLETE, TileStatus.GENERATION_FAILED}),
    TileStatus.GENERATION_FAILED: frozenset(),
    TileStatus.COMPLETE: frozenset(),
}

_uncovered = (set(JobStatus) - set(JOB_TRANSITIONS)) | (set(TileStatus) - set(TILE_TRANSITIONS))
if _uncovered:
    raise RuntimeError(f"Transition table misses statuses: {sorted(s.value for s in _uncovered)}")


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def can_transition_tile(current: TileStatus, target: TileStatus) -> bool:
    return TileStatus(target) in TILE_TRANSITIONS[TileStatus(current)]


def check_job_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition_job(current, target):
        raise IllegalTransition("job", JobStatus(current).value, JobStatus(target).value)


def check_tile_transition(current: TileStatus, target: TileStatus) -> None:
    if not can_transition_tile(current, target):
        raise IllegalTransition("tile", TileStatus(current).value, TileStatus(target).value)


class Job(BaseModel):
    id: str
    user_id: str
    source_url: str
    status: JobStatus = JobStatus.PENDING
    canvas_width: int = Field(gt=0)   # final, post-scale pixels
    canvas_height: int = Field(gt=0)
    scale_factor: float = Field(gt=0)
    tile_size: Optional[int] = None   # None: one full-size tile
    tile_overlap: int = 0
    engine: str
    total_tiles: int = 0
    final_image_url: Optional[str] = None
    checkpoint_path: Optional[str] = None
    comp_next_index: int = 0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None
    error_message: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def tile_mode(self) -> TileSizeMode:
        return TileSizeMode.FULL_SIZE if not self.tile_size else TileSizeMode.FIXED

    @property
    def grid_step(self) -> int:
        """Source-space distance between neighbouring tile origins."""
        if self.tile_mode is TileSizeMode.FULL_SIZE:
            return max(self.canvas_width, self.canvas_height)
        return max(1, self.tile_size - self.tile_overlap)


class Tile(BaseModel):
    id: str
    parent_job_id: str
    tile_index: int = 0
    x: Optional[int] = None  # top-left, source-resolution pixels
    y: Optional[int] = None
    status: TileStatus = TileStatus.PENDING_ANALYSIS
    source_path: Optional[str] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_compositable(self) -> bool:
        return self.x is not None and self.y is not None and bool(self.result_url)


def grid_cell(tile: Tile, job: Job) -> Tuple[int, int]:
    """(col, row) of a tile. Stable for tiles produced independently of each other."""
    if job.tile_mode is TileSizeMode.FULL_SIZE:
        return 0, 0
    step = job.grid_step
    return int(round(tile.x / step)), int(round(tile.y / step))


def row_major_key(tile: Tile, job: Job) -> Tuple[int, int, int]:
    col, row = grid_cell(tile, job)
    return row, col, tile.tile_index
