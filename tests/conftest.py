import os
import tempfile

# keep config-time directory creation out of the repository
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="tiled-upscale-tests-"))

import io
import uuid

import pytest
from PIL import Image

from common.job_schema import Job, JobStatus, Tile, TileStatus
from common.registry import Registry
from common.storage import LocalObjectStore
from common.trigger import TaskQueue
from worker.compositor import Compositor
from worker.watchdog import Watchdog


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def png_bytes(size, color=(200, 40, 40, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


def gradient_png(size, seed: int) -> bytes:
    w, h = size
    img = Image.new("RGB", size)
    img.putdata([((x * 7 + seed * 50) % 256, (y * 5 + seed * 30) % 256, (x + y + seed * 90) % 256)
                 for y in range(h) for x in range(w)])
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr("common.retry.time.sleep", lambda seconds: None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(tmp_path, clock):
    return Registry(tmp_path / "registry.sqlite3", clock=clock)


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(tmp_path / "objects", public_base_url=None)


@pytest.fixture
def queue(registry):
    return TaskQueue(registry)


@pytest.fixture
def make_compositor(registry, store, queue):
    def _make(**kwargs):
        kwargs.setdefault("continue_delay", 0)
        kwargs.setdefault("single_shot_engines", {"comfyui_full"})
        return Compositor(registry, store, queue, **kwargs)
    return _make


@pytest.fixture
def compositor(make_compositor):
    return make_compositor()


@pytest.fixture
def watchdog(registry, queue):
    return Watchdog(registry, queue)


@pytest.fixture
def make_job(registry, store):
    """
    Create a job plus complete tiles at the given (col, row) grid positions.
    Small geometry by default: 64px source tiles, 16px overlap, scale 2.
    """
    def _make(cells=((0, 0),), tile_size=64, overlap=16, scale=2.0, canvas=None,
              status=JobStatus.COMPOSITING, engine="enhancor_detailed", tile_status=TileStatus.COMPLETE,
              image=None, user_id="user-1"):
        step = tile_size - overlap if tile_size else 0
        if canvas is None:
            cols = max(c for c, _ in cells) + 1
            rows = max(r for _, r in cells) + 1
            canvas = (int(((cols - 1) * step + tile_size) * scale), int(((rows - 1) * step + tile_size) * scale))
        job = registry.create_job(Job(
            id=str(uuid.uuid4()),
            user_id=user_id,
            source_url="local://sources/source.png",
            status=status,
            canvas_width=canvas[0],
            canvas_height=canvas[1],
            scale_factor=scale,
            tile_size=tile_size,
            tile_overlap=overlap,
            engine=engine,
            total_tiles=len(cells),
        ))
        tile_px = (int(round(tile_size * scale)),) * 2 if tile_size else canvas
        tiles = []
        for index, (col, row) in enumerate(cells):
            data = image(index, tile_px) if image else png_bytes(tile_px)
            location = store.put("tiles", f"{job.id}/tile-{index}.png", data, "image/png")
            tiles.append(Tile(
                id=f"{job.id}-t{index}",
                parent_job_id=job.id,
                tile_index=index,
                x=col * step,
                y=row * step,
                status=tile_status,
                source_path=f"{job.id}/source-{index}.png",
                result_url=location if tile_status is TileStatus.COMPLETE else None,
            ))
        registry.create_tiles(tiles)
        return registry.get_job(job.id)
    return _make
