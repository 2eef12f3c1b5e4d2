"""
Seam feathering for overlapping tiles.

Only the left and top edges of a tile are faded, and only when a neighbour
exists on that side. Tiles are composited row-major, so the neighbour to the
left/top is already on the canvas; fading the right/bottom edges as well would
fade the same seam twice.
"""
import numpy as np
from PIL import Image


def smoothstep_ramp(n: int) -> np.ndarray:
    """Alpha gains 0..1 over `n` pixels with a smoothstep ease, non-decreasing."""
    if n <= 1:
        return np.ones(max(n, 0), dtype=np.float32)
    t = np.arange(n, dtype=np.float32) / (n - 1)
    return t * t * (3.0 - 2.0 * t)


def feather_band(overlap: int, scale: float, tile_px: int, max_feather: int) -> int:
    """Width of the blend band in output pixels."""
    band = min(int(round(overlap * scale)), max_feather, tile_px - 1)
    return max(1, band)


def apply_feather(tile: Image.Image, band: int, left: bool, top: bool) -> Image.Image:
    """Return an RGBA copy of `tile` with its alpha faded across the left/top band."""
    tile = tile.convert("RGBA")
    if not (left or top):
        return tile

    arr = np.array(tile, dtype=np.uint8)
    h, w = arr.shape[:2]
    gx = np.ones(w, dtype=np.float32)
    gy = np.ones(h, dtype=np.float32)
    if left:
        n = min(band, w)
        gx[:n] = smoothstep_ramp(n)
    if top:
        n = min(band, h)
        gy[:n] = smoothstep_ramp(n)

    alpha = arr[..., 3].astype(np.float32) * gy[:, None] * gx[None, :]
    arr[..., 3] = np.rint(alpha).astype(np.uint8)
    return Image.fromarray(arr)
