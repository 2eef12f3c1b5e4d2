"""
Canvas and checkpoint codecs.

The partially composited canvas never lives in memory between invocations: it
is serialized as an opaque PNG checkpoint and re-flattened to opaque every
time it is loaded, so encode/decode cycles cannot accumulate transparency.
"""
import io
from typing import Tuple

from PIL import Image

from common.errors import ValidationError

WHITE = (255, 255, 255, 255)

PNG = "image/png"
JPEG = "image/jpeg"


def new_canvas(width: int, height: int) -> Image.Image:
    if width <= 0 or height <= 0:
        raise ValidationError(f"Invalid canvas dimensions {width}x{height}")
    return Image.new("RGBA", (width, height), WHITE)


def estimate_memory_mb(width: int, height: int, tile_px: int) -> float:
    # canvas + one decoded tile + its feathered copy, RGBA
    return (width * height * 4 + 2 * tile_px * tile_px * 4) / (1024 * 1024)


def flatten_opaque(img: Image.Image) -> Image.Image:
    """Composite `img` over opaque white and drop the alpha channel."""
    background = Image.new("RGBA", img.size, WHITE)
    background.alpha_composite(img.convert("RGBA"))
    return background.convert("RGB")


def encode_checkpoint(canvas: Image.Image) -> bytes:
    buf = io.BytesIO()
    flatten_opaque(canvas).save(buf, format="PNG", compress_level=1)
    return buf.getvalue()


def decode_checkpoint(data: bytes, size: Tuple[int, int]) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (OSError, SyntaxError) as exc:
        raise ValidationError(f"Checkpoint could not be decoded: {exc}") from exc
    if img.size != tuple(size):
        raise ValidationError(f"Checkpoint is {img.size[0]}x{img.size[1]}, expected {size[0]}x{size[1]}")
    return flatten_opaque(img).convert("RGBA")


def decode_tile(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img.convert("RGBA")


def fit_tile(tile: Image.Image, size: Tuple[int, int]) -> Image.Image:
    if tile.size == tuple(size):
        return tile
    return tile.resize(size, Image.Resampling.LANCZOS)


def jpeg_quality(width: int, height: int, base: int) -> int:
    """Lower quality as the pixel count grows, to bound the output size."""
    megapixels = width * height / 1_000_000
    if megapixels <= 16:
        quality = base
    elif megapixels <= 36:
        quality = base - 5
    elif megapixels <= 64:
        quality = base - 10
    else:
        quality = base - 15
    return max(60, min(95, quality))


def encode_final(canvas: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    flatten_opaque(canvas).save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()
