from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Union

import numpy as np
from PIL import Image

MAPBOX_SCALE: Final[float] = 0.1
MAPBOX_OFFSET: Final[float] = -10000.0


@dataclass(frozen=True)
class ElevationDecoder:
    """Linear unpacking of an elevation sample stored in three 8-bit channels.

    height = R * r_scaler + G * g_scaler + B * b_scaler + offset
    """

    r_scaler: float
    g_scaler: float
    b_scaler: float
    offset: float

    def decode(self, rgb: np.ndarray) -> np.ndarray:
        arr = np.asarray(rgb)
        if arr.ndim < 1 or arr.shape[-1] < 3:
            raise ValueError("rgb must have at least 3 channels in the last axis")
        channels = arr[..., :3].astype(np.float64)
        value = (
            channels[..., 0] * self.r_scaler
            + channels[..., 1] * self.g_scaler
            + channels[..., 2] * self.b_scaler
            + self.offset
        )
        return value.astype(np.float32)


# Mapbox Terrain-RGB: (R * 65536 + G * 256 + B) * 0.1 - 10000
MAPBOX: Final[ElevationDecoder] = ElevationDecoder(
    r_scaler=65536 * MAPBOX_SCALE,
    g_scaler=256 * MAPBOX_SCALE,
    b_scaler=MAPBOX_SCALE,
    offset=MAPBOX_OFFSET,
)

# Terrarium: R * 256 + G + B / 256 - 32768
TERRARIUM: Final[ElevationDecoder] = ElevationDecoder(
    r_scaler=256.0,
    g_scaler=1.0,
    b_scaler=1.0 / 256.0,
    offset=-32768.0,
)

DECODERS: Final[dict[str, ElevationDecoder]] = {
    "mapbox": MAPBOX,
    "terrarium": TERRARIUM,
}


def decode_height(r: int, g: int, b: int) -> float:
    return (int(r) * 65536 + int(g) * 256 + int(b)) * MAPBOX_SCALE + MAPBOX_OFFSET


def encode_height(value: float) -> tuple[int, int, int]:
    """Pack an elevation in meters into Mapbox Terrain-RGB channels."""

    packed = int(round((float(value) - MAPBOX_OFFSET) / MAPBOX_SCALE))
    if packed < 0 or packed > 0xFFFFFF:
        raise ValueError(f"Elevation out of encodable range: {value}")
    return (packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF


def encode_height_array(heights: np.ndarray) -> np.ndarray:
    """Vectorised `encode_height`, returns a (..., 3) uint8 array."""

    packed = np.rint((np.asarray(heights, dtype=np.float64) - MAPBOX_OFFSET) / MAPBOX_SCALE)
    if packed.size and (packed.min() < 0 or packed.max() > 0xFFFFFF):
        raise ValueError("Elevation out of encodable range")
    packed = packed.astype(np.uint32)
    out = np.empty(packed.shape + (3,), dtype=np.uint8)
    out[..., 0] = (packed >> 16) & 0xFF
    out[..., 1] = (packed >> 8) & 0xFF
    out[..., 2] = packed & 0xFF
    return out


ImageLike = Union[Image.Image, np.ndarray]


def _as_rgb_image(image: ImageLike) -> Image.Image:
    if isinstance(image, Image.Image):
        return image if image.mode == "RGB" else image.convert("RGB")
    arr = np.asarray(image)
    if arr.ndim != 3 or arr.shape[2] < 3:
        raise ValueError("height raster must be a (rows, cols, channels>=3) array")
    return Image.fromarray(np.ascontiguousarray(arr[..., :3], dtype=np.uint8))


def resample_nearest(image: ImageLike, size: int) -> np.ndarray:
    """Resample a packed height raster to size x size RGB pixels.

    Only nearest-neighbour is allowed: interpolating packed channels mixes
    the high and low bytes of neighbouring samples.
    """

    if size < 1:
        raise ValueError("size must be >= 1")
    img = _as_rgb_image(image)
    if img.size != (size, size):
        img = img.resize((size, size), resample=Image.NEAREST)
    return np.asarray(img, dtype=np.uint8)


def decode_raster(
    image: ImageLike,
    *,
    size: int | None = None,
    decoder: ElevationDecoder = MAPBOX,
) -> np.ndarray:
    """Decode a packed elevation raster into a (rows, cols) float32 heightmap."""

    if size is None:
        rgb = np.asarray(_as_rgb_image(image), dtype=np.uint8)
    else:
        rgb = resample_nearest(image, size)
    return decoder.decode(rgb)


def terrain_from_image(
    image: ImageLike,
    *,
    tile_size: int | None = None,
    decoder: ElevationDecoder = TERRARIUM,
) -> np.ndarray:
    """Build a flat (tile_size + 1) ** 2 terrain array for Martini.

    The raster is decoded at tile_size x tile_size and the extra bottom row
    and right column are back-filled from their neighbours.
    """

    img = _as_rgb_image(image)
    size = int(tile_size or img.size[0])
    heights = decode_raster(img, size=size, decoder=decoder)

    grid_size = size + 1
    terrain = np.zeros((grid_size, grid_size), dtype=np.float32)
    terrain[:size, :size] = heights
    terrain[size, :size] = terrain[size - 1, :size]
    terrain[:, size] = terrain[:, size - 1]
    return terrain.reshape(-1)
