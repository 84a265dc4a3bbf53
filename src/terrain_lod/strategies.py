"""Per-kind geometry binding and node placement.

Node kinds only differ in how a tile's geometry is produced from the
elevation raster and in where the tile sits in world space. Each kind maps
to a `NodeStrategy`; the table is handed to the tree explicitly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Callable, Final, Mapping, Optional, Union

import numpy as np
from PIL import Image

from .geometry import (
    TileGeometry,
    height_grid_geometry,
    martini_geometry,
    plane_geometry,
    sphere_tile_geometry,
)
from .height_decoder import MAPBOX, TERRARIUM, ElevationDecoder, decode_raster, terrain_from_image
from .martini import get_martini

EARTH_RADIUS: Final[float] = 6378137.0
EARTH_PERIMETER: Final[float] = 2 * math.pi * EARTH_RADIUS


class NodeKind(str, Enum):
    PLANE = "plane"
    SPHERE = "sphere"
    HEIGHT = "height"
    HEIGHT_SHADER = "height_shader"
    MARTINI = "martini"


MeshMaxError = Union[float, Callable[[int], float]]


@dataclass(frozen=True)
class TerrainOptions:
    height_grid_size: int = 16
    height_decoder: ElevationDecoder = MAPBOX
    martini_decoder: ElevationDecoder = TERRARIUM
    martini_tile_size: Optional[int] = None
    mesh_max_error: MeshMaxError = 10.0
    with_skirts: bool = False
    skirt_depth: float = 0.0
    height_skirts: bool = False
    height_skirt_depth: float = 10.0
    exaggeration: float = 1.0
    sphere_segments: int = 80

    def max_error_for(self, level: int) -> float:
        if callable(self.mesh_max_error):
            return float(self.mesh_max_error(level))
        return float(self.mesh_max_error)


@dataclass(frozen=True)
class NodeTransform:
    """World placement of a tile: centre, edge length and bounding radius."""

    center: np.ndarray
    scale: float
    radius: float


@dataclass(frozen=True)
class GeometryResult:
    geometry: TileGeometry
    heights: Optional[np.ndarray] = None


GeometryBuilder = Callable[[int, int, int, Optional[Image.Image], TerrainOptions], GeometryResult]
TransformFn = Callable[[int, int, int], NodeTransform]


@dataclass(frozen=True)
class NodeStrategy:
    kind: NodeKind
    has_height: bool
    transform: TransformFn
    build_geometry: GeometryBuilder
    # True when geometry building is CPU heavy enough to leave the event loop
    heavy: bool = False


def planar_transform(level: int, x: int, y: int) -> NodeTransform:
    tiles = 2**level
    size = EARTH_PERIMETER / tiles
    center = np.array(
        [
            ((x + 0.5) / tiles - 0.5) * EARTH_PERIMETER,
            0.0,
            ((y + 0.5) / tiles - 0.5) * EARTH_PERIMETER,
        ],
        dtype=np.float64,
    )
    return NodeTransform(center=center, scale=size, radius=size * math.sqrt(2.0) / 2.0)


def spherical_transform(level: int, x: int, y: int) -> NodeTransform:
    tiles = 2**level
    phi = (x + 0.5) / tiles * 2 * math.pi
    theta = (y + 0.5) / tiles * math.pi
    center = np.array(
        [
            -EARTH_RADIUS * math.cos(phi) * math.sin(theta),
            EARTH_RADIUS * math.cos(theta),
            EARTH_RADIUS * math.sin(phi) * math.sin(theta),
        ],
        dtype=np.float64,
    )
    size = EARTH_RADIUS * 2 * math.pi / tiles
    return NodeTransform(center=center, scale=size, radius=size * math.sqrt(2.0) / 2.0)


@lru_cache(maxsize=8)
def base_plane(segments: int = 1, skirt: bool = False, skirt_depth: float = 10.0) -> TileGeometry:
    """Flat unit grid cached per shape and shared between tiles; its buffers are read-only."""

    geometry = plane_geometry(1.0, 1.0, segments, segments, skirt=skirt, skirt_depth=skirt_depth)
    for array in (geometry.positions, geometry.uvs, geometry.indices, geometry.normals):
        if array is not None:
            array.setflags(write=False)
    return geometry


def _plane(level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions) -> GeometryResult:
    return GeometryResult(geometry=base_plane())


def _sphere(level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions) -> GeometryResult:
    return GeometryResult(
        geometry=sphere_tile_geometry(level, x, y, segments=options.sphere_segments)
    )


def _height(level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions) -> GeometryResult:
    if image is None:
        return GeometryResult(
            geometry=base_plane(
                options.height_grid_size, options.height_skirts, options.height_skirt_depth
            )
        )
    heights = decode_raster(image, size=options.height_grid_size + 1, decoder=options.height_decoder)
    geometry = height_grid_geometry(
        heights, skirt=options.height_skirts, skirt_depth=options.height_skirt_depth
    )
    return GeometryResult(geometry=geometry, heights=heights)


def _height_shader(level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions) -> GeometryResult:
    # displacement happens on the GPU, the geometry stays a flat grid
    geometry = base_plane(
        options.height_grid_size, options.height_skirts, options.height_skirt_depth
    )
    if image is None:
        return GeometryResult(geometry=geometry)
    heights = decode_raster(image, decoder=options.height_decoder)
    return GeometryResult(geometry=geometry, heights=heights)


def _martini(level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions) -> GeometryResult:
    if image is None:
        return GeometryResult(geometry=base_plane())

    tile_size = int(options.martini_tile_size or image.size[0])
    terrain = terrain_from_image(image, tile_size=tile_size, decoder=options.martini_decoder)
    tile = get_martini(tile_size + 1).create_tile(terrain)
    mesh = tile.get_mesh(options.max_error_for(level), options.with_skirts)
    geometry = martini_geometry(
        mesh,
        terrain,
        tile_size,
        exaggeration=options.exaggeration,
        skirt_depth=options.skirt_depth,
    )
    return GeometryResult(
        geometry=geometry, heights=terrain.reshape(tile_size + 1, tile_size + 1)
    )


DEFAULT_STRATEGIES: Final[Mapping[NodeKind, NodeStrategy]] = MappingProxyType(
    {
        NodeKind.PLANE: NodeStrategy(NodeKind.PLANE, False, planar_transform, _plane),
        NodeKind.SPHERE: NodeStrategy(NodeKind.SPHERE, False, spherical_transform, _sphere),
        NodeKind.HEIGHT: NodeStrategy(NodeKind.HEIGHT, True, planar_transform, _height),
        NodeKind.HEIGHT_SHADER: NodeStrategy(
            NodeKind.HEIGHT_SHADER, True, planar_transform, _height_shader
        ),
        NodeKind.MARTINI: NodeStrategy(
            NodeKind.MARTINI, True, planar_transform, _martini, heavy=True
        ),
    }
)
