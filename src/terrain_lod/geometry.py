from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .martini import MartiniMesh


@dataclass(frozen=True)
class TileGeometry:
    """Renderer-agnostic vertex buffers for one tile.

    Positions are in node-local units: the tile spans [-0.5, 0.5] on X and Z
    with +Y up, the node transform scales it into world space.
    """

    positions: np.ndarray
    uvs: np.ndarray
    indices: np.ndarray
    normals: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError("positions must be a (n, 3) array")
        if self.uvs.shape != (self.positions.shape[0], 2):
            raise ValueError("uvs must be a (n, 2) array matching positions")
        if self.indices.ndim != 1 or self.indices.shape[0] % 3 != 0:
            raise ValueError("indices must be a flat array of triangles")

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        return int(self.indices.shape[0] // 3)


def _build(
    vertices: Sequence[float],
    uvs: Sequence[float],
    indices: Sequence[int],
    normals: Optional[Sequence[float]] = None,
) -> TileGeometry:
    return TileGeometry(
        positions=np.asarray(vertices, dtype=np.float32).reshape(-1, 3),
        uvs=np.asarray(uvs, dtype=np.float32).reshape(-1, 2),
        indices=np.asarray(indices, dtype=np.uint32),
        normals=(
            None if normals is None else np.asarray(normals, dtype=np.float32).reshape(-1, 3)
        ),
    )


def plane_geometry(
    width: float = 1.0,
    height: float = 1.0,
    width_segments: int = 1,
    height_segments: int = 1,
    *,
    skirt: bool = False,
    skirt_depth: float = 10.0,
) -> TileGeometry:
    """XZ plane with normals facing +Y, optionally with skirts on all edges."""

    if width_segments < 1 or height_segments < 1:
        raise ValueError("segments must be >= 1")

    width_half = width / 2
    height_half = height / 2
    grid_x = width_segments + 1
    grid_z = height_segments + 1
    segment_width = width / width_segments
    segment_height = height / height_segments

    vertices: list[float] = []
    normals: list[float] = []
    uvs: list[float] = []
    indices: list[int] = []

    for iz in range(grid_z):
        z = iz * segment_height - height_half
        for ix in range(grid_x):
            x = ix * segment_width - width_half
            vertices.extend((x, 0.0, z))
            normals.extend((0.0, 1.0, 0.0))
            uvs.extend((ix / width_segments, 1 - iz / height_segments))

    for iz in range(height_segments):
        for ix in range(width_segments):
            a = ix + grid_x * iz
            b = ix + grid_x * (iz + 1)
            c = ix + 1 + grid_x * (iz + 1)
            d = ix + 1 + grid_x * iz
            indices.extend((a, b, d, b, c, d))

    if skirt:
        # north edge (z = -height_half)
        start = len(vertices) // 3
        for ix in range(grid_x):
            vertices.extend((ix * segment_width - width_half, -skirt_depth, -height_half))
            normals.extend((0.0, 1.0, 0.0))
            uvs.extend((ix / width_segments, 1.0))
        for ix in range(width_segments):
            a, d = ix, ix + 1
            b, c = start + ix, start + ix + 1
            indices.extend((d, b, a, d, c, b))

        # south edge (z = +height_half)
        start = len(vertices) // 3
        for ix in range(grid_x):
            vertices.extend((ix * segment_width - width_half, -skirt_depth, height_half))
            normals.extend((0.0, 1.0, 0.0))
            uvs.extend((ix / width_segments, 0.0))
        offset = grid_x * grid_z - width_segments - 1
        for ix in range(width_segments):
            a, d = offset + ix, offset + ix + 1
            b, c = start + ix, start + ix + 1
            indices.extend((a, b, d, b, c, d))

        # west edge (x = -width_half)
        start = len(vertices) // 3
        for iz in range(grid_z):
            vertices.extend((-width_half, -skirt_depth, iz * segment_height - height_half))
            normals.extend((0.0, 1.0, 0.0))
            uvs.extend((0.0, 1 - iz / height_segments))
        for iz in range(height_segments):
            a, d = iz * grid_x, (iz + 1) * grid_x
            b, c = start + iz, start + iz + 1
            indices.extend((a, b, d, b, c, d))

        # east edge (x = +width_half)
        start = len(vertices) // 3
        for iz in range(grid_z):
            vertices.extend((width_half, -skirt_depth, iz * segment_height - height_half))
            normals.extend((0.0, 1.0, 0.0))
            uvs.extend((1.0, 1 - iz / height_segments))
        for iz in range(height_segments):
            a = iz * grid_x + width_segments
            d = (iz + 1) * grid_x + width_segments
            b, c = start + iz, start + iz + 1
            indices.extend((d, b, a, d, c, b))

    return _build(vertices, uvs, indices, normals)


def height_grid_geometry(
    heights: np.ndarray, *, skirt: bool = False, skirt_depth: float = 10.0
) -> TileGeometry:
    """Regular grid whose vertex Y values are taken from a (n, n) heightmap.

    Skirt vertices hang ``skirt_depth`` below the height of the edge vertex
    they belong to.
    """

    arr = np.asarray(heights, dtype=np.float32)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or arr.shape[0] < 2:
        raise ValueError("heights must be a square (n, n) array with n >= 2")

    segments = int(arr.shape[0]) - 1
    base = plane_geometry(1.0, 1.0, segments, segments, skirt=skirt, skirt_depth=skirt_depth)
    positions = base.positions.copy()
    grid = arr.size
    positions[:grid, 1] = arr.reshape(-1)
    if skirt:
        # same edge order as plane_geometry: north, south, west, east
        edges = np.concatenate((arr[0, :], arr[-1, :], arr[:, 0], arr[:, -1]))
        positions[grid:, 1] += edges
    return TileGeometry(
        positions=positions, uvs=base.uvs, indices=base.indices, normals=base.normals
    )


def sphere_geometry(
    radius: float,
    width_segments: int,
    height_segments: int,
    phi_start: float,
    phi_length: float,
    theta_start: float,
    theta_length: float,
) -> TileGeometry:
    width_segments = max(1, int(width_segments))
    height_segments = max(1, int(height_segments))
    theta_end = theta_start + theta_length

    vertices: list[float] = []
    normals: list[float] = []
    uvs: list[float] = []
    indices: list[int] = []

    grid: list[list[int]] = []
    index = 0
    for iy in range(height_segments + 1):
        row: list[int] = []
        v = iy / height_segments
        sin_theta = math.sin(theta_start + v * theta_length)
        cos_theta = math.cos(theta_start + v * theta_length)
        for ix in range(width_segments + 1):
            u = ix / width_segments
            phi = phi_start + u * phi_length
            vx = -radius * math.cos(phi) * sin_theta
            vy = radius * cos_theta
            vz = radius * math.sin(phi) * sin_theta
            vertices.extend((vx, vy, vz))
            length = math.sqrt(vx * vx + vy * vy + vz * vz) or 1.0
            normals.extend((vx / length, vy / length, vz / length))
            uvs.extend((u, 1 - v))
            row.append(index)
            index += 1
        grid.append(row)

    for iy in range(height_segments):
        for ix in range(width_segments):
            a = grid[iy][ix + 1]
            b = grid[iy][ix]
            c = grid[iy + 1][ix]
            d = grid[iy + 1][ix + 1]
            # poles collapse one of the two triangles of the quad
            if iy != 0 or theta_start > 0:
                indices.extend((a, b, d))
            if iy != height_segments - 1 or theta_end < math.pi:
                indices.extend((b, c, d))

    return _build(vertices, uvs, indices, normals)


def sphere_tile_geometry(level: int, x: int, y: int, *, segments: int = 80) -> TileGeometry:
    """Unit-sphere patch covering quadtree tile (level, x, y)."""

    tiles = 2**level
    max_segments = 40
    tile_segments = int(math.floor((segments * (max_segments / (level + 1))) / max_segments))

    phi_length = (1 / tiles) * 2 * math.pi
    theta_length = (1 / tiles) * math.pi
    return sphere_geometry(
        1.0,
        tile_segments,
        tile_segments,
        x * phi_length,
        phi_length,
        y * theta_length,
        theta_length,
    )


def martini_geometry(
    mesh: MartiniMesh,
    terrain: np.ndarray,
    tile_size: int,
    *,
    bounds: tuple[float, float, float, float] = (-0.5, -0.5, 0.5, 0.5),
    exaggeration: float = 1.0,
    skirt_depth: float = 0.0,
) -> TileGeometry:
    """Scale a pixel-grid Martini mesh into node-local coordinates.

    X/Z follow the tile bounds, Y is the terrain height times exaggeration.
    Skirt vertices are dropped by skirt_depth below their edge vertex.
    """

    grid_size = tile_size + 1
    terrain = np.asarray(terrain, dtype=np.float32).reshape(-1)
    if terrain.shape[0] != grid_size * grid_size:
        raise ValueError("terrain does not match tile_size")

    pixels = mesh.vertices.reshape(-1, 2).astype(np.int64)
    px = pixels[:, 0]
    py = pixels[:, 1]

    min_x, min_y, max_x, max_y = bounds
    x_scale = (max_x - min_x) / tile_size
    y_scale = (max_y - min_y) / tile_size

    positions = np.empty((pixels.shape[0], 3), dtype=np.float32)
    positions[:, 0] = px * x_scale + min_x
    positions[:, 1] = terrain[py * grid_size + px] * exaggeration
    positions[:, 2] = py * y_scale - max_y
    if skirt_depth:
        positions[mesh.num_vertices_without_skirts :, 1] -= skirt_depth

    uvs = np.empty((pixels.shape[0], 2), dtype=np.float32)
    uvs[:, 0] = px / tile_size
    uvs[:, 1] = py / tile_size

    return TileGeometry(positions=positions, uvs=uvs, indices=mesh.triangles.astype(np.uint32))
