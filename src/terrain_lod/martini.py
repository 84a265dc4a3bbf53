"""RTIN terrain mesh generation (Martini).

A square heightmap of size 2**n + 1 is covered by two right triangles which
are split recursively along their hypotenuse. Every possible triangle has an
implicit id in a complete binary tree, so the corner coordinates of all of
them can be precomputed once per grid size and shared between tiles.

`MartiniTile.update` builds an error pyramid in one bottom-up pass and
`MartiniTile.get_mesh` extracts the coarsest mesh whose error stays below a
bound, optionally with skirts along the four tile edges.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class MartiniMesh:
    """Mesh in pixel-grid coordinates.

    `vertices` holds (x, y) pairs, `triangles` index triples. Vertices from
    `num_vertices_without_skirts` onwards are skirt drop vertices.
    """

    vertices: np.ndarray
    triangles: np.ndarray
    num_vertices_without_skirts: int

    @property
    def num_vertices(self) -> int:
        return int(self.vertices.shape[0] // 2)

    @property
    def num_triangles(self) -> int:
        return int(self.triangles.shape[0] // 3)


class Martini:
    def __init__(self, grid_size: int = 257) -> None:
        tile_size = int(grid_size) - 1
        if tile_size < 1 or tile_size & (tile_size - 1):
            raise ValueError(f"Expected grid size to be 2^n+1, got {grid_size}.")

        self.grid_size = int(grid_size)
        self.num_triangles = tile_size * tile_size * 2 - 2
        self.num_parent_triangles = self.num_triangles - tile_size * tile_size

        coords = [0] * (self.num_triangles * 4)
        for i in range(self.num_triangles):
            tri_id = i + 2
            ax = ay = bx = by = cx = cy = 0
            if tri_id & 1:
                # bottom-left root triangle
                bx = by = cx = tile_size
            else:
                # top-right root triangle
                ax = ay = cy = tile_size
            tri_id >>= 1
            while tri_id > 1:
                mx = (ax + bx) >> 1
                my = (ay + by) >> 1
                if tri_id & 1:
                    # left half
                    bx, by = ax, ay
                    ax, ay = cx, cy
                else:
                    # right half
                    ax, ay = bx, by
                    bx, by = cx, cy
                cx, cy = mx, my
                tri_id >>= 1
            k = i * 4
            coords[k] = ax
            coords[k + 1] = ay
            coords[k + 2] = bx
            coords[k + 3] = by

        self._coords = coords
        self.coords = np.asarray(coords, dtype=np.uint16)
        self.coords.setflags(write=False)

    @property
    def tile_size(self) -> int:
        return self.grid_size - 1

    def create_tile(self, terrain: Sequence[float] | np.ndarray) -> "MartiniTile":
        return MartiniTile(terrain, self)


@lru_cache(maxsize=16)
def get_martini(grid_size: int) -> Martini:
    """Shared, immutable triangle table for a grid size."""

    return Martini(grid_size)


class MartiniTile:
    def __init__(self, terrain: Sequence[float] | np.ndarray, martini: Martini) -> None:
        size = martini.grid_size
        arr = np.asarray(terrain, dtype=np.float32).reshape(-1)
        if arr.shape[0] != size * size:
            raise ValueError(
                f"Expected terrain data of length {size * size} ({size} x {size}), "
                f"got {arr.shape[0]}."
            )

        self.martini = martini
        self.terrain = arr
        self.errors = np.zeros(size * size, dtype=np.float32)
        self.update()

    def update(self) -> None:
        martini = self.martini
        size = martini.grid_size
        coords = martini._coords
        num_parent_triangles = martini.num_parent_triangles
        terrain = self.terrain.tolist()
        errors = [0.0] * (size * size)

        # smallest triangles first, so children are final before their parents
        for i in range(martini.num_triangles - 1, -1, -1):
            k = i * 4
            ax = coords[k]
            ay = coords[k + 1]
            bx = coords[k + 2]
            by = coords[k + 3]
            mx = (ax + bx) >> 1
            my = (ay + by) >> 1
            cx = mx + my - ay
            cy = my + ax - mx

            interpolated = (terrain[ay * size + ax] + terrain[by * size + bx]) / 2
            middle_index = my * size + mx
            middle_error = abs(interpolated - terrain[middle_index])

            if middle_error > errors[middle_index]:
                errors[middle_index] = middle_error

            if i < num_parent_triangles:
                left_child = ((ay + cy) >> 1) * size + ((ax + cx) >> 1)
                right_child = ((by + cy) >> 1) * size + ((bx + cx) >> 1)
                errors[middle_index] = max(
                    errors[middle_index], errors[left_child], errors[right_child]
                )

        self.errors = np.asarray(errors, dtype=np.float32)

    def get_mesh(self, max_error: float = 0.0, with_skirts: bool = False) -> MartiniMesh:
        size = self.martini.grid_size
        last = size - 1
        errors = self.errors.tolist()
        max_error = float(max_error)

        # 1-based vertex ids per grid pixel, 0 means not yet used
        indices = [0] * (size * size)
        num_vertices = 0
        num_triangles = 0

        left_skirt: list[int] = []
        right_skirt: list[int] = []
        bottom_skirt: list[int] = []
        top_skirt: list[int] = []

        def register(px: int, py: int) -> None:
            nonlocal num_vertices
            pixel = py * size + px
            if indices[pixel] != 0:
                return
            if with_skirts:
                if px == 0:
                    left_skirt.append(num_vertices)
                elif px == last:
                    right_skirt.append(num_vertices)
                if py == 0:
                    bottom_skirt.append(num_vertices)
                elif py == last:
                    top_skirt.append(num_vertices)
            num_vertices += 1
            indices[pixel] = num_vertices

        def count_elements(ax: int, ay: int, bx: int, by: int, cx: int, cy: int) -> None:
            nonlocal num_triangles
            mx = (ax + bx) >> 1
            my = (ay + by) >> 1
            if abs(ax - cx) + abs(ay - cy) > 1 and errors[my * size + mx] > max_error:
                count_elements(cx, cy, ax, ay, mx, my)
                count_elements(bx, by, cx, cy, mx, my)
            else:
                register(ax, ay)
                register(bx, by)
                register(cx, cy)
                num_triangles += 1

        count_elements(0, 0, last, last, last, 0)
        count_elements(last, last, 0, 0, 0, last)

        skirts = (left_skirt, right_skirt, bottom_skirt, top_skirt)
        total_vertex_coords = num_vertices * 2
        total_triangle_indices = num_triangles * 3
        if with_skirts:
            total_vertex_coords += sum(len(s) for s in skirts) * 2
            total_triangle_indices += sum(max(len(s) - 1, 0) * 2 for s in skirts) * 3

        vertices = [0] * total_vertex_coords
        triangles = [0] * total_triangle_indices
        tri_index = 0

        def process_triangle(ax: int, ay: int, bx: int, by: int, cx: int, cy: int) -> None:
            nonlocal tri_index
            mx = (ax + bx) >> 1
            my = (ay + by) >> 1
            if abs(ax - cx) + abs(ay - cy) > 1 and errors[my * size + mx] > max_error:
                process_triangle(cx, cy, ax, ay, mx, my)
                process_triangle(bx, by, cx, cy, mx, my)
                return

            a = indices[ay * size + ax] - 1
            b = indices[by * size + bx] - 1
            c = indices[cy * size + cx] - 1

            vertices[2 * a] = ax
            vertices[2 * a + 1] = ay
            vertices[2 * b] = bx
            vertices[2 * b + 1] = by
            vertices[2 * c] = cx
            vertices[2 * c + 1] = cy

            triangles[tri_index] = a
            triangles[tri_index + 1] = b
            triangles[tri_index + 2] = c
            tri_index += 3

        process_triangle(0, 0, last, last, last, 0)
        process_triangle(last, last, 0, 0, 0, last)

        if with_skirts:
            # sort direction per edge keeps the triangle winding consistent
            left_skirt.sort(key=lambda v: vertices[2 * v + 1])
            right_skirt.sort(key=lambda v: -vertices[2 * v + 1])
            bottom_skirt.sort(key=lambda v: -vertices[2 * v])
            top_skirt.sort(key=lambda v: vertices[2 * v])

            skirt_index = num_vertices * 2
            for skirt in skirts:
                if not skirt:
                    continue
                for i in range(len(skirt) - 1):
                    current = skirt[i]
                    following = skirt[i + 1]
                    current_drop = skirt_index // 2
                    next_drop = current_drop + 1

                    vertices[skirt_index] = vertices[2 * current]
                    vertices[skirt_index + 1] = vertices[2 * current + 1]
                    skirt_index += 2

                    triangles[tri_index:tri_index + 6] = [
                        current,
                        current_drop,
                        following,
                        current_drop,
                        next_drop,
                        following,
                    ]
                    tri_index += 6

                tail = skirt[-1]
                vertices[skirt_index] = vertices[2 * tail]
                vertices[skirt_index + 1] = vertices[2 * tail + 1]
                skirt_index += 2

        return MartiniMesh(
            vertices=np.asarray(vertices, dtype=np.uint16),
            triangles=np.asarray(triangles, dtype=np.uint32),
            num_vertices_without_skirts=num_vertices,
        )
