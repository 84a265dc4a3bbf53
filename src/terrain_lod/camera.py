from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


def _as_vec3(value: Sequence[float] | np.ndarray) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.shape[0] != 3:
        raise ValueError("expected a 3-component vector")
    return arr


class Frustum:
    """Six clip planes extracted from a view-projection matrix.

    The matrix maps column vectors: clip = M @ (x, y, z, 1). Planes are stored
    normalised as (nx, ny, nz, d) with the inside where n . p + d >= 0.
    """

    def __init__(self, planes: np.ndarray) -> None:
        arr = np.asarray(planes, dtype=np.float64)
        if arr.shape != (6, 4):
            raise ValueError("frustum needs six (a, b, c, d) planes")
        self.planes = arr

    @classmethod
    def from_matrix(cls, view_projection: np.ndarray) -> "Frustum":
        m = np.asarray(view_projection, dtype=np.float64)
        if m.shape != (4, 4):
            raise ValueError("view_projection must be a 4x4 matrix")
        rows = [
            m[3] + m[0],  # left
            m[3] - m[0],  # right
            m[3] + m[1],  # bottom
            m[3] - m[1],  # top
            m[3] + m[2],  # near
            m[3] - m[2],  # far
        ]
        planes = []
        for row in rows:
            norm = float(np.linalg.norm(row[:3]))
            planes.append(row / norm if norm > 0 else row)
        return cls(np.vstack(planes))

    def distances(self, point: Sequence[float] | np.ndarray) -> np.ndarray:
        p = _as_vec3(point)
        return self.planes[:, :3] @ p + self.planes[:, 3]

    def contains_point(self, point: Sequence[float] | np.ndarray) -> bool:
        return bool(np.all(self.distances(point) >= 0.0))

    def intersects_sphere(self, center: Sequence[float] | np.ndarray, radius: float) -> bool:
        return bool(np.all(self.distances(center) >= -float(radius)))


@dataclass(frozen=True)
class ViewerState:
    """Per-frame camera input for LOD decisions."""

    position: np.ndarray
    view_projection: Optional[np.ndarray] = None
    orthographic: bool = False
    # Orthographic zoom, meters per pixel is taken as 1 / zoom.
    zoom: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _as_vec3(self.position))
        if self.view_projection is not None:
            vp = np.asarray(self.view_projection, dtype=np.float64)
            if vp.shape != (4, 4):
                raise ValueError("view_projection must be a 4x4 matrix")
            object.__setattr__(self, "view_projection", vp)

    def frustum(self) -> Optional[Frustum]:
        if self.view_projection is None:
            return None
        return Frustum.from_matrix(self.view_projection)

    def ray(self, ndc_x: float, ndc_y: float) -> Optional[tuple[np.ndarray, np.ndarray]]:
        """World-space (origin, unit direction) through a normalised device point."""

        if self.view_projection is None:
            return None
        inverse = np.linalg.inv(self.view_projection)

        def unproject(ndc_z: float) -> np.ndarray:
            clip = inverse @ np.array([ndc_x, ndc_y, ndc_z, 1.0])
            return clip[:3] / clip[3]

        near = unproject(-1.0)
        far = unproject(1.0)
        direction = far - near
        length = float(np.linalg.norm(direction))
        if length == 0.0:
            return None
        origin = near if self.orthographic else self.position
        return origin, direction / length


def look_at(
    eye: Sequence[float] | np.ndarray,
    target: Sequence[float] | np.ndarray,
    up: Sequence[float] | np.ndarray = (0.0, 1.0, 0.0),
) -> np.ndarray:
    """Right-handed view matrix with the camera looking down -z."""

    eye = _as_vec3(eye)
    forward = _as_vec3(target) - eye
    forward = forward / np.linalg.norm(forward)
    side = np.cross(forward, _as_vec3(up))
    norm = float(np.linalg.norm(side))
    if norm == 0.0:
        raise ValueError("up vector is parallel to the view direction")
    side = side / norm
    true_up = np.cross(side, forward)

    view = np.eye(4)
    view[0, :3] = side
    view[1, :3] = true_up
    view[2, :3] = -forward
    view[0, 3] = -side @ eye
    view[1, 3] = -true_up @ eye
    view[2, 3] = forward @ eye
    return view


def perspective(fov_deg: float, aspect: float, near: float, far: float) -> np.ndarray:
    if not 0.0 < near < far:
        raise ValueError("perspective needs 0 < near < far")
    f = 1.0 / math.tan(math.radians(fov_deg) / 2)
    return np.array(
        [
            [f / aspect, 0.0, 0.0, 0.0],
            [0.0, f, 0.0, 0.0],
            [0.0, 0.0, (far + near) / (near - far), 2 * far * near / (near - far)],
            [0.0, 0.0, -1.0, 0.0],
        ]
    )


def looking_down(
    x: float,
    z: float,
    altitude: float,
    *,
    fov_deg: float = 60.0,
    near: float = 10.0,
    far: float = 1e10,
) -> ViewerState:
    """Perspective viewer hovering at ``altitude`` over (x, z), facing the ground."""

    eye = np.array([x, altitude, z], dtype=np.float64)
    view = look_at(eye, (x, 0.0, z), up=(0.0, 0.0, -1.0))
    return ViewerState(position=eye, view_projection=perspective(fov_deg, 1.0, near, far) @ view)
