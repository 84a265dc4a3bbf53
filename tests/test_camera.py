from __future__ import annotations

import numpy as np
import pytest

from terrain_lod.camera import Frustum, ViewerState


def test_identity_frustum_is_the_clip_cube() -> None:
    frustum = Frustum.from_matrix(np.eye(4))

    assert frustum.contains_point((0.0, 0.0, 0.0))
    assert frustum.contains_point((1.0, -1.0, 1.0))
    assert not frustum.contains_point((1.5, 0.0, 0.0))
    assert not frustum.contains_point((0.0, 0.0, -1.01))

    assert frustum.intersects_sphere((1.5, 0.0, 0.0), 0.6)
    assert not frustum.intersects_sphere((1.5, 0.0, 0.0), 0.4)
    np.testing.assert_allclose(frustum.distances((0.0, 0.0, 0.0)), np.ones(6))


def test_frustum_input_validation() -> None:
    with pytest.raises(ValueError):
        Frustum(np.zeros((5, 4)))
    with pytest.raises(ValueError):
        Frustum.from_matrix(np.eye(3))
    with pytest.raises(ValueError):
        Frustum.from_matrix(np.eye(4)).contains_point((0.0, 0.0))


def test_viewer_without_matrix_has_no_frustum_or_rays() -> None:
    viewer = ViewerState(position=[1, 2, 3])
    assert viewer.position.dtype == np.float64
    assert viewer.frustum() is None
    assert viewer.ray(0.0, 0.0) is None


def test_orthographic_ray_starts_on_near_plane() -> None:
    viewer = ViewerState(position=(0.0, 0.0, 0.0), view_projection=np.eye(4), orthographic=True)
    origin, direction = viewer.ray(0.5, -0.25)

    np.testing.assert_allclose(origin, [0.5, -0.25, -1.0])
    np.testing.assert_allclose(direction, [0.0, 0.0, 1.0])


def test_viewer_rejects_bad_matrix() -> None:
    with pytest.raises(ValueError):
        ViewerState(position=(0.0, 0.0, 0.0), view_projection=np.eye(3))


def test_looking_down_centre_ray_hits_the_ground_below() -> None:
    from terrain_lod.camera import looking_down

    viewer = looking_down(100.0, -50.0, 1000.0, fov_deg=45.0)
    origin, direction = viewer.ray(0.0, 0.0)

    np.testing.assert_allclose(origin, (100.0, 1000.0, -50.0))
    np.testing.assert_allclose(direction, (0.0, -1.0, 0.0), atol=1e-9)
    assert viewer.frustum().contains_point((100.0, 0.0, -50.0))
    assert not viewer.frustum().contains_point((100.0, 2000.0, -50.0))


def test_look_at_rejects_parallel_up() -> None:
    from terrain_lod.camera import look_at, perspective

    with pytest.raises(ValueError):
        look_at((0.0, 10.0, 0.0), (0.0, 0.0, 0.0), up=(0.0, 1.0, 0.0))
    with pytest.raises(ValueError):
        perspective(60.0, 1.0, 0.0, 100.0)
