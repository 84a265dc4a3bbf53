from __future__ import annotations

import random
from typing import Any

import numpy as np
import pytest

from terrain_lod.camera import ViewerState, look_at, looking_down, perspective
from terrain_lod.lod import (
    LODFrustum,
    LODFrustumOrthographic,
    LODRadial,
    LODRaycast,
    closest_zoom_level,
)
from terrain_lod.node import QuadTree
from terrain_lod.render import GroundPlaneAdapter, RayHit
from terrain_lod.strategies import EARTH_PERIMETER


class RecordingLoader:
    def __init__(self) -> None:
        self.started: list[int] = []

    def start(self, tree: QuadTree, node_id: int) -> None:
        self.started.append(node_id)


class MutationSpy:
    """Counts structural changes made through a tree."""

    def __init__(self, tree: QuadTree, monkeypatch: pytest.MonkeyPatch) -> None:
        self.subdivided: list[str] = []
        self.simplified: list[str] = []
        subdivide = tree.subdivide
        simplify = tree.simplify

        def spy_subdivide(node_id: int, **kwargs: Any) -> bool:
            changed = subdivide(node_id, **kwargs)
            if changed:
                self.subdivided.append(tree.node(node_id).key())
            return changed

        def spy_simplify(node_id: int) -> bool:
            changed = simplify(node_id)
            if changed:
                self.simplified.append(tree.node(node_id).key())
            return changed

        monkeypatch.setattr(tree, "subdivide", spy_subdivide)
        monkeypatch.setattr(tree, "simplify", spy_simplify)

    @property
    def total(self) -> int:
        return len(self.subdivided) + len(self.simplified)


def _tree(max_zoom: int = 20, **kwargs: Any) -> QuadTree:
    return QuadTree(loader=RecordingLoader(), max_zoom=lambda: max_zoom, **kwargs)


def _ready_children(tree: QuadTree, node_id: int) -> None:
    for child_id in tree.node(node_id).children:
        tree.node_ready(child_id)


# -- radial ---------------------------------------------------------------


def test_radial_subdivides_exactly_once_per_frame(monkeypatch: pytest.MonkeyPatch) -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    spy = MutationSpy(tree, monkeypatch)
    lod = LODRadial()
    viewer = ViewerState(position=(0.0, 0.0, 0.0))

    assert lod.update_lod(tree, viewer)
    assert spy.subdivided == ["0/0/0"]
    assert spy.total == 1

    # children still loading: nothing else can change
    assert not lod.update_lod(tree, viewer)
    assert spy.total == 1


def test_radial_simplifies_far_nodes_once(monkeypatch: pytest.MonkeyPatch) -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    tree.subdivide(tree.root)
    _ready_children(tree, tree.root)
    spy = MutationSpy(tree, monkeypatch)
    far_away = ViewerState(position=(1e15, 0.0, 0.0))

    assert LODRadial().update_lod(tree, far_away)
    assert spy.simplified == ["0/0/0"]
    assert spy.total == 1
    assert tree.node(tree.root).is_leaf

    # a lone root has no parent to simplify
    assert not LODRadial().update_lod(tree, far_away)


def test_radial_distance_scales_with_level() -> None:
    tree = _tree(max_zoom=4)
    viewer = ViewerState(position=(3.0, 4.0, 0.0))
    assert LODRadial().node_distance(tree, tree.node(tree.root), viewer) == pytest.approx(5.0 / 16)


def test_radial_rejects_inverted_thresholds() -> None:
    with pytest.raises(ValueError):
        LODRadial(subdivide_distance=100.0, simplify_distance=10.0)


# -- frustum --------------------------------------------------------------


def test_frustum_only_subdivides_visible_nodes() -> None:
    tree = _tree(max_zoom=3)
    tree.node_ready(tree.root)
    lod = LODFrustum(subdivide_distance=1e9, simplify_distance=2e9)
    # hovering over the bottom-right quadrant
    viewer = looking_down(EARTH_PERIMETER / 4, EARTH_PERIMETER / 4, 1e6, fov_deg=10.0)

    assert lod.update_lod(tree, viewer)
    _ready_children(tree, tree.root)
    assert lod.update_lod(tree, viewer)

    children = [tree.node(c) for c in tree.node(tree.root).children]
    assert [c.key() for c in children if c.children] == ["1/1/1"]


def test_frustum_point_only_tests_centres() -> None:
    tree = _tree(max_zoom=3)
    tree.node_ready(tree.root)
    viewer = looking_down(EARTH_PERIMETER / 4, EARTH_PERIMETER / 4, 1e6, fov_deg=10.0)

    # the root centre is far outside a narrow view cone
    assert not LODFrustum(subdivide_distance=1e9, simplify_distance=2e9, point_only=True).update_lod(
        tree, viewer
    )
    assert tree.node(tree.root).is_leaf


def test_frustum_without_matrix_acts_radial() -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    assert LODFrustum().update_lod(tree, ViewerState(position=(0.0, 0.0, 0.0)))
    assert len(tree.node(tree.root).children) == 4


def test_frustum_simplifies_nodes_outside_the_view(monkeypatch: pytest.MonkeyPatch) -> None:
    tree = _tree(max_zoom=3)
    tree.node_ready(tree.root)
    tree.subdivide(tree.root)
    _ready_children(tree, tree.root)
    spy = MutationSpy(tree, monkeypatch)
    lod = LODFrustum(point_only=True)
    # looking straight up: every tile sits behind the near plane
    eye = np.array([0.0, 100.0, 0.0])
    view = look_at(eye, np.array([0.0, 200.0, 0.0]), np.array([0.0, 0.0, -1.0]))
    viewer = ViewerState(position=eye, view_projection=perspective(10.0, 1.0, 10.0, 1e6) @ view)

    frustum = viewer.frustum()
    for child_id in tree.node(tree.root).children:
        child = tree.node(child_id)
        assert not lod.in_view(tree, child, frustum)
        assert lod.node_distance(tree, child, viewer) > lod.simplify_distance

    assert lod.update_lod(tree, viewer)
    assert spy.simplified == ["0/0/0"]
    assert spy.total == 1
    assert tree.node(tree.root).is_leaf


# -- orthographic ---------------------------------------------------------


def test_closest_zoom_level() -> None:
    assert closest_zoom_level(1e6) == 0
    assert closest_zoom_level(78271.484) == 0
    assert closest_zoom_level(1.2) == 16
    assert closest_zoom_level(0.0) == 22


def test_orthographic_refines_toward_target_level(monkeypatch: pytest.MonkeyPatch) -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    spy = MutationSpy(tree, monkeypatch)
    lod = LODFrustumOrthographic()
    level_two = ViewerState(position=(0.0, 0.0, 0.0), orthographic=True, zoom=1 / 19567.871)

    assert lod.update_lod(tree, level_two)
    assert spy.subdivided == ["0/0/0"]
    # blocked until the siblings are ready
    assert not lod.update_lod(tree, level_two)

    _ready_children(tree, tree.root)
    assert lod.update_lod(tree, level_two)
    assert spy.subdivided == ["0/0/0", "1/0/0"]

    level_zero = ViewerState(position=(0.0, 0.0, 0.0), orthographic=True, zoom=1 / 78271.484)
    assert lod.update_lod(tree, level_zero)
    assert spy.simplified == ["0/0/0"]
    assert spy.total == 3


def test_orthographic_with_perspective_viewer_uses_frustum_lod() -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    assert LODFrustumOrthographic().update_lod(tree, ViewerState(position=(0.0, 0.0, 0.0)))
    assert not tree.node(tree.root).is_leaf


def test_orthographic_rejects_non_positive_zoom() -> None:
    tree = _tree()
    with pytest.raises(ValueError):
        LODFrustumOrthographic().update_lod(
            tree, ViewerState(position=(0.0, 0.0, 0.0), orthographic=True, zoom=0.0)
        )


# -- raycast --------------------------------------------------------------


def test_ground_plane_adapter_hits_drawn_tile() -> None:
    tree = _tree()
    adapter = GroundPlaneAdapter()
    viewer = looking_down(EARTH_PERIMETER / 8, EARTH_PERIMETER / 8, 1000.0, fov_deg=10.0)

    assert adapter.raycast(tree, viewer, 0.0, 0.0) == []
    tree.node_ready(tree.root)
    hits = adapter.raycast(tree, viewer, 0.0, 0.0)
    assert len(hits) == 1
    assert hits[0].node_id == tree.root
    assert hits[0].distance == pytest.approx(1000.0, rel=1e-6)

    tree.subdivide(tree.root)
    _ready_children(tree, tree.root)
    hits = adapter.raycast(tree, viewer, 0.0, 0.0)
    assert tree.node(hits[0].node_id).key() == "1/1/1"


def test_ground_plane_adapter_misses_when_looking_up() -> None:
    tree = _tree()
    tree.node_ready(tree.root)
    eye = np.array([0.0, 100.0, 0.0])
    view = look_at(eye, np.array([0.0, 200.0, 0.0]), np.array([0.0, 0.0, -1.0]))
    viewer = ViewerState(position=eye, view_projection=perspective(10.0, 1.0, 10.0, 1e6) @ view)
    assert GroundPlaneAdapter().raycast(tree, viewer, 0.0, 0.0) == []


def test_raycast_subdivides_close_tiles_and_simplifies_far_ones() -> None:
    tree = _tree(adapter=GroundPlaneAdapter())
    tree.node_ready(tree.root)
    lod = LODRaycast(rng=random.Random(1))
    near = looking_down(0.0, 0.0, 1e6, fov_deg=10.0)

    assert lod.update_lod(tree, near)
    assert len(tree.node(tree.root).children) == 4
    # root still drawn and already split
    assert not lod.update_lod(tree, near)

    _ready_children(tree, tree.root)
    assert lod.update_lod(tree, near)
    assert sum(1 for c in tree.node(tree.root).children if tree.node(c).children) == 1

    # every tile under a narrow cone from this height measures below threshold_down
    far = looking_down(0.0, 0.0, 3e8, fov_deg=1.0)
    _ready_children(tree, next(c for c in tree.node(tree.root).children if tree.node(c).children))
    assert lod.update_lod(tree, far)


def test_raycast_power_distance() -> None:
    class FixedHit:
        def __init__(self) -> None:
            self.hits: list[RayHit] = []

        def raycast(self, tree, viewer, ndc_x, ndc_y):  # type: ignore[no-untyped-def]
            return self.hits

        def node_attached(self, tree, node):  # type: ignore[no-untyped-def]
            return None

        node_detached = node_attached

        def set_visible(self, tree, node, visible):  # type: ignore[no-untyped-def]
            return None

        set_rendered = set_visible

    adapter = FixedHit()
    tree = _tree(adapter=adapter)
    tree.node_ready(tree.root)
    adapter.hits = [RayHit(node_id=tree.root, distance=EARTH_PERIMETER)]

    # level 0: (2d) ** 0 == 1, scale / 1 is huge
    assert LODRaycast(power_distance=True).update_lod(tree, ViewerState(position=(0.0, 0.0, 0.0)))

    tree.simplify(tree.root)
    # scale / d == 1 > 0.6 without the power term
    assert LODRaycast().update_lod(tree, ViewerState(position=(0.0, 0.0, 0.0)))

    tree.simplify(tree.root)
    assert not LODRaycast(scale_distance=False, threshold_up=1e12).update_lod(
        tree, ViewerState(position=(0.0, 0.0, 0.0))
    )
