"""Level-of-detail controllers.

A controller is asked once per frame to refine or coarsen the tree for the
current viewer. Each call performs at most one structural change: it stops
at the first `subdivide` or `simplify` that actually modifies the tree, so
the work done per frame stays bounded.
"""

from __future__ import annotations

import logging
import random
from typing import Final, Optional, Protocol, Sequence

import numpy as np

from .camera import Frustum, ViewerState
from .node import QuadTree, QuadTreeNode

logger = logging.getLogger(__name__)

# Meters per pixel at each web-mercator zoom level (256 px tiles, equator).
ZOOM_LEVEL_METERS_PER_PIXEL: Final[tuple[float, ...]] = (
    78271.484,
    39135.742,
    19567.871,
    9783.936,
    4891.968,
    2445.984,
    1222.992,
    611.496,
    305.748,
    152.874,
    76.437,
    38.218,
    19.109,
    9.555,
    4.777,
    2.389,
    1.194,
    0.597,
    0.299,
    0.149,
    0.075,
    0.037,
    0.019,
)


class LODControl(Protocol):
    def update_lod(self, tree: QuadTree, viewer: ViewerState) -> bool: ...


def _simplify_parent(tree: QuadTree, node: QuadTreeNode) -> bool:
    if node.parent is None:
        return False
    return tree.simplify(node.parent)


class LODRadial:
    """Subdivide nodes close to the camera, simplify far ones.

    The distance to each node centre is divided by 2 ** (max_zoom - level)
    so that deeper nodes need a proportionally closer camera.
    """

    def __init__(self, *, subdivide_distance: float = 50.0, simplify_distance: float = 300.0) -> None:
        if simplify_distance < subdivide_distance:
            raise ValueError("simplify_distance must be >= subdivide_distance")
        self.subdivide_distance = float(subdivide_distance)
        self.simplify_distance = float(simplify_distance)

    def node_distance(self, tree: QuadTree, node: QuadTreeNode, viewer: ViewerState) -> float:
        center = tree.world_center(node.id)
        distance = float(np.linalg.norm(viewer.position - center))
        return distance / 2 ** (tree.max_zoom() - node.level)

    def in_view(self, tree: QuadTree, node: QuadTreeNode, frustum: Optional[Frustum]) -> bool:
        return True

    def update_lod(self, tree: QuadTree, viewer: ViewerState) -> bool:
        frustum = viewer.frustum()
        for node in tree.traverse():
            distance = self.node_distance(tree, node, viewer)
            if distance < self.subdivide_distance:
                if self.in_view(tree, node, frustum) and tree.subdivide(node.id):
                    logger.debug("lod_subdivide", extra={"node": node.key(), "distance": distance})
                    return True
            elif distance > self.simplify_distance:
                if _simplify_parent(tree, node):
                    logger.debug("lod_simplify", extra={"node": node.key(), "distance": distance})
                    return True
        return False


class LODFrustum(LODRadial):
    """Radial LOD that only subdivides nodes inside the camera frustum.

    With ``point_only`` only the node centre is tested, otherwise its
    bounding sphere. Viewers without a view-projection matrix see everything.
    """

    def __init__(
        self,
        *,
        subdivide_distance: float = 120.0,
        simplify_distance: float = 400.0,
        point_only: bool = False,
    ) -> None:
        super().__init__(subdivide_distance=subdivide_distance, simplify_distance=simplify_distance)
        self.point_only = point_only

    def in_view(self, tree: QuadTree, node: QuadTreeNode, frustum: Optional[Frustum]) -> bool:
        if frustum is None:
            return True
        center = tree.world_center(node.id)
        if self.point_only:
            return frustum.contains_point(center)
        return frustum.intersects_sphere(center, tree.bounding_radius(node.id))


def closest_zoom_level(
    meters_per_pixel: float, table: Sequence[float] = ZOOM_LEVEL_METERS_PER_PIXEL
) -> int:
    best = 0
    best_difference = float("inf")
    for level, ratio in enumerate(table):
        difference = abs(ratio - meters_per_pixel)
        if difference < best_difference:
            best_difference = difference
            best = level
    return best


class LODFrustumOrthographic(LODFrustum):
    """Pick the zoom level matching an orthographic camera's scale.

    In-view nodes shallower than the target level subdivide, deeper ones
    simplify their parent. Perspective viewers use plain frustum LOD.
    """

    def update_lod(self, tree: QuadTree, viewer: ViewerState) -> bool:
        if not viewer.orthographic:
            return super().update_lod(tree, viewer)
        if viewer.zoom <= 0:
            raise ValueError("orthographic viewer zoom must be > 0")

        target = closest_zoom_level(1.0 / viewer.zoom)
        frustum = viewer.frustum()
        for node in tree.traverse():
            if frustum is not None and not frustum.intersects_sphere(
                tree.world_center(node.id), tree.bounding_radius(node.id)
            ):
                continue
            if node.level < target:
                if tree.subdivide(node.id):
                    logger.debug("lod_subdivide", extra={"node": node.key(), "target_level": target})
                    return True
            elif node.level > target:
                if _simplify_parent(tree, node):
                    logger.debug("lod_simplify", extra={"node": node.key(), "target_level": target})
                    return True
        return False


class LODRaycast:
    """Cast random screen rays and refine whatever drawn tile they hit.

    Ray hits come from the tree's render adapter. The hit distance is turned
    into a screen-size metric: optionally ``(2 * d) ** level`` and, by
    default, the node's world scale divided by the distance.
    """

    def __init__(
        self,
        *,
        subdivision_rays: int = 1,
        threshold_up: float = 0.6,
        threshold_down: float = 0.15,
        power_distance: bool = False,
        scale_distance: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        if subdivision_rays < 1:
            raise ValueError("subdivision_rays must be >= 1")
        self.subdivision_rays = int(subdivision_rays)
        self.threshold_up = float(threshold_up)
        self.threshold_down = float(threshold_down)
        self.power_distance = power_distance
        self.scale_distance = scale_distance
        self.rng = rng or random.Random()

    def update_lod(self, tree: QuadTree, viewer: ViewerState) -> bool:
        hits = []
        for _ in range(self.subdivision_rays):
            ndc_x = self.rng.random() * 2 - 1
            ndc_y = self.rng.random() * 2 - 1
            hits.extend(tree.adapter.raycast(tree, viewer, ndc_x, ndc_y))

        for hit in hits:
            node = tree.get(hit.node_id)
            if node is None or hit.distance <= 0:
                continue

            distance = hit.distance
            if self.power_distance:
                distance = (distance * 2) ** node.level
            if self.scale_distance:
                distance = tree.world_scale(node.id) / distance

            if distance > self.threshold_up:
                if tree.subdivide(node.id):
                    return True
            elif distance < self.threshold_down:
                if _simplify_parent(tree, node):
                    return True
        return False
