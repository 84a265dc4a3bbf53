"""Seam between the quadtree and whatever draws it.

The tree never touches a scene graph directly. It reports attachment and
visibility changes to a `RenderAdapter`, and ray-based LOD control asks the
adapter which drawn tiles a screen ray hits.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

import numpy as np

from .camera import ViewerState
from .strategies import EARTH_PERIMETER

if TYPE_CHECKING:  # pragma: no cover
    from .node import QuadTree, QuadTreeNode


@dataclass(frozen=True)
class RayHit:
    node_id: int
    distance: float
    point: Optional[np.ndarray] = None


class RenderAdapter(Protocol):
    def node_attached(self, tree: "QuadTree", node: "QuadTreeNode") -> None: ...

    def node_detached(self, tree: "QuadTree", node: "QuadTreeNode") -> None: ...

    def set_visible(self, tree: "QuadTree", node: "QuadTreeNode", visible: bool) -> None: ...

    def set_rendered(self, tree: "QuadTree", node: "QuadTreeNode", rendered: bool) -> None: ...

    def raycast(
        self, tree: "QuadTree", viewer: ViewerState, ndc_x: float, ndc_y: float
    ) -> list[RayHit]: ...


class NullRenderAdapter:
    """Adapter for headless use: tracks nothing and hits nothing."""

    def node_attached(self, tree: "QuadTree", node: "QuadTreeNode") -> None:
        return None

    def node_detached(self, tree: "QuadTree", node: "QuadTreeNode") -> None:
        return None

    def set_visible(self, tree: "QuadTree", node: "QuadTreeNode", visible: bool) -> None:
        return None

    def set_rendered(self, tree: "QuadTree", node: "QuadTreeNode", rendered: bool) -> None:
        return None

    def raycast(
        self, tree: "QuadTree", viewer: ViewerState, ndc_x: float, ndc_y: float
    ) -> list[RayHit]:
        return []


class GroundPlaneAdapter(NullRenderAdapter):
    """Ray tests against the flat y = 0 map plane of planar node kinds.

    The hit tile is the drawn node found by descending from the root through
    the quadrant that contains the intersection point.
    """

    def raycast(
        self, tree: "QuadTree", viewer: ViewerState, ndc_x: float, ndc_y: float
    ) -> list[RayHit]:
        ray = viewer.ray(ndc_x, ndc_y)
        if ray is None:
            return []
        origin, direction = ray
        if abs(direction[1]) < 1e-12:
            return []
        t = -origin[1] / direction[1]
        if t < 0:
            return []
        point = origin + direction * t

        u = point[0] / EARTH_PERIMETER + 0.5
        v = point[2] / EARTH_PERIMETER + 0.5
        if not (0.0 <= u < 1.0 and 0.0 <= v < 1.0):
            return []

        node = tree.get(tree.root)
        while node is not None:
            if node.drawn:
                return [RayHit(node_id=node.id, distance=float(t), point=point)]
            if not node.children:
                return []
            tiles = 2 ** (node.level + 1)
            cx = min(int(u * tiles), tiles - 1) - node.x * 2
            cy = min(int(v * tiles), tiles - 1) - node.y * 2
            node = tree.get(node.children[cy * 2 + cx])
        return []
