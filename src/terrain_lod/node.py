"""Quadtree of map tiles.

Nodes live in an arena owned by `QuadTree` and reference each other by
integer id. Structural changes (subdivide, simplify, dispose) and readiness
propagation all go through the tree so that a parent and its four children
swap visibility in a single step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Final, Iterator, Mapping, Optional, Protocol, Union

import numpy as np

from .errors import ConfigurationError, InvariantViolation
from .render import NullRenderAdapter, RenderAdapter
from .strategies import DEFAULT_STRATEGIES, NodeKind, NodeStrategy, NodeTransform

logger = logging.getLogger(__name__)

CHILDREN: Final[int] = 4


class QuadTreePosition(IntEnum):
    ROOT = -1
    TOP_LEFT = 0
    TOP_RIGHT = 1
    BOTTOM_LEFT = 2
    BOTTOM_RIGHT = 3


CHILD_POSITIONS: Final[tuple[QuadTreePosition, ...]] = (
    QuadTreePosition.TOP_LEFT,
    QuadTreePosition.TOP_RIGHT,
    QuadTreePosition.BOTTOM_LEFT,
    QuadTreePosition.BOTTOM_RIGHT,
)

# (dx, dy) offsets of each child relative to (2x, 2y)
CHILD_OFFSETS: Final[tuple[tuple[int, int], ...]] = ((0, 0), (1, 0), (0, 1), (1, 1))


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


class NodeLoader(Protocol):
    def start(self, tree: "QuadTree", node_id: int) -> None: ...


@dataclass(eq=False)
class QuadTreeNode:
    id: int
    level: int
    x: int
    y: int
    location: QuadTreePosition = QuadTreePosition.ROOT
    parent: Optional[int] = None
    children: tuple[int, ...] = ()
    cached_children: Optional[tuple[int, ...]] = None

    # Children that reported ready since the last subdivide.
    nodes_loaded: int = 0
    subdivided: bool = False
    # `visible` gates drawing of the node and everything below it, `is_mesh`
    # is cleared once the children replace this node on screen.
    visible: bool = False
    is_mesh: bool = True
    disposed: bool = False
    # Own data (texture and, for height kinds, elevation) finished loading.
    loaded: bool = False
    texture_loaded: bool = False
    height_loaded: bool = False

    texture: Any = None
    geometry: Any = None
    height: Optional[np.ndarray] = None
    renderable: Any = None
    load_handle: Optional[Cancellable] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.level < 0:
            raise ValueError(f"Invalid level: {self.level}")
        tiles = 1 << self.level
        if not (0 <= self.x < tiles):
            raise ValueError(f"x out of range at level={self.level}: {self.x}")
        if not (0 <= self.y < tiles):
            raise ValueError(f"y out of range at level={self.level}: {self.y}")

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def drawn(self) -> bool:
        return self.visible and self.is_mesh and not self.disposed

    def key(self) -> str:
        return f"{self.level}/{self.x}/{self.y}"


NodeRef = Union[int, QuadTreeNode]


class QuadTree:
    def __init__(
        self,
        *,
        kind: NodeKind = NodeKind.PLANE,
        loader: NodeLoader,
        max_zoom: Callable[[], int],
        cache_tiles: bool = False,
        adapter: Optional[RenderAdapter] = None,
        strategies: Optional[Mapping[NodeKind, NodeStrategy]] = None,
    ) -> None:
        table = DEFAULT_STRATEGIES if strategies is None else strategies
        try:
            self._strategy = table[NodeKind(kind)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Map node kind {kind!r} is not registered") from exc

        self._kind = NodeKind(kind)
        self._loader = loader
        self._max_zoom = max_zoom
        self._adapter: RenderAdapter = adapter or NullRenderAdapter()
        self.cache_tiles = bool(cache_tiles)

        self._slots: list[Optional[QuadTreeNode]] = []
        self._free: list[int] = []
        self._root = -1
        self._spawn_root()

    # -- arena -----------------------------------------------------------

    @property
    def kind(self) -> NodeKind:
        return self._kind

    @property
    def strategy(self) -> NodeStrategy:
        return self._strategy

    @property
    def adapter(self) -> RenderAdapter:
        return self._adapter

    @property
    def root(self) -> int:
        return self._root

    def max_zoom(self) -> int:
        return int(self._max_zoom())

    def get(self, node_id: int) -> Optional[QuadTreeNode]:
        if 0 <= node_id < len(self._slots):
            return self._slots[node_id]
        return None

    def node(self, node_id: int) -> QuadTreeNode:
        found = self.get(node_id)
        if found is None:
            raise KeyError(f"No live node with id {node_id}")
        return found

    def __len__(self) -> int:
        return len(self._slots) - len(self._free)

    def __iter__(self) -> Iterator[QuadTreeNode]:
        return (n for n in self._slots if n is not None)

    def traverse(self, start: Optional[int] = None) -> Iterator[QuadTreeNode]:
        """Pre-order walk over attached nodes (cached children are skipped)."""

        stack = [self._root if start is None else start]
        while stack:
            node = self.get(stack.pop())
            if node is None:
                continue
            yield node
            stack.extend(reversed(node.children))

    def leaves(self) -> list[QuadTreeNode]:
        return [n for n in self.traverse() if n.is_leaf]

    def _resolve(self, ref: NodeRef) -> Optional[QuadTreeNode]:
        if isinstance(ref, QuadTreeNode):
            return ref
        return self.get(int(ref))

    def _allocate(
        self,
        *,
        level: int,
        x: int,
        y: int,
        location: QuadTreePosition,
        parent: Optional[int],
    ) -> int:
        node_id = self._free.pop() if self._free else len(self._slots)
        node = QuadTreeNode(
            id=node_id, level=level, x=x, y=y, location=location, parent=parent
        )
        if node_id == len(self._slots):
            self._slots.append(node)
        else:
            self._slots[node_id] = node
        self._adapter.node_attached(self, node)
        return node_id

    def _spawn_root(self) -> int:
        root = self._allocate(level=0, x=0, y=0, location=QuadTreePosition.ROOT, parent=None)
        self._root = root
        self._loader.start(self, root)
        return root

    # -- transforms ------------------------------------------------------

    def transform(self, node_id: int) -> NodeTransform:
        node = self.node(node_id)
        return self._strategy.transform(node.level, node.x, node.y)

    def world_center(self, node_id: int) -> np.ndarray:
        return self.transform(node_id).center

    def world_scale(self, node_id: int) -> float:
        return self.transform(node_id).scale

    def bounding_radius(self, node_id: int) -> float:
        return self.transform(node_id).radius

    # -- structure -------------------------------------------------------

    def subdivide(self, node_id: int, *, force: bool = False) -> bool:
        """Split a node into four children. Returns False when refused."""

        node = self.get(node_id)
        if node is None or node.disposed or node.children:
            return False
        if node.level + 1 > self.max_zoom():
            return False
        if not force and node.parent is not None:
            parent = self.node(node.parent)
            if parent.nodes_loaded < CHILDREN:
                return False

        node.subdivided = True

        cached = node.cached_children
        if cached is not None:
            node.cached_children = None
            node.children = cached
            node.nodes_loaded = sum(1 for c in cached if self.node(c).loaded)
            for child_id in cached:
                for restored in self.traverse(child_id):
                    self._adapter.node_attached(self, restored)
            if node.nodes_loaded >= CHILDREN:
                self._swap_in_children(node)
            logger.debug(
                "node_children_restored",
                extra={"node": node.key(), "nodes_loaded": node.nodes_loaded},
            )
            return True

        level = node.level + 1
        node.children = tuple(
            self._allocate(
                level=level,
                x=node.x * 2 + dx,
                y=node.y * 2 + dy,
                location=location,
                parent=node.id,
            )
            for location, (dx, dy) in zip(CHILD_POSITIONS, CHILD_OFFSETS)
        )
        # all four ids are attached before any load can report back
        for child_id in node.children:
            self._loader.start(self, child_id)
        logger.debug("node_subdivided", extra={"node": node.key()})
        return True

    def simplify(self, node_id: int) -> bool:
        """Collapse a node back to a drawn leaf. Returns False when it had no children."""

        node = self.get(node_id)
        if node is None or node.disposed or not node.children:
            return False

        children = node.children
        node.children = ()
        if self.cache_tiles:
            node.cached_children = children
            for child_id in children:
                # the whole parked subtree leaves the screen, not only the children
                for parked in self.traverse(child_id):
                    self._set_visible(parked, False)
                    self._adapter.node_detached(self, parked)
        else:
            for child_id in children:
                self.dispose(child_id)

        node.nodes_loaded = 0
        node.subdivided = False
        node.is_mesh = True
        self._adapter.set_rendered(self, node, True)
        if node.loaded:
            self._set_visible(node, True)
        logger.debug("node_simplified", extra={"node": node.key(), "cached": self.cache_tiles})
        return True

    def dispose(self, node_id: int) -> None:
        """Release a node, its children and any cached children."""

        node = self.get(node_id)
        if node is None:
            return
        for child_id in node.children + (node.cached_children or ()):
            self.dispose(child_id)

        node.disposed = True
        node.visible = False
        node.children = ()
        node.cached_children = None
        if node.load_handle is not None:
            node.load_handle.cancel()
            node.load_handle = None
        self._adapter.node_detached(self, node)
        node.texture = None
        node.geometry = None
        node.height = None

        self._slots[node_id] = None
        self._free.append(node_id)

    def clear(self) -> int:
        """Drop every tile and start over from a freshly loading root."""

        self.dispose(self._root)
        return self._spawn_root()

    # -- readiness -------------------------------------------------------

    def node_ready(self, ref: NodeRef) -> None:
        node = self._resolve(ref)
        if node is None or node.disposed:
            logger.warning(
                "node_ready_on_disposed_node",
                extra={"node": node.key() if node is not None else str(ref)},
            )
            return

        node.loaded = True
        node.load_handle = None

        if node.parent is None:
            self._set_visible(node, True)
            return

        parent = self.node(node.parent)
        if node.id not in parent.children:
            # parked in the parent's cache, counted again when restored
            return

        parent.nodes_loaded += 1
        if parent.nodes_loaded > CHILDREN:
            logger.error(
                "nodes_loaded_overflow",
                extra={"node": parent.key(), "nodes_loaded": parent.nodes_loaded},
            )
            parent.nodes_loaded = CHILDREN
            return

        if parent.nodes_loaded == CHILDREN and self._is_attached(parent):
            # parked subtrees swap in when their cached ancestor is restored
            self._swap_in_children(parent)

    def check_invariants(self) -> None:
        """Walk the attached tree and raise `InvariantViolation` on the first broken rule."""

        for node in self.traverse():
            if node.disposed:
                raise InvariantViolation(f"disposed node {node.key()} is still attached")
            if len(node.children) not in (0, CHILDREN):
                raise InvariantViolation(
                    f"node {node.key()} has {len(node.children)} children"
                )
            if not 0 <= node.nodes_loaded <= CHILDREN:
                raise InvariantViolation(
                    f"node {node.key()} has nodes_loaded={node.nodes_loaded}"
                )
            if node.drawn and not node.loaded:
                raise InvariantViolation(f"node {node.key()} is drawn before it loaded")

            loaded_children = 0
            for location, (dx, dy), child_id in zip(CHILD_POSITIONS, CHILD_OFFSETS, node.children):
                child = self.get(child_id)
                if child is None:
                    raise InvariantViolation(f"node {node.key()} references freed id {child_id}")
                if child.parent != node.id or child.location != location:
                    raise InvariantViolation(f"child {child.key()} is not linked to {node.key()}")
                if (child.level, child.x, child.y) != (node.level + 1, node.x * 2 + dx, node.y * 2 + dy):
                    raise InvariantViolation(f"child {child.key()} misplaced under {node.key()}")
                loaded_children += child.loaded
            if node.children and node.nodes_loaded != loaded_children:
                raise InvariantViolation(
                    f"node {node.key()} counts {node.nodes_loaded} loaded children, "
                    f"found {loaded_children}"
                )

    def _is_attached(self, node: QuadTreeNode) -> bool:
        """True when `node` is reachable from the root through `children` links."""

        while node.parent is not None:
            parent = self.get(node.parent)
            if parent is None or node.id not in parent.children:
                return False
            node = parent
        return node.id == self._root

    def _swap_in_children(self, parent: QuadTreeNode) -> None:
        if parent.subdivided:
            parent.is_mesh = False
            self._adapter.set_rendered(self, parent, False)
        for child_id in parent.children:
            child = self.node(child_id)
            self._set_visible(child, True)
            # a restored child may carry a subtree that finished loading while parked
            if child.children and child.nodes_loaded == CHILDREN:
                self._swap_in_children(child)

    def _set_visible(self, node: QuadTreeNode, visible: bool) -> None:
        node.visible = visible
        self._adapter.set_visible(self, node, visible)
