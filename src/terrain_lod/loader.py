"""Async tile loading for quadtree nodes.

One task per node fetches the colour tile (and, for height-bearing kinds,
the elevation tile), builds the node's geometry and reports back to the
tree with `QuadTree.node_ready`. Every continuation re-checks
`node.disposed` so a load that outlives its node never touches the tree.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Optional

from PIL import Image

from .errors import ConfigurationError, TransientFetchFailure
from .providers import MapProvider
from .strategies import GeometryResult, NodeStrategy, TerrainOptions

if TYPE_CHECKING:  # pragma: no cover
    from .node import QuadTree, QuadTreeNode

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_LOADS = 16
DEFAULT_LOAD_TIMEOUT_S = 30.0


def fallback_texture(color: tuple[int, int, int] = (255, 0, 0)) -> Image.Image:
    return Image.new("RGB", (1, 1), tuple(color))


class TileLoader:
    def __init__(
        self,
        provider: MapProvider,
        height_provider: Optional[MapProvider] = None,
        *,
        options: Optional[TerrainOptions] = None,
        max_concurrent_loads: int = DEFAULT_MAX_CONCURRENT_LOADS,
        load_timeout_s: Optional[float] = DEFAULT_LOAD_TIMEOUT_S,
        offload_mesh_work: bool = True,
        fallback_color: tuple[int, int, int] = (255, 0, 0),
    ) -> None:
        if max_concurrent_loads < 0:
            raise ValueError("max_concurrent_loads must be >= 0")
        if load_timeout_s is not None and load_timeout_s <= 0:
            raise ValueError("load_timeout_s must be > 0")

        self.provider = provider
        self.height_provider = height_provider
        self.options = options or TerrainOptions()
        self.max_concurrent_loads = int(max_concurrent_loads)
        self.load_timeout_s = load_timeout_s
        self.offload_mesh_work = bool(offload_mesh_work)
        self.fallback_color = tuple(fallback_color)

        self._tasks: set[asyncio.Task[None]] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_init = threading.Lock()

    def _get_semaphore(self) -> Optional[asyncio.Semaphore]:
        if self.max_concurrent_loads == 0:
            return None
        semaphore = self._semaphore
        if semaphore is not None:
            return semaphore
        with self._semaphore_init:
            semaphore = self._semaphore
            if semaphore is None:
                semaphore = asyncio.Semaphore(self.max_concurrent_loads)
                self._semaphore = semaphore
            return semaphore

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # -- scheduling ------------------------------------------------------

    def start(self, tree: "QuadTree", node_id: int) -> None:
        strategy = tree.strategy
        if strategy.has_height and self.height_provider is None:
            raise ConfigurationError(
                f"Map node kind {strategy.kind.value!r} needs a height provider"
            )

        node = tree.node(node_id)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._load(tree, node, strategy), name=f"tile-load:{node.key()}")
        node.load_handle = task
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "tile_load_crashed",
                extra={"task": task.get_name(), "error": str(exc)},
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait until every scheduled load, including ones started meanwhile, is done."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- loading ---------------------------------------------------------

    async def _fetch(self, provider: MapProvider, node: "QuadTreeNode") -> Image.Image:
        try:
            if self.load_timeout_s is None:
                return await provider.fetch_tile(node.level, node.x, node.y)
            return await asyncio.wait_for(
                provider.fetch_tile(node.level, node.x, node.y), timeout=self.load_timeout_s
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise TransientFetchFailure(
                f"Timed out after {self.load_timeout_s}s", zoom=node.level, x=node.x, y=node.y
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise TransientFetchFailure(str(exc), zoom=node.level, x=node.x, y=node.y) from exc

    async def _load(self, tree: "QuadTree", node: "QuadTreeNode", strategy: NodeStrategy) -> None:
        semaphore = self._get_semaphore()
        if semaphore is None:
            await self._load_node(node, strategy)
        else:
            async with semaphore:
                if node.disposed:
                    return
                await self._load_node(node, strategy)

        if node.disposed:
            return
        tree.node_ready(node)

    async def _load_node(self, node: "QuadTreeNode", strategy: NodeStrategy) -> None:
        if strategy.has_height:
            await asyncio.gather(self._load_texture(node), self._load_height(node, strategy))
            return
        await self._load_texture(node)
        if node.disposed:
            return
        result = self._build_geometry(strategy, node, None)
        node.geometry = result.geometry

    async def _load_texture(self, node: "QuadTreeNode") -> None:
        try:
            image = await self._fetch(self.provider, node)
        except TransientFetchFailure as exc:
            logger.warning(
                "tile_texture_fetch_failed",
                extra={"node": node.key(), "provider": self.provider.name, "error": str(exc)},
            )
            image = fallback_texture(self.fallback_color)

        if node.disposed:
            return
        node.texture = image
        node.texture_loaded = True

    async def _load_height(self, node: "QuadTreeNode", strategy: NodeStrategy) -> None:
        assert self.height_provider is not None
        image: Optional[Image.Image]
        try:
            image = await self._fetch(self.height_provider, node)
        except TransientFetchFailure as exc:
            logger.warning(
                "tile_height_fetch_failed",
                extra={
                    "node": node.key(),
                    "provider": self.height_provider.name,
                    "error": str(exc),
                },
            )
            image = None

        if node.disposed:
            return
        if image is not None and strategy.heavy and self.offload_mesh_work:
            result = await asyncio.to_thread(self._build_geometry, strategy, node, image)
            if node.disposed:
                return
        else:
            result = self._build_geometry(strategy, node, image)

        node.geometry = result.geometry
        node.height = result.heights
        node.height_loaded = True

    def _build_geometry(
        self, strategy: NodeStrategy, node: "QuadTreeNode", image: Optional[Image.Image]
    ) -> GeometryResult:
        try:
            return strategy.build_geometry(node.level, node.x, node.y, image, self.options)
        except Exception as exc:  # noqa: BLE001
            if image is None:
                raise
            logger.warning(
                "tile_geometry_build_failed",
                extra={"node": node.key(), "kind": strategy.kind.value, "error": str(exc)},
            )
            return strategy.build_geometry(node.level, node.x, node.y, None, self.options)
