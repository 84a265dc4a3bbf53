from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from .camera import ViewerState
from .config import TerrainLodConfig, create_lod_control, create_tile_loader
from .errors import ConfigurationError
from .loader import TileLoader
from .lod import LODControl
from .node import QuadTree
from .observability import frame_context
from .providers import MapProvider
from .render import RenderAdapter
from .strategies import DEFAULT_STRATEGIES, NodeKind, NodeStrategy

logger = logging.getLogger(__name__)


class MapView:
    """A tiled map surface: the quadtree, its loader and its LOD controller.

    The root tile starts loading on construction, so a view has to be
    created while an event loop is running.
    """

    def __init__(
        self,
        provider: MapProvider,
        height_provider: Optional[MapProvider] = None,
        *,
        kind: Optional[Union[NodeKind, str]] = None,
        lod: Optional[LODControl] = None,
        cache_tiles: Optional[bool] = None,
        adapter: Optional[RenderAdapter] = None,
        config: Optional[TerrainLodConfig] = None,
        strategies: Optional[Mapping[NodeKind, NodeStrategy]] = None,
        loader: Optional[TileLoader] = None,
    ) -> None:
        cfg = config or TerrainLodConfig()
        table = DEFAULT_STRATEGIES if strategies is None else strategies

        try:
            resolved_kind = NodeKind(kind if kind is not None else cfg.tree.node_kind)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown map node kind: {kind!r}") from exc
        strategy = table.get(resolved_kind)
        if strategy is None:
            raise ConfigurationError(f"Map node kind {resolved_kind.value!r} is not registered")
        if strategy.has_height and height_provider is None:
            raise ConfigurationError(
                f"Map node kind {resolved_kind.value!r} needs a height provider"
            )

        self.config = cfg
        self.provider = provider
        self.height_provider = height_provider
        self.lod = lod or create_lod_control(cfg.lod)
        self.loader = loader or create_tile_loader(provider, height_provider, config=cfg)
        self._frame = 0

        self.tree = QuadTree(
            kind=resolved_kind,
            loader=self.loader,
            max_zoom=self.max_zoom,
            cache_tiles=cfg.tree.cache_tiles if cache_tiles is None else cache_tiles,
            adapter=adapter,
            strategies=table,
        )
        self.pre_subdivide()

    @property
    def kind(self) -> NodeKind:
        return self.tree.kind

    @property
    def frame(self) -> int:
        return self._frame

    def min_zoom(self) -> int:
        if self.height_provider is None:
            return self.provider.min_zoom
        return max(self.provider.min_zoom, self.height_provider.min_zoom)

    def max_zoom(self) -> int:
        if self.height_provider is None:
            return self.provider.max_zoom
        return min(self.provider.max_zoom, self.height_provider.max_zoom)

    def pre_subdivide(self) -> int:
        """Subdivide every leaf down to the providers' minimum zoom.

        Returns the number of nodes subdivided.
        """

        target = min(self.min_zoom(), self.max_zoom())
        count = 0
        pending = [self.tree.root]
        while pending:
            node = self.tree.get(pending.pop())
            if node is None or node.level >= target:
                continue
            if node.is_leaf and self.tree.subdivide(node.id, force=True):
                count += 1
            pending.extend(node.children)
        if count:
            logger.debug("view_pre_subdivided", extra={"min_zoom": target, "nodes": count})
        return count

    def update(self, viewer: ViewerState) -> bool:
        """Run one LOD step for this frame. Returns True when the tree changed."""

        self._frame += 1
        with frame_context(self._frame):
            return self.lod.update_lod(self.tree, viewer)

    def clear(self) -> None:
        """Discard every tile and reload from the current providers."""

        self.tree.clear()
        self.pre_subdivide()
        logger.info(
            "view_cleared",
            extra={
                "provider": self.provider.name,
                "height_provider": self.height_provider.name if self.height_provider else None,
            },
        )

    def set_provider(self, provider: MapProvider) -> None:
        if provider is self.provider:
            return
        self.provider = provider
        self.loader.provider = provider
        self.clear()

    def set_height_provider(self, height_provider: MapProvider) -> None:
        if height_provider is self.height_provider:
            return
        self.height_provider = height_provider
        self.loader.height_provider = height_provider
        self.clear()

    async def get_metadata(self) -> Optional[Mapping[str, Any]]:
        """Ask the colour provider for its metadata; it may update its zoom range."""

        return await self.provider.get_metadata()

    async def close(self) -> None:
        self.tree.dispose(self.tree.root)
        await self.loader.aclose()
