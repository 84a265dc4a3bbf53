from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Optional

import numpy as np
import pytest
from PIL import Image

from terrain_lod.errors import ConfigurationError
from terrain_lod.loader import TileLoader
from terrain_lod.node import QuadTree
from terrain_lod.providers import ConstantHeightProvider, MapProvider
from terrain_lod.strategies import (
    GeometryResult,
    NodeKind,
    NodeStrategy,
    TerrainOptions,
    base_plane,
    planar_transform,
)


class StaticProvider(MapProvider):
    def __init__(self, *, delay_s: float = 0.0, **kwargs) -> None:  # type: ignore[no-untyped-def]
        kwargs.setdefault("name", "static")
        super().__init__(**kwargs)
        self.delay_s = delay_s
        self.calls: list[tuple[int, int, int]] = []
        self.active = 0
        self.peak = 0

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        self.calls.append((zoom, x, y))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            return Image.new("RGB", (4, 4), (0, 0, 255))
        finally:
            self.active -= 1


class FailingProvider(MapProvider):
    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        raise RuntimeError("tile server exploded")


class StallingProvider(MapProvider):
    """Serves the root immediately and never answers for deeper tiles."""

    def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(name="stalling", **kwargs)
        self.cancelled = 0

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        if zoom == 0:
            return Image.new("RGB", (4, 4), (0, 255, 0))
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise AssertionError("unreachable")


def _tree(loader: TileLoader, kind: NodeKind = NodeKind.PLANE, **kwargs) -> QuadTree:  # type: ignore[no-untyped-def]
    return QuadTree(kind=kind, loader=loader, max_zoom=lambda: 20, **kwargs)


def test_plane_root_loads_and_becomes_visible() -> None:
    provider = StaticProvider()

    async def main() -> None:
        loader = TileLoader(provider)
        tree = _tree(loader)
        assert loader.in_flight == 1
        await loader.drain()

        root = tree.node(tree.root)
        assert root.loaded and root.drawn
        assert root.texture_loaded
        assert root.texture.size == (4, 4)
        assert root.geometry is not None
        assert root.load_handle is None
        assert loader.in_flight == 0

    asyncio.run(main())
    assert provider.calls == [(0, 0, 0)]


def test_failed_texture_falls_back_and_still_reports_ready(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def main() -> None:
        loader = TileLoader(FailingProvider(name="broken"), fallback_color=(255, 0, 0))
        tree = _tree(loader)
        with caplog.at_level(logging.WARNING, logger="terrain_lod.loader"):
            await loader.drain()

        root = tree.node(tree.root)
        assert root.drawn
        assert root.texture.size == (1, 1)
        assert root.texture.getpixel((0, 0)) == (255, 0, 0)

    asyncio.run(main())
    records = [r for r in caplog.records if r.getMessage() == "tile_texture_fetch_failed"]
    assert records
    assert records[0].node == "0/0/0"
    assert "tile server exploded" in records[0].error


def test_stalled_fetch_times_out_into_fallback() -> None:
    async def main() -> None:
        loader = TileLoader(StallingProvider(), load_timeout_s=0.05)
        tree = _tree(loader)
        await loader.drain()
        tree.subdivide(tree.root)
        await loader.drain()

        root = tree.node(tree.root)
        children = [tree.node(c) for c in root.children]
        # every child fell back, so the group still swapped in
        assert all(c.drawn for c in children)
        assert all(c.texture.size == (1, 1) for c in children)
        assert root.nodes_loaded == 4 and not root.is_mesh

    asyncio.run(main())


def test_height_kind_waits_for_texture_and_height() -> None:
    async def main() -> None:
        loader = TileLoader(
            StaticProvider(),
            ConstantHeightProvider(100.0, resolution=8),
            options=TerrainOptions(height_grid_size=4),
        )
        tree = _tree(loader, kind=NodeKind.HEIGHT)
        await loader.drain()

        root = tree.node(tree.root)
        assert root.texture_loaded and root.height_loaded
        assert root.drawn
        assert root.height is not None and root.height.shape == (5, 5)
        np.testing.assert_allclose(root.height, 100.0, atol=0.05)
        np.testing.assert_allclose(root.geometry.positions[:, 1], 100.0, atol=0.05)

    asyncio.run(main())


def test_failed_height_keeps_base_geometry(caplog: pytest.LogCaptureFixture) -> None:
    async def main() -> None:
        loader = TileLoader(
            StaticProvider(),
            FailingProvider(name="dem"),
            options=TerrainOptions(height_grid_size=4),
        )
        tree = _tree(loader, kind=NodeKind.HEIGHT)
        with caplog.at_level(logging.WARNING, logger="terrain_lod.loader"):
            await loader.drain()

        root = tree.node(tree.root)
        assert root.drawn
        assert root.height is None
        assert root.geometry is base_plane(4)

    asyncio.run(main())
    assert any(r.getMessage() == "tile_height_fetch_failed" for r in caplog.records)


def test_martini_mesh_is_built_off_the_event_loop() -> None:
    async def main() -> None:
        loader = TileLoader(
            StaticProvider(),
            ConstantHeightProvider(250.0, resolution=16),
            offload_mesh_work=True,
        )
        tree = _tree(loader, kind=NodeKind.MARTINI)
        await loader.drain()

        root = tree.node(tree.root)
        assert root.drawn
        assert root.height.shape == (17, 17)
        # flat tile collapses to two triangles
        assert root.geometry.triangle_count == 2

    asyncio.run(main())


def test_geometry_build_error_falls_back_to_flat_tile(caplog: pytest.LogCaptureFixture) -> None:
    def explode(
        level: int, x: int, y: int, image: Optional[Image.Image], options: TerrainOptions
    ) -> GeometryResult:
        if image is not None:
            raise ValueError("corrupt raster")
        return GeometryResult(geometry=base_plane(2))

    strategies = MappingProxyType(
        {NodeKind.HEIGHT: NodeStrategy(NodeKind.HEIGHT, True, planar_transform, explode)}
    )

    async def main() -> None:
        loader = TileLoader(StaticProvider(), StaticProvider(name="dem"))
        tree = _tree(loader, kind=NodeKind.HEIGHT, strategies=strategies)
        with caplog.at_level(logging.WARNING, logger="terrain_lod.loader"):
            await loader.drain()

        root = tree.node(tree.root)
        assert root.drawn
        assert root.geometry is base_plane(2)

    asyncio.run(main())
    assert any(r.getMessage() == "tile_geometry_build_failed" for r in caplog.records)


def test_height_kind_without_height_provider_fails_fast() -> None:
    async def main() -> None:
        loader = TileLoader(StaticProvider())
        with pytest.raises(ConfigurationError):
            _tree(loader, kind=NodeKind.MARTINI)

    asyncio.run(main())


def test_limiter_caps_loads_in_flight() -> None:
    provider = StaticProvider(delay_s=0.01)

    async def main() -> None:
        loader = TileLoader(provider, max_concurrent_loads=2)
        tree = _tree(loader)
        await loader.drain()
        tree.subdivide(tree.root)
        for child_id in tree.node(tree.root).children:
            tree.subdivide(child_id, force=True)
        await loader.drain()

        assert all(n.loaded for n in tree)
        assert len(tree) == 1 + 4 + 16

    asyncio.run(main())
    assert provider.peak == 2


def test_unbounded_limiter() -> None:
    provider = StaticProvider(delay_s=0.01)

    async def main() -> None:
        loader = TileLoader(provider, max_concurrent_loads=0)
        tree = _tree(loader)
        await loader.drain()
        tree.subdivide(tree.root)
        await loader.drain()

    asyncio.run(main())
    assert provider.peak == 4


def test_simplify_cancels_in_flight_loads(caplog: pytest.LogCaptureFixture) -> None:
    provider = StallingProvider()

    async def main() -> None:
        loader = TileLoader(provider, load_timeout_s=None)
        tree = _tree(loader)
        await loader.drain()
        tree.subdivide(tree.root)
        children = [tree.node(c) for c in tree.node(tree.root).children]
        await asyncio.sleep(0.01)
        assert loader.in_flight == 4

        with caplog.at_level(logging.WARNING):
            tree.simplify(tree.root)
            await loader.drain()

        assert loader.in_flight == 0
        assert all(c.disposed and not c.loaded for c in children)
        assert tree.node(tree.root).nodes_loaded == 0
        assert tree.node(tree.root).drawn

    asyncio.run(main())
    assert provider.cancelled == 4
    assert not any(r.getMessage() == "node_ready_on_disposed_node" for r in caplog.records)


def test_loader_rejects_bad_limits() -> None:
    with pytest.raises(ValueError):
        TileLoader(StaticProvider(), max_concurrent_loads=-1)
    with pytest.raises(ValueError):
        TileLoader(StaticProvider(), load_timeout_s=0)


def test_height_kind_grows_skirts_below_tile_edges() -> None:
    async def main() -> None:
        loader = TileLoader(
            StaticProvider(),
            ConstantHeightProvider(100.0, resolution=8),
            options=TerrainOptions(height_grid_size=4, height_skirts=True, height_skirt_depth=30.0),
        )
        tree = _tree(loader, kind=NodeKind.HEIGHT)
        await loader.drain()

        geometry = tree.node(tree.root).geometry
        # 5x5 surface grid plus one row of 5 per edge
        assert geometry.vertex_count == 25 + 4 * 5
        np.testing.assert_allclose(geometry.positions[:25, 1], 100.0, atol=0.05)
        np.testing.assert_allclose(geometry.positions[25:, 1], 70.0, atol=0.05)

    asyncio.run(main())


def test_height_shader_kind_uses_skirted_base_plane() -> None:
    async def main() -> None:
        options = TerrainOptions(height_grid_size=4, height_skirts=True, height_skirt_depth=30.0)
        loader = TileLoader(StaticProvider(), ConstantHeightProvider(100.0, resolution=8), options=options)
        tree = _tree(loader, kind=NodeKind.HEIGHT_SHADER)
        await loader.drain()

        root = tree.node(tree.root)
        assert root.geometry is base_plane(4, True, 30.0)
        assert root.geometry.vertex_count == 25 + 4 * 5

    asyncio.run(main())


def test_shared_base_plane_is_read_only() -> None:
    geometry = base_plane(2)
    assert geometry is base_plane(2)
    for array in (geometry.positions, geometry.uvs, geometry.indices, geometry.normals):
        assert not array.flags.writeable

    with pytest.raises(ValueError):
        geometry.positions[0, 1] = 42.0
    assert float(base_plane(2).positions[0, 1]) == 0.0
