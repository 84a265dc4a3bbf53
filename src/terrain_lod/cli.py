from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Iterable, Optional

from .camera import looking_down
from .config import TerrainLodConfig, get_terrain_lod_config
from .observability import configure_logging
from .providers import ConstantHeightProvider, DebugProvider, MapProvider, XYZTileProvider
from .render import GroundPlaneAdapter, NullRenderAdapter
from .settings import get_settings
from .strategies import DEFAULT_STRATEGIES, NodeKind
from .view import MapView

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terrain-lod",
        description="Fly a camera down onto a tiled map and report how the quadtree refines.",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to terrain-lod.yaml (defaults to TERRAIN_LOD_CONFIG / config/terrain-lod.yaml).",
    )
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in NodeKind],
        default=None,
        help="Map node kind (defaults to tree.node_kind from the config).",
    )
    parser.add_argument(
        "--tiles",
        default=None,
        help="Imagery URL template with {z}/{x}/{y}; a debug provider is used when omitted.",
    )
    parser.add_argument(
        "--heights",
        default=None,
        help="Terrain-RGB URL template; a flat elevation provider is used when omitted.",
    )
    parser.add_argument("--subdomains", default="", help="Comma separated {s} values.")
    parser.add_argument("--frames", type=int, default=120)
    parser.add_argument("--x", type=float, default=0.0, help="Camera world x.")
    parser.add_argument("--z", type=float, default=0.0, help="Camera world z.")
    parser.add_argument("--start-altitude", type=float, default=2e7)
    parser.add_argument("--end-altitude", type=float, default=1e4)
    parser.add_argument("--fov", type=float, default=60.0)
    return parser


def _xyz(template: str, subdomains: str) -> XYZTileProvider:
    return XYZTileProvider(
        template,
        subdomains=[s for s in subdomains.split(",") if s],
    )


def _load_config(config_path: Optional[str]) -> TerrainLodConfig:
    try:
        return get_terrain_lod_config(config_path)
    except FileNotFoundError:
        if config_path is not None:
            raise
        logger.info("terrain_lod_config_not_found_using_defaults")
        return TerrainLodConfig()


def altitude_schedule(start: float, end: float, frames: int) -> list[float]:
    """Geometric descent from ``start`` to ``end`` over ``frames`` steps."""

    if frames < 1:
        raise ValueError("frames must be >= 1")
    if start <= 0 or end <= 0:
        raise ValueError("altitudes must be > 0")
    if frames == 1:
        return [float(start)]
    ratio = (end / start) ** (1.0 / (frames - 1))
    return [float(start) * ratio**i for i in range(frames)]


def tree_summary(view: MapView) -> dict[str, Any]:
    nodes = list(view.tree.traverse())
    leaves = [node for node in nodes if node.is_leaf]
    drawn = [node for node in nodes if node.drawn]
    return {
        "nodes": len(nodes),
        "leaves": len(leaves),
        "drawn": len(drawn),
        "max_level": max((node.level for node in nodes), default=0),
    }


async def simulate(
    view: MapView,
    *,
    x: float,
    z: float,
    altitudes: Iterable[float],
    fov_deg: float,
) -> dict[str, Any]:
    changes = 0
    frames = 0
    for altitude in altitudes:
        frames += 1
        if view.update(looking_down(x, z, altitude, fov_deg=fov_deg)):
            changes += 1
        await view.loader.drain()
    view.tree.check_invariants()
    return {"frames": frames, "changes": changes, **tree_summary(view)}


async def _run(args: argparse.Namespace, config: TerrainLodConfig) -> dict[str, Any]:
    kind = NodeKind(args.kind or config.tree.node_kind)

    provider: MapProvider = _xyz(args.tiles, args.subdomains) if args.tiles else DebugProvider()
    height_provider: Optional[MapProvider] = None
    if DEFAULT_STRATEGIES[kind].has_height:
        if args.heights:
            height_provider = _xyz(args.heights, args.subdomains)
        else:
            height_provider = ConstantHeightProvider(0.0)

    adapter = NullRenderAdapter() if kind == NodeKind.SPHERE else GroundPlaneAdapter()
    view = MapView(provider, height_provider, kind=kind, adapter=adapter, config=config)
    try:
        await view.get_metadata()
        summary = await simulate(
            view,
            x=args.x,
            z=args.z,
            altitudes=altitude_schedule(args.start_altitude, args.end_altitude, args.frames),
            fov_deg=args.fov,
        )
    finally:
        await view.close()
        await provider.aclose()
        if height_provider is not None:
            await height_provider.aclose()
    return {"kind": kind.value, "provider": provider.name, **summary}


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    settings = get_settings()
    configure_logging(debug=settings.debug, log_level=settings.log_level)

    config = _load_config(args.config_path)
    summary = asyncio.run(_run(args, config))
    print(json.dumps(summary, ensure_ascii=False, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
