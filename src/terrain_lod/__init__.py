from .camera import Frustum, ViewerState
from .config import (
    TerrainLodConfig,
    create_lod_control,
    create_tile_loader,
    get_terrain_lod_config,
    load_terrain_lod_config,
)
from .errors import (
    ConfigurationError,
    InvariantViolation,
    TerrainLodError,
    TransientFetchFailure,
)
from .height_decoder import MAPBOX, TERRARIUM, ElevationDecoder, decode_height, encode_height
from .loader import TileLoader
from .lod import LODControl, LODFrustum, LODFrustumOrthographic, LODRadial, LODRaycast
from .martini import Martini, MartiniMesh, MartiniTile, get_martini
from .node import QuadTree, QuadTreeNode, QuadTreePosition
from .providers import (
    ConstantHeightProvider,
    DebugProvider,
    HeightDebugProvider,
    MapProvider,
    XYZTileProvider,
)
from .render import GroundPlaneAdapter, NullRenderAdapter, RayHit, RenderAdapter
from .strategies import DEFAULT_STRATEGIES, NodeKind, NodeStrategy, TerrainOptions
from .view import MapView

__all__ = [
    "ConfigurationError",
    "ConstantHeightProvider",
    "DEFAULT_STRATEGIES",
    "DebugProvider",
    "ElevationDecoder",
    "Frustum",
    "GroundPlaneAdapter",
    "HeightDebugProvider",
    "InvariantViolation",
    "LODControl",
    "LODFrustum",
    "LODFrustumOrthographic",
    "LODRadial",
    "LODRaycast",
    "MAPBOX",
    "MapProvider",
    "MapView",
    "Martini",
    "MartiniMesh",
    "MartiniTile",
    "NodeKind",
    "NodeStrategy",
    "NullRenderAdapter",
    "QuadTree",
    "QuadTreeNode",
    "QuadTreePosition",
    "RayHit",
    "RenderAdapter",
    "TERRARIUM",
    "TerrainLodConfig",
    "TerrainLodError",
    "TerrainOptions",
    "TileLoader",
    "TransientFetchFailure",
    "ViewerState",
    "XYZTileProvider",
    "create_lod_control",
    "create_tile_loader",
    "decode_height",
    "encode_height",
    "get_martini",
    "get_terrain_lod_config",
    "load_terrain_lod_config",
]
