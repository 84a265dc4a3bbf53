from __future__ import annotations

import os
import random
from functools import lru_cache
from pathlib import Path
from typing import Any, Final, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .height_decoder import DECODERS
from .loader import TileLoader
from .lod import LODControl, LODFrustum, LODFrustumOrthographic, LODRadial, LODRaycast
from .providers import MapProvider
from .settings import _resolve_config_dir
from .strategies import NodeKind, TerrainOptions

SUPPORTED_SCHEMA_VERSIONS: Final[set[int]] = {1}

DEFAULT_TERRAIN_LOD_CONFIG_NAME: Final[str] = "terrain-lod.yaml"
DEFAULT_TERRAIN_LOD_CONFIG_ENV: Final[str] = "TERRAIN_LOD_CONFIG"

DecoderName = Literal["mapbox", "terrarium"]
ControllerName = Literal["raycast", "radial", "frustum", "frustum_orthographic"]


class TreeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    node_kind: NodeKind = NodeKind.PLANE
    # Keep simplified children around so zooming back in needs no reload.
    cache_tiles: bool = False


class LoaderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # 0 disables the limiter.
    max_concurrent_loads: int = Field(default=16, ge=0, le=1024)
    # None waits on providers indefinitely.
    load_timeout_s: Optional[float] = Field(default=30.0, gt=0)
    offload_mesh_work: bool = True
    fallback_color: tuple[int, int, int] = (255, 0, 0)

    @model_validator(mode="after")
    def _validate_fallback_color(self) -> "LoaderConfig":
        if any(c < 0 or c > 255 for c in self.fallback_color):
            raise ValueError("loader.fallback_color components must be within [0, 255]")
        return self


class LODConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    controller: ControllerName = "raycast"

    # Radial family; None keeps the controller's own defaults.
    subdivide_distance: Optional[float] = Field(default=None, gt=0)
    simplify_distance: Optional[float] = Field(default=None, gt=0)
    point_only: bool = False

    # Raycast.
    subdivision_rays: int = Field(default=1, ge=1, le=64)
    threshold_up: float = Field(default=0.6, gt=0)
    threshold_down: float = Field(default=0.15, ge=0)
    power_distance: bool = False
    scale_distance: bool = True
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _validate_ranges(self) -> "LODConfig":
        if (
            self.subdivide_distance is not None
            and self.simplify_distance is not None
            and self.simplify_distance < self.subdivide_distance
        ):
            raise ValueError("lod.simplify_distance must be >= lod.subdivide_distance")
        if self.threshold_down >= self.threshold_up:
            raise ValueError("lod.threshold_down must be < lod.threshold_up")
        return self


class MartiniConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # None uses the size of the fetched elevation tile.
    tile_size: Optional[int] = Field(default=None, ge=1)
    mesh_max_error: float = Field(default=10.0, ge=0)
    with_skirts: bool = False
    skirt_depth: float = Field(default=0.0, ge=0)
    exaggeration: float = Field(default=1.0, gt=0)
    decoder: DecoderName = "terrarium"

    @model_validator(mode="after")
    def _validate_tile_size(self) -> "MartiniConfig":
        if self.tile_size is not None and self.tile_size & (self.tile_size - 1):
            raise ValueError(f"martini.tile_size must be a power of two, got {self.tile_size}")
        return self


class HeightConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grid_size: int = Field(default=16, ge=1, le=1024)
    decoder: DecoderName = "mapbox"
    with_skirts: bool = False
    skirt_depth: float = Field(default=10.0, ge=0)


class TerrainLodConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = 1

    tree: TreeConfig = Field(default_factory=TreeConfig)
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    lod: LODConfig = Field(default_factory=LODConfig)
    martini: MartiniConfig = Field(default_factory=MartiniConfig)
    height: HeightConfig = Field(default_factory=HeightConfig)

    @model_validator(mode="after")
    def _validate_schema_version(self) -> "TerrainLodConfig":
        if self.schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(
                f"Unsupported terrain lod schema_version={self.schema_version}; "
                f"supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        return self

    def to_terrain_options(self) -> TerrainOptions:
        return TerrainOptions(
            height_grid_size=self.height.grid_size,
            height_decoder=DECODERS[self.height.decoder],
            martini_decoder=DECODERS[self.martini.decoder],
            martini_tile_size=self.martini.tile_size,
            mesh_max_error=self.martini.mesh_max_error,
            with_skirts=self.martini.with_skirts,
            skirt_depth=self.martini.skirt_depth,
            exaggeration=self.martini.exaggeration,
            height_skirts=self.height.with_skirts,
            height_skirt_depth=self.height.skirt_depth,
        )


def _resolve_config_path(path: Optional[Union[str, Path]]) -> Path:
    if path is not None:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate

    explicit = os.environ.get(DEFAULT_TERRAIN_LOD_CONFIG_ENV)
    if explicit:
        candidate = Path(explicit).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate

    config_dir = _resolve_config_dir(os.environ)
    return config_dir / DEFAULT_TERRAIN_LOD_CONFIG_NAME


def _parse_yaml(text: str, *, source: Path) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to load terrain lod YAML: {source}") from exc

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError(f"terrain lod config must be a mapping: {source}")
    return data


def load_terrain_lod_config(
    path: Optional[Union[str, Path]] = None,
) -> TerrainLodConfig:
    config_path = _resolve_config_path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"terrain lod config file not found: {config_path}")

    raw_text = config_path.read_text(encoding="utf-8")
    data = dict(_parse_yaml(raw_text, source=config_path))

    try:
        return TerrainLodConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid terrain lod config ({config_path}): {exc}") from exc


@lru_cache(maxsize=8)
def _get_terrain_lod_config_cached(config_path: str, mtime_ns: int, size: int) -> TerrainLodConfig:
    _ = (mtime_ns, size)
    return load_terrain_lod_config(config_path)


def get_terrain_lod_config(
    path: Optional[Union[str, Path]] = None,
) -> TerrainLodConfig:
    resolved = _resolve_config_path(path)
    try:
        stat = resolved.stat()
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"terrain lod config file not found: {resolved}") from exc
    return _get_terrain_lod_config_cached(str(resolved), stat.st_mtime_ns, stat.st_size)


get_terrain_lod_config.cache_clear = _get_terrain_lod_config_cached.cache_clear  # type: ignore[attr-defined]


def create_lod_control(config: Optional[LODConfig] = None) -> LODControl:
    cfg = config or LODConfig()
    if cfg.controller == "raycast":
        return LODRaycast(
            subdivision_rays=cfg.subdivision_rays,
            threshold_up=cfg.threshold_up,
            threshold_down=cfg.threshold_down,
            power_distance=cfg.power_distance,
            scale_distance=cfg.scale_distance,
            rng=random.Random(cfg.seed) if cfg.seed is not None else None,
        )

    distances: dict[str, float] = {}
    if cfg.subdivide_distance is not None:
        distances["subdivide_distance"] = cfg.subdivide_distance
    if cfg.simplify_distance is not None:
        distances["simplify_distance"] = cfg.simplify_distance

    if cfg.controller == "radial":
        return LODRadial(**distances)
    if cfg.controller == "frustum":
        return LODFrustum(point_only=cfg.point_only, **distances)
    return LODFrustumOrthographic(point_only=cfg.point_only, **distances)


def create_tile_loader(
    provider: MapProvider,
    height_provider: Optional[MapProvider] = None,
    *,
    config: Optional[TerrainLodConfig] = None,
) -> TileLoader:
    cfg = config or TerrainLodConfig()
    return TileLoader(
        provider,
        height_provider,
        options=cfg.to_terrain_options(),
        max_concurrent_loads=cfg.loader.max_concurrent_loads,
        load_timeout_s=cfg.loader.load_timeout_s,
        offload_mesh_work=cfg.loader.offload_mesh_work,
        fallback_color=cfg.loader.fallback_color,
    )
