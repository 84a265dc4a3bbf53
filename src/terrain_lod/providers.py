from __future__ import annotations

import asyncio
import colorsys
import io
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import httpx
import numpy as np
from PIL import Image, ImageDraw

from .height_decoder import ElevationDecoder, MAPBOX, decode_raster, encode_height

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES: set[int] = {408, 425, 429, 500, 502, 503, 504}

# (2 ** 24 * 0.1) - 10000, the largest Terrain-RGB elevation
MAX_ENCODED_HEIGHT: float = 1667721.6


class MapProvider(ABC):
    """Source of raster tiles addressed by (zoom, x, y)."""

    def __init__(
        self,
        *,
        name: str = "",
        min_zoom: int = 0,
        max_zoom: int = 20,
        bounds: Sequence[float] = (),
        center: Sequence[float] = (),
    ) -> None:
        if min_zoom < 0 or max_zoom < min_zoom:
            raise ValueError(f"Invalid zoom range: {min_zoom}..{max_zoom}")
        self.name = name
        self.min_zoom = int(min_zoom)
        self.max_zoom = int(max_zoom)
        self.bounds = list(bounds)
        self.center = list(center)

    @abstractmethod
    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        raise NotImplementedError

    async def get_metadata(self) -> Optional[Mapping[str, Any]]:
        return None

    async def aclose(self) -> None:
        return None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 0.5
    backoff_factor: float = 2.0
    backoff_max_s: float = 10.0
    jitter_s: float = 0.0

    def backoff_s(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        delay = self.backoff_base_s * (self.backoff_factor ** (attempt - 2))
        delay = min(self.backoff_max_s, delay)
        if self.jitter_s <= 0:
            return delay
        return delay + random.random() * self.jitter_s


class XYZTileProvider(MapProvider):
    """Slippy-map tiles from a URL template such as
    ``https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png``.
    """

    def __init__(
        self,
        url_template: str,
        *,
        subdomains: Sequence[str] = (),
        metadata_url: Optional[str] = None,
        timeout_s: float = 30.0,
        retry: Optional[RetryPolicy] = None,
        headers: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if "{z}" not in url_template or "{x}" not in url_template or "{y}" not in url_template:
            raise ValueError("url_template must contain {z}, {x} and {y}")
        if "{s}" in url_template and not subdomains:
            raise ValueError("url_template uses {s} but no subdomains were given")
        self.url_template = url_template
        self.subdomains = tuple(subdomains)
        self.metadata_url = metadata_url
        self._timeout_s = float(timeout_s)
        self._retry = retry or RetryPolicy()
        self._headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        subdomain = ""
        if self.subdomains:
            subdomain = self.subdomains[(x + y) % len(self.subdomains)]
        return self.url_template.format(s=subdomain, z=zoom, x=x, y=y)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s), follow_redirects=True
            )
        return self._client

    async def _get(self, url: str) -> httpx.Response:
        client = self._get_client()
        attempt = 0
        while True:
            attempt += 1
            delay = self._retry.backoff_s(attempt)
            if delay > 0:
                await self._sleep(delay)
            try:
                resp = await client.get(url, headers=self._headers)
            except httpx.RequestError as exc:
                if attempt >= self._retry.max_attempts:
                    raise
                logger.warning(
                    "tile_request_failed_retrying",
                    extra={"url": url, "attempt": attempt, "error": str(exc)},
                )
                continue

            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < self._retry.max_attempts:
                logger.warning(
                    "tile_request_failed_retrying",
                    extra={"url": url, "attempt": attempt, "status_code": resp.status_code},
                )
                continue
            resp.raise_for_status()
            return resp

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        resp = await self._get(self.tile_url(zoom, x, y))
        image = Image.open(io.BytesIO(resp.content))
        image.load()
        return image

    async def get_metadata(self) -> Optional[Mapping[str, Any]]:
        """Fetch TileJSON metadata and adopt its zoom range, bounds and center."""

        if self.metadata_url is None:
            return None
        resp = await self._get(self.metadata_url)
        meta = resp.json()
        if not isinstance(meta, Mapping):
            raise ValueError(f"tile metadata must be a JSON object: {self.metadata_url}")

        self.name = str(meta.get("name", self.name))
        if "minzoom" in meta:
            self.min_zoom = int(meta["minzoom"])
        if "maxzoom" in meta:
            self.max_zoom = int(meta["maxzoom"])
        if isinstance(meta.get("bounds"), list):
            self.bounds = [float(v) for v in meta["bounds"]]
        if isinstance(meta.get("center"), list):
            self.center = [float(v) for v in meta["center"]]
        return meta

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _lerp_hsl(
    start: tuple[int, int, int], end: tuple[int, int, int], alpha: float
) -> tuple[int, int, int]:
    alpha = min(1.0, max(0.0, float(alpha)))
    h1, l1, s1 = colorsys.rgb_to_hls(*(c / 255.0 for c in start))
    h2, l2, s2 = colorsys.rgb_to_hls(*(c / 255.0 for c in end))
    r, g, b = colorsys.hls_to_rgb(
        h1 + (h2 - h1) * alpha, l1 + (l2 - l1) * alpha, s1 + (s2 - s1) * alpha
    )
    return int(round(r * 255)), int(round(g * 255)), int(round(b * 255))


class DebugProvider(MapProvider):
    """Solid tiles shading from green to red with zoom, labelled with their address."""

    def __init__(self, *, resolution: int = 256, **kwargs: Any) -> None:
        kwargs.setdefault("name", "debug")
        super().__init__(**kwargs)
        self.resolution = int(resolution)

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        span = max(1, self.max_zoom - self.min_zoom)
        color = _lerp_hsl((0, 255, 0), (255, 0, 0), (zoom - self.min_zoom) / span)

        image = Image.new("RGB", (self.resolution, self.resolution), color)
        draw = ImageDraw.Draw(image)
        for text, row in ((f"({zoom})", 0.4), (f"({x}, {y})", 0.6)):
            left, top, right, bottom = draw.textbbox((0, 0), text)
            position = (
                (self.resolution - (right - left)) / 2,
                self.resolution * row - (bottom - top) / 2,
            )
            draw.text(position, text, fill=(0, 0, 0))
        return image


class HeightDebugProvider(MapProvider):
    """Recolours packed elevation tiles from another provider as a gradient."""

    def __init__(
        self,
        provider: MapProvider,
        *,
        from_color: tuple[int, int, int] = (255, 0, 0),
        to_color: tuple[int, int, int] = (0, 255, 0),
        resolution: int = 256,
        decoder: ElevationDecoder = MAPBOX,
    ) -> None:
        super().__init__(
            name=f"height-debug:{provider.name}",
            min_zoom=provider.min_zoom,
            max_zoom=provider.max_zoom,
        )
        self.provider = provider
        self.from_color = from_color
        self.to_color = to_color
        self.resolution = int(resolution)
        self.decoder = decoder

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        source = await self.provider.fetch_tile(zoom, x, y)
        heights = decode_raster(source, size=self.resolution, decoder=self.decoder)

        # the hue lerp is not linear, so quantise and colour a lookup table
        steps = 1024
        table = np.array(
            [_lerp_hsl(self.from_color, self.to_color, i / (steps - 1)) for i in range(steps)],
            dtype=np.uint8,
        )
        alpha = np.clip(heights / MAX_ENCODED_HEIGHT, 0.0, 1.0)
        rgb = table[np.rint(alpha * (steps - 1)).astype(np.int64)]
        return Image.fromarray(rgb)


class ConstantHeightProvider(MapProvider):
    """Flat elevation tiles encoded as Terrain-RGB."""

    def __init__(self, height_m: float = 0.0, *, resolution: int = 256, **kwargs: Any) -> None:
        kwargs.setdefault("name", "constant-height")
        super().__init__(**kwargs)
        self.height_m = float(height_m)
        self.resolution = int(resolution)
        self._rgb = encode_height(self.height_m)

    async def fetch_tile(self, zoom: int, x: int, y: int) -> Image.Image:
        return Image.new("RGB", (self.resolution, self.resolution), self._rgb)
