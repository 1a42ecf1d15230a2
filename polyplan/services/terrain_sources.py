"""
Terrain data sources.

Pluggable providers of elevation and land cover for sample points. The
terrain constraint builder only talks to the ``TerrainDataSource``
interface; concrete sources:
- FlatTerrainSource: constant elevation and land cover (tests, offline use)
- RasterTerrainSource: local DEM / ESA WorldCover GeoTIFFs via rasterio
- HttpElevationSource: Open-Elevation style HTTP batch lookup via httpx
- CompositeTerrainSource: elevation from one source, land cover from another
"""
import logging
import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Sequence

import httpx
import numpy as np
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.warp import transform as warp_transform

from polyplan.services.projection import GeoPoint

logger = logging.getLogger(__name__)


class LandCover(str, Enum):
    """Land cover categories reported by terrain sources."""
    CROPLAND = "cropland"
    GRASSLAND = "grassland"
    BARE_SOIL = "bare_soil"
    SHRUBLAND = "shrubland"
    FOREST = "forest"
    MANGROVE = "mangrove"
    WATER = "water"
    PERMANENT_WATER = "permanent_water"
    SEASONAL_WATER = "seasonal_water"
    WETLAND = "wetland"
    SNOW = "snow"
    BUILT_UP = "built_up"
    URBAN = "urban"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        # Categories a source invents are treated as unclassified
        return cls.UNKNOWN


WATER_COVERS = frozenset({
    LandCover.WATER,
    LandCover.PERMANENT_WATER,
    LandCover.SEASONAL_WATER,
    LandCover.WETLAND,
})
FOREST_COVERS = frozenset({LandCover.FOREST, LandCover.MANGROVE})
BUILT_COVERS = frozenset({LandCover.BUILT_UP, LandCover.URBAN})

# ESA WorldCover 10m class codes
WORLDCOVER_CLASSES = {
    10: LandCover.FOREST,
    20: LandCover.SHRUBLAND,
    30: LandCover.GRASSLAND,
    40: LandCover.CROPLAND,
    50: LandCover.BUILT_UP,
    60: LandCover.BARE_SOIL,
    70: LandCover.SNOW,
    80: LandCover.PERMANENT_WATER,
    90: LandCover.WETLAND,
    95: LandCover.MANGROVE,
    100: LandCover.GRASSLAND,  # moss and lichen
}


class TerrainSourceError(Exception):
    """Raised when a terrain source cannot provide data."""
    pass


class TerrainDataSource(ABC):
    """Abstract provider of elevation and land cover."""

    name: str = "abstract"

    @abstractmethod
    def fetch_elevation(self, point: GeoPoint) -> Optional[float]:
        """Elevation in metres, or None where the source has no data."""
        pass

    @abstractmethod
    def fetch_land_cover(self, point: GeoPoint) -> LandCover:
        pass

    def fetch_samples(
        self,
        points: Sequence[GeoPoint],
    ) -> tuple[list[Optional[float]], list[LandCover]]:
        """
        Fetch elevation and land cover for many points.

        Sources with a cheaper batch path override this.

        Returns:
            Tuple of (elevations, land covers), aligned with ``points``
        """
        elevations = [self.fetch_elevation(p) for p in points]
        covers = [self.fetch_land_cover(p) for p in points]
        return elevations, covers


class FlatTerrainSource(TerrainDataSource):
    """Constant elevation and land cover everywhere."""

    name = "flat"

    def __init__(self, elevation_m: float = 0.0, land_cover: LandCover = LandCover.CROPLAND):
        self.elevation_m = elevation_m
        self.land_cover = land_cover

    def fetch_elevation(self, point: GeoPoint) -> Optional[float]:
        return self.elevation_m

    def fetch_land_cover(self, point: GeoPoint) -> LandCover:
        return self.land_cover


class RasterTerrainSource(TerrainDataSource):
    """
    Reads elevation and land cover from local GeoTIFFs.

    The DEM may be in any CRS; sample points are reprojected from WGS84.
    The land cover raster is expected to carry ESA WorldCover class codes.
    """

    name = "raster"

    def __init__(self, dem_path: Optional[str] = None, land_cover_path: Optional[str] = None):
        if dem_path is None and land_cover_path is None:
            raise ValueError("RasterTerrainSource needs a DEM or a land cover raster")
        self.dem_path = dem_path
        self.land_cover_path = land_cover_path

    def _sample(self, path: str, points: Sequence[GeoPoint]) -> tuple[np.ndarray, Optional[float]]:
        try:
            with rasterio.open(path) as src:
                xs = [p.lng for p in points]
                ys = [p.lat for p in points]
                if src.crs is not None and src.crs.to_epsg() != 4326:
                    xs, ys = warp_transform("EPSG:4326", src.crs, xs, ys)
                values = np.array([v[0] for v in src.sample(zip(xs, ys))], dtype=float)
                return values, src.nodata
        except RasterioIOError as e:
            raise TerrainSourceError(f"Failed to read raster {path}: {e}") from e

    def fetch_elevation(self, point: GeoPoint) -> Optional[float]:
        return self.fetch_samples([point])[0][0]

    def fetch_land_cover(self, point: GeoPoint) -> LandCover:
        return self.fetch_samples([point])[1][0]

    def fetch_samples(self, points):
        elevations: list[Optional[float]] = [None] * len(points)
        covers = [LandCover.UNKNOWN] * len(points)

        if self.dem_path:
            values, nodata = self._sample(self.dem_path, points)
            for i, value in enumerate(values):
                if math.isfinite(value) and value > -9000 and (nodata is None or value != nodata):
                    elevations[i] = float(value)

        if self.land_cover_path:
            codes, _ = self._sample(self.land_cover_path, points)
            covers = [WORLDCOVER_CLASSES.get(int(c), LandCover.UNKNOWN) if math.isfinite(c) else LandCover.UNKNOWN
                      for c in codes]

        return elevations, covers


class HttpElevationSource(TerrainDataSource):
    """
    Elevation lookups against an Open-Elevation compatible API.

    POSTs ``{"locations": [{"latitude": .., "longitude": ..}, ...]}`` and
    reads ``results[i].elevation``. Land cover is not provided.
    """

    name = "http"

    BATCH_SIZE = 200

    def __init__(self, url: str, timeout_s: float = 30.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client

    def _post(self, payload: dict) -> dict:
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=payload, timeout=self.timeout_s)
            else:
                with httpx.Client(timeout=self.timeout_s) as client:
                    response = client.post(self.url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise TerrainSourceError(f"Elevation API request failed: {e}") from e

    def fetch_elevation(self, point: GeoPoint) -> Optional[float]:
        return self.fetch_samples([point])[0][0]

    def fetch_land_cover(self, point: GeoPoint) -> LandCover:
        return LandCover.UNKNOWN

    def fetch_samples(self, points):
        elevations: list[Optional[float]] = []
        for start in range(0, len(points), self.BATCH_SIZE):
            batch = points[start:start + self.BATCH_SIZE]
            data = self._post({
                "locations": [{"latitude": p.lat, "longitude": p.lng} for p in batch]
            })
            results = data.get("results", [])
            if len(results) != len(batch):
                raise TerrainSourceError(
                    f"Elevation API returned {len(results)} results for {len(batch)} points"
                )
            for r in results:
                value = r.get("elevation")
                elevations.append(float(value) if value is not None else None)
        return elevations, [LandCover.UNKNOWN] * len(points)


class CompositeTerrainSource(TerrainDataSource):
    """Elevation from one source, land cover from another."""

    name = "composite"

    def __init__(self, elevation_source: TerrainDataSource, land_cover_source: TerrainDataSource):
        self.elevation_source = elevation_source
        self.land_cover_source = land_cover_source

    def fetch_elevation(self, point: GeoPoint) -> Optional[float]:
        return self.elevation_source.fetch_elevation(point)

    def fetch_land_cover(self, point: GeoPoint) -> LandCover:
        return self.land_cover_source.fetch_land_cover(point)

    def fetch_samples(self, points):
        elevations, _ = self.elevation_source.fetch_samples(points)
        _, covers = self.land_cover_source.fetch_samples(points)
        return elevations, covers


def build_terrain_source(
    dem_path: Optional[str] = None,
    land_cover_path: Optional[str] = None,
    elevation_api_url: Optional[str] = None,
    timeout_s: float = 30.0,
) -> TerrainDataSource:
    """
    Pick a terrain source from configuration.

    Raster DEM wins over the HTTP API for elevation. Land cover comes from
    the WorldCover raster when given, otherwise everything is cropland.
    """
    if dem_path:
        elevation: TerrainDataSource = RasterTerrainSource(dem_path=dem_path)
    elif elevation_api_url:
        elevation = HttpElevationSource(elevation_api_url, timeout_s=timeout_s)
    else:
        elevation = FlatTerrainSource()

    if land_cover_path:
        if dem_path:
            return RasterTerrainSource(dem_path=dem_path, land_cover_path=land_cover_path)
        return CompositeTerrainSource(elevation, RasterTerrainSource(land_cover_path=land_cover_path))

    if isinstance(elevation, FlatTerrainSource):
        logger.info("No terrain data configured, using flat terrain")
        return elevation
    return CompositeTerrainSource(elevation, FlatTerrainSource())
