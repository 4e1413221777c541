import logging
from dataclasses import dataclass
from typing import Dict, Optional

import geopandas as gpd
import pandas as pd
from pyproj import CRS
from shapely.geometry import GeometryCollection, Polygon
from shapely.validation import make_valid

from hubmapper.config import WGS84, BufferRadii
from hubmapper.log import log_step

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
POINT_CATEGORIES = ("rail", "bus", "ferry")
CATEGORY_ORDER = POINT_CATEGORIES + ("corridor",)
ALL = "all"


# Purpose: Number of planar CRS linear units in one statute mile.
# Inputs:
# - crs (str | CRS): Projected CRS (metres, international feet or US survey feet).
# Outputs:
# - float: Units per mile. Raises ValueError for a geographic CRS.
def crs_units_per_mile(crs) -> float:
    c = CRS.from_user_input(crs)
    if not c.is_projected:
        raise ValueError(f"{c.to_string()} is not a projected CRS; buffering in degrees is invalid")
    meters_per_unit = c.axis_info[0].unit_conversion_factor
    return METERS_PER_MILE / meters_per_unit

def _fix_geom(g):
    if g is None or g.is_empty:
        return g
    return make_valid(g) if not g.is_valid else g

def _safe_buffer(geom, dist, **kwargs):
    """Buffer that tolerates slightly invalid geometry."""
    if geom is None or getattr(geom, "is_empty", True):
        return None
    buf = geom.buffer(dist, **kwargs)
    if not buf.is_valid:
        buf = _fix_geom(buf)
    return buf

def _union(geoms) -> Polygon:
    geoms = [g for g in geoms if g is not None and not g.is_empty]
    if not geoms:
        return Polygon()
    out = gpd.GeoSeries(geoms).union_all()
    return _fix_geom(out)


@dataclass(frozen=True)
class BufferResult:
    """Per-feature buffers and per-category/overall unions (all in WGS84)."""
    buffers: gpd.GeoDataFrame
    unions: gpd.GeoDataFrame
    local_crs: str

    def union(self, category: str = ALL):
        row = self.unions[self.unions["category"] == category]
        if row.empty:
            return GeometryCollection()
        return row.geometry.iloc[0]


# Purpose: Buffer features of one category in the planar CRS.
# Inputs:
# - gdf (GeoDataFrame): Points or lines in any CRS.
# - id_col (str): Identifier column carried to the output and used for deterministic ordering.
# - category (str): Category tag written to the output.
# - radius_mi (float): Buffer radius in miles.
# - local_crs (str): Planar CRS for buffering.
# Outputs:
# - GeoDataFrame: [source_id, category, radius_mi, geometry] in local_crs.
def buffer_features(gdf: gpd.GeoDataFrame, id_col: str, category: str, radius_mi: float,
                    local_crs: str) -> gpd.GeoDataFrame:
    if radius_mi <= 0:
        raise ValueError(f"Buffer radius for {category} must be > 0")
    cols = ["source_id", "category", "radius_mi"]
    if gdf is None or gdf.empty:
        return gpd.GeoDataFrame({c: [] for c in cols}, geometry=[], crs=local_crs)
    local = gdf.to_crs(local_crs).sort_values(id_col, kind="mergesort")
    dist = radius_mi * crs_units_per_mile(local_crs)
    geoms = [_safe_buffer(g, dist) for g in local.geometry]
    out = gpd.GeoDataFrame(
        {"source_id": local[id_col].to_numpy(), "category": category, "radius_mi": float(radius_mi)},
        geometry=geoms, crs=local_crs,
    )
    dropped = int(out.geometry.isna().sum())
    if dropped:
        logger.warning(f"{category}: {dropped} features produced no buffer")
    return out[out.geometry.notna()].reset_index(drop=True)

# Purpose: Buffer qualifying hubs and corridors, union within each category, then across categories.
# Inputs:
# - hubs (GeoDataFrame): Qualifying hubs in WGS84 with 'stop_id' and 'category'.
# - corridors (GeoDataFrame | None): Qualifying corridor lines in WGS84 with 'shape_id'.
# - radii (BufferRadii): Radius per category, in miles.
# - local_crs (str): Planar CRS for buffering and unions.
# Outputs:
# - BufferResult: buffers and unions reprojected to WGS84; unions has one row per category plus 'all'.
def build_buffers(hubs: gpd.GeoDataFrame, corridors: Optional[gpd.GeoDataFrame], radii: BufferRadii,
                  local_crs: str) -> BufferResult:
    parts = []
    with log_step("Buffer qualifying hubs and corridors"):
        for cat in POINT_CATEGORIES:
            subset = hubs[hubs["category"] == cat] if not hubs.empty else hubs
            parts.append(buffer_features(subset, "stop_id", cat, radii.for_category(cat), local_crs))
        if corridors is not None and not corridors.empty:
            parts.append(buffer_features(corridors, "shape_id", "corridor", radii.for_category("corridor"), local_crs))
        buffers = gpd.GeoDataFrame(pd.concat(parts, ignore_index=True), crs=local_crs)

    with log_step("Union buffers per category and overall"):
        per_cat: Dict[str, object] = {}
        for cat in CATEGORY_ORDER:
            geoms = buffers.loc[buffers["category"] == cat, "geometry"]
            if len(geoms):
                per_cat[cat] = _union(list(geoms))
        overall = _union(list(per_cat.values()))
        rows = [{"category": c, "n_features": int((buffers["category"] == c).sum()), "geometry": g}
                for c, g in per_cat.items()]
        rows.append({"category": ALL, "n_features": int(len(buffers)), "geometry": overall})
        unions = gpd.GeoDataFrame(rows, geometry="geometry", crs=local_crs)
        logger.info(f"Unions built for {list(per_cat)} from {len(buffers)} buffers")

    return BufferResult(
        buffers=buffers.to_crs(WGS84),
        unions=unions.to_crs(WGS84),
        local_crs=local_crs,
    )
