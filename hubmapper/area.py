import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from hubmapper.config import WGS84
from hubmapper.geometry import ALL, BufferResult, _fix_geom

logger = logging.getLogger(__name__)

SQ_METERS_PER_SQ_MILE = 2589988.110336
HEADWAY_BINS = [0, 5, 10, 15, 20, 30, 60, np.inf]
HEADWAY_LABELS = ["0-5 min", "5-10 min", "10-15 min", "15-20 min", "20-30 min", "30-60 min", ">60 min"]


@dataclass(frozen=True)
class AreaSummary:
    """Union areas per category (rows) plus ratios of the overall area to reference regions."""
    table: pd.DataFrame
    total_sq_mi: float
    ratios: Dict[str, float] = field(default_factory=dict)


def _sq_units_to_sq_mi(crs) -> float:
    c = CRS.from_user_input(crs)
    if not c.is_projected:
        raise ValueError(f"{c.to_string()} is not a projected CRS; areas in degrees are meaningless")
    m = c.axis_info[0].unit_conversion_factor
    return (m * m) / SQ_METERS_PER_SQ_MILE

# Purpose: Planar area of a geometry (or all geometries of a layer) in square miles.
# Inputs:
# - geoms (GeoSeries | GeoDataFrame): Input with a CRS set.
# - area_crs (str): Projected CRS in which the area is measured (equal-area recommended).
# Outputs:
# - float: Total area in square miles.
def area_sq_mi(geoms, area_crs: str) -> float:
    if geoms is None or len(geoms) == 0:
        return 0.0
    gs = geoms.geometry if isinstance(geoms, gpd.GeoDataFrame) else geoms
    return float(gs.to_crs(area_crs).area.sum() * _sq_units_to_sq_mi(area_crs))

# Purpose: Areas of the category unions and of the overall union, with ratios to reference regions.
# Inputs:
# - result (BufferResult): Output of geometry.build_buffers.
# - area_crs (str): Equal-area projected CRS.
# - reference_areas (dict[str, float]): Label -> region area in square miles.
# Outputs:
# - AreaSummary: table columns [category, n_features, area_sq_mi, pct_of_<label>...].
def summarize_areas(result: BufferResult, area_crs: str,
                    reference_areas: Optional[Dict[str, float]] = None) -> AreaSummary:
    reference_areas = reference_areas or {}
    unions = result.unions
    areas = unions.geometry.to_crs(area_crs).area * _sq_units_to_sq_mi(area_crs)
    table = pd.DataFrame({
        "category": unions["category"].to_numpy(),
        "n_features": unions["n_features"].to_numpy(),
        "area_sq_mi": areas.to_numpy(dtype=float),
    })
    for label, ref in reference_areas.items():
        table[f"pct_of_{label}"] = table["area_sq_mi"] / float(ref) * 100.0
    total_row = table[table["category"] == ALL]
    total = float(total_row["area_sq_mi"].iloc[0]) if not total_row.empty else 0.0
    ratios = {label: total / float(ref) for label, ref in reference_areas.items()}
    logger.info(f"Union area: {total:.2f} sq mi; ratios { {k: round(v, 4) for k, v in ratios.items()} }")
    return AreaSummary(table=table, total_sq_mi=total, ratios=ratios)

# Purpose: Land area of a reference region built by unioning official boundary polygons (e.g. counties).
# Inputs:
# - boundaries (GeoDataFrame): Administrative polygons with a CRS.
# - area_crs (str): Equal-area projected CRS.
# - names (Iterable[str] | None): Optional subset of boundary names to keep.
# - name_column (str): Column holding the boundary name.
# Outputs:
# - float: Area of the union in square miles.
def reference_area_sq_mi(boundaries: gpd.GeoDataFrame, area_crs: str,
                         names: Optional[Iterable[str]] = None, name_column: str = "NAME") -> float:
    gdf = boundaries
    if gdf.crs is None:
        gdf = gdf.set_crs(WGS84)
    if names is not None:
        wanted = list(names)
        gdf = gdf[gdf[name_column].isin(wanted)]
        missing = set(wanted) - set(gdf[name_column])
        if missing:
            logger.warning(f"Reference boundaries not found: {sorted(missing)}")
    if gdf.empty:
        return 0.0
    merged = _fix_geom(gdf.to_crs(area_crs).geometry.union_all())
    return float(merged.area * _sq_units_to_sq_mi(area_crs))


# -------------------- Explainability stats --------------------
def headway_distribution(summaries: pd.DataFrame) -> pd.Series:
    """Count of route-at-stop summaries per median-headway band."""
    bands = pd.cut(summaries["median_headway"].astype(float), bins=HEADWAY_BINS,
                   labels=HEADWAY_LABELS, include_lowest=True)
    return bands.value_counts(sort=False).reindex(HEADWAY_LABELS, fill_value=0)

def agency_frequency_stats(summaries: pd.DataFrame) -> pd.DataFrame:
    cols = ["agency", "total_routes", "qualifying_routes", "pct_qualifying", "median_headway"]
    if summaries.empty:
        return pd.DataFrame(columns=cols)
    g = summaries.groupby("agency", sort=True)
    out = g.agg(
        total_routes=("route_id", "size"),
        qualifying_routes=("qualifies", "sum"),
        median_headway=("median_headway", "median"),
    ).reset_index()
    out["qualifying_routes"] = out["qualifying_routes"].astype(int)
    out["pct_qualifying"] = out["qualifying_routes"] / out["total_routes"] * 100.0
    return out[cols]

# Purpose: Compare the statutory bus-hub count against a route-count-only reading (2+ routes, no frequency test).
# Inputs:
# - peak_events (DataFrame): Peak arrival events with route_mode.
# - hubs (GeoDataFrame): Qualifying hubs.
# - bus_modes (Iterable[str]): Route modes counted as bus.
# - exclude_stop_ids (Iterable[str]): Stops classified as rail.
# - min_routes (int): Route count threshold.
# Outputs:
# - dict: route_count_only, statutory, difference and difference_pct.
def compare_with_route_count_only(peak_events: pd.DataFrame, hubs: gpd.GeoDataFrame, bus_modes,
                                  exclude_stop_ids, min_routes: int) -> dict:
    bus = peak_events[peak_events["route_mode"].isin(list(bus_modes))
                      & ~peak_events["stop_id"].isin(list(exclude_stop_ids))]
    per_stop = bus.groupby("stop_id")["route_id"].nunique()
    naive = int((per_stop >= min_routes).sum())
    statutory = int((hubs["kind"] == "bus_hub").sum()) if not hubs.empty else 0
    diff = naive - statutory
    pct = (diff / naive * 100.0) if naive else 0.0
    logger.info(f"Bus stops with {min_routes}+ routes: {naive}; with frequency test: {statutory} "
                f"(difference {diff}, {pct:.1f}%)")
    return {"route_count_only": naive, "statutory": statutory, "difference": diff, "difference_pct": pct}

def hub_counts(hubs: gpd.GeoDataFrame) -> Dict[str, int]:
    if hubs.empty:
        return {}
    return {f"{a}/{k}": int(n) for (a, k), n in hubs.groupby(["agency", "kind"]).size().items()}
