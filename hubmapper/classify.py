"""Hub and corridor classification.

Stop kinds are separate record types, each with its own ``qualifies``:

- ``RailStop``: identified by an agency rule; always qualifies.
- ``BusStop``: qualifies only when it has at least ``min_routes``
  sufficiently observed routes and *every* one of them meets the headway
  threshold. One slow route disqualifies the stop.
- ``FerryTerminal``: qualifies when a stop served by a non-ferry route lies
  within the connection radius.

Every candidate carries the route-at-stop summaries it was judged on.
"""
import logging
from dataclasses import dataclass, asdict
from typing import ClassVar, Dict, List, Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import LineString, Point

from hubmapper.config import WGS84, AgencyConfig, FrequencyRule, HubConfig
from hubmapper.geometry import crs_units_per_mile
from hubmapper.normalize import UNKNOWN, CanonicalTables

logger = logging.getLogger(__name__)

HUB_COLUMNS = [
    "stop_id", "agency", "stop_name", "kind", "category", "reason",
    "total_routes", "qualifying_routes", "routes", "geometry",
]
CORRIDOR_COLUMNS = [
    "route_id", "agency", "shape_id", "route_short_name", "route_long_name",
    "median_headway", "num_observations", "geometry",
]


@dataclass(frozen=True)
class RouteAtStop:
    stop_id: str
    route_id: str
    agency: str
    route_mode: str
    median_headway: float
    min_headway: float
    max_headway: float
    num_observations: int
    qualifies: bool


@dataclass(frozen=True)
class RailStop:
    kind: ClassVar[str] = "rail"
    category: ClassVar[str] = "rail"

    stop_id: str
    agency: str
    stop_name: str
    lat: float
    lon: float
    reason: str
    routes: Tuple[RouteAtStop, ...] = ()

    def qualifies(self, rule: FrequencyRule) -> bool:
        return True


@dataclass(frozen=True)
class BusStop:
    kind: ClassVar[str] = "bus_hub"
    category: ClassVar[str] = "bus"

    stop_id: str
    agency: str
    stop_name: str
    lat: float
    lon: float
    routes: Tuple[RouteAtStop, ...] = ()

    @property
    def reason(self) -> str:
        return f"{sum(r.qualifies for r in self.routes)}/{len(self.routes)} routes meet headway"

    def qualifies(self, rule: FrequencyRule) -> bool:
        distinct = {r.route_id for r in self.routes}
        return len(distinct) >= rule.min_routes and all(r.qualifies for r in self.routes)


@dataclass(frozen=True)
class FerryTerminal:
    kind: ClassVar[str] = "ferry"
    category: ClassVar[str] = "ferry"

    stop_id: str
    agency: str
    stop_name: str
    lat: float
    lon: float
    connections: Tuple[str, ...] = ()
    routes: Tuple[RouteAtStop, ...] = ()

    @property
    def reason(self) -> str:
        return f"{len(self.connections)} connecting stops"

    def qualifies(self, rule: FrequencyRule) -> bool:
        return len(self.connections) > 0


HubCandidate = Union[RailStop, BusStop, FerryTerminal]

# order used when one stop qualifies under several kinds
KIND_PRECEDENCE = {"rail": 0, "ferry": 1, "bus_hub": 2}


@dataclass(frozen=True)
class Classification:
    candidates: Tuple[HubCandidate, ...]
    hubs: gpd.GeoDataFrame
    rail_out_of_jurisdiction: int = 0


# -------------------- Rail identification --------------------
def _has_parent(s: pd.Series) -> pd.Series:
    return s.notna() & (s != UNKNOWN)

# Purpose: Apply one agency's rail identification rule and jurisdiction filter to its stops.
# Inputs:
# - stops (DataFrame): Canonical stops for this agency only.
# - agency (AgencyConfig): Carries the RailRule.
# - rail_served (set[str]): Stop ids served by a rail-mode route on the service day.
# Outputs:
# - tuple[DataFrame, DataFrame]: (rail stops with a 'reason' column, rail stops excluded by latitude).
def identify_rail_stops(stops: pd.DataFrame, agency: AgencyConfig, rail_served: set) -> Tuple[pd.DataFrame, pd.DataFrame]:
    rule = agency.rail_rule
    if rule.mode == "none" or stops.empty:
        none = stops.iloc[0:0].assign(reason=pd.Series(dtype="object"))
        return none, none
    if rule.mode == "all_stops":
        mask = pd.Series(True, index=stops.index)
        reason = pd.Series("rail-only agency", index=stops.index)
    elif rule.mode == "route_type":
        mask = stops["stop_id"].isin(rail_served)
        reason = pd.Series("served by rail route", index=stops.index)
    else:
        by_type = stops["location_type"].isin(rule.location_types)
        by_parent = _has_parent(stops["parent_station"])
        mask = by_type | by_parent
        reason = pd.Series(
            np.where(by_type, "location_type " + stops["location_type"].astype(str), "parent station relation"),
            index=stops.index,
        )
    rail = stops.loc[mask].assign(reason=reason[mask])
    inside = np.array([rule.in_jurisdiction(lat) for lat in rail["stop_lat"]], dtype=bool)
    excluded = rail.loc[~inside]
    if len(excluded):
        logger.info(f"{agency.id}: {len(excluded)} rail stops outside jurisdiction latitude limits")
    return rail.loc[inside], excluded


# -------------------- Candidate construction --------------------
def _route_records(summaries: pd.DataFrame) -> Dict[str, Tuple[RouteAtStop, ...]]:
    by_stop: Dict[str, List[RouteAtStop]] = {}
    for row in summaries.itertuples(index=False):
        rec = RouteAtStop(
            stop_id=row.stop_id, route_id=row.route_id, agency=row.agency,
            route_mode=row.route_mode, median_headway=float(row.median_headway),
            min_headway=float(row.min_headway), max_headway=float(row.max_headway),
            num_observations=int(row.num_observations), qualifies=bool(row.qualifies),
        )
        by_stop.setdefault(row.stop_id, []).append(rec)
    return {k: tuple(sorted(v, key=lambda r: r.route_id)) for k, v in by_stop.items()}

# Purpose: Find ferry terminals and the non-ferry stops within the connection radius of each.
# Inputs:
# - stops (DataFrame): Canonical stops.
# - ferry_ids (set[str]): Stops served by a ferry route.
# - connector_ids (set[str]): Stops served by a non-ferry route, plus rail stops.
# - radius_mi (float): Connection radius in miles.
# - local_crs (str): Planar CRS used to measure distance.
# Outputs:
# - dict[str, tuple[str,...]]: Ferry stop id -> sorted connecting stop ids.
def ferry_connections(stops, ferry_ids, connector_ids, radius_mi: float, local_crs: str):
    if not ferry_ids:
        return {}
    pts = gpd.GeoDataFrame(
        stops[["stop_id"]].copy(),
        geometry=gpd.points_from_xy(stops["stop_lon"], stops["stop_lat"]),
        crs=WGS84,
    ).to_crs(local_crs)
    radius = radius_mi * crs_units_per_mile(local_crs)
    conn = pts[pts["stop_id"].isin(connector_ids)].reset_index(drop=True)
    out = {}
    for sid, geom in pts[pts["stop_id"].isin(ferry_ids)][["stop_id", "geometry"]].itertuples(index=False):
        if conn.empty:
            out[sid] = ()
            continue
        idxs = list(conn.sindex.intersection(geom.buffer(radius).bounds))
        near = conn.iloc[idxs]
        near = near[near.distance(geom) <= radius]
        out[sid] = tuple(sorted(near["stop_id"]))
    return out

# Purpose: Build every hub candidate and keep the ones whose predicate holds.
# Inputs:
# - tables (CanonicalTables): Canonical tables (stops are used for names and coordinates).
# - summaries (DataFrame): Route-at-stop summaries from headways.summarize_route_at_stop.
# - day_pairs (DataFrame): Distinct stop/route/mode pairs for the whole service day.
# - cfg (HubConfig): Frequency rule, route type groups, agency rail rules, ferry settings.
# Outputs:
# - Classification: Candidates (new generation, immutable) and a GeoDataFrame of qualifying hubs in WGS84.
def classify_stops(tables: CanonicalTables, summaries: pd.DataFrame, day_pairs: pd.DataFrame,
                   cfg: HubConfig) -> Classification:
    stops = tables.stops
    rule = cfg.frequency
    mode_kind = day_pairs["route_mode"].map(cfg.kind_of_mode)
    rail_served = set(day_pairs.loc[mode_kind == "rail", "stop_id"])
    ferry_served = set(day_pairs.loc[mode_kind == "ferry", "stop_id"])
    non_ferry_served = set(day_pairs.loc[mode_kind.isin(["rail", "bus"]), "stop_id"])

    rail_frames, outside = [], set()
    for agency in cfg.agencies:
        rail_a, ex = identify_rail_stops(stops[stops["agency"] == agency.id], agency, rail_served)
        rail_frames.append(rail_a)
        outside |= set(ex["stop_id"])
    excluded = len(outside)
    rail = pd.concat(rail_frames) if rail_frames else stops.iloc[0:0].assign(reason=pd.Series(dtype="object"))
    rail_ids = set(rail["stop_id"])

    by_stop = _route_records(summaries)
    bus_summaries = summaries[summaries["route_mode"].map(cfg.kind_of_mode) == "bus"]
    bus_routes = _route_records(bus_summaries)
    info = stops.set_index("stop_id")

    candidates: List[HubCandidate] = []
    for row in rail.itertuples(index=False):
        candidates.append(RailStop(
            stop_id=row.stop_id, agency=row.agency, stop_name=row.stop_name,
            lat=float(row.stop_lat), lon=float(row.stop_lon), reason=row.reason,
            routes=by_stop.get(row.stop_id, ()),
        ))

    if cfg.ferry.enabled:
        ferry_ids = ferry_served - rail_ids - outside
        links = ferry_connections(stops, ferry_ids, non_ferry_served | rail_ids,
                                  cfg.ferry.connection_radius_mi, cfg.local_crs)
        for sid in sorted(links):
            s = info.loc[sid]
            candidates.append(FerryTerminal(
                stop_id=sid, agency=s["agency"], stop_name=s["stop_name"],
                lat=float(s["stop_lat"]), lon=float(s["stop_lon"]),
                connections=links[sid], routes=by_stop.get(sid, ()),
            ))

    for sid in sorted(set(bus_routes) - rail_ids - outside):
        if sid not in info.index:
            continue
        s = info.loc[sid]
        candidates.append(BusStop(
            stop_id=sid, agency=s["agency"], stop_name=s["stop_name"],
            lat=float(s["stop_lat"]), lon=float(s["stop_lon"]), routes=bus_routes[sid],
        ))

    hubs = qualifying_hubs(candidates, rule)
    counts = hubs["kind"].value_counts().to_dict() if not hubs.empty else {}
    logger.info(f"Candidates: {len(candidates)}; qualifying hubs: {len(hubs)} {counts}")
    return Classification(candidates=tuple(candidates), hubs=hubs, rail_out_of_jurisdiction=excluded)

def qualifying_hubs(candidates, rule: FrequencyRule) -> gpd.GeoDataFrame:
    """Candidates whose predicate holds, one row per stop (rail, then ferry, then bus)."""
    rows = []
    for c in sorted(candidates, key=lambda c: (c.stop_id, KIND_PRECEDENCE[c.kind])):
        if rows and rows[-1]["stop_id"] == c.stop_id:
            continue
        if not c.qualifies(rule):
            continue
        rows.append({
            "stop_id": c.stop_id,
            "agency": c.agency,
            "stop_name": c.stop_name,
            "kind": c.kind,
            "category": c.category,
            "reason": c.reason,
            "total_routes": len(c.routes),
            "qualifying_routes": sum(r.qualifies for r in c.routes),
            "routes": [asdict(r) for r in c.routes],
            "geometry": Point(c.lon, c.lat),
        })
    if not rows:
        return gpd.GeoDataFrame({c: [] for c in HUB_COLUMNS[:-1]}, geometry=[], crs=WGS84)
    return gpd.GeoDataFrame(rows, columns=HUB_COLUMNS, geometry="geometry", crs=WGS84)


# -------------------- Corridors --------------------
# Purpose: Turn ordered shape points into a polyline, dropping repeated consecutive points.
# Inputs:
# - pts (DataFrame): One shape's points with shape_pt_lon/lat/sequence.
# Outputs:
# - LineString or None: None when fewer than two distinct points remain.
def shape_to_line(pts: pd.DataFrame) -> Optional[LineString]:
    ordered = pts.sort_values("shape_pt_sequence", kind="mergesort")
    coords = list(zip(ordered["shape_pt_lon"].astype(float), ordered["shape_pt_lat"].astype(float)))
    deduped = [c for i, c in enumerate(coords) if i == 0 or c != coords[i - 1]]
    if len(set(deduped)) < 2:
        return None
    return LineString(deduped)

# Purpose: Build corridor polylines for every route whose aggregate headway meets the threshold.
# Inputs:
# - tables (CanonicalTables): Needs trips, routes and shapes.
# - route_summaries (DataFrame): Output of headways.summarize_routes.
# - cfg (HubConfig): Route type groups and corridors.max_latitude.
# Outputs:
# - tuple[GeoDataFrame, int]: (corridor lines in WGS84, count of degenerate shapes skipped).
def qualifying_corridors(tables: CanonicalTables, route_summaries: pd.DataFrame, cfg: HubConfig):
    empty = gpd.GeoDataFrame({c: [] for c in CORRIDOR_COLUMNS[:-1]}, geometry=[], crs=WGS84)
    if route_summaries.empty:
        return empty, 0
    ok = route_summaries[
        route_summaries["qualifies"] & (route_summaries["route_mode"].map(cfg.kind_of_mode) == "bus")
    ]
    trips = tables.trips[tables.trips["route_id"].isin(ok["route_id"])]
    trips = trips[trips["shape_id"].notna() & (trips["shape_id"] != UNKNOWN)]
    pairs = trips[["route_id", "shape_id", "agency"]].drop_duplicates()
    shapes = tables.shapes[tables.shapes["shape_id"].isin(pairs["shape_id"])]
    lines, skipped = {}, 0
    for shape_id, pts in shapes.groupby("shape_id", sort=True):
        line = shape_to_line(pts)
        if line is None:
            skipped += 1
            continue
        lines[shape_id] = line
    if skipped:
        logger.warning(f"Skipped {skipped} degenerate corridor shapes (< 2 distinct points)")

    meta = ok.merge(tables.routes[["route_id", "route_short_name", "route_long_name"]], on="route_id", how="left")
    rows = []
    for p in pairs.sort_values(["route_id", "shape_id"]).itertuples(index=False):
        line = lines.get(p.shape_id)
        if line is None:
            continue
        rp = line.representative_point()
        if cfg.corridors.max_latitude is not None and rp.y > cfg.corridors.max_latitude:
            continue
        m = meta[meta["route_id"] == p.route_id].iloc[0]
        rows.append({
            "route_id": p.route_id, "agency": p.agency, "shape_id": p.shape_id,
            "route_short_name": m["route_short_name"], "route_long_name": m["route_long_name"],
            "median_headway": float(m["median_headway"]), "num_observations": int(m["num_observations"]),
            "geometry": line,
        })
    if not rows:
        return empty, skipped
    logger.info(f"Qualifying corridors: {len(rows)} shapes on {len({r['route_id'] for r in rows})} routes")
    return gpd.GeoDataFrame(rows, columns=CORRIDOR_COLUMNS, geometry="geometry", crs=WGS84), skipped
