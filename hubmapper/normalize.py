"""Schema normalizer: one agency's raw feed tables -> the canonical schema.

Every identifier becomes text and is rewritten as ``{agency}_{original}`` so
tables from different agencies can be concatenated without collisions; the
original value of each table's primary key is kept in ``source_<key>``.

Columns the canonical schema expects but an agency does not publish are
filled with an explicit marker (``UNKNOWN`` for text, ``pd.NA``/``NaT`` for
typed columns) and counted. Records failing validation are dropped and
counted. A required column that is absent from a non-empty table makes the
whole table unusable and raises ``FeedSchemaError``.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from hubmapper.config import AgencyConfig
from hubmapper.errors import FeedSchemaError
from hubmapper.feeds import RawTables
from hubmapper.timeutil import parse_gtfs_times

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# (column, kind, required); kinds drive parsing and the fill marker
SOURCE_SCHEMA = {
    "stops": [
        ("stop_id", "id", True), ("stop_name", "text", False),
        ("stop_lat", "float", True), ("stop_lon", "float", True),
        ("location_type", "text", False), ("parent_station", "id", False),
    ],
    "routes": [
        ("route_id", "id", True), ("route_short_name", "text", False),
        ("route_long_name", "text", False), ("route_type", "text", True),
    ],
    "trips": [
        ("trip_id", "id", True), ("route_id", "id", True),
        ("service_id", "id", True), ("shape_id", "id", False),
    ],
    "stop_times": [
        ("trip_id", "id", True), ("stop_id", "id", True),
        ("arrival_time", "text", True), ("departure_time", "text", False),
        ("stop_sequence", "int", False),
    ],
    "calendar": [("service_id", "id", True)]
        + [(d, "int", False) for d in WEEKDAYS]
        + [("start_date", "date", False), ("end_date", "date", False)],
    "calendar_dates": [
        ("service_id", "id", True), ("date", "date", True), ("exception_type", "int", True),
    ],
    "shapes": [
        ("shape_id", "id", True), ("shape_pt_lat", "float", True),
        ("shape_pt_lon", "float", True), ("shape_pt_sequence", "int", True),
    ],
}

CANONICAL_COLUMNS = {
    "stops": ["stop_id", "source_stop_id", "agency", "stop_name", "stop_lat", "stop_lon",
              "location_type", "parent_station"],
    "routes": ["route_id", "source_route_id", "agency", "route_short_name", "route_long_name",
               "route_type", "route_mode"],
    "trips": ["trip_id", "source_trip_id", "agency", "route_id", "service_id", "shape_id"],
    "stop_times": ["trip_id", "stop_id", "agency", "arrival_s", "stop_sequence"],
    "calendar": ["service_id", "source_service_id", "agency"] + WEEKDAYS + ["start_date", "end_date"],
    "calendar_dates": ["service_id", "agency", "date", "exception_type"],
    "shapes": ["shape_id", "source_shape_id", "agency", "shape_pt_lat", "shape_pt_lon",
               "shape_pt_sequence"],
}

# Tables whose primary key keeps its original value for traceability
PRIMARY_KEYS = {
    "stops": "stop_id", "routes": "route_id", "trips": "trip_id",
    "calendar": "service_id", "shapes": "shape_id",
}

# GTFS location_type codes; blank means a stop/platform
LOCATION_TYPE_LABELS = {
    "0": "platform", "1": "station", "2": "entrance", "3": "generic", "4": "boarding",
}

BASIC_ROUTE_MODES = {
    0: "tram", 1: "subway", 2: "rail", 3: "bus", 4: "ferry", 5: "cable_tram",
    6: "aerial_lift", 7: "funicular", 11: "trolleybus", 12: "monorail",
}

# Extended (Google/HVT) route types, by hundred block
EXTENDED_ROUTE_MODES = {
    1: "rail", 2: "bus", 4: "subway", 7: "bus", 8: "trolleybus", 9: "tram",
    10: "ferry", 12: "ferry", 13: "aerial_lift", 14: "funicular",
}


@dataclass
class NormalizationReport:
    """Counts of dropped and defaulted records for one agency (or a concatenation)."""
    agency: str
    raw_counts: Counter = field(default_factory=Counter)
    dropped: Counter = field(default_factory=Counter)
    defaulted: Counter = field(default_factory=Counter)

    @property
    def total_dropped(self) -> int:
        return int(sum(self.dropped.values()))

    def drop(self, table: str, reason: str, n: int):
        if n:
            self.dropped[f"{table}.{reason}"] += int(n)

    def default(self, table: str, column: str, n: int):
        if n:
            self.defaulted[f"{table}.{column}"] += int(n)

    def as_dict(self) -> dict:
        return {
            "agency": self.agency,
            "raw_counts": dict(self.raw_counts),
            "dropped": dict(self.dropped),
            "defaulted": dict(self.defaulted),
        }

    def log(self):
        msg = f"{self.agency}: raw={dict(self.raw_counts)} dropped={dict(self.dropped)} defaulted={dict(self.defaulted)}"
        if self.dropped:
            logger.warning(msg)
        else:
            logger.info(msg)


@dataclass(frozen=True)
class CanonicalTables:
    agencies: pd.DataFrame
    stops: pd.DataFrame
    routes: pd.DataFrame
    trips: pd.DataFrame
    stop_times: pd.DataFrame
    calendar: pd.DataFrame
    calendar_dates: pd.DataFrame
    shapes: pd.DataFrame
    reports: tuple = ()

    @property
    def agency_ids(self) -> List[str]:
        return list(self.agencies["agency"]) if not self.agencies.empty else []

    def report(self, agency: str) -> Optional[NormalizationReport]:
        for r in self.reports:
            if r.agency == agency:
                return r
        return None


# -------------------- Helpers --------------------
def empty_table(table: str) -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype="object") for c in CANONICAL_COLUMNS[table]})

def _as_text(s: pd.Series) -> pd.Series:
    """Text view of a column with blanks turned into NA."""
    if pd.api.types.is_float_dtype(s):
        # codes and ids read as numbers: 40380.0 -> "40380"
        vals = s.dropna().astype(float)
        if np.isfinite(vals).all() and (vals == np.floor(vals)).all():
            s = s.astype("Int64")
    out = s.astype("string").str.strip()
    return out.mask(out == "", pd.NA)

def prefix_ids(agency: str, s: pd.Series) -> pd.Series:
    txt = _as_text(s)
    return (agency + "_" + txt).astype("object").where(txt.notna(), None)

def _fill_marker(kind: str, n: int, index) -> pd.Series:
    if kind in ("id", "text"):
        return pd.Series([UNKNOWN] * n, index=index, dtype="object")
    if kind == "date":
        return pd.Series(pd.NaT, index=index, dtype="datetime64[ns]")
    return pd.Series(pd.NA, index=index, dtype="Float64" if kind == "float" else "Int64")

# Purpose: Rename agency-specific columns to canonical names and make every expected column present.
# Inputs:
# - agency (AgencyConfig): Carries the per-table column_map.
# - table (str): Canonical table name.
# - df (DataFrame): Raw table.
# - report (NormalizationReport): Receives defaulted counts.
# - fallbacks (dict): canonical column -> alternative canonical column used when absent.
# Outputs:
# - DataFrame: Copy with every SOURCE_SCHEMA column present; raises FeedSchemaError when a required column has no fallback.
def _conform(agency: AgencyConfig, table: str, df: pd.DataFrame, report: NormalizationReport,
             fallbacks: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    fallbacks = fallbacks or {}
    mapping = agency.column_map.get(table, {})
    out = df.rename(columns={src: canon for canon, src in mapping.items()}).copy()
    n = len(out)
    for col, kind, required in SOURCE_SCHEMA[table]:
        if col in out.columns:
            continue
        alt = fallbacks.get(col)
        if alt is not None and alt in out.columns:
            out[col] = out[alt]
            report.default(table, f"{col}<-{alt}", n)
            continue
        if required:
            raise FeedSchemaError(agency.id, table, n, f"missing required column '{col}'")
        out[col] = _fill_marker(kind, n, out.index)
        report.default(table, col, n)
    return out

def _drop_blank(df: pd.DataFrame, table: str, cols: Iterable[str], report: NormalizationReport) -> pd.DataFrame:
    keep = pd.Series(True, index=df.index)
    for c in cols:
        blank = df[c].isna()
        report.drop(table, f"blank_{c}", int((blank & keep).sum()))
        keep &= ~blank
    return df.loc[keep]

def _drop_duplicate_ids(df: pd.DataFrame, table: str, key: str, report: NormalizationReport) -> pd.DataFrame:
    dup = df.duplicated(subset=[key], keep="first")
    report.drop(table, "duplicate_id", int(dup.sum()))
    return df.loc[~dup]

# Purpose: Keep only records whose coordinates are finite WGS84 latitude/longitude.
# Inputs:
# - df (DataFrame), lat_col/lon_col (str): Coordinate columns (any dtype).
# Outputs:
# - DataFrame: Rows with valid coordinates as float64; the rest are counted as dropped.
def _valid_coordinates(df, table, lat_col, lon_col, report: NormalizationReport) -> pd.DataFrame:
    lat = pd.to_numeric(df[lat_col], errors="coerce").astype(float)
    lon = pd.to_numeric(df[lon_col], errors="coerce").astype(float)
    ok = np.isfinite(lat) & np.isfinite(lon) & lat.between(-90.0, 90.0) & lon.between(-180.0, 180.0)
    report.drop(table, "bad_coordinates", int((~ok).sum()))
    out = df.loc[ok].copy()
    out[lat_col] = lat[ok]
    out[lon_col] = lon[ok]
    return out

def _parse_dates(s: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(s):
        return s
    return pd.to_datetime(_as_text(s), format="%Y%m%d", errors="coerce")

# Purpose: Map a GTFS route_type (basic or extended) to a canonical mode name.
# Inputs:
# - value: Raw route_type cell.
# - overrides (dict): Agency-specific raw value -> mode mapping, checked first.
# Outputs:
# - str: One of config.ROUTE_MODES.
def route_mode(value, overrides: Optional[Dict[str, str]] = None) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)) or value is pd.NA:
        return UNKNOWN
    key = str(value).strip()
    if overrides and key in overrides:
        return overrides[key]
    try:
        code = int(float(key))
    except ValueError:
        return UNKNOWN
    if code in BASIC_ROUTE_MODES:
        return BASIC_ROUTE_MODES[code]
    if code >= 100:
        return EXTENDED_ROUTE_MODES.get(code // 100, UNKNOWN)
    return UNKNOWN


# -------------------- Per-table normalization --------------------
def normalize_stops(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("stops")
    df = _conform(agency, "stops", raw, report)
    df["stop_id"] = _as_text(df["stop_id"])
    df = _drop_blank(df, "stops", ["stop_id"], report)
    df = _valid_coordinates(df, "stops", "stop_lat", "stop_lon", report)

    lt = _as_text(df["location_type"])
    labels = lt.map(lambda v: LOCATION_TYPE_LABELS.get(v, UNKNOWN) if isinstance(v, str) else "platform")
    unrecognized = (labels == UNKNOWN) & (lt != UNKNOWN).fillna(False)
    report.default("stops", "location_type_unrecognized", int(unrecognized.sum()))
    parent = _as_text(df["parent_station"])
    parent_out = prefix_ids(agency.id, parent).where((parent != UNKNOWN).fillna(True), UNKNOWN)

    out = pd.DataFrame({
        "stop_id": prefix_ids(agency.id, df["stop_id"]),
        "source_stop_id": df["stop_id"].astype("object"),
        "agency": agency.id,
        "stop_name": _as_text(df["stop_name"]).fillna(UNKNOWN).astype("object"),
        "stop_lat": df["stop_lat"].astype(float),
        "stop_lon": df["stop_lon"].astype(float),
        "location_type": labels.astype("object"),
        "parent_station": parent_out.astype("object"),
    }, index=df.index)
    out = _drop_duplicate_ids(out, "stops", "stop_id", report)
    return out.reset_index(drop=True)

def normalize_routes(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("routes")
    df = _conform(agency, "routes", raw, report)
    df["route_id"] = _as_text(df["route_id"])
    df = _drop_blank(df, "routes", ["route_id"], report)
    rtype = _as_text(df["route_type"])
    modes = rtype.map(lambda v: route_mode(v, agency.route_type_map)).astype("object")
    report.default("routes", "route_mode_unrecognized", int((modes == UNKNOWN).sum()))
    out = pd.DataFrame({
        "route_id": prefix_ids(agency.id, df["route_id"]),
        "source_route_id": df["route_id"].astype("object"),
        "agency": agency.id,
        "route_short_name": _as_text(df["route_short_name"]).fillna(UNKNOWN).astype("object"),
        "route_long_name": _as_text(df["route_long_name"]).fillna(UNKNOWN).astype("object"),
        "route_type": rtype.fillna(UNKNOWN).astype("object"),
        "route_mode": modes,
    }, index=df.index)
    out = _drop_duplicate_ids(out, "routes", "route_id", report)
    return out.reset_index(drop=True)

def normalize_trips(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("trips")
    df = _conform(agency, "trips", raw, report)
    for c in ("trip_id", "route_id", "service_id"):
        df[c] = _as_text(df[c])
    df = _drop_blank(df, "trips", ["trip_id", "route_id", "service_id"], report)
    shape = _as_text(df["shape_id"])
    out = pd.DataFrame({
        "trip_id": prefix_ids(agency.id, df["trip_id"]),
        "source_trip_id": df["trip_id"].astype("object"),
        "agency": agency.id,
        "route_id": prefix_ids(agency.id, df["route_id"]),
        "service_id": prefix_ids(agency.id, df["service_id"]),
        "shape_id": prefix_ids(agency.id, shape).where((shape != UNKNOWN).fillna(True), UNKNOWN).astype("object"),
    }, index=df.index)
    out = _drop_duplicate_ids(out, "trips", "trip_id", report)
    return out.reset_index(drop=True)

# Purpose: Normalize arrival events, parsing time-of-day as elapsed seconds (values past 24:00:00 allowed).
# Inputs:
# - agency (AgencyConfig), raw (DataFrame): stop_times as published.
# - report (NormalizationReport): Receives drop counts for blank ids and malformed times.
# Outputs:
# - DataFrame: Canonical stop_times with float 'arrival_s'.
def normalize_stop_times(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("stop_times")
    df = _conform(agency, "stop_times", raw, report, fallbacks={"arrival_time": "departure_time"})
    df["trip_id"] = _as_text(df["trip_id"])
    df["stop_id"] = _as_text(df["stop_id"])
    df = _drop_blank(df, "stop_times", ["trip_id", "stop_id"], report)

    arrival = _as_text(df["arrival_time"])
    departure = _as_text(df["departure_time"])
    departure = departure.mask((departure == UNKNOWN).fillna(False), pd.NA)
    use_dep = arrival.isna() & departure.notna()
    report.default("stop_times", "arrival_time<-departure_time_cell", int(use_dep.sum()))
    arrival_s = parse_gtfs_times(arrival.where(~use_dep, departure))
    bad = arrival_s.isna()
    report.drop("stop_times", "bad_time", int(bad.sum()))
    df = df.loc[~bad]

    out = pd.DataFrame({
        "trip_id": prefix_ids(agency.id, df["trip_id"]),
        "stop_id": prefix_ids(agency.id, df["stop_id"]),
        "agency": agency.id,
        "arrival_s": arrival_s[~bad].astype(float),
        "stop_sequence": pd.to_numeric(df["stop_sequence"], errors="coerce").astype("Int64"),
    }, index=df.index)
    return out.reset_index(drop=True)

def normalize_calendar(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("calendar")
    df = _conform(agency, "calendar", raw, report)
    df["service_id"] = _as_text(df["service_id"])
    df = _drop_blank(df, "calendar", ["service_id"], report)
    out = pd.DataFrame({
        "service_id": prefix_ids(agency.id, df["service_id"]),
        "source_service_id": df["service_id"].astype("object"),
        "agency": agency.id,
    }, index=df.index)
    for d in WEEKDAYS:
        flag = pd.to_numeric(df[d], errors="coerce").astype("Int64")
        bad = flag.notna() & ~flag.isin([0, 1])
        report.default("calendar", f"{d}_invalid", int(bad.sum()))
        out[d] = flag.mask(bad, pd.NA)
    out["start_date"] = _parse_dates(df["start_date"])
    out["end_date"] = _parse_dates(df["end_date"])
    out = _drop_duplicate_ids(out, "calendar", "service_id", report)
    return out.reset_index(drop=True)

def normalize_calendar_dates(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("calendar_dates")
    df = _conform(agency, "calendar_dates", raw, report)
    df["service_id"] = _as_text(df["service_id"])
    df = _drop_blank(df, "calendar_dates", ["service_id"], report)
    dates = _parse_dates(df["date"])
    etype = pd.to_numeric(df["exception_type"], errors="coerce").astype("Int64")
    ok = dates.notna() & etype.isin([1, 2]).fillna(False)
    report.drop("calendar_dates", "bad_exception", int((~ok).sum()))
    df = df.loc[ok]
    out = pd.DataFrame({
        "service_id": prefix_ids(agency.id, df["service_id"]),
        "agency": agency.id,
        "date": dates[ok],
        "exception_type": etype[ok],
    }, index=df.index)
    return out.reset_index(drop=True)

def normalize_shapes(agency: AgencyConfig, raw: pd.DataFrame, report: NormalizationReport) -> pd.DataFrame:
    if raw is None or raw.empty:
        return empty_table("shapes")
    df = _conform(agency, "shapes", raw, report)
    df["shape_id"] = _as_text(df["shape_id"])
    df = _drop_blank(df, "shapes", ["shape_id"], report)
    df = _valid_coordinates(df, "shapes", "shape_pt_lat", "shape_pt_lon", report)
    seq = pd.to_numeric(df["shape_pt_sequence"], errors="coerce")
    report.drop("shapes", "bad_sequence", int(seq.isna().sum()))
    df = df.loc[seq.notna()]
    out = pd.DataFrame({
        "shape_id": prefix_ids(agency.id, df["shape_id"]),
        "source_shape_id": df["shape_id"].astype("object"),
        "agency": agency.id,
        "shape_pt_lat": df["shape_pt_lat"].astype(float),
        "shape_pt_lon": df["shape_pt_lon"].astype(float),
        "shape_pt_sequence": seq[seq.notna()].astype(float),
    }, index=df.index)
    return out.reset_index(drop=True)


# -------------------- Entry points --------------------
# Purpose: Normalize one agency's raw tables into the canonical schema.
# Inputs:
# - agency (AgencyConfig): Agency id/name plus its column_map and route_type_map.
# - raw (RawTables): Tables as fetched by a FeedSource.
# Outputs:
# - CanonicalTables: Canonical tables for this agency with a single NormalizationReport attached.
def normalize(agency: AgencyConfig, raw: RawTables) -> CanonicalTables:
    report = NormalizationReport(agency=agency.id)
    for name in RawTables.table_names():
        t = getattr(raw, name)
        report.raw_counts[name] = 0 if t is None else int(len(t))

    stops = normalize_stops(agency, raw.stops, report)
    routes = normalize_routes(agency, raw.routes, report)
    trips = normalize_trips(agency, raw.trips, report)
    stop_times = normalize_stop_times(agency, raw.stop_times, report)
    calendar = normalize_calendar(agency, raw.calendar, report)
    calendar_dates = normalize_calendar_dates(agency, raw.calendar_dates, report)
    shapes = normalize_shapes(agency, raw.shapes, report)

    # references to records that were dropped or never existed
    orphan = ~stop_times["stop_id"].isin(stops["stop_id"])
    report.drop("stop_times", "unknown_stop", int(orphan.sum()))
    stop_times = stop_times.loc[~orphan].reset_index(drop=True)

    if raw.stops is not None and len(raw.stops) and stops.empty:
        raise FeedSchemaError(agency.id, "stops", len(raw.stops), "no usable stop records")

    report.log()
    agencies = pd.DataFrame({"agency": [agency.id], "agency_name": [agency.name]})
    return CanonicalTables(
        agencies=agencies, stops=stops, routes=routes, trips=trips,
        stop_times=stop_times, calendar=calendar, calendar_dates=calendar_dates,
        shapes=shapes, reports=(report,),
    )

def concat(tables_per_agency: Iterable[CanonicalTables]) -> CanonicalTables:
    """Combine per-agency canonical tables; an agency may appear only once."""
    parts = list(tables_per_agency)
    seen = []
    for p in parts:
        for a in p.agency_ids:
            if a in seen:
                raise ValueError(f"Agency {a} supplied more than once")
            seen.append(a)

    def _cat(name):
        frames = [getattr(p, name) for p in parts if not getattr(p, name).empty]
        if not frames:
            return empty_table(name) if name != "agencies" else pd.DataFrame(columns=["agency", "agency_name"])
        return pd.concat(frames, ignore_index=True)

    return CanonicalTables(
        agencies=_cat("agencies"),
        stops=_cat("stops"),
        routes=_cat("routes"),
        trips=_cat("trips"),
        stop_times=_cat("stop_times"),
        calendar=_cat("calendar"),
        calendar_dates=_cat("calendar_dates"),
        shapes=_cat("shapes"),
        reports=tuple(r for p in parts for r in p.reports),
    )
