import logging
from dataclasses import dataclass
from datetime import date
from typing import Sequence, Union

import numpy as np
import pandas as pd

from hubmapper.config import PeakWindow, ServiceDays
from hubmapper.normalize import WEEKDAYS, CanonicalTables

logger = logging.getLogger(__name__)

EVENT_COLUMNS = ["trip_id", "stop_id", "agency", "route_id", "route_mode", "arrival_s"]


@dataclass(frozen=True)
class WeekdayService:
    """Calendar entries active on every day Monday through Friday."""

    def active_service_ids(self, tables: CanonicalTables) -> pd.Index:
        cal = tables.calendar
        if cal.empty:
            return pd.Index([], dtype="object")
        flags = cal[WEEKDAYS[:5]].apply(pd.to_numeric, errors="coerce").fillna(0)
        active = (flags == 1).all(axis=1)
        return pd.Index(cal.loc[active, "service_id"].unique())


@dataclass(frozen=True)
class ServiceOnDate:
    """Services running on one calendar date, honouring calendar_dates exceptions."""
    day: date

    def active_service_ids(self, tables: CanonicalTables) -> pd.Index:
        ts = pd.Timestamp(self.day)
        weekday = WEEKDAYS[ts.weekday()]
        cal = tables.calendar
        active = set()
        if not cal.empty:
            flag = pd.to_numeric(cal[weekday], errors="coerce").fillna(0) == 1
            start_ok = cal["start_date"].isna() | (cal["start_date"] <= ts)
            end_ok = cal["end_date"].isna() | (cal["end_date"] >= ts)
            active = set(cal.loc[flag & start_ok & end_ok, "service_id"])
        cd = tables.calendar_dates
        if not cd.empty:
            today = cd[cd["date"] == ts]
            active |= set(today.loc[today["exception_type"] == 1, "service_id"])
            active -= set(today.loc[today["exception_type"] == 2, "service_id"])
        return pd.Index(sorted(active), dtype="object")


ServiceDayPredicate = Union[WeekdayService, ServiceOnDate]

def service_predicate(cfg: ServiceDays) -> ServiceDayPredicate:
    if cfg.mode == "date":
        return ServiceOnDate(cfg.date)
    return WeekdayService()

# Purpose: Attach route information to every arrival event whose trip runs on a qualifying service day.
# Inputs:
# - tables (CanonicalTables): Concatenated canonical tables.
# - predicate (ServiceDayPredicate): Decides which service ids count.
# Outputs:
# - DataFrame: EVENT_COLUMNS for every event of an active trip with a known route.
def service_day_events(tables: CanonicalTables, predicate: ServiceDayPredicate) -> pd.DataFrame:
    active = predicate.active_service_ids(tables)
    for a in tables.agency_ids:
        if not any(str(s).startswith(f"{a}_") for s in active):
            logger.warning(f"{a}: no service ids active for {predicate}")
    trips = tables.trips[tables.trips["service_id"].isin(active)][["trip_id", "route_id"]]
    ev = tables.stop_times.merge(trips, on="trip_id", how="inner")

    routes = tables.routes[["route_id", "route_mode"]]
    ev = ev.merge(routes, on="route_id", how="left", indicator=True)
    orphan = ev["_merge"] == "left_only"
    if orphan.any():
        n_trips = ev.loc[orphan, "trip_id"].nunique()
        logger.warning(f"Excluding {int(orphan.sum())} arrival events from {n_trips} trips with no matching route")
    ev = ev.loc[~orphan].drop(columns="_merge")
    return ev[EVENT_COLUMNS].reset_index(drop=True)

# Purpose: Keep only arrival events inside a configured peak window, tagging each with its window.
# Inputs:
# - tables (CanonicalTables): Concatenated canonical tables.
# - windows (Sequence[PeakWindow]): Non-overlapping windows with inclusive bounds, in seconds.
# - predicate (ServiceDayPredicate): Service-day filter (default weekday service).
# Outputs:
# - DataFrame: EVENT_COLUMNS plus 'window' (the window name).
def extract_peak_events(tables: CanonicalTables, windows: Sequence[PeakWindow],
                        predicate: ServiceDayPredicate = None) -> pd.DataFrame:
    return filter_peak_windows(service_day_events(tables, predicate or WeekdayService()), windows)

def filter_peak_windows(events: pd.DataFrame, windows: Sequence[PeakWindow]) -> pd.DataFrame:
    """Peak-window subset of already joined service-day events, tagged with the window name."""
    t = events["arrival_s"].to_numpy(dtype=float)
    which = np.full(len(events), None, dtype=object)
    for w in windows:
        which[(t >= w.start_s) & (t <= w.end_s)] = w.name
    ev = events.assign(window=which)
    out = ev[ev["window"].notna()].reset_index(drop=True)
    counts = out["window"].value_counts().to_dict()
    logger.info(f"Peak events: {len(out)} of {len(ev)} service-day events {counts}")
    return out

def stop_route_pairs(events: pd.DataFrame) -> pd.DataFrame:
    """Distinct (stop, route, agency, mode) combinations present in an event table."""
    cols = ["stop_id", "route_id", "agency", "route_mode"]
    return events[cols].drop_duplicates().reset_index(drop=True)
