"""Peak-period headways per (stop, route, agency).

Deltas are taken between consecutive arrivals of the same route at the same
stop *within one peak window*, so a route is never credited with a headway
spanning the midday gap. Deltas above the outlier ceiling are dropped as
sampling artifacts, the windows are pooled, and the median of the pooled
minutes is the representative headway. Groups with fewer than the minimum
number of retained deltas are left out of classification entirely.
"""
import logging

import pandas as pd

from hubmapper.config import FrequencyRule

logger = logging.getLogger(__name__)

GROUP = ["stop_id", "route_id", "agency"]
SUMMARY_COLUMNS = GROUP + [
    "route_mode", "median_headway", "min_headway", "max_headway", "num_observations", "qualifies",
]
ROUTE_SUMMARY_COLUMNS = [
    "route_id", "agency", "route_mode", "median_headway", "min_headway", "max_headway",
    "num_observations", "num_stops", "qualifies",
]


def headway_observations(peak_events: pd.DataFrame, ceiling_minutes: float) -> pd.DataFrame:
    """
    One row per retained delta: window, stop, route, agency, route_mode,
    arrival_s of the later arrival and headway_min.
    """
    keys = ["window"] + GROUP
    if peak_events.empty:
        return pd.DataFrame(columns=keys + ["route_mode", "arrival_s", "headway_min"])
    ev = peak_events.sort_values(keys + ["arrival_s"], kind="mergesort")
    delta_s = ev.groupby(keys, sort=False)["arrival_s"].diff()
    obs = ev.assign(headway_min=delta_s / 60.0).dropna(subset=["headway_min"])
    within = obs["headway_min"] <= ceiling_minutes
    discarded = int((~within).sum())
    if discarded:
        logger.info(f"Discarded {discarded} headway samples above {ceiling_minutes:g} min")
    cols = keys + ["route_mode", "arrival_s", "headway_min"]
    return obs.loc[within, cols].reset_index(drop=True)

# Purpose: Reduce pooled headway observations to one summary per (stop, route, agency).
# Inputs:
# - observations (DataFrame): Output of headway_observations (morning and evening rows together).
# - rule (FrequencyRule): min_observations and threshold_minutes.
# Outputs:
# - DataFrame: SUMMARY_COLUMNS, only for groups with at least rule.min_observations deltas.
def summarize_route_at_stop(observations: pd.DataFrame, rule: FrequencyRule) -> pd.DataFrame:
    if observations.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)
    g = observations.groupby(GROUP + ["route_mode"], sort=True)["headway_min"]
    summary = g.agg(
        median_headway="median",
        min_headway="min",
        max_headway="max",
        num_observations="size",
    ).reset_index()
    enough = summary["num_observations"] >= rule.min_observations
    logger.info(
        f"Route-at-stop groups: {len(summary)}; "
        f"{int((~enough).sum())} excluded with < {rule.min_observations} observations"
    )
    summary = summary.loc[enough].copy()
    summary["qualifies"] = summary["median_headway"] <= rule.threshold_minutes
    return summary[SUMMARY_COLUMNS].reset_index(drop=True)

def summarize_routes(observations: pd.DataFrame, rule: FrequencyRule) -> pd.DataFrame:
    """Route-level aggregate across all of a route's stops, used for corridors."""
    if observations.empty:
        return pd.DataFrame(columns=ROUTE_SUMMARY_COLUMNS)
    g = observations.groupby(["route_id", "agency", "route_mode"], sort=True)
    summary = g.agg(
        median_headway=("headway_min", "median"),
        min_headway=("headway_min", "min"),
        max_headway=("headway_min", "max"),
        num_observations=("headway_min", "size"),
        num_stops=("stop_id", "nunique"),
    ).reset_index()
    summary = summary.loc[summary["num_observations"] >= rule.min_observations].copy()
    summary["qualifies"] = summary["median_headway"] <= rule.threshold_minutes
    return summary[ROUTE_SUMMARY_COLUMNS].reset_index(drop=True)
