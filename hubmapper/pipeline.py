import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import geopandas as gpd
import pandas as pd

from hubmapper.area import (
    AreaSummary,
    agency_frequency_stats,
    compare_with_route_count_only,
    headway_distribution,
    hub_counts,
    summarize_areas,
)
from hubmapper.classify import Classification, HubCandidate, classify_stops, qualifying_corridors
from hubmapper.config import WGS84, HubConfig
from hubmapper.feeds import FeedSource
from hubmapper.geometry import BufferResult, build_buffers
from hubmapper.headways import headway_observations, summarize_route_at_stop, summarize_routes
from hubmapper.log import log_step
from hubmapper.normalize import CanonicalTables, NormalizationReport, concat, normalize
from hubmapper.peak import filter_peak_windows, service_day_events, service_predicate, stop_route_pairs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HubAnalysis:
    """Every intermediate product of one run, kept for audit and reporting."""
    config: HubConfig
    tables: CanonicalTables
    peak_events: pd.DataFrame
    observations: pd.DataFrame
    summaries: pd.DataFrame
    route_summaries: pd.DataFrame
    candidates: Tuple[HubCandidate, ...]
    hubs: gpd.GeoDataFrame
    corridors: gpd.GeoDataFrame
    skipped_shapes: int
    rail_out_of_jurisdiction: int
    buffers: BufferResult
    area: AreaSummary

    @property
    def reports(self) -> Tuple[NormalizationReport, ...]:
        return self.tables.reports

    @property
    def unions(self) -> gpd.GeoDataFrame:
        return self.buffers.unions


# Purpose: End-to-end run: fetch and normalize every agency, extract peak arrivals, compute headways,
#          classify hubs and corridors, buffer, union and measure the covered area.
# Inputs:
# - config (HubConfig): Validated configuration.
# - feed_source (FeedSource): Supplies RawTables per agency id.
# Outputs:
# - HubAnalysis: All intermediate and final products.
def run_analysis(config: HubConfig, feed_source: FeedSource) -> HubAnalysis:
    logger.info(f"Starting hub analysis for {[a.id for a in config.agencies]}")

    per_agency = []
    for agency in config.agencies:
        with log_step(f"Fetch and normalize {agency.id}"):
            raw = feed_source.fetch(agency.id)
            per_agency.append(normalize(agency, raw))
    tables = concat(per_agency)

    with log_step("Extract peak-window arrivals"):
        predicate = service_predicate(config.service_days)
        day_events = service_day_events(tables, predicate)
        day_pairs = stop_route_pairs(day_events)
        peak_events = filter_peak_windows(day_events, config.peak_windows)

    with log_step("Compute headways"):
        rule = config.frequency
        observations = headway_observations(peak_events, rule.outlier_ceiling_minutes)
        summaries = summarize_route_at_stop(observations, rule)
        route_summaries = summarize_routes(observations, rule)

    with log_step("Classify hubs"):
        classification: Classification = classify_stops(tables, summaries, day_pairs, config)

    corridors = gpd.GeoDataFrame(geometry=[], crs=WGS84)
    skipped = 0
    if config.corridors.enabled:
        with log_step("Build qualifying corridors"):
            corridors, skipped = qualifying_corridors(tables, route_summaries, config)

    buffers = build_buffers(classification.hubs, corridors, config.buffers, config.local_crs)

    with log_step("Measure union areas"):
        area = summarize_areas(buffers, config.area_crs, config.reference_areas_sq_mi)

    return HubAnalysis(
        config=config,
        tables=tables,
        peak_events=peak_events,
        observations=observations,
        summaries=summaries,
        route_summaries=route_summaries,
        candidates=classification.candidates,
        hubs=classification.hubs,
        corridors=corridors,
        skipped_shapes=skipped,
        rail_out_of_jurisdiction=classification.rail_out_of_jurisdiction,
        buffers=buffers,
        area=area,
    )

def summarize_analysis(analysis: HubAnalysis) -> dict:
    cfg = analysis.config
    rail_ids = analysis.hubs.loc[analysis.hubs["kind"] == "rail", "stop_id"] if not analysis.hubs.empty else []
    metrics = {
        "hubs": hub_counts(analysis.hubs),
        "corridors": int(len(analysis.corridors)),
        "skipped_shapes": int(analysis.skipped_shapes),
        "rail_out_of_jurisdiction": int(analysis.rail_out_of_jurisdiction),
        "area_sq_mi": {
            row.category: round(float(row.area_sq_mi), 4) for row in analysis.area.table.itertuples(index=False)
        },
        "area_ratios": {k: round(v, 6) for k, v in analysis.area.ratios.items()},
        "headway_distribution": {k: int(v) for k, v in headway_distribution(analysis.summaries).items()},
        "agencies": agency_frequency_stats(analysis.summaries).to_dict(orient="records"),
        "route_count_only": compare_with_route_count_only(
            analysis.peak_events, analysis.hubs, cfg.route_types.get("bus", ()),
            rail_ids, cfg.frequency.min_routes,
        ),
        "normalization": [r.as_dict() for r in analysis.reports],
    }
    logger.info(f"Metrics: {metrics['hubs']} corridors={metrics['corridors']} area={metrics['area_sq_mi']}")
    return metrics

# Purpose: Persist the qualifying layers and metrics for a presentation collaborator.
# Inputs:
# - analysis (HubAnalysis): Result of run_analysis.
# - outputs_dir (Path | str | None): Target directory (defaults to 'outputs' at the project root).
# Outputs (written to outputs_dir):
# - hubs.geojson: Qualifying hubs (WGS84), route audit serialized as JSON text.
# - corridors.geojson: Qualifying corridor lines (WGS84), only when any exist.
# - unions.geojson: Category and overall union polygons (WGS84).
# - metrics.json: summarize_analysis output.
def write_outputs(analysis: HubAnalysis, outputs_dir: Optional[Path] = None) -> Path:
    outputs_dir = Path(outputs_dir) if outputs_dir is not None else Path(__file__).parent.parent / "outputs"
    outputs_dir.mkdir(parents=True, exist_ok=True)

    with log_step(f"Write outputs to {outputs_dir}"):
        if not analysis.hubs.empty:
            hubs = analysis.hubs.assign(routes=analysis.hubs["routes"].map(json.dumps))
            hubs.to_file(outputs_dir / "hubs.geojson", driver="GeoJSON")
        if not analysis.corridors.empty:
            analysis.corridors.to_file(outputs_dir / "corridors.geojson", driver="GeoJSON")
        analysis.unions.to_file(outputs_dir / "unions.geojson", driver="GeoJSON")
        with open(outputs_dir / "metrics.json", "w") as f:
            json.dump(summarize_analysis(analysis), f, indent=2, default=str)
    return outputs_dir
