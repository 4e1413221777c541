"""Tests for the area aggregator and explainability statistics."""

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point, box

from gtfs_helpers import LAT, LON, peak_events
from hubmapper.area import (
    HEADWAY_LABELS,
    agency_frequency_stats,
    area_sq_mi,
    compare_with_route_count_only,
    headway_distribution,
    hub_counts,
    reference_area_sq_mi,
    summarize_areas,
)
from hubmapper.config import BufferRadii
from hubmapper.geometry import ALL, build_buffers

MILE_M = 1609.344
AREA = "EPSG:5070"


def summaries(rows):
    """rows: (agency, route_id, median_headway, qualifies)."""
    return pd.DataFrame(
        [{"stop_id": f"{a}_s{i}", "route_id": r, "agency": a, "route_mode": "bus",
          "median_headway": m, "min_headway": m, "max_headway": m, "num_observations": 3, "qualifies": q}
         for i, (a, r, m, q) in enumerate(rows)]
    )


class TestAreas:
    """Square miles in the equal-area CRS."""

    def test_square_mile(self):
        gs = gpd.GeoSeries([box(0, 0, MILE_M, MILE_M)], crs=AREA)
        assert area_sq_mi(gs, AREA) == pytest.approx(1.0)

    def test_feet_crs(self):
        sq = gpd.GeoSeries([box(0, 0, MILE_M, MILE_M)], crs="EPSG:32616")
        near_chicago = sq.translate(xoff=447000, yoff=4636000)
        assert area_sq_mi(near_chicago, "EPSG:3435") == pytest.approx(1.0, rel=0.002)

    def test_empty(self):
        assert area_sq_mi(gpd.GeoSeries([], crs=AREA), AREA) == 0.0

    def test_geographic_area_crs_rejected(self):
        gs = gpd.GeoSeries([box(0, 0, 1, 1)], crs="EPSG:4326")
        with pytest.raises(ValueError):
            area_sq_mi(gs, "EPSG:4326")

    def test_summary_and_ratios(self):
        hubs = gpd.GeoDataFrame(
            {"stop_id": ["a", "b"], "category": ["rail", "bus"]},
            geometry=[Point(LON, LAT), Point(LON + 0.5, LAT)], crs="EPSG:4326",
        )
        result = build_buffers(hubs, None, BufferRadii(0.5, 0.125), "EPSG:3435")
        summary = summarize_areas(result, AREA, {"region": 100.0})
        table = summary.table.set_index("category")
        assert table.loc[ALL, "area_sq_mi"] == pytest.approx(table.loc["rail", "area_sq_mi"] * 2, rel=0.01)
        assert summary.total_sq_mi == pytest.approx(table.loc[ALL, "area_sq_mi"])
        assert summary.ratios["region"] == pytest.approx(summary.total_sq_mi / 100.0)
        assert table.loc["bus", "pct_of_region"] == pytest.approx(table.loc["bus", "area_sq_mi"])
        assert table.loc[ALL, "n_features"] == 2

    def test_no_reference_areas(self):
        hubs = gpd.GeoDataFrame({"stop_id": [], "category": []}, geometry=[], crs="EPSG:4326")
        summary = summarize_areas(build_buffers(hubs, None, BufferRadii(0.5, 0.125), "EPSG:3435"), AREA)
        assert summary.total_sq_mi == 0.0
        assert summary.ratios == {}


class TestReferenceArea:
    """Reference regions are the union of official boundary polygons."""

    COUNTIES = gpd.GeoDataFrame(
        {"NAME": ["Cook", "DuPage", "Lake"]},
        geometry=[box(0, 0, MILE_M, MILE_M), box(MILE_M, 0, 2 * MILE_M, MILE_M),
                  box(0, 0, MILE_M, MILE_M / 2)],
        crs=AREA,
    )

    def test_union_of_all(self):
        assert reference_area_sq_mi(self.COUNTIES, AREA) == pytest.approx(2.0)

    def test_named_subset(self):
        assert reference_area_sq_mi(self.COUNTIES, AREA, names=["DuPage"]) == pytest.approx(1.0)

    def test_missing_names_logged(self, caplog):
        area = reference_area_sq_mi(self.COUNTIES, AREA, names=["DuPage", "Will"])
        assert area == pytest.approx(1.0)
        assert "Will" in caplog.text

    def test_custom_name_column(self):
        counties = self.COUNTIES.rename(columns={"NAME": "county"})
        assert reference_area_sq_mi(counties, AREA, names=["Cook"], name_column="county") == pytest.approx(1.0)


class TestExplainability:
    """Counts and percentages reported alongside the area."""

    def test_headway_distribution(self):
        dist = headway_distribution(summaries([
            ("a", "r1", 3.0, True), ("a", "r2", 12.0, True), ("a", "r3", 15.0, True),
            ("b", "r4", 45.0, False), ("b", "r5", 0.0, True),
        ]))
        assert list(dist.index) == HEADWAY_LABELS
        assert dist["0-5 min"] == 2
        assert dist["10-15 min"] == 2
        assert dist["30-60 min"] == 1
        assert dist[">60 min"] == 0

    def test_agency_stats(self):
        stats = agency_frequency_stats(summaries([
            ("cta", "r1", 8.0, True), ("cta", "r2", 10.0, True), ("cta", "r3", 20.0, False),
            ("pace", "r4", 30.0, False),
        ])).set_index("agency")
        assert stats.loc["cta", "total_routes"] == 3
        assert stats.loc["cta", "qualifying_routes"] == 2
        assert stats.loc["cta", "pct_qualifying"] == pytest.approx(200 / 3)
        assert stats.loc["cta", "median_headway"] == 10.0
        assert stats.loc["pace", "pct_qualifying"] == 0.0

    def test_agency_stats_empty(self):
        assert agency_frequency_stats(summaries([]).reindex(columns=["agency"])).empty

    def test_route_count_only_comparison(self):
        ev = peak_events([
            ("morning", "bus_S1", "A", 25200), ("morning", "bus_S1", "B", 25300),
            ("morning", "bus_S2", "A", 25400), ("morning", "bus_S2", "C", 25500),
            ("morning", "bus_S3", "A", 25600),
            ("morning", "rail_R1", "A", 25700), ("morning", "rail_R1", "B", 25800),
        ])
        hubs = gpd.GeoDataFrame(
            {"stop_id": ["bus_S1", "rail_R1"], "agency": ["bus", "rail"], "kind": ["bus_hub", "rail"]},
            geometry=[Point(0, 0), Point(0, 0)], crs="EPSG:4326",
        )
        out = compare_with_route_count_only(ev, hubs, ["bus"], ["rail_R1"], 2)
        assert out == {"route_count_only": 2, "statutory": 1, "difference": 1, "difference_pct": 50.0}

    def test_hub_counts(self):
        hubs = gpd.GeoDataFrame(
            {"stop_id": ["s1", "s2", "r1"], "agency": ["bus", "bus", "rail"],
             "kind": ["bus_hub", "bus_hub", "rail"]},
            geometry=[Point(0, 0)] * 3, crs="EPSG:4326",
        )
        assert hub_counts(hubs) == {"bus/bus_hub": 2, "rail/rail": 1}
