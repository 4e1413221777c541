"""Tests for hub and corridor classification."""

import dataclasses

import pandas as pd
import pytest

from gtfs_helpers import LAT, LON, bus_raw, every, make_config, rail_raw
from hubmapper.classify import (
    BusStop,
    FerryTerminal,
    RailStop,
    RouteAtStop,
    classify_stops,
    identify_rail_stops,
    qualifying_corridors,
    shape_to_line,
)
from hubmapper.feeds import RawTables
from hubmapper.headways import headway_observations, summarize_route_at_stop, summarize_routes
from hubmapper.normalize import concat, normalize
from hubmapper.peak import WeekdayService, extract_peak_events, service_day_events, stop_route_pairs


def run_classification(config, schedule, **bus_kwargs):
    tables = concat([
        normalize(config.agency("bus"), bus_raw(schedule, **bus_kwargs)),
        normalize(config.agency("rail"), rail_raw()),
    ])
    day = service_day_events(tables, WeekdayService())
    peak = extract_peak_events(tables, config.peak_windows)
    obs = headway_observations(peak, config.frequency.outlier_ceiling_minutes)
    summaries = summarize_route_at_stop(obs, config.frequency)
    result = classify_stops(tables, summaries, stop_route_pairs(day), config)
    return tables, summarize_routes(obs, config.frequency), result


def _candidate(result, stop_id, kind):
    return next(c for c in result.candidates if c.stop_id == stop_id and isinstance(c, kind))


class TestBusHubs:
    """Two or more sufficiently observed routes, every one frequent."""

    def test_insufficient_route_leaves_one_route(self, config):
        schedule = {"A": {"S1": ["07:00:00", "07:10:00", "07:20:00", "07:30:00"]},
                    "B": {"S1": ["07:00:00", "07:40:00"]}}
        _, _, result = run_classification(config, schedule)
        assert "bus_S1" not in set(result.hubs["stop_id"])
        stop = _candidate(result, "bus_S1", BusStop)
        assert [r.route_id for r in stop.routes] == ["bus_A"]
        assert not stop.qualifies(config.frequency)

    def test_second_frequent_route_makes_hub(self, config):
        schedule = {"A": {"S1": ["07:00:00", "07:10:00", "07:20:00", "07:30:00"]},
                    "B": {"S1": ["07:00:00", "07:12:00", "07:24:00", "07:36:00"]}}
        _, _, result = run_classification(config, schedule)
        hub = result.hubs.set_index("stop_id").loc["bus_S1"]
        assert hub["kind"] == "bus_hub"
        assert hub["category"] == "bus"
        assert hub["total_routes"] == 2
        assert hub["qualifying_routes"] == 2
        assert [r["route_id"] for r in hub["routes"]] == ["bus_A", "bus_B"]
        assert [r["median_headway"] for r in hub["routes"]] == [10.0, 12.0]

    def test_one_slow_route_disqualifies(self, config):
        schedule = {"A": {"S1": every(7, 0, 5, 13)},
                    "C": {"S1": every(7, 0, 30, 5)}}
        _, _, result = run_classification(config, schedule)
        assert "bus_S1" not in set(result.hubs["stop_id"])
        stop = _candidate(result, "bus_S1", BusStop)
        assert [r.median_headway for r in stop.routes] == [5.0, 30.0]
        assert stop.reason == "1/2 routes meet headway"

    def test_single_frequent_route_is_not_enough(self, config):
        _, _, result = run_classification(config, {"A": {"S1": every(7, 0, 5, 13)}})
        assert "bus_S1" not in set(result.hubs["stop_id"])

    def test_fixture_schedule(self, config, frequent_schedule):
        _, _, result = run_classification(config, frequent_schedule)
        bus = result.hubs[result.hubs["kind"] == "bus_hub"]
        assert bus["stop_id"].tolist() == ["bus_S1"]

    def test_min_routes_from_config(self, frequent_schedule):
        cfg = make_config(frequency={"min_routes": 3})
        _, _, result = run_classification(cfg, frequent_schedule)
        assert (result.hubs["kind"] == "bus_hub").sum() == 0

    def test_candidates_are_immutable(self, config, frequent_schedule):
        _, _, result = run_classification(config, frequent_schedule)
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.candidates[0].stop_id = "other"


class TestRailHubs:
    """Rail stops qualify without any frequency test."""

    def test_rail_stop_without_routes_qualifies(self, config):
        _, _, result = run_classification(config, {"A": {"S1": ["07:00:00"]}})
        hubs = result.hubs.set_index("stop_id")
        assert hubs.loc["rail_R3", "kind"] == "rail"
        assert hubs.loc["rail_R3", "total_routes"] == 0
        assert hubs.loc["rail_R1", "reason"] == "rail-only agency"

    def test_latitude_filter(self, config):
        _, _, result = run_classification(config, {"A": {"S1": ["07:00:00"]}})
        assert "rail_R2" not in set(result.hubs["stop_id"])
        assert result.rail_out_of_jurisdiction == 1

    def test_out_of_jurisdiction_stop_not_retried_as_bus(self, config):
        raw = rail_raw()
        arrivals = {"X": every(7, 0, 10, 7), "Y": every(7, 5, 10, 7)}
        routes = pd.DataFrame([{"route_id": r, "route_short_name": r, "route_long_name": "", "route_type": "3"}
                               for r in arrivals])
        trips = pd.DataFrame([{"route_id": r, "service_id": "WK", "trip_id": f"{r}{i}", "shape_id": ""}
                              for r, ts in arrivals.items() for i in range(len(ts))])
        times = pd.DataFrame([{"trip_id": f"{r}{i}", "arrival_time": t, "departure_time": t,
                               "stop_id": "R2", "stop_sequence": "1"}
                              for r, ts in arrivals.items() for i, t in enumerate(ts)])
        raw = dataclasses.replace(
            raw,
            routes=pd.concat([raw.routes, routes], ignore_index=True),
            trips=pd.concat([raw.trips, trips], ignore_index=True),
            stop_times=pd.concat([raw.stop_times, times], ignore_index=True),
        )
        tables = normalize(config.agency("rail"), raw)
        day = service_day_events(tables, WeekdayService())
        obs = headway_observations(extract_peak_events(tables, config.peak_windows), 60.0)
        summaries = summarize_route_at_stop(obs, config.frequency)
        assert summaries.loc[summaries["stop_id"] == "rail_R2", "qualifies"].tolist() == [True, True]

        result = classify_stops(tables, summaries, stop_route_pairs(day), config)
        assert result.rail_out_of_jurisdiction == 1
        assert "rail_R2" not in set(result.hubs["stop_id"])
        assert not any(c.stop_id == "rail_R2" for c in result.candidates)

    def test_rail_predicate_ignores_rule(self):
        stop = RailStop(stop_id="x", agency="a", stop_name="X", lat=41.9, lon=-87.6, reason="r")
        strict = make_config(frequency={"min_routes": 99}).frequency
        assert stop.qualifies(strict)

    def test_station_relation_rule(self):
        cfg = make_config(agencies=[{"id": "cta", "rail_rule": {"mode": "station_relation", "max_latitude": 42.1}}])
        stops = pd.DataFrame([
            {"stop_id": "40380", "stop_name": "Clark/Lake", "stop_lat": "41.8857", "stop_lon": "-87.6309",
             "location_type": "1", "parent_station": ""},
            {"stop_id": "30074", "stop_name": "Clark/Lake (Blue)", "stop_lat": "41.8857", "stop_lon": "-87.6309",
             "location_type": "0", "parent_station": "40380"},
            {"stop_id": "1106", "stop_name": "Clark & Lake", "stop_lat": "41.8858", "stop_lon": "-87.6312",
             "location_type": "0", "parent_station": ""},
            {"stop_id": "40900", "stop_name": "Howard", "stop_lat": "42.19", "stop_lon": "-87.67",
             "location_type": "1", "parent_station": ""},
        ])
        canon = normalize(cfg.agency("cta"), RawTables(stops=stops)).stops
        rail, excluded = identify_rail_stops(canon, cfg.agency("cta"), set())
        assert rail["stop_id"].tolist() == ["cta_40380", "cta_30074"]
        assert rail["reason"].tolist() == ["location_type station", "parent station relation"]
        assert excluded["stop_id"].tolist() == ["cta_40900"]

    def test_route_type_rule(self):
        cfg = make_config(agencies=[{"id": "x", "rail_rule": {"mode": "route_type"}}])
        stops = pd.DataFrame([
            {"stop_id": "1", "stop_lat": "41.9", "stop_lon": "-87.6"},
            {"stop_id": "2", "stop_lat": "41.9", "stop_lon": "-87.7"},
        ])
        canon = normalize(cfg.agency("x"), RawTables(stops=stops)).stops
        rail, _ = identify_rail_stops(canon, cfg.agency("x"), {"x_2"})
        assert rail["stop_id"].tolist() == ["x_2"]

    def test_rule_none(self, config, canonical):
        rail, excluded = identify_rail_stops(canonical.stops, config.agency("bus"), {"bus_S1"})
        assert rail.empty and excluded.empty


class TestFerryTerminals:
    """Ferry stops need a nearby non-ferry connection."""

    STOPS = {"S1": (LAT, LON), "F1": (LAT + 0.001, LON), "F2": (LAT - 0.1, LON)}
    SCHEDULE = {"A": {"S1": ["07:00:00"]}, "F": {"F1": ["07:05:00"], "F2": ["07:05:00"]}}

    def test_connected_terminal_qualifies(self, config):
        _, _, result = run_classification(config, self.SCHEDULE, stops=self.STOPS, route_types={"F": "4"})
        hubs = result.hubs.set_index("stop_id")
        assert hubs.loc["bus_F1", "kind"] == "ferry"
        assert "bus_F2" not in hubs.index
        terminal = _candidate(result, "bus_F1", FerryTerminal)
        assert terminal.connections == ("bus_S1",)

    def test_ferry_disabled(self):
        cfg = make_config(ferry={"enabled": False})
        _, _, result = run_classification(cfg, self.SCHEDULE, stops=self.STOPS, route_types={"F": "4"})
        assert not any(isinstance(c, FerryTerminal) for c in result.candidates)


class TestCorridors:
    """Route polylines for frequent routes; degenerate shapes skipped."""

    SCHEDULE = {
        "A": {"S1": every(7, 0, 10, 7), "S2": every(7, 3, 10, 7)},
        "B": {"S1": every(7, 0, 12, 6)},
        "C": {"S1": every(7, 0, 30, 5)},
    }
    SHAPES = {
        "SH1": [(LAT, LON), (LAT, LON), (LAT + 0.02, LON)],
        "SH2": [(LAT, LON), (LAT, LON)],
        "SH3": [(LAT, LON), (LAT, LON + 0.05)],
    }
    TRIP_SHAPES = {"A": "SH1", "B": "SH2", "C": "SH3"}

    def _corridors(self, cfg):
        tables, routes, _ = run_classification(
            cfg, self.SCHEDULE, trip_shapes=self.TRIP_SHAPES, shapes=self.SHAPES,
        )
        return qualifying_corridors(tables, routes, cfg)

    def test_frequent_routes_only(self):
        corridors, skipped = self._corridors(make_config(corridors={"enabled": True}))
        assert corridors["shape_id"].tolist() == ["bus_SH1"]
        assert corridors["route_id"].tolist() == ["bus_A"]
        assert corridors.crs.to_epsg() == 4326
        assert skipped == 1

    def test_duplicate_points_removed(self):
        corridors, _ = self._corridors(make_config(corridors={"enabled": True}))
        assert len(corridors.geometry.iloc[0].coords) == 2

    def test_latitude_filter(self):
        corridors, _ = self._corridors(make_config(corridors={"enabled": True, "max_latitude": 41.85}))
        assert corridors.empty

    def test_shape_to_line(self):
        pts = pd.DataFrame({
            "shape_pt_lat": [1.0, 1.0, 2.0, 2.0], "shape_pt_lon": [0.0, 0.0, 0.0, 1.0],
            "shape_pt_sequence": [3.0, 4.0, 1.0, 2.0],
        })
        line = shape_to_line(pts)
        assert list(line.coords) == [(0.0, 2.0), (1.0, 2.0), (0.0, 1.0)]
        assert shape_to_line(pts.iloc[:2]) is None


class TestRouteRecords:
    """Audit records carry the summary each decision was made on."""

    def test_bus_stop_reason(self):
        fast = RouteAtStop("s", "r1", "a", "bus", 5.0, 5.0, 5.0, 4, True)
        slow = RouteAtStop("s", "r2", "a", "bus", 30.0, 30.0, 30.0, 4, False)
        stop = BusStop(stop_id="s", agency="a", stop_name="S", lat=0.0, lon=0.0, routes=(fast, slow))
        assert stop.reason == "1/2 routes meet headway"
        assert not stop.qualifies(make_config().frequency)
        assert BusStop("s", "a", "S", 0.0, 0.0, (fast, dataclasses.replace(slow, qualifies=True))).qualifies(
            make_config().frequency
        )
