import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from hubmapper.errors import ConfigError
from hubmapper.timeutil import clock_to_seconds

logger = logging.getLogger(__name__)

WGS84 = "EPSG:4326"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

RAIL_RULE_MODES = ("station_relation", "all_stops", "route_type", "none")
SERVICE_DAY_MODES = ("weekday", "date")
ROUTE_MODES = (
    "tram", "subway", "rail", "bus", "ferry", "cable_tram",
    "aerial_lift", "funicular", "trolleybus", "monorail", "unknown",
)
LOCATION_TYPES = ("platform", "station", "entrance", "generic", "boarding", "unknown")

# Defaults
DEFAULTS = {
    "local_crs": "EPSG:3435",   # NAD83 / Illinois East (ftUS)
    "area_crs": "EPSG:5070",    # CONUS Albers equal-area
    "peak_windows": [
        {"name": "morning", "start": "07:00:00", "end": "09:00:00"},
        {"name": "evening", "start": "16:00:00", "end": "18:00:00"},
    ],
    "service_days": {"mode": "weekday", "date": None},
    "frequency": {
        "threshold_minutes": 15.0,
        "min_routes": 2,
        "min_observations": 3,
        "outlier_ceiling_minutes": 60.0,
    },
    "route_types": {
        "rail": ["tram", "subway", "rail", "monorail", "funicular", "cable_tram"],
        "bus": ["bus", "trolleybus"],
        "ferry": ["ferry"],
    },
    "buffers": {
        "hub_radius_mi": 0.5,
        "corridor_radius_mi": 0.125,
    },
    "corridors": {"enabled": False, "max_latitude": None},
    "ferry": {"enabled": True, "connection_radius_mi": 0.25},
    "reference_areas_sq_mi": {},
    "agencies": [],
}

RAIL_RULE_DEFAULTS = {
    "mode": "station_relation",
    "location_types": ["station", "entrance"],
    "max_latitude": None,
    "min_latitude": None,
}


@dataclass(frozen=True)
class PeakWindow:
    name: str
    start_s: int
    end_s: int

    def contains(self, seconds: float) -> bool:
        return self.start_s <= seconds <= self.end_s


@dataclass(frozen=True)
class RailRule:
    mode: str = "station_relation"
    location_types: Tuple[str, ...] = ("station", "entrance")
    max_latitude: Optional[float] = None
    min_latitude: Optional[float] = None

    def in_jurisdiction(self, lat: float) -> bool:
        if self.max_latitude is not None and lat > self.max_latitude:
            return False
        if self.min_latitude is not None and lat < self.min_latitude:
            return False
        return True


@dataclass(frozen=True)
class AgencyConfig:
    id: str
    name: str
    rail_rule: RailRule = field(default_factory=RailRule)
    # table -> {canonical column: source column}
    column_map: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # raw route_type value -> canonical mode, checked before the GTFS table
    route_type_map: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceDays:
    mode: str = "weekday"
    date: Optional[date] = None


@dataclass(frozen=True)
class FrequencyRule:
    threshold_minutes: float
    min_routes: int
    min_observations: int
    outlier_ceiling_minutes: float


@dataclass(frozen=True)
class BufferRadii:
    hub_radius_mi: float
    corridor_radius_mi: float
    rail_radius_mi: Optional[float] = None
    bus_radius_mi: Optional[float] = None
    ferry_radius_mi: Optional[float] = None

    def for_category(self, category: str) -> float:
        if category == "corridor":
            return self.corridor_radius_mi
        override = getattr(self, f"{category}_radius_mi", None)
        return float(override) if override is not None else self.hub_radius_mi


@dataclass(frozen=True)
class CorridorConfig:
    enabled: bool = False
    max_latitude: Optional[float] = None


@dataclass(frozen=True)
class FerryConfig:
    enabled: bool = True
    connection_radius_mi: float = 0.25


@dataclass(frozen=True)
class HubConfig:
    agencies: Tuple[AgencyConfig, ...]
    peak_windows: Tuple[PeakWindow, ...]
    service_days: ServiceDays
    frequency: FrequencyRule
    route_types: Dict[str, Tuple[str, ...]]
    buffers: BufferRadii
    corridors: CorridorConfig
    ferry: FerryConfig
    local_crs: str
    area_crs: str
    reference_areas_sq_mi: Dict[str, float] = field(default_factory=dict)

    def agency(self, agency_id: str) -> AgencyConfig:
        for a in self.agencies:
            if a.id == agency_id:
                return a
        raise KeyError(agency_id)

    def kind_of_mode(self, mode: str) -> Optional[str]:
        """Return 'rail', 'bus' or 'ferry' for a canonical route mode, None if unclassified."""
        for kind, modes in self.route_types.items():
            if mode in modes:
                return kind
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "HubConfig":
        merged = _deep_merge(DEFAULTS, data or {})
        cfg = _build(merged)
        validate_config(cfg)
        return cfg


# Purpose: Recursively overlay user configuration onto defaults without mutating either.
# Inputs:
# - base (dict): Default values.
# - override (dict): User values; nested dicts are merged, anything else replaces.
# Outputs:
# - dict: New merged dictionary.
def _deep_merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out

def _opt_float(v):
    return None if v is None else float(v)

def _parse_window(raw: dict) -> PeakWindow:
    # unquoted HH:MM:SS in YAML 1.1 loads as a base-60 integer
    for key in ("start", "end"):
        if key in raw and not isinstance(raw[key], str):
            raise ConfigError(f"Peak window {key} must be a quoted 'HH:MM[:SS]' string (got {raw[key]!r})")
    try:
        return PeakWindow(
            name=str(raw["name"]),
            start_s=clock_to_seconds(str(raw["start"])),
            end_s=clock_to_seconds(str(raw["end"])),
        )
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Bad peak window {raw!r}: {e}") from e

def _parse_agency(raw: dict) -> AgencyConfig:
    if "id" not in raw:
        raise ConfigError(f"Agency entry without id: {raw!r}")
    rule_raw = {**RAIL_RULE_DEFAULTS, **(raw.get("rail_rule") or {})}
    rule = RailRule(
        mode=str(rule_raw["mode"]),
        location_types=tuple(rule_raw.get("location_types") or ()),
        max_latitude=_opt_float(rule_raw.get("max_latitude")),
        min_latitude=_opt_float(rule_raw.get("min_latitude")),
    )
    return AgencyConfig(
        id=str(raw["id"]),
        name=str(raw.get("name", raw["id"])),
        rail_rule=rule,
        column_map={t: dict(m) for t, m in (raw.get("column_map") or {}).items()},
        route_type_map={str(k): str(v) for k, v in (raw.get("route_type_map") or {}).items()},
    )

def _build(cfg: dict) -> HubConfig:
    sd = cfg.get("service_days") or {}
    if not isinstance(sd, dict):
        raise ConfigError(f"service_days must be a mapping (got {sd!r})")
    sd_date = sd.get("date")
    if isinstance(sd_date, str):
        try:
            sd_date = date.fromisoformat(sd_date)
        except ValueError as e:
            raise ConfigError(f"Bad service date {sd_date!r}") from e
    freq = cfg["frequency"]
    buf = cfg["buffers"]
    corridors = cfg.get("corridors") or {}
    ferry = cfg.get("ferry") or {}
    try:
        return HubConfig(
            agencies=tuple(_parse_agency(a) for a in cfg.get("agencies") or []),
            peak_windows=tuple(_parse_window(w) for w in cfg.get("peak_windows") or []),
            service_days=ServiceDays(mode=str(sd.get("mode", "weekday")), date=sd_date),
            frequency=FrequencyRule(
                threshold_minutes=float(freq["threshold_minutes"]),
                min_routes=int(freq["min_routes"]),
                min_observations=int(freq["min_observations"]),
                outlier_ceiling_minutes=float(freq["outlier_ceiling_minutes"]),
            ),
            route_types={k: tuple(v or ()) for k, v in cfg["route_types"].items()},
            buffers=BufferRadii(
                hub_radius_mi=float(buf["hub_radius_mi"]),
                corridor_radius_mi=float(buf["corridor_radius_mi"]),
                rail_radius_mi=_opt_float(buf.get("rail_radius_mi")),
                bus_radius_mi=_opt_float(buf.get("bus_radius_mi")),
                ferry_radius_mi=_opt_float(buf.get("ferry_radius_mi")),
            ),
            corridors=CorridorConfig(
                enabled=bool(corridors.get("enabled", False)),
                max_latitude=_opt_float(corridors.get("max_latitude")),
            ),
            ferry=FerryConfig(
                enabled=bool(ferry.get("enabled", True)),
                connection_radius_mi=float(ferry.get("connection_radius_mi", 0.25)),
            ),
            local_crs=str(cfg["local_crs"]),
            area_crs=str(cfg["area_crs"]),
            reference_areas_sq_mi={str(k): float(v) for k, v in (cfg.get("reference_areas_sq_mi") or {}).items()},
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Malformed configuration: {e}") from e

def _positive(value: float, label: str):
    if value is None or not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{label} must be > 0 (got {value!r})")

def _latitude(value: Optional[float], label: str):
    if value is not None and not -90.0 <= value <= 90.0:
        raise ConfigError(f"{label} must be within [-90, 90] (got {value!r})")

# Purpose: Fail fast on configuration that would make the run meaningless.
# Inputs:
# - cfg (HubConfig): Fully built configuration.
# Outputs:
# - None. Raises ConfigError on the first violation found.
def validate_config(cfg: HubConfig) -> None:
    f = cfg.frequency
    _positive(f.threshold_minutes, "frequency.threshold_minutes")
    _positive(f.outlier_ceiling_minutes, "frequency.outlier_ceiling_minutes")
    if f.min_routes < 1:
        raise ConfigError(f"frequency.min_routes must be >= 1 (got {f.min_routes})")
    if f.min_observations < 1:
        raise ConfigError(f"frequency.min_observations must be >= 1 (got {f.min_observations})")

    b = cfg.buffers
    _positive(b.hub_radius_mi, "buffers.hub_radius_mi")
    _positive(b.corridor_radius_mi, "buffers.corridor_radius_mi")
    for cat in ("rail", "bus", "ferry"):
        override = getattr(b, f"{cat}_radius_mi")
        if override is not None:
            _positive(override, f"buffers.{cat}_radius_mi")
    if cfg.ferry.enabled:
        _positive(cfg.ferry.connection_radius_mi, "ferry.connection_radius_mi")

    if not cfg.peak_windows:
        raise ConfigError("At least one peak window is required")
    names = [w.name for w in cfg.peak_windows]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate peak window names: {names}")
    for w in cfg.peak_windows:
        if w.end_s <= w.start_s:
            raise ConfigError(f"Peak window '{w.name}' is inverted or empty")
    ordered = sorted(cfg.peak_windows, key=lambda w: w.start_s)
    for a, b_ in zip(ordered, ordered[1:]):
        if b_.start_s <= a.end_s:
            raise ConfigError(f"Peak windows '{a.name}' and '{b_.name}' overlap")

    if cfg.service_days.mode not in SERVICE_DAY_MODES:
        raise ConfigError(f"service_days.mode must be one of {SERVICE_DAY_MODES}")
    if cfg.service_days.mode == "date" and cfg.service_days.date is None:
        raise ConfigError("service_days.date is required when mode is 'date'")

    for kind in ("rail", "bus", "ferry"):
        if kind not in cfg.route_types:
            raise ConfigError(f"route_types.{kind} is missing")
        unknown = set(cfg.route_types[kind]) - set(ROUTE_MODES)
        if unknown:
            raise ConfigError(f"route_types.{kind} has unknown modes: {sorted(unknown)}")

    ids = [a.id for a in cfg.agencies]
    if len(set(ids)) != len(ids):
        raise ConfigError(f"Duplicate agency ids: {ids}")
    for a in cfg.agencies:
        if not a.id or "_" in a.id:
            raise ConfigError(f"Agency id {a.id!r} must be non-empty and contain no '_'")
        if a.rail_rule.mode not in RAIL_RULE_MODES:
            raise ConfigError(f"{a.id}: rail_rule.mode must be one of {RAIL_RULE_MODES}")
        bad_lt = set(a.rail_rule.location_types) - set(LOCATION_TYPES)
        if bad_lt:
            raise ConfigError(f"{a.id}: unknown location types {sorted(bad_lt)}")
        _latitude(a.rail_rule.max_latitude, f"{a.id}.rail_rule.max_latitude")
        _latitude(a.rail_rule.min_latitude, f"{a.id}.rail_rule.min_latitude")
        bad_modes = set(a.route_type_map.values()) - set(ROUTE_MODES)
        if bad_modes:
            raise ConfigError(f"{a.id}: route_type_map has unknown modes {sorted(bad_modes)}")
    _latitude(cfg.corridors.max_latitude, "corridors.max_latitude")
    for label, area in cfg.reference_areas_sq_mi.items():
        _positive(area, f"reference_areas_sq_mi.{label}")

# Purpose: Load the YAML configuration and merge it over DEFAULTS.
# Inputs:
# - path (Path | str | None): Config file; defaults to config.yaml at the project root.
# Outputs:
# - HubConfig: Validated configuration.
def load_config(path=None) -> HubConfig:
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    cfg = HubConfig.from_dict(raw)
    logger.info(f"Loaded config {path.name}: {len(cfg.agencies)} agencies, "
                f"{len(cfg.peak_windows)} peak windows, local CRS {cfg.local_crs}")
    return cfg
