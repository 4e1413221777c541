"""Public transportation hub qualification and parking-mandate area mapping."""

from hubmapper.config import HubConfig, load_config
from hubmapper.errors import ConfigError, FeedSchemaError, FeedUnavailableError, HubMapperError
from hubmapper.pipeline import HubAnalysis, run_analysis

__all__ = [
    "ConfigError",
    "FeedSchemaError",
    "FeedUnavailableError",
    "HubAnalysis",
    "HubConfig",
    "HubMapperError",
    "load_config",
    "run_analysis",
]
