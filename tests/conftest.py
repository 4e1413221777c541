import pytest

from gtfs_helpers import bus_raw, every, make_config, rail_raw
from hubmapper.feeds import InMemoryFeedSource
from hubmapper.normalize import concat, normalize


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def frequent_schedule():
    """S1 served by A every 10 min and B every 12 min in both peaks; S2 by A only."""
    return {
        "A": {
            "S1": every(7, 0, 10, 7) + every(16, 0, 10, 7),
            "S2": every(7, 2, 10, 7),
        },
        "B": {"S1": every(7, 0, 12, 6) + every(16, 5, 12, 6)},
    }


@pytest.fixture
def feed_source(frequent_schedule):
    return InMemoryFeedSource({"bus": bus_raw(frequent_schedule), "rail": rail_raw()})


@pytest.fixture
def canonical(config, frequent_schedule):
    return concat([
        normalize(config.agency("bus"), bus_raw(frequent_schedule)),
        normalize(config.agency("rail"), rail_raw()),
    ])
