"""Exception types raised by the hub qualification engine.

Record-level problems (bad coordinates, malformed times) are never raised;
they are dropped and counted in a NormalizationReport. The classes here cover
failures the caller has to decide about: bad configuration and unusable feeds.
"""


class HubMapperError(RuntimeError):
    """Base class for run-level failures."""


class ConfigError(HubMapperError, ValueError):
    """Invalid configuration detected before any processing starts."""


class FeedSchemaError(HubMapperError):
    """A whole agency table is unusable (missing required column, unreadable file)."""

    def __init__(self, agency: str, table: str, violations: int, detail: str = ""):
        self.agency = agency
        self.table = table
        self.violations = violations
        self.detail = detail
        msg = f"{agency}/{table}: {violations} record(s) unusable"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class FeedUnavailableError(HubMapperError):
    """A feed could not be fetched and no cached copy exists."""

    def __init__(self, agency: str, detail: str = ""):
        self.agency = agency
        self.detail = detail
        super().__init__(f"Feed for {agency} unavailable: {detail}" if detail else f"Feed for {agency} unavailable")
