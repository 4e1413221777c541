"""Feed retrieval collaborators.

The engine itself never performs I/O: every stage works on a ``RawTables``
object that some ``FeedSource`` has already materialized. Three sources are
provided: in-memory (tests, notebooks), a local directory or zip archive,
and an HTTP downloader that keeps an on-disk copy as fallback.
"""
import io
import logging
import zipfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

import pandas as pd
import requests

from hubmapper.errors import FeedSchemaError, FeedUnavailableError

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


def _empty() -> pd.DataFrame:
    return pd.DataFrame()


@dataclass(frozen=True)
class RawTables:
    """One agency's feed tables exactly as published (any of them may be empty)."""
    stops: pd.DataFrame = field(default_factory=_empty)
    routes: pd.DataFrame = field(default_factory=_empty)
    trips: pd.DataFrame = field(default_factory=_empty)
    stop_times: pd.DataFrame = field(default_factory=_empty)
    calendar: pd.DataFrame = field(default_factory=_empty)
    calendar_dates: pd.DataFrame = field(default_factory=_empty)
    shapes: pd.DataFrame = field(default_factory=_empty)

    @classmethod
    def table_names(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(cls, tables: Mapping[str, pd.DataFrame]) -> "RawTables":
        unknown = set(tables) - set(cls.table_names())
        if unknown:
            raise ValueError(f"Unknown feed tables: {sorted(unknown)}")
        return cls(**{k: v for k, v in tables.items() if v is not None})


class FeedSource(Protocol):
    def fetch(self, agency: str) -> RawTables:
        ...


class InMemoryFeedSource:
    def __init__(self, feeds: Mapping[str, object]):
        self._feeds: Dict[str, RawTables] = {
            k: v if isinstance(v, RawTables) else RawTables.from_mapping(v)
            for k, v in feeds.items()
        }

    def fetch(self, agency: str) -> RawTables:
        if agency not in self._feeds:
            raise FeedUnavailableError(agency, "not loaded")
        return self._feeds[agency]


# Purpose: Parse one GTFS text file into an all-string DataFrame.
# Inputs:
# - agency (str), table (str): Used for error context.
# - handle: File path or binary file object.
# Outputs:
# - DataFrame: Columns as published, blanks as NaN, header names stripped.
def _read_table(agency: str, table: str, handle) -> pd.DataFrame:
    try:
        df = pd.read_csv(handle, dtype=str, skipinitialspace=True, encoding="utf-8-sig")
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise FeedSchemaError(agency, table, 0, f"unreadable: {e}") from e
    df.columns = [str(c).strip() for c in df.columns]
    return df

def read_gtfs_zip(agency: str, path: Path) -> RawTables:
    tables = {}
    try:
        with zipfile.ZipFile(path) as zf:
            members = {Path(n).name: n for n in zf.namelist()}
            for name in RawTables.table_names():
                member = members.get(f"{name}.txt")
                if member is None:
                    continue
                with zf.open(member) as fh:
                    tables[name] = _read_table(agency, name, io.BytesIO(fh.read()))
    except zipfile.BadZipFile as e:
        raise FeedSchemaError(agency, path.name, 0, f"bad zip archive: {e}") from e
    logger.info(f"{agency}: read {len(tables)} tables from {path.name}")
    return RawTables(**tables)

def read_gtfs_dir(agency: str, path: Path) -> RawTables:
    tables = {}
    for name in RawTables.table_names():
        fp = path / f"{name}.txt"
        if fp.exists():
            tables[name] = _read_table(agency, name, fp)
    logger.info(f"{agency}: read {len(tables)} tables from {path}")
    return RawTables(**tables)


class DirectoryFeedSource:
    """Reads ``<root>/<agency>.zip`` or ``<root>/<agency>/*.txt``."""

    def __init__(self, root):
        self.root = Path(root)

    def fetch(self, agency: str) -> RawTables:
        zpath = self.root / f"{agency}.zip"
        dpath = self.root / agency
        if zpath.exists():
            return read_gtfs_zip(agency, zpath)
        if dpath.is_dir():
            return read_gtfs_dir(agency, dpath)
        raise FeedUnavailableError(agency, f"nothing at {zpath} or {dpath}")


class HttpFeedSource:
    """Downloads GTFS archives, keeping the last good copy in ``cache_dir``."""

    def __init__(self, urls: Mapping[str, str], cache_dir="gtfs_cache", timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        self.urls = dict(urls)
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self.session = session or requests.Session()

    def cache_path(self, agency: str) -> Path:
        return self.cache_dir / f"{agency}_gtfs.zip"

    def fetch(self, agency: str) -> RawTables:
        if agency not in self.urls:
            raise FeedUnavailableError(agency, "no URL configured")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        cache_file = self.cache_path(agency)
        try:
            res = self.session.get(
                self.urls[agency], headers={"User-Agent": USER_AGENT}, timeout=self.timeout
            )
            res.raise_for_status()
            cache_file.write_bytes(res.content)
            logger.info(f"{agency}: downloaded {len(res.content)} bytes")
        except requests.RequestException as e:
            logger.warning(f"Download failed for {agency}: {e}")
            if not cache_file.exists():
                raise FeedUnavailableError(agency, f"download failed and no cache at {cache_file}") from e
            logger.info(f"Using cached GTFS data for {agency} from {cache_file}")
        return read_gtfs_zip(agency, cache_file)
