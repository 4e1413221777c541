import numpy as np
import pandas as pd

SECONDS_PER_DAY = 86400

def clock_to_seconds(text: str) -> int:
    """
    Convert "HH:MM" or "HH:MM:SS" into seconds since the start of the service day.
    Hours may exceed 23 for trips that run past midnight.
    Raises ValueError for anything else.
    """
    s = (text or "").strip()
    parts = s.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Bad time-of-day value: {text!r}")
    h, m = int(parts[0]), int(parts[1])
    sec = int(parts[2]) if len(parts) == 3 else 0
    if m > 59 or sec > 59:
        raise ValueError(f"Bad time-of-day value: {text!r}")
    return h * 3600 + m * 60 + sec

# Purpose: Vectorized parse of GTFS time-of-day strings into elapsed seconds.
# Inputs:
# - values (Series): Raw time strings such as '07:05:00', '7:05:00' or '25:10:00'.
# Outputs:
# - Series[float]: Seconds since the start of the service day; NaN where the value is blank or malformed.
def parse_gtfs_times(values: pd.Series) -> pd.Series:
    s = values.astype("string").str.strip()
    parts = s.str.extract(r"^(\d{1,3}):(\d{2}):(\d{2})$").astype(float)
    h, m, sec = parts[0], parts[1], parts[2]
    out = h * 3600 + m * 60 + sec
    return out.mask((m > 59) | (sec > 59), np.nan)

def seconds_to_clock(seconds: float) -> str:
    """Inverse of clock_to_seconds, keeping hours past 24 as-is."""
    total = int(round(seconds))
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"
