import logging
import time
from contextlib import contextmanager

# -------------------- Logging Setup --------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger("hubmapper")

@contextmanager
# Purpose: Context manager to log the start and end of a processing step with elapsed time.
# Inputs:
# - label (str): Human readable step label to include in log messages.
# Outputs:
# - None. Produces INFO log lines when entering and leaving the context.
def log_step(label: str):
    """Log start/end and wall time of a processing step."""
    logger.info(f"[START] {label}")
    t0 = time.perf_counter()
    try:
        yield
    finally:
        dt = time.perf_counter() - t0
        logger.info(f"[END]   {label} in {dt:.2f}s")
