"""Wall-clock timestamps stored in the cache (seconds since the epoch, float)."""
import time


def now() -> float:
    return time.time()
