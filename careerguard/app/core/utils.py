"""Utility functions for the throttling layer."""

import os
import resource
import sys


def current_rss_bytes() -> int:
    """Return the resident set size of this process in bytes.

    Reads /proc/self/statm where available (current RSS); elsewhere falls
    back to the peak RSS reported by getrusage.
    """
    try:
        with open("/proc/self/statm", "rb") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is kilobytes on Linux, bytes on macOS
        return peak if sys.platform == "darwin" else peak * 1024


def clamp_unit(value: float) -> float:
    """Clamp a value into [0, 1]."""
    return min(1.0, max(0.0, value))
