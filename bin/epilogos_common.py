# =============================================================================
# epilogos_common.py — shared constants, logging, errors and small I/O helpers
# -----------------------------------------------------------------------------
# Used by every epilogos script in bin/:
#   • LOG_PREFIX-style console logging to stderr (stdout stays free)
#   • exception hierarchy raised by the library code and caught in main()
#   • open_text() for plain or gz inputs
#   • the log-of-small-integer cache shared by the S1/S2 metrics
# =============================================================================

from __future__ import annotations
import datetime, gzip, io, math, sys, zlib
from typing import Iterable, Iterator, Optional, Tuple, Type

import numpy as np

# =============================================================================
# CONSTANTS
# =============================================================================

VERSION = "1.0.0"
LOG_PREFIX = "[EPILOGOS]"

LOG2 = math.log(2.0)

# Background weight for a state (or state pair) never seen genome-wide.
MISSING_BACKGROUND = -999999.0
# S3 weights are ready-to-sum contributions, so the sentinel is positive there.
MISSING_PAIR_BACKGROUND = 999999.0
# Anything below this is the S1/S2 sentinel.
SENTINEL_THRESHOLD = -999.0

METRIC_NAMES = {1: "KL (S1)", 2: "KLs (S2)", 3: "KLss (S3)"}

# =============================================================================
# ERRORS
# =============================================================================

class EpilogosError(Exception):
    """Base class for every fatal input/validation problem."""


class BackgroundFormatError(EpilogosError):
    """A background (Q) tally file is malformed or inconsistent."""


class ObservationFormatError(EpilogosError):
    """A line of the observation stream is malformed."""


class ExcessColumnsError(ObservationFormatError):
    pass

# =============================================================================
# LOGGING UTILITIES
# =============================================================================

_QUIET = False

def set_quiet(quiet: bool):
    global _QUIET
    _QUIET = bool(quiet)

def log(section: str, message: str):
    """Consistent logging format"""
    if _QUIET:
        return
    timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    print(f"{LOG_PREFIX} {section} | {message} | ts={timestamp}", file=sys.stderr, flush=True)

def log_info(message: str):
    """Log informational message"""
    if not _QUIET:
        print(f"{LOG_PREFIX} INFO | {message}", file=sys.stderr, flush=True)

def log_warning(message: str):
    """Log warning message"""
    print(f"{LOG_PREFIX} WARNING | {message}", file=sys.stderr, flush=True)

def log_error(message: str):
    """Log error message"""
    print(f"{LOG_PREFIX} ERROR | {message}", file=sys.stderr, flush=True)

# =============================================================================
# I/O
# =============================================================================

def open_text(path: str, mode: str = "r") -> io.TextIOBase:
    """Open plain or gz text; gz is decided by the file extension."""
    if str(path).endswith(".gz"):
        return io.TextIOWrapper(gzip.open(path, mode + "b"), encoding="utf-8")
    return open(path, mode, encoding="utf-8")

def numbered_lines(
    fh: Iterable[str], filename: str, error: Type[EpilogosError] = EpilogosError,
) -> Iterator[Tuple[int, str]]:
    """
    Yield (line number, line) from `fh`, 1-based.

    Undecodable bytes and truncated or corrupt gz streams surface as `error`,
    naming the file and the line that could not be read.
    """
    lines = iter(fh)
    linenum = 0
    while True:
        try:
            ln = next(lines)
        except StopIteration:
            return
        except (UnicodeDecodeError, EOFError, zlib.error, OSError) as e:
            raise error(
                f"Unable to read line {linenum + 1} of file {filename}; "
                f"the last line read was {linenum} ({e})."
            ) from e
        linenum += 1
        yield linenum, ln

# =============================================================================
# LOG CACHE
# =============================================================================

def extend_log_cache(cache: Optional[np.ndarray], max_tally: int) -> np.ndarray:
    """
    Return [unused, log 1, log 2, ..., log max_tally].

    An existing cache is only ever extended, never shrunk; index 0 is a
    placeholder so that cache[k] == log(k).
    """
    if cache is None or len(cache) == 0:
        cache = np.zeros(1, dtype=np.float64)
    if max_tally <= len(cache) - 1:
        return cache
    extra = np.log(np.arange(len(cache), max_tally + 1, dtype=np.float64))
    return np.concatenate([cache, extra])
