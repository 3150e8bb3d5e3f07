# =============================================================================
# kl_background.py — background (Q) tally loaders for the S1/S2/S3 metrics
# -----------------------------------------------------------------------------
# File formats (tab-separated non-negative integers):
#   S1 : one line, one tally per state                       (Q)
#   S2 : one line, one tally per unordered state pair        (Q*)
#   S3 : matrix, one row per epigenome pair, n^2 columns     (Q**)
#
# Weights:
#   S1/S2 : log(N) - log(tally)                   (tally == 0 → -999999)
#   S3    : (log(N) - log(cell)) / (log2 * rows)  (cell  == 0 → +999999)
#
# The group-size factor of Q is not stored for S1/S2: Q enters the metric only
# through P/Q, where it cancels. S3 folds log2*rows into the weight instead,
# and the weights are used as-is, without the log cache.
# =============================================================================

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Iterable, List

import numpy as np

from epilogos_common import (
    LOG2, MISSING_BACKGROUND, MISSING_PAIR_BACKGROUND, BackgroundFormatError, numbered_lines,
)
from state_pairs import num_states_from_pair_count

# ────────────────────────────────────────────────────────────────────────────
# Data
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Background:
    weights: np.ndarray  # S1/S2: 1-D per state/pair; S3: [state pair, epigenome pair]
    group_size: int      # number of epigenomes in the group
    num_states: int
    source: str

    @property
    def num_epigenome_pairs(self) -> int:
        return self.group_size * (self.group_size - 1) // 2

# ────────────────────────────────────────────────────────────────────────────
# Readers
# ────────────────────────────────────────────────────────────────────────────

def _parse_row(ln: str, filename: str, linenum: int) -> List[int]:
    row = []
    for col, tok in enumerate(ln.strip().split("\t"), 1):
        if not (tok.isascii() and tok.isdigit()):
            if tok.startswith("-") and tok[1:].isascii() and tok[1:].isdigit():
                raise BackgroundFormatError(
                    f"Negative tally {tok} in column {col} of line {linenum} of file {filename}."
                )
            raise BackgroundFormatError(
                f"Non-integer value \"{tok}\" in column {col} of line {linenum} of file {filename}."
            )
        row.append(int(tok))
    return row

def read_tally_line(fh: Iterable[str], filename: str) -> np.ndarray:
    """Read the single line of tallies of an S1/S2 background file."""
    row = None
    for linenum, ln in numbered_lines(fh, filename, BackgroundFormatError):
        if not ln.strip():
            continue
        if row is not None:
            raise BackgroundFormatError(
                f"File {filename} contains multiple lines of data; "
                "it should contain a single line of tab-delimited tallies."
            )
        row = _parse_row(ln, filename, linenum)
    if row is None:
        raise BackgroundFormatError(f"File {filename} is empty.")
    return np.asarray(row, dtype=np.int64)

def read_tally_matrix(fh: Iterable[str], filename: str) -> np.ndarray:
    """Read a rectangular tally matrix; every row must have the same column count."""
    rows: List[List[int]] = []
    first_linenum = 0
    for linenum, ln in numbered_lines(fh, filename, BackgroundFormatError):
        if not ln.strip():
            continue
        row = _parse_row(ln, filename, linenum)
        if not rows:
            first_linenum = linenum
        elif len(row) != len(rows[0]):
            raise BackgroundFormatError(
                f"Found {len(rows[0])} columns on line {first_linenum} of {filename} "
                f"but {len(row)} columns on line {linenum}. "
                "Each row must have the same number of columns."
            )
        rows.append(row)
    if not rows:
        raise BackgroundFormatError(f"File {filename} is empty.")
    return np.asarray(rows, dtype=np.int64)

# ────────────────────────────────────────────────────────────────────────────
# Weights and group sizes
# ────────────────────────────────────────────────────────────────────────────

def log_weights(tallies: np.ndarray, nsites: int) -> np.ndarray:
    t = tallies.astype(np.float64)
    with np.errstate(divide="ignore"):
        w = math.log(nsites) - np.log(t)
    return np.where(tallies == 0, MISSING_BACKGROUND, w)

def group_size_from_states(total: int, nsites: int) -> int:
    # each site contributes one tally per epigenome
    return int(math.floor(total / nsites + 0.5))

def group_size_from_pairs(total: int, nsites: int) -> int:
    # each site contributes one tally per unordered epigenome pair, g(g-1)/2
    return int(math.floor((1.0 + math.sqrt(1.0 + 8.0 * total / nsites)) / 2.0 + 0.5))

def group_size_from_pair_rows(num_rows: int) -> int:
    g = (1 + math.isqrt(1 + 8 * num_rows)) // 2
    if g * (g - 1) // 2 != num_rows:
        raise ValueError(f"{num_rows} rows is not a number of epigenome pairs g*(g-1)/2")
    return g

# ────────────────────────────────────────────────────────────────────────────
# Loaders
# ────────────────────────────────────────────────────────────────────────────

def load_state_background(fh: Iterable[str], filename: str, nsites: int) -> Background:
    """S1: one tally per state."""
    tallies = read_tally_line(fh, filename)
    size = group_size_from_states(int(tallies.sum()), nsites)
    if size < 1:
        raise BackgroundFormatError(
            f"Tallies in {filename} sum to {int(tallies.sum())}, which implies no epigenomes "
            f"for {nsites} sites genome-wide."
        )
    return Background(log_weights(tallies, nsites), size, len(tallies), filename)

def load_state_pair_background(fh: Iterable[str], filename: str, nsites: int) -> Background:
    """S2: one tally per unordered state pair."""
    tallies = read_tally_line(fh, filename)
    try:
        num_states = num_states_from_pair_count(len(tallies))
    except ValueError:
        raise BackgroundFormatError(
            f"File {filename} has {len(tallies)} columns; the number of columns must equal "
            "the number of unordered state pairs, numStates*(numStates+1)/2."
        ) from None
    size = group_size_from_pairs(int(tallies.sum()), nsites)
    if size < 2:
        raise BackgroundFormatError(
            f"Tallies in {filename} imply fewer than 2 epigenomes; state pairs need at least 2."
        )
    return Background(log_weights(tallies, nsites), size, num_states, filename)

def load_epigenome_pair_background(fh: Iterable[str], filename: str, nsites: int) -> Background:
    """S3: rows = epigenome pairs, columns = ordered state pairs. Stored transposed."""
    matrix = read_tally_matrix(fh, filename)
    num_rows, num_cols = matrix.shape
    num_states = math.isqrt(num_cols)
    if num_states * num_states != num_cols:
        raise BackgroundFormatError(
            f"File {filename} has {num_cols} columns; the number of columns must equal "
            "the square of the number of possible states (the number of state pairs)."
        )
    try:
        size = group_size_from_pair_rows(num_rows)
    except ValueError:
        raise BackgroundFormatError(
            f"File {filename} has {num_rows} rows; the number of rows must equal the number "
            "of epigenome pairs, numEpigenomes*(numEpigenomes-1)/2."
        ) from None
    cells = np.ascontiguousarray(matrix.T).astype(np.float64)
    with np.errstate(divide="ignore"):
        w = (math.log(nsites) - np.log(cells)) / (LOG2 * num_rows)
    weights = np.where(cells == 0, MISSING_PAIR_BACKGROUND, w)
    return Background(weights, size, num_states, filename)

LOADERS = {
    1: load_state_background,
    2: load_state_pair_background,
    3: load_epigenome_pair_background,
}

def load_background(metric: int, fh: Iterable[str], filename: str, nsites: int) -> Background:
    if nsites < 1:
        raise BackgroundFormatError(f"The genome-wide number of sites must be positive (got {nsites}).")
    return LOADERS[metric](fh, filename, nsites)
