# =============================================================================
# state_pairs.py — indexing of state pairs (S2 unordered pairs, S3 ordered pairs)
# -----------------------------------------------------------------------------
# Unordered pairs (S2) are laid out over the upper triangle of an n×n matrix,
# diagonal included, row-major and 0-based:
#     0 → (1,1), 1 → (1,2), …, n-1 → (1,n), n → (2,2), …, n(n+1)/2-1 → (n,n)
#
# Ordered pairs (S3) are 1-based: p = (a-1)*n + b for states a, b in 1..n.
# A "state pair group" folds (a,b) and (b,a) onto the upper-triangular
# representative (min(a,b), max(a,b)), keeping the same 1-based numbering.
# =============================================================================

from __future__ import annotations
import math
from typing import Tuple

import numpy as np


def num_unordered_pairs(num_states: int) -> int:
    return num_states * (num_states + 1) // 2


def num_states_from_pair_count(num_pairs: int) -> int:
    """Solve n^2 + n - 2*num_pairs == 0; raise ValueError if n is not integral."""
    if num_pairs < 1:
        raise ValueError(f"{num_pairs} is not a valid number of unordered state pairs")
    n = (math.isqrt(1 + 8 * num_pairs) - 1) // 2
    if num_unordered_pairs(n) != num_pairs:
        raise ValueError(f"{num_pairs} is not a triangular number n*(n+1)/2")
    return n


def unordered_pair_table(num_states: int) -> np.ndarray:
    """
    Decomposition table: row k holds the 1-based states (i, j), i <= j, of
    unordered pair k.

    Walks the triangle backwards from its last cell (n,n): the delta-th cell
    before it sits delta_row rows up and delta_col columns left of (n,n).
    """
    max_id = num_unordered_pairs(num_states) - 1
    table = np.zeros((max_id + 1, 2), dtype=np.int64)
    for delta in range(max_id + 1):
        delta_row = (math.isqrt(1 + 8 * delta) - 1) // 2
        delta_col = delta - delta_row * (delta_row + 1) // 2
        table[max_id - delta, 0] = num_states - delta_row
        table[max_id - delta, 1] = num_states - delta_col
    return table


def unordered_pair_id(s1: int, s2: int, num_states: int) -> int:
    """Inverse of unordered_pair_table(): 1-based states → 0-based pair id."""
    i, j = (s1, s2) if s1 <= s2 else (s2, s1)
    if i < 1 or j > num_states:
        raise ValueError(f"state pair ({s1},{s2}) out of range for {num_states} states")
    row_offset = (i - 1) * num_states - (i - 1) * (i - 2) // 2
    return row_offset + (j - i)


def ordered_pair_id(a: int, b: int, num_states: int) -> int:
    return (a - 1) * num_states + b


def ordered_pair_states(pair_id, num_states: int):
    """1-based ordered pair id(s) → (state a, state b), 1-based. Works on arrays."""
    a0, b0 = np.divmod(np.asarray(pair_id) - 1, num_states)
    return a0 + 1, b0 + 1


def canonical_pair_groups(pair_ids, num_states: int):
    """Fold 1-based ordered pair ids onto their upper-triangular group id."""
    a0, b0 = np.divmod(np.asarray(pair_ids) - 1, num_states)
    return np.minimum(a0, b0) * num_states + np.maximum(a0, b0) + 1


def pair_group_states(group_id: int, num_states: int) -> Tuple[int, int]:
    a, b = ordered_pair_states(group_id, num_states)
    return int(a), int(b)
