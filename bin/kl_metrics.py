# =============================================================================
# kl_metrics.py — per-line divergence engines: KL (S1), KLs (S2), KLss (S3)
# -----------------------------------------------------------------------------
# Every engine offers the same capabilities:
#     add_background(fh, filename, nsites)   group 1 first, then group 2
#     size / writing_nulls
#     process_input_value(value)             one integer field of the line
#     compute_and_write_metric()             finalize, write, reset
#
# S1/S2 term for one state (pair), tally p, weight w, denominator d:
#     p == 0           → 0
#     w is sentinel    → w
#     otherwise        → (p/d) * (log p + w)
# Group 2 is subtracted (its sentinel branch overwrites with -w).
# Total = Σ term (one group) or Σ |term| (two groups).
#
# S3 term for one state pair group: Σ weights of group 1 observations minus
# Σ weights of group 2 observations, each weight looked up by the raw ordered
# pair id and the epigenome pair that produced it.
# =============================================================================

from __future__ import annotations
from typing import List, Optional, Tuple

import numpy as np

from epilogos_common import (
    LOG2, SENTINEL_THRESHOLD, BackgroundFormatError, ExcessColumnsError,
    ObservationFormatError, extend_log_cache,
)
from kl_background import Background, load_background
from state_pairs import (
    canonical_pair_groups, ordered_pair_states, pair_group_states, unordered_pair_table,
)

# ────────────────────────────────────────────────────────────────────────────
# Shared pieces
# ────────────────────────────────────────────────────────────────────────────

class LineRouter:
    """Sends the values of one line to the coordinates, group 1, then group 2."""

    def __init__(self, expects_coordinates: bool):
        self.expects_coordinates = expects_coordinates
        self.capacities = [0, 0]
        self.reset()

    @property
    def size(self) -> int:
        return self.capacities[0] + self.capacities[1]

    def set_capacity(self, group: int, capacity: int):
        self.capacities[group] = capacity

    def reset(self):
        self.begin: Optional[int] = None
        self.end: Optional[int] = None
        self.counts = [0, 0]

    def route(self, value: int) -> Optional[Tuple[int, int]]:
        """Return (group, position) for a data value, or None if it was a coordinate."""
        if self.expects_coordinates and self.counts[0] == 0:
            if self.begin is None:
                self.begin = value
                return None
            if self.end is None:
                self.end = value
                return None
        if self.counts[0] < self.capacities[0]:
            group = 0
        elif self.counts[1] < self.capacities[1]:
            group = 1
        else:
            raise ExcessColumnsError(f"Found excess columns in a line of input; expected {self.size}.")
        pos = self.counts[group]
        self.counts[group] += 1
        return group, pos


def check_num_states(existing: List[Background], bg: Background):
    if len(existing) >= 2:
        raise BackgroundFormatError("At most two background files (groups) can be used.")
    if existing and existing[0].num_states != bg.num_states:
        raise BackgroundFormatError(
            f"The background file for group 1 ({existing[0].source}) implies there are "
            f"{existing[0].num_states} possible states, but file {bg.source} "
            f"(background for group 2) implies there are {bg.num_states} possible states."
        )


def signed_terms(
    logs: np.ndarray,
    p1: np.ndarray, w1: np.ndarray, d1: float,
    p2: Optional[np.ndarray] = None, w2: Optional[np.ndarray] = None, d2: float = 1.0,
) -> np.ndarray:
    missing1 = w1 < SENTINEL_THRESHOLD
    ratio1 = p1 / d1 * (logs[p1] + np.where(missing1, 0.0, w1))
    terms = np.where(p1 != 0, np.where(missing1, w1, ratio1), 0.0)
    if p2 is not None:
        missing2 = w2 < SENTINEL_THRESHOLD
        ratio2 = p2 / d2 * (logs[p2] + np.where(missing2, 0.0, w2))
        terms = np.where(p2 != 0, np.where(missing2, -w2, terms - ratio2), terms)
    return terms


def metric_total(terms: np.ndarray, two_groups: bool) -> float:
    return float(np.abs(terms).sum()) if two_groups else float(terms.sum())


def split_onto_states(num_states: int, first: np.ndarray, second: np.ndarray, terms: np.ndarray) -> np.ndarray:
    """Half of each pair's term goes to each of its two (1-based) states."""
    contrib = np.zeros(num_states, dtype=np.float64)
    half = 0.5 * terms
    np.add.at(contrib, first - 1, half)
    np.add.at(contrib, second - 1, half)
    return contrib

# ────────────────────────────────────────────────────────────────────────────
# S1
# ────────────────────────────────────────────────────────────────────────────

class KLModel:
    metric = 1

    def __init__(self, writer):
        self.writer = writer
        self.router = LineRouter(expects_coordinates=not writer.writes_nulls)
        self.backgrounds: List[Background] = []
        self.num_states = 0
        self._logs: Optional[np.ndarray] = None
        self._tallies: List[np.ndarray] = []
        self._denoms: List[float] = []
        self._max_tallies: List[int] = []

    @property
    def size(self) -> int:
        return self.router.size

    @property
    def writing_nulls(self) -> bool:
        return self.writer.writes_nulls

    def add_background(self, fh, filename: str, nsites: int) -> Background:
        bg = load_background(self.metric, fh, filename, nsites)
        check_num_states(self.backgrounds, bg)
        self.backgrounds.append(bg)
        self.num_states = bg.num_states
        # at any site a state is seen between 0 and group_size times
        self._logs = extend_log_cache(self._logs, bg.group_size)
        self._max_tallies.append(bg.group_size)
        self._denoms.append(LOG2 * bg.group_size)
        self._tallies.append(np.zeros(len(bg.weights), dtype=np.int64))
        self.router.set_capacity(len(self.backgrounds) - 1, len(bg.weights))
        return bg

    def process_input_value(self, value: int):
        slot = self.router.route(value)
        if slot is None:
            return
        group, pos = slot
        if value > self._max_tallies[group]:
            raise ObservationFormatError(
                f"Tally {value} for group {group + 1} exceeds the number of epigenomes in that "
                f"group ({self._max_tallies[group]})."
            )
        self._tallies[group][pos] = value

    def compute_and_write_metric(self):
        two_groups = len(self.backgrounds) == 2
        if two_groups:
            terms = signed_terms(self._logs,
                                 self._tallies[0], self.backgrounds[0].weights, self._denoms[0],
                                 self._tallies[1], self.backgrounds[1].weights, self._denoms[1])
        else:
            terms = signed_terms(self._logs, self._tallies[0], self.backgrounds[0].weights, self._denoms[0])
        total = metric_total(terms, two_groups)
        if self.writing_nulls:
            self.writer.write_null(total)
        else:
            self.writer.write(self.router.begin, self.router.end, terms, total)
        self.reset()

    def reset(self):
        self.router.reset()
        for t in self._tallies:
            t.fill(0)

# ────────────────────────────────────────────────────────────────────────────
# S2
# ────────────────────────────────────────────────────────────────────────────

class KLsModel:
    metric = 2

    def __init__(self, writer):
        self.writer = writer
        self.router = LineRouter(expects_coordinates=not writer.writes_nulls)
        self.backgrounds: List[Background] = []
        self.num_states = 0
        self.pairs: Optional[np.ndarray] = None  # unordered pair id → (state_i, state_j)
        self._logs: Optional[np.ndarray] = None
        self._tallies: List[np.ndarray] = []
        self._denoms: List[float] = []
        self._max_tallies: List[int] = []

    @property
    def size(self) -> int:
        return self.router.size

    @property
    def writing_nulls(self) -> bool:
        return self.writer.writes_nulls

    def add_background(self, fh, filename: str, nsites: int) -> Background:
        bg = load_background(self.metric, fh, filename, nsites)
        check_num_states(self.backgrounds, bg)
        self.backgrounds.append(bg)
        if self.pairs is None:
            self.num_states = bg.num_states
            self.pairs = unordered_pair_table(bg.num_states)
        # at any site a state pair is seen between 0 and g(g-1)/2 times
        npairs = bg.num_epigenome_pairs
        self._logs = extend_log_cache(self._logs, npairs)
        self._max_tallies.append(npairs)
        self._denoms.append(LOG2 * npairs)
        self._tallies.append(np.zeros(len(bg.weights), dtype=np.int64))
        self.router.set_capacity(len(self.backgrounds) - 1, len(bg.weights))
        return bg

    def process_input_value(self, value: int):
        slot = self.router.route(value)
        if slot is None:
            return
        group, pos = slot
        if value > self._max_tallies[group]:
            raise ObservationFormatError(
                f"State pair tally {value} for group {group + 1} exceeds the number of epigenome "
                f"pairs in that group ({self._max_tallies[group]})."
            )
        self._tallies[group][pos] = value

    def compute_and_write_metric(self):
        two_groups = len(self.backgrounds) == 2
        if two_groups:
            terms = signed_terms(self._logs,
                                 self._tallies[0], self.backgrounds[0].weights, self._denoms[0],
                                 self._tallies[1], self.backgrounds[1].weights, self._denoms[1])
        else:
            terms = signed_terms(self._logs, self._tallies[0], self.backgrounds[0].weights, self._denoms[0])
        total = metric_total(terms, two_groups)
        if self.writing_nulls:
            self.writer.write_null(total)
        else:
            contrib = split_onto_states(self.num_states, self.pairs[:, 0], self.pairs[:, 1], terms)
            top = int(np.argmax(np.abs(terms)))
            self.writer.write(self.router.begin, self.router.end, contrib, total,
                              top_pair=(int(self.pairs[top, 0]), int(self.pairs[top, 1])),
                              top_pair_term=float(terms[top]))
        self.reset()

    def reset(self):
        self.router.reset()
        for t in self._tallies:
            t.fill(0)

# ────────────────────────────────────────────────────────────────────────────
# S3
# ────────────────────────────────────────────────────────────────────────────

class KLssModel:
    """
    Input values are 1-based ordered state pair ids, one per epigenome pair.

    The per-line arena is flat: the raw pair ids per group (indexed by
    epigenome pair) plus one accumulator slot per state pair group id.
    """

    metric = 3

    def __init__(self, writer):
        self.writer = writer
        self.router = LineRouter(expects_coordinates=not writer.writes_nulls)
        self.backgrounds: List[Background] = []
        self.num_states = 0
        self._pair_ids: List[np.ndarray] = []
        self._group_sums: Optional[np.ndarray] = None
        self._group_seen: Optional[np.ndarray] = None

    @property
    def size(self) -> int:
        return self.router.size

    @property
    def writing_nulls(self) -> bool:
        return self.writer.writes_nulls

    def add_background(self, fh, filename: str, nsites: int) -> Background:
        bg = load_background(self.metric, fh, filename, nsites)
        check_num_states(self.backgrounds, bg)
        self.backgrounds.append(bg)
        if self._group_sums is None:
            self.num_states = bg.num_states
            self._group_sums = np.zeros(bg.num_states ** 2 + 1, dtype=np.float64)
            self._group_seen = np.zeros(bg.num_states ** 2 + 1, dtype=bool)
        self._pair_ids.append(np.zeros(bg.num_epigenome_pairs, dtype=np.int64))
        self.router.set_capacity(len(self.backgrounds) - 1, bg.num_epigenome_pairs)
        return bg

    def process_input_value(self, value: int):
        slot = self.router.route(value)
        if slot is None:
            return
        group, pos = slot
        max_id = self.num_states ** 2
        if not 1 <= value <= max_id:
            raise ObservationFormatError(f"State pair ID {value} is outside the valid range 1..{max_id}.")
        self._pair_ids[group][pos] = value

    def compute_and_write_metric(self):
        n = self.num_states
        for sign, bg, ids in zip((1.0, -1.0), self.backgrounds, self._pair_ids):
            weights = bg.weights[ids - 1, np.arange(len(ids))]
            groups = canonical_pair_groups(ids, n)
            np.add.at(self._group_sums, groups, sign * weights)
            self._group_seen[groups] = True

        group_ids = np.flatnonzero(self._group_seen)
        terms = self._group_sums[group_ids]
        total = metric_total(terms, len(self.backgrounds) == 2)
        if self.writing_nulls:
            self.writer.write_null(total)
        else:
            rows, cols = ordered_pair_states(group_ids, n)
            contrib = split_onto_states(n, rows, cols, terms)
            top = int(np.argmax(np.abs(terms)))
            self.writer.write(self.router.begin, self.router.end, contrib, total,
                              top_pair=pair_group_states(int(group_ids[top]), n),
                              top_pair_term=float(terms[top]))
        self.reset()

    def reset(self):
        self.router.reset()
        for ids in self._pair_ids:
            ids.fill(0)
        if self._group_sums is not None:
            self._group_sums.fill(0.0)
            self._group_seen.fill(False)

# ────────────────────────────────────────────────────────────────────────────
# Factory
# ────────────────────────────────────────────────────────────────────────────

MODELS = {1: KLModel, 2: KLsModel, 3: KLssModel}

def make_model(metric: int, writer):
    if metric not in MODELS:
        raise ValueError(f"Invalid metric {metric}; the valid options are 1 (S1), 2 (S2) and 3 (S3).")
    return MODELS[metric](writer)
