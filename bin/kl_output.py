# =============================================================================
# kl_output.py — row writers for observations, per-state scores and nulls
# -----------------------------------------------------------------------------
# Observation row (S1) : chrom start end maxState |maxContrib| sign total
# Observation row (S2/3): chrom start end maxState |maxContrib| sign (s1,s2) |pairTerm| pairSign total
# Scores row           : chrom start end contrib_1 … contrib_n   (%.4g)
# Null row             : total
# Sign columns: 1 if the value is > 0 (group 1 dominates), else -1.
# Sinks are any writable text streams; opening/closing belongs to the caller.
# =============================================================================

from __future__ import annotations
from typing import Optional, Sequence, TextIO, Tuple


def fmt_float(x: float) -> str:
    return f"{x:g}"

def fmt_score(x: float) -> str:
    return "%.4g" % x

def sign_flag(x: float) -> str:
    return "1" if x > 0 else "-1"


class ObservationWriter:
    """Full mode: one observation row and one scores row per interval."""

    writes_nulls = False

    def __init__(self, obs_fh: TextIO, scores_fh: TextIO, chrom: str):
        self.obs_fh = obs_fh
        self.scores_fh = scores_fh
        self.chrom = chrom
        self.rows = 0

    def write(
        self,
        begin: int,
        end: int,
        contributions: Sequence[float],
        total: float,
        top_pair: Optional[Tuple[int, int]] = None,
        top_pair_term: float = 0.0,
    ):
        # first occurrence of the largest |contribution|
        best = 0
        for i in range(1, len(contributions)):
            if abs(contributions[i]) > abs(contributions[best]):
                best = i
        top = float(contributions[best])
        fields = [self.chrom, str(begin), str(end), str(best + 1), fmt_float(abs(top)), sign_flag(top)]
        if top_pair is not None:
            fields += [f"({top_pair[0]},{top_pair[1]})", fmt_float(abs(top_pair_term)), sign_flag(top_pair_term)]
        fields.append(fmt_float(total))
        self.obs_fh.write("\t".join(fields) + "\n")

        scores = "\t".join(fmt_score(float(c)) for c in contributions)
        self.scores_fh.write(f"{self.chrom}\t{begin}\t{end}\t{scores}\n")
        self.rows += 1


class NullWriter:
    """Null-distribution mode: the scalar metric only."""

    writes_nulls = True

    def __init__(self, nulls_fh: TextIO):
        self.nulls_fh = nulls_fh
        self.rows = 0

    def write_null(self, total: float):
        self.nulls_fh.write(fmt_float(total) + "\n")
        self.rows += 1
