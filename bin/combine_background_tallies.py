#!/usr/bin/env python3
# =============================================================================
# combine_background_tallies.py — genome-wide Q from per-chromosome tallies
# -----------------------------------------------------------------------------
# Sums per-chromosome background tally files element-wise (Q, Q* or Q**;
# a single line or a rectangular matrix), and optionally the per-chromosome
# site counts into the genome-wide N used by compute_epilogos_per_chrom.py.
#
#   combine_background_tallies.py --out Q1.txt chr1_Q1numerators.txt chr2_Q1numerators.txt …
#   combine_background_tallies.py --out Q3.txt --sites chr*_numSites.txt --sites-out totalNumSites.txt chr*_Q3Tallies.txt
#
# All files must have identical shapes; the first one sets the reference.
# =============================================================================

from __future__ import annotations
import argparse, sys
from typing import List, Optional, Sequence

import numpy as np

from epilogos_common import (
    VERSION, BackgroundFormatError, EpilogosError, log, log_error, open_text, set_quiet,
)
from kl_background import read_tally_matrix

# ────────────────────────────────────────────────────────────────────────────
# Core
# ────────────────────────────────────────────────────────────────────────────

def read_tallies(path: str) -> np.ndarray:
    try:
        with open_text(path) as fh:
            return read_tally_matrix(fh, path)
    except OSError as e:
        raise EpilogosError(f"Unable to open file \"{path}\" for reading ({e.strerror}).") from e

def sum_tally_files(paths: Sequence[str]) -> np.ndarray:
    if not paths:
        raise EpilogosError("No tally files given.")
    total = read_tallies(paths[0])
    for path in paths[1:]:
        m = read_tallies(path)
        if m.shape != total.shape:
            raise BackgroundFormatError(
                f"Files {paths[0]} and {path} have different shapes "
                f"({total.shape[0]}x{total.shape[1]} and {m.shape[0]}x{m.shape[1]})."
            )
        total += m
    return total

def sum_site_counts(paths: Sequence[str]) -> int:
    total = 0
    for path in paths:
        m = read_tallies(path)
        if m.size != 1:
            raise BackgroundFormatError(f"File {path} should hold a single site count, found {m.size} values.")
        total += int(m[0, 0])
    return total

def write_tallies(path: str, tallies: np.ndarray):
    with open_text(path, "w") as fh:
        np.savetxt(fh, tallies, fmt="%d", delimiter="\t")

# ────────────────────────────────────────────────────────────────────────────
# CLI
# ────────────────────────────────────────────────────────────────────────────

def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Sum per-chromosome background tallies into genome-wide tallies.")
    p.add_argument("tallies", nargs="+", help="Per-chromosome tally files (same shape)")
    p.add_argument("--out", required=True, help="Genome-wide tally file to write")
    p.add_argument("--sites", nargs="*", default=[], help="Per-chromosome site-count files")
    p.add_argument("--sites-out", default=None, help="Where to write the genome-wide site count")
    p.add_argument("--quiet", action="store_true")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = p.parse_args(argv)
    if bool(args.sites) != bool(args.sites_out):
        p.error("--sites and --sites-out must be given together")
    return args

def main(argv: Optional[List[str]] = None) -> int:
    args = get_args(argv)
    set_quiet(args.quiet)
    try:
        log("COMBINE", f"Summing {len(args.tallies)} tally files")
        total = sum_tally_files(args.tallies)
        write_tallies(args.out, total)
        log("COMBINE", f"{total.shape[0]}x{total.shape[1]} tallies → {args.out}")
        if args.sites_out:
            nsites = sum_site_counts(args.sites)
            with open_text(args.sites_out, "w") as fh:
                fh.write(f"{nsites}\n")
            log("COMBINE", f"{nsites:,} sites genome-wide → {args.sites_out}")
    except EpilogosError as e:
        log_error(str(e))
        return 1
    except OSError as e:
        log_error(f"Unable to write output: {e}")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
