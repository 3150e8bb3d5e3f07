#!/usr/bin/env python3
# =============================================================================
# exemplar_regions.py — collate per-chromosome observations into exemplar regions
# -----------------------------------------------------------------------------
# Input : *_observed.txt rows written by compute_epilogos_per_chrom.py
#         (plain or .gz; any number of chromosomes)
# Steps
#   1) Concatenate, sort by chrom then start (stable)
#   2) Split into runs of consecutive rows sharing chrom and top state (col 4)
#   3) Keep the highest-scoring row of each run (ties → the later row)
#   4) Sort the kept rows by score, descending (stable); write them unchanged
# Score column: 7 for S1, 10 for S2/S3.
# Optional QC PDF: score histogram + exemplar count per state.
# =============================================================================

from __future__ import annotations
import argparse, sys, zlib
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from epilogos_common import (
    METRIC_NAMES, VERSION, EpilogosError, ObservationFormatError,
    log, log_error, log_warning, set_quiet,
)

STATE_COLUMN = 4
SCORE_COLUMN = {1: 7, 2: 10, 3: 10}

# ────────────────────────────────────────────────────────────────────────────
# Load
# ────────────────────────────────────────────────────────────────────────────

def load_observations(paths: Sequence[str], metric: int) -> pd.DataFrame:
    """Read observation rows as text, with parsed `_start` and `_score` helper columns."""
    ncols = SCORE_COLUMN[metric]
    frames = []
    for path in paths:
        try:
            df = pd.read_csv(path, sep="\t", header=None, dtype=str,
                             keep_default_na=False, compression="infer")
        except pd.errors.EmptyDataError:
            log_warning(f"Skipping empty file: {path}")
            continue
        except OSError as e:
            raise EpilogosError(f"Unable to open file \"{path}\" for reading ({e.strerror}).") from e
        except (UnicodeDecodeError, EOFError, zlib.error) as e:
            raise ObservationFormatError(f"Unable to read file {path} ({e}).") from e
        if df.shape[1] != ncols:
            raise ObservationFormatError(
                f"File {path} has {df.shape[1]} columns; {METRIC_NAMES[metric]} observations have {ncols}."
            )
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=list(range(ncols)) + ["_start", "_score"])

    df = pd.concat(frames, ignore_index=True)
    df["_start"] = pd.to_numeric(df[1], errors="coerce")
    df["_score"] = pd.to_numeric(df[ncols - 1], errors="coerce")
    bad = df["_start"].isna() | df["_score"].isna()
    if bad.any():
        row = df.loc[bad].iloc[0]
        raise ObservationFormatError(f"Non-numeric start or score in observation row: {' '.join(row.iloc[:ncols].astype(str))}")
    return df.sort_values([0, "_start"], kind="mergesort").reset_index(drop=True)

# ────────────────────────────────────────────────────────────────────────────
# Collate
# ────────────────────────────────────────────────────────────────────────────

def pick_exemplars(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return df
    chrom = df[0].to_numpy()
    state = df[STATE_COLUMN - 1].to_numpy()
    new_run = np.concatenate([[True], (chrom[1:] != chrom[:-1]) | (state[1:] != state[:-1])])
    runs = pd.Series(new_run.cumsum(), index=df.index)

    # idxmax keeps the first maximum; scanning backwards makes that the last one
    rev = df.iloc[::-1]
    best = rev["_score"].groupby(runs.iloc[::-1], sort=False).idxmax()
    ex = df.loc[best.to_numpy()].sort_index()
    return ex.sort_values("_score", ascending=False, kind="mergesort")

def write_exemplars(ex: pd.DataFrame, path: str):
    ex.drop(columns=["_start", "_score"]).to_csv(path, sep="\t", header=False, index=False)

# ────────────────────────────────────────────────────────────────────────────
# QC
# ────────────────────────────────────────────────────────────────────────────

def write_qc(df: pd.DataFrame, ex: pd.DataFrame, pdf_path: str):
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    from matplotlib.backends.backend_pdf import PdfPages

    with PdfPages(pdf_path) as pdf:
        plt.figure()
        scores = df["_score"].to_numpy() if not df.empty else np.array([0.0])
        plt.hist(scores, bins=100)
        plt.yscale("log")
        plt.xlabel("metric")
        plt.title("Per-interval metric")
        pdf.savefig(); plt.close()

        plt.figure()
        counts = ex[STATE_COLUMN - 1].astype(int).value_counts().sort_index() if not ex.empty else pd.Series(dtype=int)
        plt.bar(counts.index.astype(str), counts.to_numpy())
        plt.xlabel("state"); plt.ylabel("exemplar regions")
        plt.title("Exemplar regions per top state")
        pdf.savefig(); plt.close()

# ────────────────────────────────────────────────────────────────────────────
# CLI
# ────────────────────────────────────────────────────────────────────────────

def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Pick exemplar regions from per-chromosome observation files.")
    p.add_argument("observations", nargs="+", help="Observation files from compute_epilogos_per_chrom.py")
    p.add_argument("--metric", type=int, required=True, choices=sorted(METRIC_NAMES))
    p.add_argument("--out", required=True, help="exemplarRegions.txt")
    p.add_argument("--qc-pdf", default=None, help="Optional QC PDF")
    p.add_argument("--quiet", action="store_true")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return p.parse_args(argv)

def main(argv: Optional[List[str]] = None) -> int:
    args = get_args(argv)
    set_quiet(args.quiet)
    try:
        df = load_observations(args.observations, args.metric)
        log("LOAD", f"{len(df):,} intervals from {len(args.observations)} file(s)")
        ex = pick_exemplars(df)
        write_exemplars(ex, args.out)
        log("OUTPUT", f"{len(ex):,} exemplar regions → {args.out}")
        if args.qc_pdf:
            try:
                write_qc(df, ex, args.qc_pdf)
                log("OUTPUT", f"QC → {args.qc_pdf}")
            except Exception as e:
                log_warning(f"QC failed: {e}")
    except EpilogosError as e:
        log_error(str(e))
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
