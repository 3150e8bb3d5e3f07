#!/usr/bin/env python3
# =============================================================================
# compute_epilogos_per_chrom.py — per-chromosome divergence scores (streaming)
# -----------------------------------------------------------------------------
# Usage (full mode):
#   compute_epilogos_per_chrom.py infile metric N infileQ outfileObs outfileScores chrom [infileQ2]
# Usage (null mode):
#   compute_epilogos_per_chrom.py infile metric N infileQ1 infileQ2 outfileNulls
#
#   infile   : tab-delimited integers, one line per genomic interval
#              full mode : start end v1 v2 …      null mode : v1 v2 …
#              S1 → state tallies, S2 → unordered state pair tallies,
#              S3 → ordered state pair IDs, one per epigenome pair
#              (group 1 values first, then group 2)
#   metric   : 1 (S1, KL), 2 (S2, KLs) or 3 (S3, KLss)
#   N        : total number of sites genome-wide
#   infileQ  : background tallies (Q, Q*, Q**) for group 1; infileQ2 for group 2
#
# Outputs:
#   outfileObs    : chrom start end maxState |contrib| sign [(s1,s2) |term| sign] total
#   outfileScores : chrom start end + signed per-state contributions (%.4g)
#   outfileNulls  : one metric value per line of permuted input
#
# Implementation notes:
#   • Input is STREAMED one line at a time; memory does not grow with #lines.
#   • Any malformed line aborts the run (exit 1) naming file, line and column.
# =============================================================================

from __future__ import annotations
import argparse, sys, time
from contextlib import ExitStack
from typing import Iterable, Optional

from epilogos_common import (
    METRIC_NAMES, VERSION, EpilogosError, ObservationFormatError,
    log, log_error, log_info, numbered_lines, open_text, set_quiet,
)
from kl_metrics import make_model
from kl_output import NullWriter, ObservationWriter

# =============================================================================
# STREAMING DRIVER
# =============================================================================

def parse_input_write_output(fh: Iterable[str], filename: str, model, report_every: int = 0) -> int:
    """
    Feed every line of `fh` through `model`; return the number of lines processed.

    Raises:
        ObservationFormatError on a non-integer field, a rejected value or a
        wrong number of columns.
    """
    num_expected = model.size if model.writing_nulls else model.size + 2
    linenum = 0
    for linenum, ln in numbered_lines(fh, filename, ObservationFormatError):
        fields = ln.rstrip("\r\n").split("\t")
        for col, tok in enumerate(fields, 1):
            # plain ASCII digits only: int() would also take " 2", "+2" and "2_00"
            if not (tok.isascii() and tok.isdigit()):
                if tok.startswith("-") and tok[1:].isascii() and tok[1:].isdigit():
                    raise ObservationFormatError(
                        f"Negative value {tok} in column {col} of line {linenum} of file {filename}."
                    )
                raise ObservationFormatError(
                    f"Non-integer value \"{tok}\" in column {col} of line {linenum} of file {filename}."
                )
            value = int(tok)
            try:
                model.process_input_value(value)
            except ObservationFormatError as e:
                raise ObservationFormatError(
                    f"{e} The error was detected in column {col} of line {linenum} of file {filename}."
                ) from e
        if len(fields) != num_expected:
            raise ObservationFormatError(
                f"Expected to find {num_expected} columns of integers on line {linenum} of {filename}, "
                f"but instead found {len(fields)}."
            )
        model.compute_and_write_metric()
        if report_every and linenum % report_every == 0:
            log_info(f"{filename}: {linenum:,} lines")
    return linenum

# =============================================================================
# CLI
# =============================================================================

USAGE = """\
  %(prog)s infile metric N infileQ outfileObs outfileScores chrom [infileQ2]
  %(prog)s infile metric N infileQ1 infileQ2 outfileNulls"""

def get_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        usage=USAGE,
        description="Per-interval KL-type divergence of observed states vs. a genome-wide background.",
        epilog="The second form writes only the metric, to build a null distribution from permuted input.",
    )
    p.add_argument("infile", help="Observation file (tab-delimited integers; .gz OK)")
    p.add_argument("metric", type=int, choices=sorted(METRIC_NAMES), help="1 (S1), 2 (S2) or 3 (S3)")
    p.add_argument("nsites", type=int, metavar="N", help="Number of sites genome-wide")
    p.add_argument("infileQ", help="Background tallies for group 1")
    p.add_argument("outputs", nargs="+", metavar="...",
                   help="outfileObs outfileScores chrom [infileQ2] | infileQ2 outfileNulls")
    p.add_argument("--report-every", type=int, default=0, help="Log progress every K lines (0 = off)")
    p.add_argument("--quiet", action="store_true")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = p.parse_args(argv)

    args.obs = args.scores = args.nulls = args.chrom = args.infileQ2 = None
    if len(args.outputs) == 2:
        args.infileQ2, args.nulls = args.outputs
    elif len(args.outputs) in (3, 4):
        args.obs, args.scores, args.chrom = args.outputs[:3]
        if len(args.outputs) == 4:
            args.infileQ2 = args.outputs[3]
    else:
        p.error(f"expected 6, 7 or 8 positional arguments, got {4 + len(args.outputs)}")
    if args.nsites < 1:
        p.error(f"N must be a positive integer (got {args.nsites})")
    return args

def run(args: argparse.Namespace) -> int:
    start_t = time.time()
    run_mode = "nulls" if args.nulls else "observations"
    log("START", f"compute_epilogos_per_chrom.py v{VERSION} metric={METRIC_NAMES[args.metric]} mode={run_mode}")

    with ExitStack() as stack:
        def open_or_fail(path: str, mode: str):
            try:
                return stack.enter_context(open_text(path, mode))
            except OSError as e:
                action = "reading" if mode == "r" else "writing"
                raise EpilogosError(f"Unable to open file \"{path}\" for {action} ({e.strerror}).") from e

        infile = open_or_fail(args.infile, "r")
        backgrounds = [args.infileQ] + ([args.infileQ2] if args.infileQ2 else [])
        bg_handles = [open_or_fail(q, "r") for q in backgrounds]

        if args.nulls:
            writer = NullWriter(open_or_fail(args.nulls, "w"))
        else:
            writer = ObservationWriter(open_or_fail(args.obs, "w"), open_or_fail(args.scores, "w"), args.chrom)

        model = make_model(args.metric, writer)
        for path, fh in zip(backgrounds, bg_handles):
            bg = model.add_background(fh, path, args.nsites)
            log("BACKGROUND", f"{path}: {bg.num_states} states, group size {bg.group_size}")

        log("STREAM", f"{args.infile}: {model.size} values per line ({len(backgrounds)} group(s))")
        n = parse_input_write_output(infile, args.infile, model, report_every=max(0, args.report_every))

    log("COMPLETE", f"{n:,} lines → {args.nulls or args.obs} (wall={time.time() - start_t:.1f}s)")
    return 0

def main(argv: Optional[list] = None) -> int:
    args = get_args(argv)
    set_quiet(args.quiet)
    try:
        return run(args)
    except EpilogosError as e:
        log_error(str(e))
        return 1
    except OSError as e:
        log_error(f"Unable to write output: {e}")
        return 1

# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        log_error("Interrupted by user")
        sys.exit(130)
