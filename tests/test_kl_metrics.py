"""
Per-line metric engines (S1, S2, S3) driven through in-memory sinks.
"""

from __future__ import annotations

import io
import math

import numpy as np
import pytest

from epilogos_common import BackgroundFormatError, ExcessColumnsError, ObservationFormatError
from kl_metrics import KLModel, KLsModel, KLssModel, LineRouter, make_model
from kl_output import NullWriter, ObservationWriter


class RecordingWriter:
    writes_nulls = False

    def __init__(self):
        self.rows = []

    def write(self, begin, end, contributions, total, top_pair=None, top_pair_term=0.0):
        self.rows.append({
            "begin": begin,
            "end": end,
            "contributions": [float(c) for c in contributions],
            "total": total,
            "top_pair": top_pair,
            "top_pair_term": top_pair_term,
        })


def build(metric, writer, *backgrounds, nsites):
    model = make_model(metric, writer)
    for i, bg in enumerate(backgrounds, 1):
        model.add_background(io.StringIO(bg + "\n"), f"Q{i}.txt", nsites)
    return model


def feed(model, values):
    for v in values:
        model.process_input_value(v)
    model.compute_and_write_metric()


def observation_model(metric, *backgrounds, nsites):
    obs, scores = io.StringIO(), io.StringIO()
    model = build(metric, ObservationWriter(obs, scores, "chr1"), *backgrounds, nsites=nsites)
    return model, obs, scores

# ── S1 ──────────────────────────────────────────────────────────────────────

def test_handcrafted_single_group_score() -> None:
    # N=2 sites, 2 epigenomes, background [2,2], observed [2,0]
    rec = RecordingWriter()
    model = build(1, rec, "2\t2", nsites=2)
    feed(model, [0, 200, 2, 0])
    expected = (2 / (math.log(2) * 2)) * (math.log(2) + (math.log(2) - math.log(2)))
    assert rec.rows[0]["total"] == pytest.approx(expected)
    assert rec.rows[0]["contributions"] == pytest.approx([1.0, 0.0])


def test_handcrafted_single_group_output_rows() -> None:
    model, obs, scores = observation_model(1, "2\t2", nsites=2)
    feed(model, [0, 200, 2, 0])
    assert obs.getvalue() == "chr1\t0\t200\t1\t1\t1\t1\n"
    assert scores.getvalue() == "chr1\t0\t200\t1\t0\n"


def test_unseen_background_state_uses_sentinel() -> None:
    rec = RecordingWriter()
    model = build(1, rec, "4\t0", nsites=2)
    feed(model, [0, 200, 1, 1])
    row = rec.rows[0]
    assert np.isfinite(row["contributions"]).all()
    assert row["contributions"] == pytest.approx([-0.5, -999999.0])
    # single group: signed sum, no absolute values
    assert row["total"] == pytest.approx(-999999.5)


def test_sentinel_state_reported_as_top_contributor() -> None:
    model, obs, scores = observation_model(1, "4\t0", nsites=2)
    feed(model, [0, 200, 1, 1])
    fields = obs.getvalue().rstrip("\n").split("\t")
    assert fields[3:6] == ["2", "999999", "-1"]
    assert scores.getvalue() == "chr1\t0\t200\t-0.5\t-1e+06\n"


def test_two_groups_total_is_sum_of_magnitudes() -> None:
    model, obs, scores = observation_model(1, "2\t2", "2\t2", nsites=2)
    assert model.size == 4
    feed(model, [0, 200, 2, 0, 0, 2])
    assert obs.getvalue() == "chr1\t0\t200\t1\t1\t1\t2\n"
    assert scores.getvalue() == "chr1\t0\t200\t1\t-1\n"


def test_group_two_sentinel_overrides_group_one_term() -> None:
    rec = RecordingWriter()
    model = build(1, rec, "2\t2", "4\t0", nsites=2)
    feed(model, [0, 1, 2, 0, 0, 1])
    assert rec.rows[0]["contributions"] == pytest.approx([1.0, 999999.0])
    assert rec.rows[0]["total"] == pytest.approx(1000000.0)


def test_first_occurrence_wins_ties() -> None:
    rec = RecordingWriter()
    model = build(1, rec, "2\t2", "2\t2", nsites=2)
    feed(model, [0, 200, 0, 2, 2, 0])
    assert rec.rows[0]["contributions"] == pytest.approx([-1.0, 1.0])


def test_counters_reset_between_lines() -> None:
    model, obs, _ = observation_model(1, "2\t2", nsites=2)
    feed(model, [0, 200, 2, 0])
    feed(model, [200, 400, 0, 0])
    assert obs.getvalue().splitlines()[1] == "chr1\t200\t400\t1\t0\t-1\t0"


def test_null_mode_has_no_coordinates() -> None:
    nulls = io.StringIO()
    model = build(1, NullWriter(nulls), "2\t2", "2\t2", nsites=2)
    assert model.writing_nulls
    assert model.size == 4
    feed(model, [2, 0, 0, 2])
    feed(model, [1, 1, 1, 1])
    assert nulls.getvalue() == "2\n0\n"


def test_excess_columns_raise() -> None:
    model = build(1, RecordingWriter(), "2\t2", nsites=2)
    for v in (0, 200, 1, 1):
        model.process_input_value(v)
    with pytest.raises(ExcessColumnsError, match="expected 2"):
        model.process_input_value(1)


def test_tally_larger_than_group_rejected() -> None:
    model = build(1, RecordingWriter(), "2\t2", nsites=2)
    model.process_input_value(0)
    model.process_input_value(200)
    with pytest.raises(ObservationFormatError, match="exceeds"):
        model.process_input_value(3)


def test_tally_bound_is_per_group() -> None:
    # group 1 has 2 epigenomes, group 2 has 4
    model = build(1, RecordingWriter(), "2\t2", "4\t4", nsites=2)
    model.process_input_value(0)
    model.process_input_value(200)
    with pytest.raises(ObservationFormatError, match=r"group 1 exceeds .*\(2\)"):
        model.process_input_value(4)


def test_mismatched_state_counts_rejected() -> None:
    model = KLModel(RecordingWriter())
    model.add_background(io.StringIO("2\t2\n"), "Q1.txt", 2)
    with pytest.raises(BackgroundFormatError, match="Q2.txt"):
        model.add_background(io.StringIO("1\t1\t2\n"), "Q2.txt", 2)


def test_log_cache_grows_for_larger_second_group() -> None:
    rec = RecordingWriter()
    model = build(1, rec, "2\t2", "4\t4", nsites=2)
    feed(model, [0, 200, 0, 0, 4, 0])
    # group 2: 4 epigenomes, weight log2 - log4
    expected = -(4 / (math.log(2) * 4)) * (math.log(4) + math.log(2) - math.log(4))
    assert rec.rows[0]["contributions"][0] == pytest.approx(expected)

# ── S2 ──────────────────────────────────────────────────────────────────────

def test_state_pair_term_split_between_states() -> None:
    model, obs, scores = observation_model(2, "1\t1\t1", nsites=3)
    assert isinstance(model, KLsModel)
    feed(model, [0, 200, 0, 1, 0])
    assert obs.getvalue() == "chr1\t0\t200\t1\t0.792481\t1\t(1,2)\t1.58496\t1\t1.58496\n"
    assert scores.getvalue() == "chr1\t0\t200\t0.7925\t0.7925\n"


def test_diagonal_pair_goes_wholly_to_one_state() -> None:
    rec = RecordingWriter()
    model = build(2, rec, "1\t1\t1", nsites=3)
    feed(model, [0, 200, 0, 0, 1])
    term = math.log(3) / math.log(2)
    assert rec.rows[0]["contributions"] == pytest.approx([0.0, term])
    assert rec.rows[0]["top_pair"] == (2, 2)


def test_state_pairs_two_groups() -> None:
    rec = RecordingWriter()
    model = build(2, rec, "1\t1\t1", "1\t1\t1", nsites=3)
    assert model.size == 6
    feed(model, [0, 1, 1, 0, 0, 0, 0, 1])
    term = math.log(3) / math.log(2)
    row = rec.rows[0]
    assert row["total"] == pytest.approx(2 * term)
    # (1,1) and (2,2) are diagonal: each term lands wholly on its state
    assert row["contributions"] == pytest.approx([term, -term])
    assert row["top_pair"] == (1, 1)
    assert row["top_pair_term"] == pytest.approx(term)


def test_state_pairs_group_two_sentinel_overrides_term() -> None:
    # group 2 never saw (2,2) genome-wide
    model, obs, scores = observation_model(2, "1\t1\t1", "2\t1\t0", nsites=3)
    feed(model, [0, 200, 0, 0, 1, 0, 0, 1])
    assert obs.getvalue() == "chr1\t0\t200\t2\t999999\t1\t(2,2)\t999999\t1\t999999\n"
    assert scores.getvalue() == "chr1\t0\t200\t0\t1e+06\n"


def test_state_pair_tally_bound_is_per_group() -> None:
    # 2 epigenomes (1 pair) in group 1, 7 epigenomes (21 pairs) in group 2
    model = build(2, RecordingWriter(), "1\t1\t1", "20\t20\t20", nsites=3)
    model.process_input_value(0)
    model.process_input_value(200)
    with pytest.raises(ObservationFormatError, match="group 1"):
        model.process_input_value(2)

# ── S3 ──────────────────────────────────────────────────────────────────────

def test_epigenome_pair_observation_folds_onto_pair_group() -> None:
    model, obs, scores = observation_model(3, "2\t1\t1\t0", nsites=4)
    assert isinstance(model, KLssModel)
    assert model.size == 1
    # pair id 3 = (2,1), folded onto (1,2)
    feed(model, [0, 200, 3])
    assert obs.getvalue() == "chr1\t0\t200\t1\t1\t1\t(1,2)\t2\t1\t2\n"
    assert scores.getvalue() == "chr1\t0\t200\t1\t1\n"


def test_epigenome_pair_sentinel() -> None:
    rec = RecordingWriter()
    model = build(3, rec, "2\t1\t1\t0", nsites=4)
    feed(model, [0, 200, 4])
    row = rec.rows[0]
    assert row["contributions"] == pytest.approx([0.0, 999999.0])
    assert row["top_pair"] == (2, 2)
    assert row["total"] == pytest.approx(999999.0)


def test_weights_depend_on_epigenome_pair() -> None:
    rec = RecordingWriter()
    model = build(3, rec, "2\t1\t1\t0\n1\t2\t2\t0\n4\t4\t4\t4", nsites=4)
    assert model.size == 3
    feed(model, [0, 200, 1, 1, 1])
    assert rec.rows[0]["total"] == pytest.approx(1 / 3 + 2 / 3)
    assert rec.rows[0]["top_pair"] == (1, 1)


def test_epigenome_pairs_two_groups_null_mode() -> None:
    nulls = io.StringIO()
    model = build(3, NullWriter(nulls), "2\t1\t1\t0", "2\t1\t1\t0", nsites=4)
    assert model.size == 2
    feed(model, [1, 3])
    feed(model, [3, 2])
    assert nulls.getvalue() == "3\n0\n"


def test_epigenome_pairs_two_groups_keep_sign() -> None:
    # group 1 sees (1,1), group 2 sees (2,1) which folds onto (1,2) and dominates
    model, obs, scores = observation_model(3, "2\t1\t1\t0", "2\t1\t1\t0", nsites=4)
    assert model.size == 2
    feed(model, [0, 200, 1, 3])
    assert obs.getvalue() == "chr1\t0\t200\t2\t1\t-1\t(1,2)\t2\t-1\t3\n"
    assert scores.getvalue() == "chr1\t0\t200\t0\t-1\n"


def test_state_pair_id_out_of_range() -> None:
    model = build(3, RecordingWriter(), "2\t1\t1\t0", nsites=4)
    model.process_input_value(0)
    model.process_input_value(200)
    with pytest.raises(ObservationFormatError, match="1..4"):
        model.process_input_value(5)

# ── shared ──────────────────────────────────────────────────────────────────

def test_line_router_order() -> None:
    router = LineRouter(expects_coordinates=True)
    router.set_capacity(0, 2)
    router.set_capacity(1, 1)
    slots = [router.route(v) for v in (10, 20, 7, 8, 9)]
    assert slots == [None, None, (0, 0), (0, 1), (1, 0)]
    assert (router.begin, router.end) == (10, 20)
    with pytest.raises(ExcessColumnsError, match="expected 3"):
        router.route(1)


def test_invalid_metric() -> None:
    with pytest.raises(ValueError):
        make_model(4, RecordingWriter())
