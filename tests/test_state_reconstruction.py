"""Tests for per-entity, per-channel binary state reconstruction."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from fleet_telemetry.data_processing.event_classifier import classify_frame
from fleet_telemetry.data_processing.schemas import TransitionCode
from fleet_telemetry.data_processing.state_reconstruction import (
    count_boundary_inferences,
    reconstruct,
    reconstruct_states,
    reconstruct_timeline,
)

N = TransitionCode.NONE
A = TransitionCode.ACTIVATE
D = TransitionCode.DEACTIVATE


@pytest.mark.parametrize(
    "codes, expected",
    [
        ([N, A, N, D, N], [0, 1, 1, 0, 0]),
        ([D, N, N], [0, 0, 0]),
        ([N, D, N], [1, 0, 0]),
        ([N, N, N, N], [0, 0, 0, 0]),
        ([A, A, N, D, D], [1, 1, 1, 0, 0]),
        ([N, N, A, N, D, N, A], [0, 0, 1, 1, 0, 0, 1]),
    ],
)
def test_reconstruct_known_timelines(codes, expected) -> None:
    assert reconstruct(codes).tolist() == expected


def test_empty_timeline_is_a_noop() -> None:
    out = reconstruct([])
    assert len(out) == 0
    assert count_boundary_inferences([]) == 0


def test_boundary_inference_only_before_first_activation() -> None:
    # D after an A is an ordinary deactivation; nothing earlier is rewritten
    assert reconstruct([N, A, D, N, N, D]).tolist() == [0, 1, 0, 0, 0, 0]
    assert count_boundary_inferences([N, A, D, N, N, D]) == 0


def test_deactivate_at_first_sample_never_infers() -> None:
    assert count_boundary_inferences([D, N, A]) == 0
    assert reconstruct([D, N, A]).tolist() == [0, 0, 1]


def test_repeated_unactivated_deactivations_rewrite_again() -> None:
    codes = [N, D, N, D, N]
    assert reconstruct(codes).tolist() == [1, 1, 1, 0, 0]
    assert count_boundary_inferences(codes) == 2


def test_forward_fill_between_transitions() -> None:
    rng = np.random.default_rng(7)
    codes = rng.choice([0, 0, 0, 0, 1, 2], size=200)
    codes[0] = 1  # no boundary inference in this timeline
    states = reconstruct(codes)

    last = 0
    for code, state in zip(codes, states):
        if code == A:
            last = 1
        elif code == D:
            last = 0
        assert state == last


def test_states_change_only_at_transitions_after_activation() -> None:
    codes = [N, A, N, N, D, N, A, N]
    states = reconstruct(codes)
    for i in range(1, len(codes)):
        if states[i] != states[i - 1]:
            assert codes[i] in (A, D)


def test_reconstruction_is_order_sensitive() -> None:
    codes = [N, A, N, D, N]
    assert reconstruct(codes).tolist() != reconstruct(codes[::-1])[::-1].tolist()


def test_reconstruct_timeline_reads_channel_column() -> None:
    timeline = pd.DataFrame({"plow_code": [N, D, N], "spreader_code": [A, N, N]}, index=[10, 11, 12])
    plow = reconstruct_timeline(timeline, "plow")
    assert plow.name == "plow_state"
    assert plow.index.tolist() == [10, 11, 12]
    assert plow.tolist() == [1, 0, 0]

    with pytest.raises(KeyError, match="classify_frame"):
        reconstruct_timeline(timeline, "ignition")


def _events(rows):
    df = pd.DataFrame(rows, columns=["entity_id", "timestamp", "activity"])
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return classify_frame(df, channels=["plow", "spreader"])


def test_reconstruct_states_preserves_row_order_and_isolates_entities() -> None:
    # Interleaved, out-of-order arrival across two trucks
    events = _events(
        [
            ("T2", "2024-01-05 06:02", "Plow Up"),
            ("T1", "2024-01-05 06:00", None),
            ("T1", "2024-01-05 06:02", "Plow Down"),
            ("T2", "2024-01-05 06:00", None),
            ("T1", "2024-01-05 06:01", "Spreader On"),
            ("T2", "2024-01-05 06:01", None),
            ("T1", "2024-01-05 06:03", None),
        ]
    )
    out = reconstruct_states(events, channels=["plow", "spreader"])

    assert len(out) == len(events)
    assert out.index.tolist() == events.index.tolist()
    assert out["activity"].tolist() == events["activity"].tolist()
    # T1 sorted: 06:00 none, 06:01 spreader on, 06:02 plow down, 06:03 none
    # T2 sorted: 06:00 none, 06:01 none, 06:02 plow up -> earlier rows inferred on
    assert out["plow_state"].tolist() == [0, 0, 1, 1, 0, 1, 1]
    assert out["spreader_state"].tolist() == [0, 0, 1, 0, 1, 0, 1]
    assert out["plow_state"].dtype == np.int8


def test_reconstruct_states_ties_keep_arrival_order() -> None:
    events = _events(
        [
            ("T1", "2024-01-05 06:00", "Plow Down"),
            ("T1", "2024-01-05 06:00", "Plow Up"),
            ("T1", "2024-01-05 06:01", None),
        ]
    )
    out = reconstruct_states(events, channels=["plow"])
    assert out["plow_state"].tolist() == [1, 0, 0]


def test_reconstruct_states_diagnostics() -> None:
    events = _events(
        [
            ("T1", "2024-01-05 06:00", None),
            ("T1", "2024-01-05 06:01", "Plow Up"),
            ("T2", "2024-01-05 06:00", "Plow Down"),
        ]
    )
    _, diag = reconstruct_states(events, channels=["plow"], return_diagnostics=True)
    diag = diag.set_index("entity_id")
    assert diag.loc["T1", "boundary_inferences"] == 1
    assert diag.loc["T1", "active_samples"] == 1
    assert diag.loc["T2", "n_samples"] == 1
    assert diag.loc["T2", "boundary_inferences"] == 0


def test_reconstruct_states_parallel_matches_sequential() -> None:
    rows = []
    for truck in ("T1", "T2", "T3"):
        for minute, label in enumerate([None, "Plow Up", None, "Plow Down", None, "Spreader On"]):
            rows.append((truck, f"2024-01-05 06:{minute:02d}", label))
    events = _events(rows)

    seq = reconstruct_states(events, channels=["plow", "spreader"], n_jobs=1)
    par = reconstruct_states(events, channels=["plow", "spreader"], n_jobs=2)
    pd.testing.assert_frame_equal(seq, par)


def test_reconstruct_states_empty_table() -> None:
    events = _events([])
    out, diag = reconstruct_states(events, channels=["plow"], return_diagnostics=True)
    assert out.empty
    assert "plow_state" in out.columns
    assert diag.empty


def test_reconstruct_states_requires_code_columns() -> None:
    events = _events([("T1", "2024-01-05 06:00", None)])
    with pytest.raises(KeyError, match="ignition_code"):
        reconstruct_states(events, channels=["ignition"])
