from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from fleet_telemetry.data_processing.schemas import (
    ENTITY_COL,
    TIME_COL,
    Channel,
    TransitionCode,
    channel_name,
    code_column,
    state_column,
)

log = logging.getLogger(__name__)

_ACTIVATE = int(TransitionCode.ACTIVATE)
_DEACTIVATE = int(TransitionCode.DEACTIVATE)


def _fold(codes: Sequence[int]) -> Tuple[np.ndarray, int]:
    """
    Single left-to-right scan over one timeline/channel.

    A DEACTIVATE seen before any ACTIVATE (and not at index 0) means the channel
    was already on when the log started: every earlier state is rewritten to 1.
    This fires again for each further un-activated DEACTIVATE, overwriting the
    inactive stretch in between.
    """
    codes = np.asarray(codes, dtype=np.int64)
    states = np.zeros(len(codes), dtype=np.int8)
    active = 0
    ever_activated = False
    n_inferred = 0

    for i, code in enumerate(codes):
        if code == _DEACTIVATE and not ever_activated and i > 0:
            states[:i] = 1
            n_inferred += 1

        if code == _DEACTIVATE:
            active = 0
        elif code == _ACTIVATE:
            active = 1
            ever_activated = True

        states[i] = active

    return states, n_inferred


def reconstruct(codes: Sequence[int]) -> np.ndarray:
    """Binary state (int8 0/1) for every sample of one ordered timeline.

    Precondition: `codes` is in ascending timestamp order. Not checked.
    """
    states, _ = _fold(codes)
    return states


def count_boundary_inferences(codes: Sequence[int]) -> int:
    _, n = _fold(codes)
    return n


def reconstruct_timeline(timeline: pd.DataFrame, channel: Channel | str) -> pd.Series:
    """Reconstruct one channel of an already-sorted entity timeline."""
    col = code_column(channel)
    if col not in timeline.columns:
        raise KeyError(f"Missing code column '{col}'. Run classify_frame first.")
    states = reconstruct(timeline[col].to_numpy())
    return pd.Series(states, index=timeline.index, name=state_column(channel))


def _reconstruct_entity(
    entity_id: object,
    timeline: pd.DataFrame,
    time_col: str,
    channels: List[str],
) -> Tuple[object, pd.Index, Dict[str, np.ndarray], Dict[str, int]]:
    # Stable sort keeps arrival order for equal timestamps
    timeline = timeline.sort_values(time_col, kind="mergesort")
    states: Dict[str, np.ndarray] = {}
    inferred: Dict[str, int] = {}
    for name in channels:
        states[name], inferred[name] = _fold(timeline[code_column(name)].to_numpy())
    return entity_id, timeline.index, states, inferred


def reconstruct_states(
    events: pd.DataFrame,
    channels: Iterable[Channel | str],
    entity_col: str = ENTITY_COL,
    time_col: str = TIME_COL,
    n_jobs: int = 1,
    return_diagnostics: bool = False,
    progress: bool = False,
):
    """
    Run the reconstructor on every (entity, channel) timeline of a classified table.

    Rows are partitioned by entity (lexicographic order) and stable-sorted by time
    inside each partition. States are written back by index, so the returned frame
    keeps the row count and order of `events`.

    Returns the frame, or (frame, diagnostics) when return_diagnostics is set;
    diagnostics has one row per entity and channel with n_samples, active_samples
    and boundary_inferences.
    """
    names = [channel_name(c) for c in channels]
    for c in [entity_col, time_col] + [code_column(n) for n in names]:
        if c not in events.columns:
            raise KeyError(f"Missing column '{c}'. Available columns: {list(events.columns)}")
    if not events.index.is_unique:
        raise ValueError("events index must be unique to merge states back by row.")

    out = events.copy()
    for name in names:
        out[state_column(name)] = np.zeros(len(out), dtype=np.int8)

    diag_cols = [entity_col, "channel", "n_samples", "active_samples", "boundary_inferences"]
    if out.empty:
        log.info("No events to reconstruct.")
        return (out, pd.DataFrame(columns=diag_cols)) if return_diagnostics else out

    groups = sorted(events.groupby(entity_col, sort=False), key=lambda kv: str(kv[0]))
    if progress:
        groups = tqdm(groups, desc="Reconstructing entities")
    if int(n_jobs) == 1:
        results = [_reconstruct_entity(eid, g, time_col, names) for eid, g in groups]
    else:
        results = Parallel(n_jobs=int(n_jobs))(
            delayed(_reconstruct_entity)(eid, g, time_col, names) for eid, g in groups
        )

    diag_rows: List[Dict[str, object]] = []
    for entity_id, index, states, inferred in results:
        for name in names:
            out.loc[index, state_column(name)] = states[name]
            diag_rows.append(
                {
                    entity_col: entity_id,
                    "channel": name,
                    "n_samples": int(len(index)),
                    "active_samples": int(states[name].sum()),
                    "boundary_inferences": int(inferred[name]),
                }
            )

    for name in names:
        out[state_column(name)] = out[state_column(name)].astype(np.int8)

    diagnostics = pd.DataFrame(diag_rows, columns=diag_cols)
    total_inferred = int(diagnostics["boundary_inferences"].sum())
    log.info(
        "Reconstructed %d channels over %d entities (n=%d rows, boundary inferences=%d)",
        len(names),
        len(results),
        len(out),
        total_inferred,
    )
    if return_diagnostics:
        return out, diagnostics
    return out
