from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from tqdm import tqdm

from fleet_telemetry.data_processing.schemas import ACTIVITY_COL, ENTITY_COL, SOURCE_COL, TIME_COL

log = logging.getLogger(__name__)


DEFAULT_COLUMNS: Dict[str, str] = {
    "entity": "vehicle_id",
    "timestamp": "timestamp",
    "activity": "activity",
}

_CANONICAL = {"entity": ENTITY_COL, "timestamp": TIME_COL, "activity": ACTIVITY_COL}


def _find_files(root: Path, globs: List[str]) -> List[Path]:
    files: List[Path] = []
    for g in globs:
        files.extend(root.glob(g))
    return sorted(set([f for f in files if f.is_file()]))


def normalize_event_columns(
    df: pd.DataFrame,
    columns: Optional[Dict[str, str]] = None,
    keep_columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Rename raw columns to the canonical names and prune everything else:
      entity_id, timestamp, activity (+ keep_columns, + source_file if present)

    The activity column is optional in the raw file; it is added as all-missing
    so every label classifies to NONE.
    """
    mapping = dict(DEFAULT_COLUMNS)
    mapping.update(columns or {})

    rename: Dict[str, str] = {}
    for role, canonical in _CANONICAL.items():
        raw = mapping[role]
        if raw in df.columns:
            rename[raw] = canonical
        elif role != "activity":
            raise KeyError(f"Missing {role} column '{raw}'. Available columns: {list(df.columns)}")

    out = df.rename(columns=rename)
    if ACTIVITY_COL not in out.columns:
        out[ACTIVITY_COL] = None

    keep = [ENTITY_COL, TIME_COL, ACTIVITY_COL]
    for c in keep_columns or []:
        if c not in out.columns:
            raise KeyError(f"keep_columns entry '{c}' not found. Available columns: {list(df.columns)}")
        if c not in keep:
            keep.append(c)
    if SOURCE_COL in out.columns and SOURCE_COL not in keep:
        keep.append(SOURCE_COL)
    return out[keep].copy()


def parse_event_table(
    df: pd.DataFrame,
    columns: Optional[Dict[str, str]] = None,
    keep_columns: Optional[List[str]] = None,
    timestamp_format: Optional[str] = None,
) -> pd.DataFrame:
    df = normalize_event_columns(df, columns=columns, keep_columns=keep_columns)
    # "mixed" parses each row on its own; AVL exports mix precisions and ISO forms
    df[TIME_COL] = pd.to_datetime(df[TIME_COL], errors="coerce", utc=True, format=timestamp_format or "mixed")

    n_before = len(df)
    df = df.dropna(subset=[ENTITY_COL, TIME_COL]).reset_index(drop=True)
    if len(df) < n_before:
        log.warning("Dropped %d rows with missing entity id or unparsable timestamp", n_before - len(df))

    df[ENTITY_COL] = df[ENTITY_COL].astype(str).str.strip()
    label = df[ACTIVITY_COL]
    df[ACTIVITY_COL] = label.where(label.isna(), label.astype(str).str.strip())
    return df


def load_fleet_events(cfg: Dict) -> pd.DataFrame:
    """
    Load raw AVL logs into one canonical events table, rows in arrival order
    (sorted file order, then line order inside each file).
    """
    inp = cfg["input"]
    raw_dir = Path(inp["raw_dir"])
    files = _find_files(raw_dir, inp.get("file_globs", ["**/*.csv"]))
    if not files:
        raise FileNotFoundError(f"No fleet event files found under: {raw_dir}")

    entity_raw = {**DEFAULT_COLUMNS, **(inp.get("columns") or {})}["entity"]

    parts: List[pd.DataFrame] = []
    for fp in tqdm(files, desc="Loading fleet event files"):
        try:
            # Read ids as text so "007" and "7" stay different vehicles
            header = pd.read_csv(fp, nrows=0)
            dtype = {entity_raw: str} if entity_raw in header.columns else None
            raw = pd.read_csv(fp, dtype=dtype)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            log.warning("Failed reading %s: %s", fp.name, e)
            continue
        raw[SOURCE_COL] = fp.name
        parts.append(raw)

    if not parts:
        raise RuntimeError(f"None of the {len(files)} files under {raw_dir} could be read.")

    events = parse_event_table(
        pd.concat(parts, ignore_index=True),
        columns=inp.get("columns"),
        keep_columns=inp.get("keep_columns"),
        timestamp_format=inp.get("timestamp_format"),
    )
    if events.empty:
        raise RuntimeError("No fleet events left after parsing. Check input.columns / timestamp_format.")

    log.info(
        "Loaded fleet events: n=%d entities=%d files=%d",
        len(events),
        events[ENTITY_COL].nunique(),
        len(parts),
    )
    return events
