from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from fleet_telemetry.data_processing.schemas import (
    ACTIVITY_COL,
    Channel,
    ChannelTriggers,
    TransitionCode,
    channel_name,
    code_column,
)

log = logging.getLogger(__name__)


# AVL activity phrases. Each pair is mutually exclusive as substrings.
DEFAULT_CHANNEL_TRIGGERS: Dict[str, ChannelTriggers] = {
    Channel.MOTION.value: ChannelTriggers(activate="Motion Start", deactivate="Motion Stop"),
    Channel.IGNITION.value: ChannelTriggers(activate="Ignition On", deactivate="Ignition Off"),
    Channel.PLOW.value: ChannelTriggers(activate="Plow Down", deactivate="Plow Up"),
    Channel.SPREADER.value: ChannelTriggers(activate="Spreader On", deactivate="Spreader Off"),
    Channel.AUXILIARY_MOTOR.value: ChannelTriggers(activate="Aux Motor On", deactivate="Aux Motor Off"),
}


@lru_cache(maxsize=256)
def _compile(pattern: str, case_sensitive: bool) -> re.Pattern:
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)


def _is_missing(raw_label: Any) -> bool:
    if raw_label is None:
        return True
    if isinstance(raw_label, float) and np.isnan(raw_label):
        return True
    return raw_label is pd.NA or raw_label is pd.NaT


def classify(
    raw_label: Optional[str],
    channel: Channel | str,
    triggers: Mapping[str, ChannelTriggers] = DEFAULT_CHANNEL_TRIGGERS,
) -> TransitionCode:
    """Map one raw activity label to a transition code for one channel.

    Unrecognized or missing labels give NONE. An unknown channel is a
    configuration error and raises KeyError.
    """
    trig = triggers[channel_name(channel)]
    if _is_missing(raw_label):
        return TransitionCode.NONE
    label = str(raw_label)
    if not label:
        return TransitionCode.NONE
    if _compile(trig.activate, trig.case_sensitive).search(label):
        return TransitionCode.ACTIVATE
    if _compile(trig.deactivate, trig.case_sensitive).search(label):
        return TransitionCode.DEACTIVATE
    return TransitionCode.NONE


def build_channel_triggers(
    overrides: Optional[Mapping[str, Any]] = None,
    base: Mapping[str, ChannelTriggers] = DEFAULT_CHANNEL_TRIGGERS,
) -> Dict[str, ChannelTriggers]:
    """
    Build a channel table from the `channels:` config section, merged over `base`.

      channels:
        plow: {activate: "Plow Down", deactivate: "Plow Up"}
        salt_gate: {activate: "Gate Open", deactivate: "Gate Closed", case_sensitive: false}

    A channel set to null is removed from the table.
    """
    table: Dict[str, ChannelTriggers] = dict(base)
    if not overrides:
        return table
    if not isinstance(overrides, Mapping):
        raise ValueError("Config key 'channels' must be a mapping of channel name -> triggers.")

    for name, entry in overrides.items():
        name = str(name)
        if entry is None:
            table.pop(name, None)
            continue
        if not isinstance(entry, Mapping):
            raise ValueError(f"Channel '{name}' must be a mapping with 'activate' and 'deactivate'.")

        prev = table.get(name)
        activate = entry.get("activate", prev.activate if prev else None)
        deactivate = entry.get("deactivate", prev.deactivate if prev else None)
        case_sensitive = bool(entry.get("case_sensitive", prev.case_sensitive if prev else True))
        if not activate or not deactivate:
            raise ValueError(f"Channel '{name}' needs both 'activate' and 'deactivate' patterns.")

        for pattern in (activate, deactivate):
            try:
                re.compile(str(pattern))
            except re.error as e:
                raise ValueError(f"Channel '{name}' has an invalid pattern {pattern!r}: {e}") from e

        table[name] = ChannelTriggers(
            activate=str(activate),
            deactivate=str(deactivate),
            case_sensitive=case_sensitive,
        )

    log.debug("Channel table: %s", sorted(table))
    return table


def classify_frame(
    df: pd.DataFrame,
    label_col: str = ACTIVITY_COL,
    triggers: Mapping[str, ChannelTriggers] = DEFAULT_CHANNEL_TRIGGERS,
    channels: Optional[Iterable[Channel | str]] = None,
) -> pd.DataFrame:
    """Vectorized `classify`: adds one int8 `<channel>_code` column per channel."""
    if label_col not in df.columns:
        raise KeyError(f"Missing activity column '{label_col}'. Available columns: {list(df.columns)}")

    names = [channel_name(c) for c in channels] if channels is not None else list(triggers)
    out = df.copy()
    labels = out[label_col]
    # Empty labels count as missing, same as classify()
    present = labels.notna() & (labels.astype(str) != "")
    text = labels.where(present, "").astype(str)

    for name in names:
        trig = triggers[name]
        act = text.str.contains(trig.activate, case=trig.case_sensitive, regex=True) & present
        deact = text.str.contains(trig.deactivate, case=trig.case_sensitive, regex=True) & present & ~act
        codes = np.full(len(out), int(TransitionCode.NONE), dtype=np.int8)
        codes[act.to_numpy(dtype=bool)] = int(TransitionCode.ACTIVATE)
        codes[deact.to_numpy(dtype=bool)] = int(TransitionCode.DEACTIVATE)
        out[code_column(name)] = codes

    return out
