from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


# Canonical column names after ingestion
ENTITY_COL = "entity_id"
TIME_COL = "timestamp"
ACTIVITY_COL = "activity"
SOURCE_COL = "source_file"


class Channel(str, Enum):
    MOTION = "motion"
    IGNITION = "ignition"
    PLOW = "plow"
    SPREADER = "spreader"
    AUXILIARY_MOTOR = "auxiliary_motor"


class TransitionCode(IntEnum):
    NONE = 0
    ACTIVATE = 1
    DEACTIVATE = 2


@dataclass(frozen=True)
class ChannelTriggers:
    """Activate/deactivate regex patterns for one channel (searched, not anchored)."""

    activate: str
    deactivate: str
    case_sensitive: bool = True


def channel_name(channel: object) -> str:
    return channel.value if isinstance(channel, Channel) else str(channel)


def code_column(channel: object) -> str:
    return f"{channel_name(channel)}_code"


def state_column(channel: object) -> str:
    return f"{channel_name(channel)}_state"
