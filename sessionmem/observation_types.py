from __future__ import annotations

import logging
from typing import Final

logger = logging.getLogger(__name__)

OBSERVATION_TYPES: Final[tuple[str, ...]] = (
    "bugfix",
    "feature",
    "refactor",
    "change",
    "discovery",
    "decision",
)

DEFAULT_OBSERVATION_TYPE: Final[str] = "change"

TYPE_ICONS: Final[dict[str, str]] = {
    "bugfix": "🔴",
    "feature": "🟣",
    "refactor": "🔄",
    "change": "✅",
    "discovery": "🔵",
    "decision": "⚖️",
}

FALLBACK_ICON: Final[str] = "•"


def normalize_observation_type(value: str | None) -> str:
    return (value or "").strip().lower()


def coerce_observation_type(value: str | None) -> str:
    """Return a valid observation type, downgrading anything unknown to ``change``."""

    normalized = normalize_observation_type(value)
    if normalized in OBSERVATION_TYPES:
        return normalized
    if normalized:
        logger.warning(
            "invalid observation type %r, using %r", value, DEFAULT_OBSERVATION_TYPE
        )
    return DEFAULT_OBSERVATION_TYPE


def type_icon(value: str | None) -> str:
    return TYPE_ICONS.get(normalize_observation_type(value), FALLBACK_ICON)
