"""
Position Management - ROI Table.

Maps minimum position age (minutes) to the return that triggers
an exit. The threshold for a position is the one at the largest
age key not above the position's age.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from core.clock import ensure_utc


logger = logging.getLogger(__name__)


RoiTable = Dict[int, float]


def parse_roi_table(raw: Any) -> RoiTable:
    """Accept a dict or JSON object string; anything invalid yields {}."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning(f"ROI table is not valid JSON, using empty table: {raw!r}")
            return {}
    if not isinstance(raw, dict):
        logger.warning(f"ROI table is not an object, using empty table: {raw!r}")
        return {}

    table: RoiTable = {}
    for key, value in raw.items():
        try:
            table[int(float(key))] = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring ROI table entry {key!r}: {value!r}")
    return table


def get_roi_threshold(table: RoiTable, age_minutes: float) -> Optional[float]:
    """None when the table is empty or the position is younger than every key."""
    threshold = None
    for key in sorted(table):
        if key > age_minutes:
            break
        threshold = table[key]
    return threshold


def should_exit_by_roi(
    table: RoiTable,
    entry_time: datetime,
    current_return: float,
    now: datetime,
) -> Tuple[bool, Optional[float], float]:
    """
    Check a position against the ROI table.

    Returns (should_exit, threshold, age_minutes). The comparison
    is inclusive: a return equal to the threshold exits.
    """
    age_minutes = (ensure_utc(now) - ensure_utc(entry_time)).total_seconds() / 60.0
    threshold = get_roi_threshold(table, age_minutes)
    if threshold is None:
        return False, None, age_minutes
    return current_return >= threshold, threshold, age_minutes
