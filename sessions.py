"""
Session / Killzone Context
==========================
UTC hour windows (start inclusive, end exclusive):

  Killzones   LONDON 07-10 · NEW_YORK 13-16 · ASIAN 00-03
  Sessions    LONDON_OPEN 07-08 · NEW_YORK_OPEN 13-14 · ASIAN_SESSION 00-08
  Overlap     13-15 (London / New York)
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from models import SessionContext

KILLZONES: Dict[str, Tuple[int, int]] = {
    "london":   (7, 10),
    "new_york": (13, 16),
    "asian":    (0, 3),
}

SESSIONS: Dict[str, Tuple[int, int]] = {
    "london_open":   (7, 8),
    "new_york_open": (13, 14),
    "asian_session": (0, 8),
}

OVERLAP_HOURS: Tuple[int, int] = (13, 15)


def _match(hour: int, windows: Dict[str, Tuple[int, int]]) -> Optional[str]:
    for name, (start, end) in windows.items():
        if start <= hour < end:
            return name
    return None


def utc_hour(timestamp_ms: int) -> int:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).hour


def session_context(timestamp_ms: int) -> SessionContext:
    hour = utc_hour(timestamp_ms)
    return SessionContext(
        killzone=_match(hour, KILLZONES),
        session=_match(hour, SESSIONS),
        overlap=OVERLAP_HOURS[0] <= hour < OVERLAP_HOURS[1],
    )
