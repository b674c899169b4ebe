"""Common storage utilities shared between memory, postgres and redis backends.

Keeps the rate-counter window arithmetic and small normalisation helpers in
one place so every backend applies the same rules.
"""

from __future__ import annotations

import json
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from authkernel.storage.models import RateCounter


# ============================================================================
# NORMALISATION
# ============================================================================

def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and strip an email for uniqueness checks and lookups."""
    if email is None:
        return None
    stripped = email.strip().lower()
    return stripped or None


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from a driver or snapshot as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))


def parse_json_meta(raw_meta: Any) -> Dict:
    """Parse a metadata column from JSON string or dict.

    Args:
        raw_meta: Raw metadata value (string, dict, or None)

    Returns:
        Parsed dict (empty when absent or unparseable)
    """
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw_meta, dict):
        return raw_meta
    return {}


# ============================================================================
# RATE COUNTER WINDOWS
# ============================================================================

def weighted_count(
    counter: RateCounter, now: datetime, window_seconds: int, sliding: bool
) -> float:
    """Effective request count for the window containing ``now``.

    Fixed windows use the raw count. Sliding windows add the previous
    window's count weighted by how much of it still overlaps the trailing
    window.
    """
    if not sliding:
        return float(counter.count)
    elapsed = (now - counter.window_started_at).total_seconds()
    overlap = max(0.0, 1.0 - (elapsed / window_seconds))
    return counter.previous_count * overlap + counter.count


def advance_rate_counter(
    existing: Optional[RateCounter],
    *,
    policy_id: str,
    scope_key: str,
    now: datetime,
    window_seconds: int,
    max_requests: int,
    sliding: bool,
    cost: int = 1,
) -> RateCounter:
    """Compute the counter state after one more attempt.

    Returns a new RateCounter; the caller persists it inside the same lock
    or transaction it read ``existing`` under, so increment-then-compare
    stays atomic.

    Fixed windows restart at the first attempt after the window elapses.
    Sliding windows advance in whole multiples of the window length so the
    previous-window weighting remains exact.
    """
    window = timedelta(seconds=window_seconds)
    if existing is None or existing.deleted_at is not None:
        counter = RateCounter(policy_id=policy_id, scope_key=scope_key, window_started_at=now)
    else:
        counter = replace(existing)
        elapsed = now - counter.window_started_at
        if elapsed >= window:
            if sliding:
                windows_passed = int(elapsed.total_seconds() // window_seconds)
                counter.previous_count = counter.count if windows_passed == 1 else 0
                counter.window_started_at = counter.window_started_at + window * windows_passed
            else:
                counter.previous_count = 0
                counter.window_started_at = now
            counter.count = 0
            counter.blocked = False
    counter.count += cost
    counter.blocked = weighted_count(counter, now, window_seconds, sliding) > max_requests
    return counter


def remaining_requests(
    counter: RateCounter, now: datetime, window_seconds: int, max_requests: int, sliding: bool
) -> int:
    used = math.ceil(weighted_count(counter, now, window_seconds, sliding))
    return max(0, max_requests - used)


def seconds_until_reset(counter: RateCounter, now: datetime, window_seconds: int) -> int:
    resets_at = counter.window_started_at + timedelta(seconds=window_seconds)
    return max(0, math.ceil((resets_at - now).total_seconds()))
