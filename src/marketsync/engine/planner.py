"""
Incremental sync planning.

Given an account's sync state, decide which mode and date window the next
full sync should cover:

* INITIAL  - first backfill of the most recent ``initial_window_days``
* CATCH_UP - walk backwards in ``catch_up_window_days`` chunks until the
  history horizon (``history_months`` ago) is covered
* DELTA    - refresh from the last delta sync once ``delta_interval_days``
  have passed

These are pure functions so that every cadence, the manual trigger and the
plan preview share the same decision.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from ..core.config import SyncTuning
from ..models.account import SyncState, ensure_utc
from ..models.sync import SyncMode, SyncPlan

logger = logging.getLogger(__name__)

# Catch-up windows end just before the oldest synced instant
CATCH_UP_EDGE = timedelta(milliseconds=1)


def subtract_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 - months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def history_target(state: SyncState, now: datetime, tuning: SyncTuning) -> datetime:
    return ensure_utc(state.desired_history_start) or subtract_months(now, tuning.history_months)


def decide_next_window(
    state: SyncState,
    now: datetime,
    tuning: SyncTuning,
) -> Tuple[Optional[SyncPlan], Dict[str, Any]]:
    """
    Decide the next window to fetch for an account.

    Returns:
        The plan (or None when the account is fresh) and the sync-state
        fields the caller must persist, e.g. ``full_history_ready`` once the
        history horizon has been reached.
    """
    now = ensure_utc(now)
    updates: Dict[str, Any] = {}

    if not state.initial_completed:
        return SyncPlan(
            mode=SyncMode.INITIAL,
            window_start=now - timedelta(days=tuning.initial_window_days),
            window_end=now,
        ), updates

    if not state.full_history_ready:
        target = history_target(state, now, tuning)
        oldest = ensure_utc(state.oldest_synced_date) or now
        if oldest <= target:
            logger.debug(f"History horizon {target.isoformat()} reached")
            updates["full_history_ready"] = True
            if state.desired_history_start is None:
                updates["desired_history_start"] = target
        else:
            return SyncPlan(
                mode=SyncMode.CATCH_UP,
                window_start=max(target, oldest - timedelta(days=tuning.catch_up_window_days)),
                window_end=oldest - CATCH_UP_EDGE,
            ), updates

    interval = timedelta(days=tuning.delta_interval_days)
    last_daily = ensure_utc(state.last_daily_sync_at)
    if last_daily is not None and now - last_daily < interval:
        return None, updates

    return SyncPlan(
        mode=SyncMode.DELTA,
        window_start=last_daily or now - interval,
        window_end=now,
    ), updates


def plan_manual_full(
    state: SyncState,
    now: datetime,
    tuning: SyncTuning,
) -> Tuple[SyncPlan, Dict[str, Any]]:
    """Like ``decide_next_window`` but always yields a plan; a fresh account gets a DELTA refresh."""
    plan, updates = decide_next_window(state, now, tuning)
    if plan is None:
        now = ensure_utc(now)
        plan = SyncPlan(
            mode=SyncMode.DELTA,
            window_start=ensure_utc(state.last_daily_sync_at) or now - timedelta(days=tuning.delta_interval_days),
            window_end=now,
        )
    return plan, updates
