"""
TymeLyne - Streak Tracking
Consecutive-period counters (daily login, task completion, goal progress,
weekly review) kept one row per user and streak type.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from .database import DataClient
from .models import RowId, Streak, StreakType

logger = logging.getLogger(__name__)


def _period_gap(streak_type: StreakType, last: date, today: date) -> int:
    """Number of whole periods between the last activity and today."""
    if streak_type == StreakType.WEEKLY_REVIEW:
        last_week = last - timedelta(days=last.weekday())
        this_week = today - timedelta(days=today.weekday())
        return (this_week - last_week).days // 7
    return (today - last).days


def advance_streak(
    streak_type: StreakType,
    current: int,
    longest: int,
    last_updated: Optional[datetime],
    now: datetime
) -> Tuple[int, int, bool]:
    """
    Next (current, longest) after an activity at ``now``.

    Same period leaves the counters alone, the following period extends the
    streak, any longer gap restarts it at 1.

    Returns:
        (current_count, longest_count, changed)
    """
    if last_updated is not None:
        gap = _period_gap(streak_type, last_updated.date(), now.date())
        if gap <= 0:
            return current, longest, False
        current = current + 1 if gap == 1 else 1
    else:
        current = 1
    return current, max(longest, current), True


async def get_streaks(client: DataClient, owner_id: RowId) -> Dict[StreakType, Streak]:
    """All four streaks for a user, zero for the ones never recorded."""
    rows = (await (
        client.table("user_streaks").select("*").eq("owner_id", owner_id).execute()
    )).data
    streaks = {t: Streak(owner_id=owner_id, streak_type=t) for t in StreakType}
    for row in rows:
        try:
            streak = Streak.model_validate(row)
        except ValueError:
            logger.warning(f"Skipping unknown streak row for user={owner_id}: {row.get('streak_type')}")
            continue
        streaks[streak.streak_type] = streak
    return streaks


async def record_activity(
    client: DataClient,
    owner_id: RowId,
    streak_type: StreakType,
    now: Optional[datetime] = None
) -> Streak:
    """Register one qualifying activity and persist the updated streak."""
    now = now or datetime.now(timezone.utc)
    row = (await (
        client.table("user_streaks").select("*")
        .eq("owner_id", owner_id).eq("streak_type", streak_type.value)
        .maybe_single().execute()
    )).data
    existing = Streak.model_validate(row) if row else Streak(owner_id=owner_id, streak_type=streak_type)

    current, longest, changed = advance_streak(
        streak_type, existing.current_count, existing.longest_count,
        existing.last_updated_at, now
    )
    if not changed:
        return existing

    saved = (await client.table("user_streaks").upsert(
        {
            "owner_id": owner_id,
            "streak_type": streak_type.value,
            "current_count": current,
            "longest_count": longest,
            "last_updated_at": now,
        },
        on_conflict="owner_id,streak_type",
    ).execute()).data
    logger.info(f"[STREAK] user={owner_id} {streak_type.value} -> {current} (best {longest})")
    return Streak.model_validate(saved[0]) if saved else existing
