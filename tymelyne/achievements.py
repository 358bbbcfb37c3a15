"""
TymeLyne - Achievement Unlock Evaluator
Decide which achievements a user newly qualifies for and persist the unlocks.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .database import DataClient
from .errors import TymeLyneError
from .models import AchievementDefinition, AchievementProgress, RowId, StreakType
from .progress import completion_percentage

logger = logging.getLogger(__name__)


# ============================================
# ACHIEVEMENT DEFINITIONS
# ============================================

# metric is one of the counters produced by AchievementEvaluator.gather_counts
ACHIEVEMENT_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "first_goal": {
        "title": "First Goal Set",
        "description": "Created your first goal",
        "icon": "target",
        "category": "goal",
        "metric": "total_goals",
        "threshold": 1,
    },
    "complete_first_goal": {
        "title": "Goal Getter",
        "description": "Completed your first goal",
        "icon": "check-circle",
        "category": "goal",
        "metric": "completed_goals",
        "threshold": 1,
    },
    "goal_master": {
        "title": "Goal Master",
        "description": "Completed 3 goals",
        "icon": "trophy",
        "category": "goal",
        "metric": "completed_goals",
        "threshold": 3,
    },
    "goal_expert": {
        "title": "Goal Expert",
        "description": "Completed 10 goals",
        "icon": "award",
        "category": "goal",
        "metric": "completed_goals",
        "threshold": 10,
    },
    "task_starter": {
        "title": "Task Starter",
        "description": "Completed 10 tasks",
        "icon": "check-square",
        "category": "task",
        "metric": "completed_tasks",
        "threshold": 10,
    },
    "task_champion": {
        "title": "Task Champion",
        "description": "Completed 50 tasks",
        "icon": "star",
        "category": "task",
        "metric": "completed_tasks",
        "threshold": 50,
    },
    "task_master": {
        "title": "Task Master",
        "description": "Completed 100 tasks",
        "icon": "crown",
        "category": "task",
        "metric": "completed_tasks",
        "threshold": 100,
    },
    "week_streak": {
        "title": "7-Day Streak",
        "description": "Used TymeLyne for 7 consecutive days",
        "icon": "zap",
        "category": "streak",
        "metric": "login_streak",
        "threshold": 7,
    },
    "month_streak": {
        "title": "30-Day Streak",
        "description": "Used TymeLyne for 30 consecutive days",
        "icon": "flame",
        "category": "streak",
        "metric": "login_streak",
        "threshold": 30,
    },
}

FALLBACK_ICON = "award"


def describe_achievement(code: str) -> AchievementDefinition:
    """Catalog entry for a code; unknown codes get a generic entry."""
    data = ACHIEVEMENT_DEFINITIONS.get(code)
    if data is None:
        return AchievementDefinition(
            code=code,
            title=code.replace("_", " ").strip().title() or "Achievement",
            description="",
            icon=FALLBACK_ICON,
            category="other",
            threshold=0,
        )
    return AchievementDefinition(
        code=code,
        title=data["title"],
        description=data["description"],
        icon=data["icon"],
        category=data["category"],
        threshold=data["threshold"],
    )


def get_achievement_progress(counts: Dict[str, int]) -> List[AchievementProgress]:
    """Progress toward every catalog achievement from a gather_counts() dict."""
    progress = []
    for code, data in ACHIEVEMENT_DEFINITIONS.items():
        current = counts.get(data["metric"], 0)
        target = data["threshold"]
        progress.append(AchievementProgress(
            code=code,
            current_value=min(current, target),
            target_value=target,
            percentage=min(100, completion_percentage(current, target)),
            is_complete=current >= target,
        ))
    return progress


# ============================================
# ACHIEVEMENT EVALUATOR
# ============================================

class AchievementEvaluator:
    """Checks the unlock rules for one user and records new unlocks."""

    def __init__(
        self,
        client: DataClient,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.client = client
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _count(self, table: str, owner_id: RowId, **filters) -> int:
        query = self.client.table(table).select("id", count="exact").eq("owner_id", owner_id)
        for column, value in filters.items():
            query = query.eq(column, value)
        result = await query.range(0, 0).execute()
        return result.count if result.count is not None else len(result.data)

    async def gather_counts(self, owner_id: RowId) -> Dict[str, int]:
        """Counters the rules are evaluated against."""
        streak = await (
            self.client.table("user_streaks").select("current_count")
            .eq("owner_id", owner_id)
            .eq("streak_type", StreakType.DAILY_LOGIN.value)
            .maybe_single().execute()
        )
        return {
            "total_goals": await self._count("goals", owner_id),
            "completed_goals": await self._count("goals", owner_id, completed=True),
            "completed_tasks": await self._count("tasks", owner_id, completed=True),
            "login_streak": (streak.data or {}).get("current_count") or 0,
        }

    async def _unlock(self, owner_id: RowId, code: str) -> bool:
        """Idempotent insert; True only when a new row was written."""
        result = await self.client.table("user_achievements").upsert(
            {"owner_id": owner_id, "achievement_code": code, "earned_at": self.clock()},
            on_conflict="owner_id,achievement_code",
            ignore_duplicates=True,
        ).execute()
        return bool(result.data)

    async def evaluate(self, owner_id: RowId) -> List[str]:
        """
        Evaluate every rule and persist new unlocks.

        Counter reads raise FetchError. A failing unlock write is logged and
        the remaining rules still run.

        Returns:
            Codes unlocked by this call (empty when nothing new qualified)
        """
        counts = await self.gather_counts(owner_id)
        unlocked = []

        for code, data in ACHIEVEMENT_DEFINITIONS.items():
            if counts.get(data["metric"], 0) < data["threshold"]:
                continue
            try:
                if await self._unlock(owner_id, code):
                    unlocked.append(code)
                    logger.info(f"[ACHIEVEMENT] user={owner_id} earned '{code}'")
            except TymeLyneError as e:
                logger.error(f"Failed to record achievement '{code}' for user={owner_id}: {e}")

        return unlocked


async def check_achievements_after_action(
    client: DataClient,
    owner_id: RowId,
    action: str
) -> List[str]:
    """Evaluate achievements after a user action; never raises."""
    try:
        earned = await AchievementEvaluator(client).evaluate(owner_id)
    except TymeLyneError as e:
        logger.warning(f"Achievement check after {action} failed for user={owner_id}: {e}")
        return []
    if earned:
        logger.info(f"{action} unlocked {earned} for user={owner_id}")
    return earned


# ============================================
# DISPLAY
# ============================================

async def get_user_achievements(client: DataClient, owner_id: RowId) -> List[Dict[str, Any]]:
    """
    Catalog merged with the user's unlock rows.

    Catalog entries come first in catalog order (earned or not); unlock rows
    whose code is not in the catalog follow with the fallback icon.
    """
    rows = (await (
        client.table("user_achievements").select("achievement_code,earned_at")
        .eq("owner_id", owner_id).order("earned_at").execute()
    )).data
    earned_at = {r["achievement_code"]: r.get("earned_at") for r in rows}

    result = []
    for code in ACHIEVEMENT_DEFINITIONS:
        meta = describe_achievement(code)
        result.append({
            **meta.model_dump(),
            "earned": code in earned_at,
            "earned_at": earned_at.get(code),
        })
    for code, when in earned_at.items():
        if code in ACHIEVEMENT_DEFINITIONS:
            continue
        result.append({
            **describe_achievement(code).model_dump(),
            "earned": True,
            "earned_at": when,
        })
    return result
