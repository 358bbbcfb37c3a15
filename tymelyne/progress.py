"""
TymeLyne - Progress Derivation
Level / XP math and completion percentages derived from raw goal and task rows.
"""

import logging
import math
from typing import Iterable, Optional, Union

from .database import DataClient
from .errors import TymeLyneError
from .models import Goal, LevelInfo, ProgressSnapshot, ProgressSummary, RowId, Task

logger = logging.getLogger(__name__)


# ============================================
# LEVELING
# ============================================

BASE_LEVEL_XP = 1000
LEVEL_GROWTH = 0.1

LEVEL_TITLES = [
    "Beginner",
    "Novice",
    "Apprentice",
    "Goal Seeker",
    "Achiever",
    "Planner",
    "Strategist",
    "Pathfinder",
    "Trailblazer",
    "Go-Getter",
    "Milestone Maker",
    "Goal Explorer",
    "Goal Master",
    "Visionary",
    "TymeLyne Legend",
]


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives, like the browser's Math.round."""
    return int(math.floor(value + 0.5))


def level_threshold(level: int) -> int:
    """XP needed to clear ``level`` once it has been reached (level >= 2)."""
    return math.floor(BASE_LEVEL_XP * (1 + level * LEVEL_GROWTH))


def get_level_title(level: int) -> str:
    """Title for a level; clamps at the last title from level 15 upwards."""
    index = min(max(level, 1) - 1, len(LEVEL_TITLES) - 1)
    return LEVEL_TITLES[index]


def calculate_level(total_xp: int) -> LevelInfo:
    """
    Derive the level from total experience points.

    Level 1 costs BASE_LEVEL_XP; every later level costs
    floor(BASE_LEVEL_XP * (1 + level * LEVEL_GROWTH)).

    Args:
        total_xp: Accumulated experience points (non-negative)

    Returns:
        LevelInfo where current_xp is the XP consumed by cleared levels and
        remaining_xp is what is still missing to reach the next level.
    """
    if total_xp < 0:
        raise ValueError("Experience points cannot be negative")

    level = 1
    remaining = int(total_xp)
    threshold = BASE_LEVEL_XP
    while remaining >= threshold:
        remaining -= threshold
        level += 1
        threshold = level_threshold(level)

    return LevelInfo(
        level=level,
        total_xp=int(total_xp),
        current_xp=int(total_xp) - remaining,
        next_level_xp=threshold,
        remaining_xp=threshold - remaining,
        level_title=get_level_title(level),
        level_progress_pct=completion_percentage(remaining, threshold),
    )


# ============================================
# COMPLETION
# ============================================

def completion_percentage(completed: int, total: int) -> int:
    """Whole-number percentage, 0 when there is nothing to complete."""
    if total <= 0:
        return 0
    return round_half_up(100 * completed / total)


def goal_display_progress(goal: Union[Goal, dict]) -> int:
    """Progress shown for a goal: completed goals always read as 100."""
    if isinstance(goal, dict):
        goal = Goal.model_validate(goal)
    if goal.completed:
        return 100
    return max(0, min(100, goal.progress))


def summarize_progress(
    goals: Iterable[Union[Goal, dict]],
    tasks: Iterable[Union[Task, dict]],
    total_xp: int
) -> ProgressSummary:
    """Pure derivation of the dashboard view-model from raw rows."""
    goals = [g if isinstance(g, Goal) else Goal.model_validate(g) for g in goals]
    tasks = [t if isinstance(t, Task) else Task.model_validate(t) for t in tasks]

    completed_goals = sum(1 for g in goals if g.completed)
    completed_tasks = sum(1 for t in tasks if t.completed)
    level = calculate_level(total_xp)

    return ProgressSummary(
        **level.model_dump(),
        task_completion_pct=completion_percentage(completed_tasks, len(tasks)),
        goal_completion_pct=completion_percentage(completed_goals, len(goals)),
        total_tasks=len(tasks),
        completed_tasks=completed_tasks,
        total_goals=len(goals),
        completed_goals=completed_goals,
    )


async def load_progress_summary(
    client: DataClient,
    owner_id: RowId,
    total_xp: Optional[int] = None
) -> ProgressSnapshot:
    """
    Fetch the owner's goals and tasks and derive the progress summary.

    When ``total_xp`` is not given it is read from the owner's profile.
    A failed fetch yields status="unavailable" instead of zeroed numbers.
    """
    try:
        if total_xp is None:
            profile = await (
                client.table("profiles").select("experience_points")
                .eq("id", owner_id).maybe_single().execute()
            )
            total_xp = (profile.data or {}).get("experience_points") or 0

        goals = await (
            client.table("goals").select("*").eq("owner_id", owner_id).execute()
        )
        tasks = await (
            client.table("tasks").select("*").eq("owner_id", owner_id).execute()
        )
    except TymeLyneError as e:
        logger.error(f"Progress data unavailable for user={owner_id}: {e}")
        return ProgressSnapshot(status="unavailable", error=str(e))

    return ProgressSnapshot(
        status="ok",
        summary=summarize_progress(goals.data, tasks.data, total_xp),
    )
