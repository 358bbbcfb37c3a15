"""
TymeLyne - Goals Module
Track personal goals with progress, deadlines and completion
"""

import logging
from datetime import date, timedelta
from typing import Optional, List

from .achievements import check_achievements_after_action
from .database import DataClient
from .errors import NotFoundError, TymeLyneError
from .models import Goal, RowId, StreakType
from .streaks import record_activity

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "deadline")
TITLE_MAX = 200


def _validate_title(title: Optional[str]) -> Optional[str]:
    if not title or not title.strip():
        return "Goal title is required"
    if len(title.strip()) > TITLE_MAX:
        return f"Goal title must be at most {TITLE_MAX} characters"
    return None


async def _after_goal_activity(client: DataClient, owner_id: RowId, action: str) -> List[str]:
    """Streak + achievement bookkeeping that must not fail the mutation."""
    try:
        await record_activity(client, owner_id, StreakType.GOAL_PROGRESS)
    except TymeLyneError as e:
        logger.warning(f"Goal streak update failed for user={owner_id}: {e}")
    return await check_achievements_after_action(client, owner_id, action)


# ============================================
# READS
# ============================================

async def get_goals(
    client: DataClient,
    owner_id: RowId,
    include_completed: bool = True
) -> List[Goal]:
    """Goals ordered open first, then by deadline, newest first."""
    query = client.table("goals").select("*").eq("owner_id", owner_id)
    if not include_completed:
        query = query.eq("completed", False)
    rows = (await (
        query.order("completed").order("deadline").order("created_at", desc=True).execute()
    )).data
    return [Goal.model_validate(r) for r in rows]


async def get_goal(client: DataClient, goal_id: RowId) -> Optional[Goal]:
    """Get a single goal by ID."""
    row = (await client.table("goals").select("*").eq("id", goal_id).maybe_single().execute()).data
    return Goal.model_validate(row) if row else None


async def get_goals_summary(
    client: DataClient,
    owner_id: RowId,
    today: Optional[date] = None
) -> dict:
    """Get goal completion statistics."""
    today = today or date.today()
    goals = await get_goals(client, owner_id)
    open_goals = [g for g in goals if not g.completed]
    return {
        "total_goals": len(goals),
        "completed_goals": len(goals) - len(open_goals),
        "in_progress": len(open_goals),
        "overdue_goals": sum(1 for g in open_goals if g.deadline and g.deadline < today),
        "due_this_week": sum(
            1 for g in open_goals
            if g.deadline and today <= g.deadline <= today + timedelta(days=7)
        ),
    }


async def get_upcoming_deadlines(
    client: DataClient,
    owner_id: RowId,
    days: int = 14,
    today: Optional[date] = None
) -> List[Goal]:
    """Open goals whose deadline falls within the next ``days`` days."""
    today = today or date.today()
    rows = (await (
        client.table("goals").select("*")
        .eq("owner_id", owner_id).eq("completed", False)
        .gte("deadline", today).lte("deadline", today + timedelta(days=days))
        .order("deadline").execute()
    )).data
    return [Goal.model_validate(r) for r in rows]


# ============================================
# MUTATIONS
# ============================================

async def create_goal(
    client: DataClient,
    owner_id: RowId,
    title: str,
    description: str = "",
    deadline: Optional[date] = None
) -> dict:
    """Create a new goal."""
    error = _validate_title(title)
    if error:
        return {"success": False, "error": error}

    try:
        rows = (await client.table("goals").insert({
            "owner_id": owner_id,
            "title": title.strip(),
            "description": description or "",
            "progress": 0,
            "deadline": deadline,
            "completed": False,
        }).execute()).data
    except TymeLyneError as e:
        logger.error(f"Create goal failed for user={owner_id}: {e}")
        return {"success": False, "error": str(e)}

    earned = await check_achievements_after_action(client, owner_id, "goal_created")
    return {"success": True, "goal": Goal.model_validate(rows[0]), "achievements_earned": earned}


async def update_goal(client: DataClient, goal_id: RowId, **updates) -> dict:
    """Edit title, description or deadline."""
    unknown = set(updates) - set(EDITABLE_FIELDS)
    if unknown:
        return {"success": False, "error": f"Cannot edit: {', '.join(sorted(unknown))}"}
    if "title" in updates:
        error = _validate_title(updates["title"])
        if error:
            return {"success": False, "error": error}
        updates["title"] = updates["title"].strip()
    if not updates:
        return {"success": False, "error": "Nothing to update"}

    try:
        rows = (await client.table("goals").update(updates).eq("id", goal_id).execute()).data
    except TymeLyneError as e:
        return {"success": False, "error": str(e)}
    if not rows:
        return {"success": False, "error": "Goal not found"}
    return {"success": True, "goal": Goal.model_validate(rows[0])}


async def update_goal_progress(
    client: DataClient,
    goal_id: RowId,
    set_value: Optional[int] = None,
    progress_delta: int = 0,
    mark_complete: Optional[bool] = None
) -> dict:
    """
    Update goal progress.

    Args:
        goal_id: The goal ID
        set_value: Directly set progress (overrides delta)
        progress_delta: Amount to add to progress
        mark_complete: Force completion status

    Returns:
        Result dict with the updated goal and any newly earned achievements
    """
    try:
        goal = await get_goal(client, goal_id)
    except TymeLyneError as e:
        return {"success": False, "error": str(e)}
    if not goal:
        return {"success": False, "error": "Goal not found"}

    new_value = set_value if set_value is not None else goal.progress + progress_delta
    new_value = max(0, min(100, int(new_value)))

    completed = goal.completed
    if mark_complete is not None:
        completed = mark_complete
        if mark_complete:
            new_value = 100
    elif new_value >= 100:
        completed = True

    try:
        rows = (await client.table("goals").update(
            {"progress": new_value, "completed": completed}
        ).eq("id", goal_id).execute()).data
    except TymeLyneError as e:
        logger.error(f"Goal progress update failed goal={goal_id}: {e}")
        return {"success": False, "error": str(e)}
    if not rows:
        return {"success": False, "error": "Goal not found"}

    updated = Goal.model_validate(rows[0])
    just_completed = completed and not goal.completed

    earned = []
    if just_completed or new_value > goal.progress:
        earned = await _after_goal_activity(
            client, goal.owner_id, "goal_complete" if just_completed else "goal_progress"
        )

    return {
        "success": True,
        "goal": updated,
        "progress_percent": 100 if updated.completed else updated.progress,
        "just_completed": just_completed,
        "achievements_earned": earned,
    }


async def complete_goal(client: DataClient, goal_id: RowId) -> dict:
    """Mark a goal complete; stored progress is set to 100."""
    return await update_goal_progress(client, goal_id, mark_complete=True)


async def delete_goal(client: DataClient, goal_id: RowId) -> dict:
    """Delete a goal and detach the tasks that pointed at it."""
    try:
        rows = (await client.table("goals").delete().eq("id", goal_id).execute()).data
        if not rows:
            raise NotFoundError("Goal not found")
        await client.table("tasks").update({"goal_id": None}).eq("goal_id", goal_id).execute()
    except TymeLyneError as e:
        return {"success": False, "error": str(e)}
    return {"success": True}
