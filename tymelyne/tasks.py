"""
TymeLyne - Task List Module
Daily tasks with categories, due dates and an optional parent goal
"""

import logging
from collections import Counter
from datetime import date
from typing import Optional, List

from .achievements import check_achievements_after_action
from .database import DataClient
from .errors import TymeLyneError
from .models import RowId, StreakType, Task, TaskSummary
from .progress import completion_percentage
from .streaks import record_activity

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "due_date", "category", "goal_id")


async def get_tasks(
    client: DataClient,
    owner_id: RowId,
    category: Optional[str] = None,
    goal_id: Optional[RowId] = None,
    completed: Optional[bool] = None
) -> List[Task]:
    """Get tasks with optional filters, soonest due first."""
    query = client.table("tasks").select("*").eq("owner_id", owner_id)
    if category:
        query = query.eq("category", category)
    if goal_id is not None:
        query = query.eq("goal_id", goal_id)
    if completed is not None:
        query = query.eq("completed", completed)
    rows = (await query.order("due_date").order("created_at").execute()).data
    return [Task.model_validate(r) for r in rows]


def summarize_tasks(tasks: List[Task], today: Optional[date] = None) -> TaskSummary:
    """Completion counts, per-category totals and overdue open tasks."""
    today = today or date.today()
    completed = sum(1 for t in tasks if t.completed)
    return TaskSummary(
        total=len(tasks),
        completed=completed,
        completion_pct=completion_percentage(completed, len(tasks)),
        by_category=dict(Counter(t.category or "Uncategorized" for t in tasks)),
        overdue=[t for t in tasks if not t.completed and t.due_date and t.due_date < today],
    )


async def create_task(
    client: DataClient,
    owner_id: RowId,
    title: str,
    description: str = "",
    due_date: Optional[date] = None,
    category: Optional[str] = None,
    goal_id: Optional[RowId] = None
) -> dict:
    if not title or not title.strip():
        return {"success": False, "error": "Task title is required"}
    try:
        rows = (await client.table("tasks").insert({
            "owner_id": owner_id,
            "title": title.strip(),
            "description": description or "",
            "due_date": due_date,
            "category": category,
            "goal_id": goal_id,
            "completed": False,
        }).execute()).data
    except TymeLyneError as e:
        logger.error(f"Create task failed for user={owner_id}: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, "task": Task.model_validate(rows[0])}


async def update_task(client: DataClient, task_id: RowId, **updates) -> dict:
    unknown = set(updates) - set(EDITABLE_FIELDS)
    if unknown:
        return {"success": False, "error": f"Cannot edit: {', '.join(sorted(unknown))}"}
    if "title" in updates and not (updates["title"] or "").strip():
        return {"success": False, "error": "Task title is required"}
    if not updates:
        return {"success": False, "error": "Nothing to update"}
    try:
        rows = (await client.table("tasks").update(updates).eq("id", task_id).execute()).data
    except TymeLyneError as e:
        return {"success": False, "error": str(e)}
    if not rows:
        return {"success": False, "error": "Task not found"}
    return {"success": True, "task": Task.model_validate(rows[0])}


async def set_task_completed(client: DataClient, task_id: RowId, completed: bool = True) -> dict:
    """
    Tick or untick a task.

    Completing a task extends the task streak and re-checks achievements;
    failures there are logged and do not undo the tick.
    """
    try:
        rows = (await client.table("tasks").update(
            {"completed": completed}
        ).eq("id", task_id).execute()).data
    except TymeLyneError as e:
        logger.error(f"Task completion update failed task={task_id}: {e}")
        return {"success": False, "error": str(e)}
    if not rows:
        return {"success": False, "error": "Task not found"}

    task = Task.model_validate(rows[0])
    earned = []
    if completed:
        try:
            await record_activity(client, task.owner_id, StreakType.TASK_COMPLETION)
        except TymeLyneError as e:
            logger.warning(f"Task streak update failed for user={task.owner_id}: {e}")
        earned = await check_achievements_after_action(client, task.owner_id, "task_complete")

    return {"success": True, "task": task, "achievements_earned": earned}


async def delete_task(client: DataClient, task_id: RowId) -> dict:
    try:
        rows = (await client.table("tasks").delete().eq("id", task_id).execute()).data
    except TymeLyneError as e:
        return {"success": False, "error": str(e)}
    if not rows:
        return {"success": False, "error": "Task not found"}
    return {"success": True}
