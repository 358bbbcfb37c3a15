"""
TymeLyne - User Preferences
Appearance and notification toggles, one row per user.
"""

import logging

from .database import DataClient
from .errors import NotFoundError, TymeLyneError
from .models import RowId, UserPreferences

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = ("dark_mode", "email_notifications", "push_notifications", "weekly_report")


async def get_preferences(client: DataClient, owner_id: RowId) -> UserPreferences:
    """Stored preferences, or the defaults when the user never saved any."""
    try:
        row = (await (
            client.table("user_preferences").select("*")
            .eq("owner_id", owner_id).single().execute()
        )).data
    except NotFoundError:
        return UserPreferences(owner_id=owner_id)
    return UserPreferences.model_validate(row)


async def save_preferences(client: DataClient, owner_id: RowId, **changes) -> dict:
    """
    Persist preference toggles.

    Insert-or-update keyed by owner_id, so the first save for a user and
    every later one take the same path.
    """
    unknown = set(changes) - set(PREFERENCE_FIELDS)
    if unknown:
        return {"success": False, "error": f"Unknown preference: {', '.join(sorted(unknown))}"}

    try:
        current = await get_preferences(client, owner_id)
        merged = {**current.model_dump(), **{k: bool(v) for k, v in changes.items()}}
        merged["owner_id"] = owner_id
        rows = (await client.table("user_preferences").upsert(
            merged, on_conflict="owner_id"
        ).execute()).data
    except TymeLyneError as e:
        logger.error(f"Saving preferences failed for user={owner_id}: {e}")
        return {"success": False, "error": str(e)}

    return {"success": True, "preferences": UserPreferences.model_validate(rows[0])}
