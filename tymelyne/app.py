"""
TymeLyne - Application Facade
Wires configuration, logging, the data client and the session provider,
and hands out per-user views bound to the signed-in principal.
"""

import logging
from typing import List, Optional, Union

from .achievements import check_achievements_after_action, get_user_achievements
from .community import ChallengeBoard, CommunityFeed
from .config import AppConfig, get_app_config
from .database import DataClient, create_client
from .errors import AuthError, TymeLyneError
from .logger import setup_logger
from .models import ProgressSnapshot, SessionState, SessionStatus, StreakType, UserPreferences
from .preferences import get_preferences, save_preferences
from .progress import load_progress_summary
from .session import SessionProvider
from .streaks import get_streaks, record_activity

logger = logging.getLogger(__name__)


class TymeLyne:
    """
    One running client session.

    Usage:
        app = TymeLyne()
        await app.start()
        await app.session.sign_in(email, password)
        feed = app.community_feed()
        await feed.load_more()
        await app.stop()
    """

    def __init__(self, config: Optional[AppConfig] = None, client: Optional[DataClient] = None):
        self.config = config or get_app_config()
        self.client = client or create_client(self.config.backend)
        self.session = SessionProvider(self.client)
        self.last_login_achievements: List[str] = []
        self._greeted_id = None
        self._views: List[Union[CommunityFeed, ChallengeBoard]] = []
        self._remove_listener = None

    async def start(self) -> SessionState:
        """Startup: logging, then session restore."""
        setup_logger(
            level=getattr(logging, self.config.log_level.upper(), logging.INFO),
            log_dir=self.config.log_dir,
        )
        self._remove_listener = self.session.add_listener(self._on_session_change)
        state = await self.session.start()
        logger.info(f"TymeLyne started: backend={self.config.backend} session={state.status.value}")
        return state

    async def stop(self) -> None:
        """Shutdown: close views, drop subscriptions and release the client."""
        for view in self._views:
            view.close()
        self._views.clear()
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        self.session.close()
        await self.client.aclose()
        logger.info("TymeLyne stopped")

    async def _on_session_change(self, state: SessionState) -> None:
        """Daily login bookkeeping, once per principal per sign-in."""
        if state.status != SessionStatus.AUTHENTICATED:
            self._greeted_id = None
            return
        owner_id = state.principal.id
        if owner_id == self._greeted_id:
            return
        self._greeted_id = owner_id
        try:
            await record_activity(self.client, owner_id, StreakType.DAILY_LOGIN)
        except TymeLyneError as e:
            logger.warning(f"Login streak update failed for user={owner_id}: {e}")
        self.last_login_achievements = await check_achievements_after_action(
            self.client, owner_id, "login"
        )

    # ============================================
    # PER-USER VIEWS
    # ============================================

    def _owner_id(self):
        principal = self.session.principal
        if principal is None:
            raise AuthError("Not signed in")
        return principal.id

    def community_feed(self) -> Optional[CommunityFeed]:
        """The community feed for the signed-in user, or None when signed out."""
        principal = self.session.principal
        if principal is None:
            return None
        feed = CommunityFeed(self.client, principal.id, self.config.posts_page_size)
        self._views.append(feed)
        return feed

    def challenge_board(self) -> Optional[ChallengeBoard]:
        principal = self.session.principal
        if principal is None:
            return None
        board = ChallengeBoard(self.client, principal.id)
        self._views.append(board)
        return board

    async def progress(self) -> ProgressSnapshot:
        principal = self.session.principal
        if principal is None:
            return ProgressSnapshot(status="unavailable", error="Not signed in")
        return await load_progress_summary(
            self.client, principal.id, total_xp=principal.profile.experience_points
        )

    async def achievements(self) -> dict:
        try:
            return {"success": True, "achievements": await get_user_achievements(self.client, self._owner_id())}
        except TymeLyneError as e:
            return {"success": False, "error": str(e), "achievements": []}

    async def streaks(self) -> dict:
        try:
            return {"success": True, "streaks": await get_streaks(self.client, self._owner_id())}
        except TymeLyneError as e:
            return {"success": False, "error": str(e), "streaks": {}}

    async def preferences(self) -> UserPreferences:
        owner_id = None
        try:
            owner_id = self._owner_id()
            return await get_preferences(self.client, owner_id)
        except TymeLyneError as e:
            logger.warning(f"Preferences unavailable for user={owner_id}, using defaults: {e}")
            return UserPreferences(owner_id=owner_id)

    async def save_preferences(self, **changes) -> dict:
        try:
            owner_id = self._owner_id()
        except AuthError as e:
            return {"success": False, "error": str(e)}
        return await save_preferences(self.client, owner_id, **changes)
