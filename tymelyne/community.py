"""
TymeLyne - Community Module
Paginated posts with likes and comments, and group challenges with
per-participant progress. Local state is updated optimistically and
compensated when the server rejects the change.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import get_app_config
from .database import DataClient
from .errors import MutationError, TymeLyneError
from .models import (
    Challenge, ChallengeGoalType, ChallengeParticipation, ChallengeStatus,
    ChallengeView, Comment, Post, PostView, RowId,
)
from .optimistic import IN_FLIGHT_MESSAGE, InFlightGuard, OptimisticCommand, RequestInFlight
from .progress import completion_percentage

logger = logging.getLogger(__name__)

POST_MAX = 1000
COMMENT_MAX = 500
UNIQUE_VIOLATION = "23505"

BUTTON_LABELS: Dict[tuple, str] = {
    (ChallengeStatus.STARTING_SOON, False): "Join Challenge",
    (ChallengeStatus.STARTING_SOON, True): "Leave Challenge",
    (ChallengeStatus.IN_PROGRESS, False): "Join Now",
    (ChallengeStatus.IN_PROGRESS, True): "View Progress",
    (ChallengeStatus.COMPLETED, False): "See Results",
    (ChallengeStatus.COMPLETED, True): "View Results",
}


def _utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _validate_content(content: Optional[str], limit: int, what: str) -> Optional[str]:
    if not content or not content.strip():
        return f"{what} cannot be empty"
    if len(content.strip()) > limit:
        return f"{what} must be at most {limit} characters"
    return None


# ============================================
# CHALLENGE DERIVATIONS
# ============================================

def challenge_status(challenge: Challenge, now: datetime) -> ChallengeStatus:
    """Window status; the end instant itself still counts as in progress."""
    now = _utc(now)
    if now < _utc(challenge.start_date):
        return ChallengeStatus.STARTING_SOON
    if now <= _utc(challenge.end_date):
        return ChallengeStatus.IN_PROGRESS
    return ChallengeStatus.COMPLETED


def button_label(status: ChallengeStatus, joined: bool) -> str:
    return BUTTON_LABELS[(status, bool(joined))]


def progress_percentage(progress: int, target_count: int) -> int:
    """Share of the target reached; 0 for a zero target."""
    return completion_percentage(progress, target_count)


def clamp_progress(value: int, target_count: int) -> int:
    return max(0, min(int(value), max(0, target_count)))


# ============================================
# POSTS, LIKES & COMMENTS
# ============================================

class CommunityFeed:
    """
    The viewer's page-by-page view of community posts.

    Every page is decorated with the viewer's likes using one query.
    Responses that arrive after close() or refresh() are discarded.
    """

    def __init__(self, client: DataClient, viewer_id: RowId, page_size: Optional[int] = None):
        self.client = client
        self.viewer_id = viewer_id
        self.page_size = page_size or get_app_config().posts_page_size
        self.posts: List[PostView] = []
        self.has_more = True
        self.closed = False
        self.error: Optional[str] = None
        self._offset = 0
        self._generation = 0
        self._guard = InFlightGuard()

    def _find(self, post_id: RowId) -> Optional[PostView]:
        for view in self.posts:
            if view.post.id == post_id:
                return view
        return None

    async def _liked_ids(self, post_ids: List[RowId]) -> set:
        if not post_ids:
            return set()
        rows = (await (
            self.client.table("post_likes").select("post_id")
            .eq("owner_id", self.viewer_id).in_("post_id", post_ids).execute()
        )).data
        return {r["post_id"] for r in rows}

    async def _fetch_page(self, offset: int) -> List[PostView]:
        rows = (await (
            self.client.table("posts").select("*")
            .order("created_at", desc=True)
            .range(offset, offset + self.page_size - 1)
            .execute()
        )).data
        posts = [Post.model_validate(r) for r in rows]
        liked = await self._liked_ids([p.id for p in posts])
        return [PostView(post=p, is_liked=p.id in liked) for p in posts]

    async def load_more(self) -> dict:
        """Fetch the next page and append it. Only one page request runs at a time."""
        if self.closed:
            return {"success": False, "error": "View closed"}
        try:
            with self._guard.hold(("page", self._generation)):
                return await self._load_page()
        except RequestInFlight:
            return {"success": False, "error": IN_FLIGHT_MESSAGE}

    async def _load_page(self) -> dict:
        generation = self._generation
        try:
            views = await self._fetch_page(self._offset)
        except TymeLyneError as e:
            if generation == self._generation:
                self.error = str(e)
            logger.error(f"Loading posts failed: {e}")
            return {"success": False, "error": str(e)}

        if generation != self._generation:
            logger.debug("Discarding posts page for a closed or refreshed feed")
            return {"success": False, "error": "Stale response"}

        known = {v.post.id for v in self.posts}
        fresh = [v for v in views if v.post.id not in known]
        self.posts.extend(fresh)
        self._offset += len(views)
        self.has_more = len(views) == self.page_size
        self.error = None
        return {"success": True, "loaded": len(fresh)}

    async def refresh(self) -> dict:
        """Drop local state and reload the first page."""
        self._generation += 1
        self.posts = []
        self._offset = 0
        self.has_more = True
        return await self.load_more()

    def close(self) -> None:
        self.closed = True
        self._generation += 1

    async def toggle_like(self, post_id: RowId) -> dict:
        """Like or unlike a post, updating the local copy first."""
        view = self._find(post_id)
        if view is None:
            return {"success": False, "error": "Post not found"}

        was_liked = view.is_liked
        original_count = view.post.like_count

        def apply():
            view.is_liked = not was_liked
            view.post.like_count = max(0, original_count + (-1 if was_liked else 1))

        def compensate():
            view.is_liked = was_liked
            view.post.like_count = original_count

        async def remote():
            likes = self.client.table("post_likes")
            if was_liked:
                await likes.delete().eq("post_id", post_id).eq("owner_id", self.viewer_id).execute()
                return
            try:
                await likes.insert({"post_id": post_id, "owner_id": self.viewer_id}).execute()
            except MutationError as e:
                # Already liked on the server: the local state is now right
                if e.code != UNIQUE_VIOLATION:
                    raise

        try:
            with self._guard.hold(("like", post_id)):
                await OptimisticCommand(apply, compensate, remote, label=f"like post={post_id}").run()
        except RequestInFlight:
            return {"success": False, "error": IN_FLIGHT_MESSAGE}
        except TymeLyneError as e:
            return {"success": False, "error": str(e)}

        return {"success": True, "liked": view.is_liked, "like_count": view.post.like_count}

    async def create_post(self, content: str) -> dict:
        error = _validate_content(content, POST_MAX, "Post")
        if error:
            return {"success": False, "error": error}
        try:
            rows = (await self.client.table("posts").insert({
                "author_id": self.viewer_id,
                "content": content.strip(),
                "like_count": 0,
                "comment_count": 0,
            }).execute()).data
        except TymeLyneError as e:
            return {"success": False, "error": str(e)}

        view = PostView(post=Post.model_validate(rows[0]), is_liked=False)
        if not self.closed:
            self.posts.insert(0, view)
            self._offset += 1
        return {"success": True, "post": view}

    async def load_comments(self, post_id: RowId, page: int = 0) -> dict:
        size = get_app_config().comments_page_size
        try:
            rows = (await (
                self.client.table("comments").select("*").eq("post_id", post_id)
                .order("created_at").range(page * size, (page + 1) * size - 1).execute()
            )).data
        except TymeLyneError as e:
            return {"success": False, "error": str(e), "comments": []}
        return {"success": True, "comments": [Comment.model_validate(r) for r in rows]}

    async def add_comment(self, post_id: RowId, content: str) -> dict:
        error = _validate_content(content, COMMENT_MAX, "Comment")
        if error:
            return {"success": False, "error": error}
        try:
            rows = (await self.client.table("comments").insert({
                "post_id": post_id,
                "author_id": self.viewer_id,
                "content": content.strip(),
            }).execute()).data
        except TymeLyneError as e:
            return {"success": False, "error": str(e)}

        view = self._find(post_id)
        if view is not None:
            view.post.comment_count += 1
        return {"success": True, "comment": Comment.model_validate(rows[0])}


# ============================================
# CHALLENGES
# ============================================

class ChallengeBoard:
    """Challenges list with the viewer's participation and progress."""

    def __init__(
        self,
        client: DataClient,
        viewer_id: RowId,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.client = client
        self.viewer_id = viewer_id
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.challenges: List[ChallengeView] = []
        self.error: Optional[str] = None
        self.closed = False
        self._generation = 0
        self._guard = InFlightGuard()

    def _find(self, challenge_id: RowId) -> Optional[ChallengeView]:
        for view in self.challenges:
            if view.challenge.id == challenge_id:
                return view
        return None

    async def load(self) -> dict:
        if self.closed:
            return {"success": False, "error": "View closed"}
        generation = self._generation
        try:
            rows = (await (
                self.client.table("challenges").select("*").order("start_date").execute()
            )).data
            challenges = [Challenge.model_validate(r) for r in rows]
            joined: Dict[RowId, ChallengeParticipation] = {}
            if challenges:
                mine = (await (
                    self.client.table("user_challenges").select("*")
                    .eq("owner_id", self.viewer_id)
                    .in_("challenge_id", [c.id for c in challenges]).execute()
                )).data
                joined = {
                    p.challenge_id: p
                    for p in (ChallengeParticipation.model_validate(r) for r in mine)
                }
        except TymeLyneError as e:
            if generation == self._generation:
                self.error = str(e)
            logger.error(f"Loading challenges failed: {e}")
            return {"success": False, "error": str(e)}

        if generation != self._generation:
            logger.debug("Discarding challenges for a closed board")
            return {"success": False, "error": "Stale response"}

        self.challenges = [
            ChallengeView(
                challenge=c,
                joined=c.id in joined,
                progress=joined[c.id].progress if c.id in joined else 0,
            )
            for c in challenges
        ]
        self.error = None
        return {"success": True, "count": len(self.challenges)}

    def close(self) -> None:
        self.closed = True
        self._generation += 1

    def describe(self, view: ChallengeView, now: Optional[datetime] = None) -> dict:
        """Display fields derived from the challenge window and join state."""
        now = now or self.clock()
        status = challenge_status(view.challenge, now)
        days_left = max(0, (_utc(view.challenge.end_date) - _utc(now)).days)
        return {
            "status": status.value,
            "button_label": button_label(status, view.joined),
            "progress_pct": progress_percentage(view.progress, view.challenge.target_count),
            "days_left": days_left if status != ChallengeStatus.COMPLETED else 0,
        }

    async def create_challenge(
        self,
        title: str,
        start_date: datetime,
        end_date: datetime,
        target_count: int,
        goal_type: ChallengeGoalType = ChallengeGoalType.GOAL,
        description: str = ""
    ) -> dict:
        if not title or not title.strip():
            return {"success": False, "error": "Challenge title is required"}
        if _utc(end_date) < _utc(start_date):
            return {"success": False, "error": "End date must be after start date"}
        if target_count <= 0:
            return {"success": False, "error": "Target must be at least 1"}
        try:
            rows = (await self.client.table("challenges").insert({
                "creator_id": self.viewer_id,
                "title": title.strip(),
                "description": description or "",
                "start_date": start_date,
                "end_date": end_date,
                "goal_type": ChallengeGoalType(goal_type).value,
                "target_count": target_count,
                "participant_count": 0,
            }).execute()).data
        except TymeLyneError as e:
            return {"success": False, "error": str(e)}

        view = ChallengeView(challenge=Challenge.model_validate(rows[0]))
        self.challenges.append(view)
        return {"success": True, "challenge": view}

    async def _run(self, key: tuple, command: OptimisticCommand) -> Optional[str]:
        """Run a command under the in-flight guard; returns an error message or None."""
        try:
            with self._guard.hold(key):
                await command.run()
        except RequestInFlight:
            return IN_FLIGHT_MESSAGE
        except TymeLyneError as e:
            return str(e)
        return None

    async def join(self, challenge_id: RowId) -> dict:
        view = self._find(challenge_id)
        if view is None:
            return {"success": False, "error": "Challenge not found"}
        if view.joined:
            return {"success": True, "joined": True}
        original = (view.joined, view.progress, view.challenge.participant_count)

        def apply():
            view.joined, view.progress = True, 0
            view.challenge.participant_count = original[2] + 1

        def compensate():
            view.joined, view.progress, view.challenge.participant_count = original

        async def remote():
            try:
                await self.client.table("user_challenges").insert({
                    "challenge_id": challenge_id,
                    "owner_id": self.viewer_id,
                    "progress": 0,
                    "joined_at": self.clock(),
                }).execute()
            except MutationError as e:
                if e.code != UNIQUE_VIOLATION:
                    raise

        error = await self._run(
            ("challenge", challenge_id),
            OptimisticCommand(apply, compensate, remote, label=f"join challenge={challenge_id}"),
        )
        if error:
            return {"success": False, "error": error}
        return {"success": True, "joined": True}

    async def leave(self, challenge_id: RowId) -> dict:
        view = self._find(challenge_id)
        if view is None:
            return {"success": False, "error": "Challenge not found"}
        if not view.joined:
            return {"success": True, "joined": False}
        original = (view.joined, view.progress, view.challenge.participant_count)

        def apply():
            view.joined, view.progress = False, 0
            view.challenge.participant_count = max(0, original[2] - 1)

        def compensate():
            view.joined, view.progress, view.challenge.participant_count = original

        async def remote():
            await (
                self.client.table("user_challenges").delete()
                .eq("challenge_id", challenge_id).eq("owner_id", self.viewer_id).execute()
            )

        error = await self._run(
            ("challenge", challenge_id),
            OptimisticCommand(apply, compensate, remote, label=f"leave challenge={challenge_id}"),
        )
        if error:
            return {"success": False, "error": error}
        return {"success": True, "joined": False}

    async def update_progress(self, challenge_id: RowId, value: int) -> dict:
        """
        Record the viewer's progress on a joined challenge.

        The value is clamped to [0, target_count] before it is written.
        """
        view = self._find(challenge_id)
        if view is None:
            return {"success": False, "error": "Challenge not found"}
        if not view.joined:
            return {"success": False, "error": "Join the challenge to record progress"}

        target = view.challenge.target_count
        clamped = clamp_progress(value, target)
        previous = view.progress

        def apply():
            view.progress = clamped

        def compensate():
            view.progress = previous

        async def remote():
            rows = (await (
                self.client.table("user_challenges").update({"progress": clamped})
                .eq("challenge_id", challenge_id).eq("owner_id", self.viewer_id).execute()
            )).data
            if not rows:
                raise MutationError("You are no longer part of this challenge")

        error = await self._run(
            ("challenge", challenge_id),
            OptimisticCommand(apply, compensate, remote, label=f"progress challenge={challenge_id}"),
        )
        if error:
            return {"success": False, "error": error}
        return {
            "success": True,
            "progress": clamped,
            "progress_pct": progress_percentage(clamped, target),
            "clamped": clamped != value,
        }
