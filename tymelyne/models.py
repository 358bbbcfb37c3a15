"""
TymeLyne - Pydantic Models (v2 syntax)
Transient, non-authoritative copies of the rows owned by the remote store,
plus the derived view-models handed to the presentation layer.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Union
from pydantic import BaseModel, ConfigDict, Field


RowId = Union[int, str]


# ============================================
# ENUMS
# ============================================

class StreakType(str, Enum):
    DAILY_LOGIN = "daily_login"
    TASK_COMPLETION = "task_completion"
    GOAL_PROGRESS = "goal_progress"
    WEEKLY_REVIEW = "weekly_review"


class ChallengeGoalType(str, Enum):
    HABIT = "habit"
    GOAL = "goal"
    PROGRESS = "progress"


class ChallengeStatus(str, Enum):
    STARTING_SOON = "Starting Soon"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class SessionStatus(str, Enum):
    UNRESOLVED = "unresolved"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class _Row(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")


# ============================================
# IDENTITY
# ============================================

class Profile(_Row):
    id: Optional[RowId] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    experience_points: int = 0
    level: int = 1
    timezone: Optional[str] = None
    language: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.username or self.email or ""


class AuthUser(_Row):
    id: RowId
    email: Optional[str] = None
    user_metadata: Dict = Field(default_factory=dict)


class AuthSession(_Row):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "bearer"
    user: AuthUser


class Principal(_Row):
    id: RowId
    email: Optional[str] = None
    profile: Profile = Field(default_factory=Profile)


class SessionState(BaseModel):
    status: SessionStatus = SessionStatus.UNRESOLVED
    principal: Optional[Principal] = None

    @property
    def is_loading(self) -> bool:
        return self.status == SessionStatus.UNRESOLVED


# ============================================
# GOALS & TASKS
# ============================================

class Goal(_Row):
    id: RowId
    owner_id: RowId
    title: str
    description: Optional[str] = ""
    progress: int = 0
    deadline: Optional[date] = None
    completed: bool = False
    created_at: Optional[datetime] = None


class Task(_Row):
    id: RowId
    owner_id: RowId
    title: str
    description: Optional[str] = ""
    due_date: Optional[date] = None
    category: Optional[str] = None
    goal_id: Optional[RowId] = None
    completed: bool = False
    created_at: Optional[datetime] = None


# ============================================
# ACHIEVEMENTS & STREAKS
# ============================================

class AchievementDefinition(BaseModel):
    code: str
    title: str
    description: str
    icon: str
    category: str
    threshold: int


class AchievementUnlock(_Row):
    owner_id: RowId
    achievement_code: str
    earned_at: Optional[datetime] = None


class Streak(_Row):
    owner_id: RowId
    streak_type: StreakType
    current_count: int = 0
    longest_count: int = 0
    last_updated_at: Optional[datetime] = None


# ============================================
# COMMUNITY
# ============================================

class Post(_Row):
    id: RowId
    author_id: RowId
    content: str
    created_at: Optional[datetime] = None
    like_count: int = 0
    comment_count: int = 0


class Like(_Row):
    post_id: RowId
    owner_id: RowId


class Comment(_Row):
    id: RowId
    post_id: RowId
    author_id: RowId
    content: str
    created_at: Optional[datetime] = None


class Challenge(_Row):
    id: RowId
    creator_id: Optional[RowId] = None
    title: str
    description: Optional[str] = ""
    start_date: datetime
    end_date: datetime
    goal_type: ChallengeGoalType = ChallengeGoalType.GOAL
    target_count: int = 0
    participant_count: int = 0


class ChallengeParticipation(_Row):
    challenge_id: RowId
    owner_id: RowId
    progress: int = 0
    joined_at: Optional[datetime] = None


class PostView(BaseModel):
    """A post decorated with the viewer's like state."""
    post: Post
    is_liked: bool = False


class ChallengeView(BaseModel):
    """A challenge decorated with the viewer's participation."""
    challenge: Challenge
    joined: bool = False
    progress: int = 0


# ============================================
# PREFERENCES
# ============================================

class UserPreferences(_Row):
    owner_id: Optional[RowId] = None
    dark_mode: bool = False
    email_notifications: bool = True
    push_notifications: bool = True
    weekly_report: bool = True


# ============================================
# DERIVED VIEW-MODELS
# ============================================

class LevelInfo(BaseModel):
    level: int
    total_xp: int
    current_xp: int
    next_level_xp: int
    remaining_xp: int
    level_title: str
    level_progress_pct: int = 0


class ProgressSummary(LevelInfo):
    task_completion_pct: int
    goal_completion_pct: int
    total_tasks: int
    completed_tasks: int
    total_goals: int
    completed_goals: int


class ProgressSnapshot(BaseModel):
    """Either a summary or an explicit "data unavailable" marker."""
    status: str = "ok"
    summary: Optional[ProgressSummary] = None
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status == "ok" and self.summary is not None


class AchievementProgress(BaseModel):
    code: str
    current_value: int
    target_value: int
    percentage: int
    is_complete: bool


class TaskSummary(BaseModel):
    total: int
    completed: int
    completion_pct: int
    by_category: Dict[str, int] = Field(default_factory=dict)
    overdue: List[Task] = Field(default_factory=list)
