"""
TymeLyne - Goal tracking client core
Session, progress, achievements, streaks, goals, tasks and community
features over a hosted Postgres backend.
"""

from .app import TymeLyne
from .config import get_app_config, get_config_summary, reload_config
from .database import RemoteDataClient, create_client
from .errors import AuthError, FetchError, MutationError, NotFoundError, TymeLyneError
from .memory import MemoryDataClient
from .session import SessionProvider, SignUpForm

__version__ = "1.0.0"

__all__ = [
    "TymeLyne",
    "SessionProvider",
    "SignUpForm",
    "RemoteDataClient",
    "MemoryDataClient",
    "create_client",
    "get_app_config",
    "get_config_summary",
    "reload_config",
    "TymeLyneError",
    "AuthError",
    "FetchError",
    "MutationError",
    "NotFoundError",
]
