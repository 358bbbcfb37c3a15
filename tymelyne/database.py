"""
TymeLyne - Remote Data Client
Table query builder and auth surface over the hosted backend, via the supabase client.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

import httpx
from pydantic_core import to_jsonable_python
from supabase import (
    AsyncClient,
    AsyncClientOptions,
    AuthError as SupabaseAuthError,
    AuthRetryableError,
    PostgrestAPIError,
    acreate_client,
)

from .config import SupabaseConfig, get_app_config, get_supabase_config
from .errors import AuthError, FetchError, MutationError, NotFoundError, TymeLyneError
from .models import AuthSession, AuthUser

logger = logging.getLogger(__name__)


# ============================================
# STORE LAYOUT
# ============================================

TABLES = (
    "profiles", "goals", "tasks", "achievements", "user_achievements",
    "user_streaks", "posts", "post_likes", "comments", "challenges",
    "user_challenges", "user_preferences",
)

# Natural unique keys; every upsert in the client targets one of these.
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "profiles": ("id",),
    "achievements": ("code",),
    "user_achievements": ("owner_id", "achievement_code"),
    "user_streaks": ("owner_id", "streak_type"),
    "post_likes": ("post_id", "owner_id"),
    "user_challenges": ("challenge_id", "owner_id"),
    "user_preferences": ("owner_id",),
}

# child table -> (parent table, foreign key column, parent counter column)
COUNTER_COLUMNS: Dict[str, Tuple[str, str, str]] = {
    "post_likes": ("posts", "post_id", "like_count"),
    "comments": ("posts", "post_id", "comment_count"),
    "user_challenges": ("challenges", "challenge_id", "participant_count"),
}

FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "is")

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"


def to_json(value: Any) -> Any:
    """Convert dates, enums and models into JSON-ready values."""
    return to_jsonable_python(value)


# ============================================
# QUERY BUILDER
# ============================================

@dataclass
class QueryResult:
    data: Any
    count: Optional[int] = None


class QueryBuilder:
    """
    One pending request against a table.

    Filters, ordering and paging are accumulated by chaining, then the
    request is sent by ``await builder.execute()``.
    """

    def __init__(
        self,
        client: "DataClient",
        table: str,
        method: str,
        columns: str = "*",
        payload: Any = None,
        count: Optional[str] = None,
        on_conflict: Optional[str] = None,
        ignore_duplicates: bool = False
    ):
        self.client = client
        self.table = table
        self.method = method
        self.columns = columns
        self.payload = payload
        self.count = count
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        self.filters: List[Tuple[str, str, Any]] = []
        self.orders: List[Tuple[str, bool]] = []
        self.offset: Optional[int] = None
        self.limit_rows: Optional[int] = None
        self.mode = "many"

    # -- filters ---------------------------------------------------------

    def _filter(self, column: str, op: str, value: Any) -> "QueryBuilder":
        self.filters.append((column, op, value))
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lte", value)

    def in_(self, column: str, values) -> "QueryBuilder":
        return self._filter(column, "in", list(values))

    def is_(self, column: str, value: Optional[bool]) -> "QueryBuilder":
        return self._filter(column, "is", value)

    # -- shaping ---------------------------------------------------------

    def order(self, column: str, desc: bool = False) -> "QueryBuilder":
        self.orders.append((column, desc))
        return self

    def range(self, start: int, end: int) -> "QueryBuilder":
        """Inclusive row range, ``range(0, 4)`` returns the first five rows."""
        if start < 0 or end < start:
            raise ValueError(f"Invalid range {start}-{end}")
        self.offset = start
        self.limit_rows = end - start + 1
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self.limit_rows = count
        return self

    def single(self) -> "QueryBuilder":
        self.mode = "single"
        return self

    def maybe_single(self) -> "QueryBuilder":
        self.mode = "maybe_single"
        return self

    # -- execution -------------------------------------------------------

    @property
    def is_read(self) -> bool:
        return self.method == "select"

    @property
    def error_class(self) -> Type[TymeLyneError]:
        return FetchError if self.is_read else MutationError

    async def execute(self) -> QueryResult:
        return await self.client.execute(self)

    def __repr__(self) -> str:
        return f"<QueryBuilder {self.method} {self.table} filters={self.filters}>"


def shape_rows(query: QueryBuilder, rows: List[dict]) -> Any:
    """Apply single / maybe_single semantics to a list of returned rows."""
    if query.mode == "many":
        return rows
    if len(rows) > 1:
        raise query.error_class(
            f"Expected at most one row from {query.table}, got {len(rows)}"
        )
    if not rows:
        if query.mode == "single":
            raise NotFoundError(f"No rows found in {query.table}")
        return None
    return rows[0]


class Table:
    """Entry point for building requests against one table."""

    def __init__(self, client: "DataClient", name: str):
        self.client = client
        self.name = name

    def select(self, columns: str = "*", count: Optional[str] = None) -> QueryBuilder:
        return QueryBuilder(self.client, self.name, "select", columns=columns, count=count)

    def insert(self, rows) -> QueryBuilder:
        return QueryBuilder(self.client, self.name, "insert", payload=_as_list(rows))

    def upsert(
        self,
        rows,
        on_conflict: Optional[str] = None,
        ignore_duplicates: bool = False
    ) -> QueryBuilder:
        conflict = on_conflict or ",".join(UNIQUE_KEYS.get(self.name, ("id",)))
        return QueryBuilder(
            self.client, self.name, "upsert", payload=_as_list(rows),
            on_conflict=conflict, ignore_duplicates=ignore_duplicates
        )

    def update(self, patch: dict) -> QueryBuilder:
        return QueryBuilder(self.client, self.name, "update", payload=dict(patch))

    def delete(self) -> QueryBuilder:
        return QueryBuilder(self.client, self.name, "delete")


def _as_list(rows) -> List[dict]:
    if isinstance(rows, dict):
        return [rows]
    return list(rows)


# ============================================
# AUTH SURFACE
# ============================================

AuthCallback = Callable[[str, Optional[AuthSession]], Awaitable[None]]


class AuthSubscription:
    """Handle returned by ``on_auth_state_change``."""

    def __init__(self, listeners: List[AuthCallback], callback: AuthCallback):
        self._listeners = listeners
        self.callback = callback

    def unsubscribe(self) -> None:
        if self.callback in self._listeners:
            self._listeners.remove(self.callback)


class AuthClient(ABC):
    """Shared listener bookkeeping; backends implement the calls."""

    def __init__(self):
        self._listeners: List[AuthCallback] = []
        self._session: Optional[AuthSession] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    def on_auth_state_change(self, callback: AuthCallback) -> AuthSubscription:
        """Register a coroutine called with (event, session) on every auth change."""
        self._listeners.append(callback)
        return AuthSubscription(self._listeners, callback)

    async def _emit(self, event: str, session: Optional[AuthSession]) -> None:
        for callback in list(self._listeners):
            try:
                await callback(event, session)
            except Exception as e:
                logger.error(f"Auth listener failed on {event}: {e}")

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> AuthUser:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def get_session(self) -> Optional[AuthSession]:
        ...

    @abstractmethod
    async def get_user(self) -> Optional[AuthUser]:
        ...

    @abstractmethod
    async def refresh_session(self) -> Optional[AuthSession]:
        ...


class DataClient(ABC):
    """Base class of every data client backend."""

    auth: AuthClient

    def table(self, name: str) -> Table:
        if name not in TABLES:
            raise ValueError(f"Unknown table: {name}")
        return Table(self, name)

    @abstractmethod
    async def execute(self, query: QueryBuilder) -> QueryResult:
        ...

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


# ============================================
# REMOTE (HOSTED) BACKEND
# ============================================

def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    value = to_json(value)
    return str(value)


def _to_user(user: Any) -> AuthUser:
    return AuthUser(
        id=str(user.id),
        email=getattr(user, "email", None),
        user_metadata=getattr(user, "user_metadata", None) or {},
    )


def _to_session(session: Any) -> Optional[AuthSession]:
    """Convert a supabase ``Session`` into our model."""
    if session is None:
        return None
    expires_at = getattr(session, "expires_at", None)
    expires_in = getattr(session, "expires_in", None)
    if not expires_at and expires_in:
        expires_at = int(time.time()) + int(expires_in)
    return AuthSession(
        access_token=session.access_token,
        refresh_token=getattr(session, "refresh_token", None),
        expires_at=expires_at,
        token_type=getattr(session, "token_type", None) or "bearer",
        user=_to_user(session.user),
    )


async def _auth_call(call: Callable[[], Awaitable[Any]]) -> Any:
    """Run one supabase auth call, translating its errors into AuthError."""
    try:
        return await call()
    except SupabaseAuthError as e:
        raise AuthError(
            getattr(e, "message", None) or str(e),
            code=getattr(e, "code", None),
            status=getattr(e, "status", None),
            retryable=isinstance(e, AuthRetryableError),
        )
    except httpx.TimeoutException:
        raise AuthError("Auth request timed out", retryable=True)
    except httpx.HTTPError as e:
        raise AuthError(f"Auth service unreachable: {e}", retryable=True)


class RemoteAuthClient(AuthClient):
    """Auth calls on the supabase client, with the session kept in ``session_file``."""

    def __init__(self, owner: "RemoteDataClient", config: SupabaseConfig):
        super().__init__()
        self._owner = owner
        self._session_file = Path(config.session_file) if config.session_file else None

    def _store(self, session: Optional[AuthSession]) -> None:
        self._session = session
        if not self._session_file:
            return
        try:
            if session is None:
                self._session_file.unlink(missing_ok=True)
            else:
                self._session_file.parent.mkdir(parents=True, exist_ok=True)
                self._session_file.write_text(session.model_dump_json(), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not persist session to {self._session_file}: {e}")

    def _load(self) -> Optional[AuthSession]:
        if not self._session_file or not self._session_file.exists():
            return None
        try:
            return AuthSession.model_validate(
                json.loads(self._session_file.read_text(encoding="utf-8"))
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session file {self._session_file}: {e}")
            return None

    async def sign_in(self, email: str, password: str) -> AuthSession:
        sb = await self._owner.sdk()
        response = await _auth_call(
            lambda: sb.auth.sign_in_with_password({"email": email, "password": password})
        )
        session = _to_session(response.session)
        if session is None:
            raise AuthError("Sign in returned no session")
        self._store(session)
        logger.info(f"Signed in user={session.user.id}")
        await self._emit(SIGNED_IN, session)
        return session

    async def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> AuthUser:
        sb = await self._owner.sdk()
        response = await _auth_call(lambda: sb.auth.sign_up({
            "email": email,
            "password": password,
            "options": {"data": metadata or {}},
        }))
        session = _to_session(response.session)
        if session is not None:
            self._store(session)
            await self._emit(SIGNED_IN, session)
            return session.user
        # Email confirmation pending
        if response.user is None:
            raise AuthError("Sign up returned no user")
        return _to_user(response.user)

    async def sign_out(self) -> None:
        try:
            if self._session is not None:
                sb = await self._owner.sdk()
                await _auth_call(sb.auth.sign_out)
        finally:
            self._store(None)
            await self._emit(SIGNED_OUT, None)

    async def get_session(self) -> Optional[AuthSession]:
        sb = await self._owner.sdk()
        current = await _auth_call(sb.auth.get_session)
        if current is not None:
            session = _to_session(current)
            self._store(session)
            return session

        saved = self._load()
        if saved is None:
            self._session = None
            return None
        if not saved.refresh_token:
            self._store(None)
            return None
        # set_session refreshes the pair when the access token has expired
        try:
            response = await _auth_call(
                lambda: sb.auth.set_session(saved.access_token, saved.refresh_token)
            )
        except AuthError:
            self._store(None)
            raise
        session = _to_session(response.session)
        self._store(session)
        if session is not None and session.access_token != saved.access_token:
            logger.info(f"Refreshed saved session for user={session.user.id}")
            await self._emit(TOKEN_REFRESHED, session)
        return session

    async def refresh_session(self) -> Optional[AuthSession]:
        if self._session is None:
            return None
        sb = await self._owner.sdk()
        response = await _auth_call(sb.auth.refresh_session)
        session = _to_session(response.session)
        self._store(session)
        await self._emit(TOKEN_REFRESHED, session)
        return session

    async def get_user(self) -> Optional[AuthUser]:
        if await self.get_session() is None:
            return None
        sb = await self._owner.sdk()
        response = await _auth_call(sb.auth.get_user)
        if response is None or response.user is None:
            return None
        return _to_user(response.user)


class RemoteDataClient(DataClient):
    """
    Data client for the hosted project, built on supabase-py's async client.

    Usage:
        async with RemoteDataClient() as client:
            rows = (await client.table("goals").select().eq("owner_id", uid).execute()).data
    """

    def __init__(
        self,
        config: Optional[SupabaseConfig] = None,
        sdk: Optional[AsyncClient] = None
    ):
        self._config = config or get_supabase_config()
        self._sdk = sdk
        self.auth = RemoteAuthClient(self, self._config)

    async def sdk(self) -> AsyncClient:
        """The underlying supabase client, created on first use."""
        if self._sdk is None:
            cfg = self._config
            if not cfg.anon_key:
                raise AuthError("SUPABASE_ANON_KEY is not configured")
            self._sdk = await acreate_client(
                cfg.url,
                cfg.anon_key,
                options=AsyncClientOptions(
                    postgrest_client_timeout=cfg.timeout_seconds,
                    auto_refresh_token=False,
                    persist_session=False,
                ),
            )
            logger.info(f"RemoteDataClient initialized: url={cfg.url}")
        return self._sdk

    def _build(self, sb: AsyncClient, query: QueryBuilder):
        """Translate a QueryBuilder into the supabase request builder."""
        table = sb.table(query.table)
        payload = to_json(query.payload) if query.payload is not None else None
        if query.method == "select":
            builder = table.select(query.columns, count=query.count)
        elif query.method == "insert":
            return table.insert(payload)
        elif query.method == "upsert":
            return table.upsert(
                payload, on_conflict=query.on_conflict,
                ignore_duplicates=query.ignore_duplicates
            )
        elif query.method == "update":
            builder = table.update(payload)
        else:
            builder = table.delete()

        for column, op, value in query.filters:
            if op == "in":
                builder = builder.in_(column, [_format_value(v) for v in value])
            elif op == "is":
                builder = builder.is_(column, _format_value(value))
            else:
                builder = getattr(builder, op)(column, _format_value(value))

        if query.is_read:
            for column, desc in query.orders:
                builder = builder.order(column, desc=desc)
            if query.offset is not None:
                builder = builder.range(query.offset, query.offset + query.limit_rows - 1)
            elif query.limit_rows is not None:
                builder = builder.limit(query.limit_rows)
        return builder

    async def execute(self, query: QueryBuilder) -> QueryResult:
        error_class = query.error_class
        sb = await self.sdk()
        try:
            response = await self._build(sb, query).execute()
        except PostgrestAPIError as e:
            message = e.message or f"{query.method} on {query.table} failed"
            if e.code == "PGRST116":
                raise NotFoundError(message)
            if e.code and e.code.startswith("PGRST3"):
                raise AuthError(message, code=e.code, status=401)
            raise error_class(message, code=e.code)
        except httpx.TimeoutException:
            logger.warning(f"Timed out: {query.method} {query.table}")
            raise error_class(f"Request to {query.table} timed out", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"Transport error on {query.method} {query.table}: {e}")
            raise error_class(f"Could not reach the server: {e}", retryable=True)

        rows = response.data or []
        if isinstance(rows, dict):
            rows = [rows]
        return QueryResult(data=shape_rows(query, rows), count=response.count)

    async def aclose(self) -> None:
        if self._sdk is not None:
            await self._sdk.postgrest.aclose()
            self._sdk = None


def create_client(backend: Optional[str] = None) -> DataClient:
    """Build the data client selected by configuration."""
    backend = backend or get_app_config().backend
    if backend == "memory":
        from .memory import MemoryDataClient
        return MemoryDataClient()
    return RemoteDataClient()
