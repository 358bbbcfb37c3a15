"""
TymeLyne - In-Memory Data Client
Process-local tables with the hosted store's semantics (unique keys,
denormalised counters, single-row lookups) for offline use and tests.
"""

import copy
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .database import (
    COUNTER_COLUMNS, SIGNED_IN, SIGNED_OUT, TABLES, TOKEN_REFRESHED, UNIQUE_KEYS,
    AuthClient, DataClient, QueryBuilder, QueryResult, shape_rows, to_json,
)
from .errors import AuthError, FetchError, MutationError, TymeLyneError
from .models import AuthSession, AuthUser

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Failures:
    """One-shot failures keyed by (table, operation)."""

    def __init__(self):
        self._pending: Dict[Tuple[str, str], TymeLyneError] = {}

    def add(self, table: str, operation: str, error: TymeLyneError) -> None:
        self._pending[(table, operation)] = error

    def check(self, table: str, operation: str) -> None:
        error = self._pending.pop((table, operation), None)
        if error is not None:
            raise error


class MemoryAuthClient(AuthClient):
    """Accounts kept in a dict; sign-up requires a separate sign-in."""

    def __init__(self, failures: _Failures):
        super().__init__()
        self._users: Dict[str, dict] = {}
        self._failures = failures

    def _new_session(self, user: dict) -> AuthSession:
        return AuthSession(
            access_token=secrets.token_urlsafe(24),
            refresh_token=secrets.token_urlsafe(24),
            expires_at=int(time.time()) + 3600,
            user=AuthUser(
                id=user["id"], email=user["email"], user_metadata=user["user_metadata"]
            ),
        )

    async def sign_in(self, email: str, password: str) -> AuthSession:
        self._failures.check("auth", "sign_in")
        user = self._users.get(email.lower())
        if not user or user["password"] != password:
            raise AuthError("Invalid login credentials", code="invalid_credentials", status=400)
        self._session = self._new_session(user)
        await self._emit(SIGNED_IN, self._session)
        return self._session

    async def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> AuthUser:
        self._failures.check("auth", "sign_up")
        key = email.lower()
        if key in self._users:
            raise AuthError("User already registered", code="user_already_exists", status=422)
        if len(password) < 6:
            raise AuthError("Password should be at least 6 characters", code="weak_password", status=422)
        user = {
            "id": str(uuid.uuid4()),
            "email": email,
            "password": password,
            "user_metadata": dict(metadata or {}),
        }
        self._users[key] = user
        return AuthUser(id=user["id"], email=email, user_metadata=user["user_metadata"])

    async def sign_out(self) -> None:
        try:
            self._failures.check("auth", "sign_out")
        finally:
            self._session = None
            await self._emit(SIGNED_OUT, None)

    async def get_session(self) -> Optional[AuthSession]:
        self._failures.check("auth", "get_session")
        return self._session

    async def get_user(self) -> Optional[AuthUser]:
        self._failures.check("auth", "get_user")
        return self._session.user if self._session else None

    async def refresh_session(self) -> Optional[AuthSession]:
        if not self._session:
            return None
        self._session = self._new_session(
            self._users[self._session.user.email.lower()]
        )
        await self._emit(TOKEN_REFRESHED, self._session)
        return self._session


class MemoryDataClient(DataClient):
    """
    In-process implementation of the data client.

    Usage:
        client = MemoryDataClient()
        client.inject_failure("post_likes", "insert")   # next like insert fails
    """

    def __init__(self):
        self._tables: Dict[str, List[dict]] = {name: [] for name in TABLES}
        self._failures = _Failures()
        self.auth = MemoryAuthClient(self._failures)

    # ============================================
    # TEST / DEV HELPERS
    # ============================================

    def inject_failure(
        self,
        table: str,
        operation: str,
        error: Optional[TymeLyneError] = None
    ) -> None:
        """Make the next ``operation`` on ``table`` (or "auth") fail once."""
        if error is None:
            if table == "auth":
                error = AuthError(f"Simulated {operation} failure")
            elif operation == "select":
                error = FetchError(f"Simulated {table} read failure", retryable=True)
            else:
                error = MutationError(f"Simulated {table} {operation} failure", retryable=True)
        self._failures.add(table, operation, error)

    def seed(self, table: str, rows: List[dict]) -> List[dict]:
        """Insert raw rows without unique checks or counter maintenance."""
        seeded = []
        for row in rows:
            row = self._prepare(table, row)
            self._tables[table].append(row)
            seeded.append(copy.deepcopy(row))
        return seeded

    def rows(self, table: str) -> List[dict]:
        return copy.deepcopy(self._tables[table])

    # ============================================
    # EXECUTION
    # ============================================

    async def execute(self, query: QueryBuilder) -> QueryResult:
        self._failures.check(query.table, query.method)
        handler = getattr(self, f"_{query.method}")
        data, count = handler(query)
        return QueryResult(data=shape_rows(query, data), count=count)

    def _prepare(self, table: str, row: dict) -> dict:
        row = to_json(dict(row))
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", _now_iso())
        return row

    def _match(self, query: QueryBuilder) -> List[dict]:
        return [r for r in self._tables[query.table] if _matches(r, query.filters)]

    def _select(self, query: QueryBuilder):
        rows = self._match(query)
        for column, desc in reversed(query.orders):
            rows = sorted(rows, key=lambda r: _sort_key(r.get(column)), reverse=desc)
        count = len(rows) if query.count else None
        start = query.offset or 0
        if query.limit_rows is not None:
            rows = rows[start:start + query.limit_rows]
        else:
            rows = rows[start:]
        return [_project(r, query.columns) for r in rows], count

    def _conflict(self, table: str, row: dict, columns: Tuple[str, ...]) -> Optional[dict]:
        for existing in self._tables[table]:
            if all(existing.get(c) == row.get(c) for c in columns):
                return existing
        return None

    def _insert_row(self, table: str, row: dict) -> dict:
        keys = UNIQUE_KEYS.get(table)
        if keys and self._conflict(table, row, keys):
            raise MutationError(
                f'duplicate key value violates unique constraint "{table}_{"_".join(keys)}_key"',
                code="23505", status=409,
            )
        self._tables[table].append(row)
        self._bump_counter(table, row, 1)
        return row

    def _insert(self, query: QueryBuilder):
        rows = [self._prepare(query.table, r) for r in query.payload]
        inserted = [copy.deepcopy(self._insert_row(query.table, r)) for r in rows]
        return [_project(r, query.columns) for r in inserted], None

    def _upsert(self, query: QueryBuilder):
        columns = tuple(c.strip() for c in query.on_conflict.split(","))
        written = []
        for raw in query.payload:
            row = to_json(dict(raw))
            existing = self._conflict(query.table, row, columns)
            if existing is None:
                written.append(self._insert_row(query.table, self._prepare(query.table, row)))
            elif not query.ignore_duplicates:
                existing.update(row)
                written.append(existing)
        return [_project(copy.deepcopy(r), query.columns) for r in written], None

    def _update(self, query: QueryBuilder):
        patch = to_json(query.payload)
        updated = []
        for row in self._match(query):
            row.update(patch)
            updated.append(copy.deepcopy(row))
        return [_project(r, query.columns) for r in updated], None

    def _delete(self, query: QueryBuilder):
        doomed = self._match(query)
        self._tables[query.table] = [
            r for r in self._tables[query.table] if not any(r is d for d in doomed)
        ]
        for row in doomed:
            self._bump_counter(query.table, row, -1)
        return [copy.deepcopy(r) for r in doomed], None

    def _bump_counter(self, table: str, row: dict, delta: int) -> None:
        if table not in COUNTER_COLUMNS:
            return
        parent, fk, counter = COUNTER_COLUMNS[table]
        for parent_row in self._tables[parent]:
            if parent_row.get("id") == row.get(fk):
                parent_row[counter] = max(0, (parent_row.get(counter) or 0) + delta)


# ============================================
# FILTER EVALUATION
# ============================================

def _matches(row: dict, filters) -> bool:
    for column, op, value in filters:
        actual = row.get(column)
        value = to_json(value)
        if op == "eq" and actual != value:
            return False
        if op == "neq" and actual == value:
            return False
        if op == "in" and actual not in value:
            return False
        if op == "is" and actual is not value and actual != value:
            return False
        if op in ("gt", "gte", "lt", "lte"):
            if actual is None or value is None:
                return False
            if op == "gt" and not actual > value:
                return False
            if op == "gte" and not actual >= value:
                return False
            if op == "lt" and not actual < value:
                return False
            if op == "lte" and not actual <= value:
                return False
    return True


def _sort_key(value: Any):
    # Postgres default: NULLS LAST ascending, NULLS FIRST descending
    return (value is None, value if value is not None else 0)


def _project(row: dict, columns: str) -> dict:
    if not columns or columns.strip() == "*":
        return row
    wanted = [c.strip() for c in columns.split(",")]
    return {c: row.get(c) for c in wanted}
