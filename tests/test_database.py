import abc
import asyncio
import time
from types import SimpleNamespace

import httpx
import pytest
from supabase import AuthApiError, PostgrestAPIError

from tymelyne.config import SupabaseConfig
from tymelyne.database import AuthClient, DataClient, RemoteDataClient
from tymelyne.errors import AuthError, FetchError, MutationError, NotFoundError
from tymelyne.models import SessionStatus
from tymelyne.session import SessionProvider


CONFIG = SupabaseConfig(url="http://backend.test", anon_key="anon-key", timeout_seconds=5)


class RejectedCredentials(AuthApiError):
    def __init__(self, message, status=400):
        Exception.__init__(self, message)
        self.message = message
        self.status = status
        self.code = "invalid_credentials"


class RecordingQuery:
    """Stands in for a postgrest request builder; records every chained call."""

    def __init__(self, backend, table):
        self.backend = backend
        self.table_name = table
        self.calls = []
        backend.queries.append(self)

    def __getattr__(self, name):
        def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return call

    async def execute(self):
        outcome = self.backend.outcomes.pop(0) if self.backend.outcomes else []
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, SimpleNamespace):
            return outcome
        return SimpleNamespace(data=outcome, count=None)


class RecordingAuth:
    def __init__(self):
        self.answers = {}
        self.calls = []

    async def _answer(self, name, *args):
        self.calls.append((name, args))
        value = self.answers.get(name)
        if isinstance(value, Exception):
            raise value
        return value

    async def sign_in_with_password(self, credentials):
        return await self._answer("sign_in_with_password", credentials)

    async def sign_up(self, credentials):
        return await self._answer("sign_up", credentials)

    async def sign_out(self):
        return await self._answer("sign_out")

    async def get_session(self):
        return await self._answer("get_session")

    async def set_session(self, access_token, refresh_token):
        return await self._answer("set_session", access_token, refresh_token)

    async def refresh_session(self):
        return await self._answer("refresh_session")

    async def get_user(self):
        return await self._answer("get_user")


class RecordingSupabase:
    """Minimal async supabase client: ``table()``, ``auth`` and ``postgrest``."""

    def __init__(self):
        self.queries = []
        self.outcomes = []
        self.auth = RecordingAuth()
        self.closed = False
        backend = self

        class Postgrest:
            async def aclose(self):
                backend.closed = True

        self.postgrest = Postgrest()

    def table(self, name):
        return RecordingQuery(self, name)


def _user(uid="user-1"):
    return SimpleNamespace(id=uid, email="ada@example.com", user_metadata=None)


def _session(token, expires_in=3600):
    return SimpleNamespace(
        access_token=token, refresh_token=f"refresh-{token}", expires_in=expires_in,
        expires_at=None, token_type="bearer", user=_user(),
    )


def _run(backend, scenario, config=CONFIG):
    async def main():
        async with RemoteDataClient(config, sdk=backend) as client:
            return await scenario(client)
    return asyncio.run(main())


def test_select_is_translated_to_the_supabase_builder():
    backend = RecordingSupabase()
    backend.outcomes.append(SimpleNamespace(data=[{"id": "g1"}], count=42))

    result = _run(backend, lambda c: (
        c.table("goals").select("id", count="exact").eq("owner_id", "user-1")
        .order("created_at", desc=True).range(5, 9).execute()
    ))

    query = backend.queries[0]
    assert query.table_name == "goals"
    assert query.calls == [
        ("select", ("id",), {"count": "exact"}),
        ("eq", ("owner_id", "user-1"), {}),
        ("order", ("created_at",), {"desc": True}),
        ("range", (5, 9), {}),
    ]
    assert result.count == 42
    assert result.data == [{"id": "g1"}]
    assert backend.closed


def test_filter_values_are_encoded():
    backend = RecordingSupabase()

    _run(backend, lambda c: (
        c.table("post_likes").select("post_id").in_("post_id", ["p1", "p2"])
        .eq("completed", True).is_("owner_id", None).limit(3).execute()
    ))

    calls = backend.queries[0].calls
    assert ("in_", ("post_id", ["p1", "p2"]), {}) in calls
    assert ("eq", ("completed", "true"), {}) in calls
    assert ("is_", ("owner_id", "null"), {}) in calls
    assert calls[-1] == ("limit", (3,), {})


def test_upsert_passes_conflict_target():
    backend = RecordingSupabase()
    backend.outcomes.append([{"owner_id": "user-1", "achievement_code": "first_goal"}])

    result = _run(backend, lambda c: c.table("user_achievements").upsert(
        {"owner_id": "user-1", "achievement_code": "first_goal"}, ignore_duplicates=True
    ).execute())

    name, args, kwargs = backend.queries[0].calls[0]
    assert name == "upsert"
    assert args == ([{"owner_id": "user-1", "achievement_code": "first_goal"}],)
    assert kwargs == {"on_conflict": "owner_id,achievement_code", "ignore_duplicates": True}
    assert result.data[0]["achievement_code"] == "first_goal"


def test_postgrest_errors_map_to_taxonomy():
    def failing(code, message="boom"):
        backend = RecordingSupabase()
        backend.outcomes.append(PostgrestAPIError({"code": code, "message": message}))
        return backend

    with pytest.raises(MutationError) as excinfo:
        _run(failing("23505", "duplicate key"),
             lambda c: c.table("post_likes").insert({"post_id": "p1"}).execute())
    assert excinfo.value.code == "23505"

    with pytest.raises(AuthError):
        _run(failing("PGRST301", "JWT expired"), lambda c: c.table("goals").select().execute())

    with pytest.raises(NotFoundError):
        _run(failing("PGRST116", "0 rows"),
             lambda c: c.table("profiles").select().eq("id", "x").single().execute())


def test_timeout_is_retryable_fetch_error():
    backend = RecordingSupabase()
    backend.outcomes.append(httpx.ReadTimeout("too slow"))

    with pytest.raises(FetchError) as excinfo:
        _run(backend, lambda c: c.table("posts").select().execute())
    assert excinfo.value.retryable


def test_single_row_semantics_are_applied_client_side():
    backend = RecordingSupabase()
    backend.outcomes.extend([[{"id": 1}, {"id": 2}], []])

    async def scenario(client):
        with pytest.raises(FetchError):
            await client.table("goals").select().maybe_single().execute()
        return await client.table("goals").select().maybe_single().execute()

    assert _run(backend, scenario).data is None


def test_invalid_range_and_unknown_table():
    async def scenario(client):
        with pytest.raises(ValueError):
            client.table("goals").select().range(5, 2)
        with pytest.raises(ValueError):
            client.table("not_a_table")

    _run(RecordingSupabase(), scenario)


def test_sign_in_emits_event_and_keeps_session():
    backend = RecordingSupabase()
    backend.auth.answers["sign_in_with_password"] = SimpleNamespace(
        user=_user(), session=_session("user-token")
    )

    async def scenario(client):
        events = []

        async def on_change(event, session):
            events.append(event)

        client.auth.on_auth_state_change(on_change)
        session = await client.auth.sign_in("ada@example.com", "pw")
        return session, events, client.auth.access_token

    session, events, token = _run(backend, scenario)

    assert backend.auth.calls[0] == (
        "sign_in_with_password", ({"email": "ada@example.com", "password": "pw"},)
    )
    assert session.expires_at is not None
    assert session.user.user_metadata == {}
    assert events == ["SIGNED_IN"]
    assert token == "user-token"


def test_bad_credentials_raise_auth_error():
    backend = RecordingSupabase()
    backend.auth.answers["sign_in_with_password"] = RejectedCredentials("Invalid login credentials")

    with pytest.raises(AuthError) as excinfo:
        _run(backend, lambda c: c.auth.sign_in("ada@example.com", "nope"))
    assert str(excinfo.value) == "Invalid login credentials"
    assert excinfo.value.status == 400


def test_expired_saved_session_is_refreshed(tmp_path):
    session_file = tmp_path / "session.json"
    config = CONFIG.model_copy(update={"session_file": str(session_file)})
    backend = RecordingSupabase()
    backend.auth.answers["sign_in_with_password"] = SimpleNamespace(
        user=_user(), session=_session("stale-token", expires_in=1)
    )
    asyncio.run(RemoteDataClient(config, sdk=backend).auth.sign_in("ada@example.com", "pw"))
    assert "stale-token" in session_file.read_text()

    # a later run starts with no in-memory session
    restarted = RecordingSupabase()
    restarted.auth.answers["set_session"] = SimpleNamespace(
        user=_user(), session=_session("fresh-token")
    )

    async def scenario(client):
        events = []

        async def on_change(event, session):
            events.append(event)

        client.auth.on_auth_state_change(on_change)
        return await client.auth.get_session(), events

    session, events = _run(restarted, scenario, config=config)

    assert restarted.auth.calls[-1] == ("set_session", ("stale-token", "refresh-stale-token"))
    assert session.access_token == "fresh-token"
    assert events == ["TOKEN_REFRESHED"]
    assert "fresh-token" in session_file.read_text()


def test_rejected_saved_session_is_forgotten(tmp_path):
    session_file = tmp_path / "session.json"
    session_file.write_text(
        '{"access_token": "old", "refresh_token": "gone", "expires_at": %d, '
        '"user": {"id": "user-1"}}' % (int(time.time()) - 60)
    )
    config = CONFIG.model_copy(update={"session_file": str(session_file)})
    backend = RecordingSupabase()
    backend.auth.answers["set_session"] = RejectedCredentials("Invalid Refresh Token", 401)

    state = _run(backend, lambda c: SessionProvider(c).start(), config=config)

    assert state.status == SessionStatus.ANONYMOUS
    assert not session_file.exists()


def test_restored_remote_session_resolves_profile():
    backend = RecordingSupabase()
    backend.auth.answers["get_session"] = _session("live-token")
    backend.outcomes.append([{"id": "user-1", "email": "ada@example.com", "username": "ada"}])

    state = _run(backend, lambda c: SessionProvider(c).start())

    assert state.status == SessionStatus.AUTHENTICATED
    assert state.principal.profile.username == "ada"
    assert backend.queries[0].table_name == "profiles"
    assert ("eq", ("id", "user-1"), {}) in backend.queries[0].calls


def test_backends_must_implement_every_call():
    class HalfAuth(AuthClient):
        async def sign_in(self, email, password):
            return None

    class NoExecute(DataClient):
        pass

    assert isinstance(AuthClient, abc.ABCMeta)
    with pytest.raises(TypeError):
        HalfAuth()
    with pytest.raises(TypeError):
        NoExecute()
