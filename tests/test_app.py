import asyncio

from tymelyne.app import TymeLyne
from tymelyne.config import AppConfig, get_config_summary, reload_config
from tymelyne.models import SessionStatus, UserPreferences


EMAIL = "grace@example.com"
PASSWORD = "hopper-123"


def _app(client):
    return TymeLyne(config=AppConfig(backend="memory"), client=client)


def _sign_up(app):
    return app.session.sign_up({
        "first_name": "Grace", "last_name": "Hopper", "username": "grace",
        "email": EMAIL, "password": PASSWORD, "confirm_password": PASSWORD,
        "accept_terms": True,
    })


def test_start_without_session(client):
    app = _app(client)

    async def scenario():
        state = await app.start()
        return state, await app.preferences(), await app.progress(), await app.save_preferences(dark_mode=True)

    state, prefs, progress, saved = asyncio.run(scenario())

    assert state.status == SessionStatus.ANONYMOUS
    assert app.community_feed() is None
    assert app.challenge_board() is None
    assert prefs == UserPreferences()
    assert not progress.available
    assert saved == {"success": False, "error": "Not signed in"}


def test_sign_in_records_daily_login_once(client):
    app = _app(client)

    async def scenario():
        await app.start()
        await _sign_up(app)
        await app.session.sign_in(EMAIL, PASSWORD)
        await app.session.update_user_experience(100)
        return await app.streaks()

    result = asyncio.run(scenario())

    rows = client.rows("user_streaks")
    assert len(rows) == 1
    assert rows[0]["streak_type"] == "daily_login"
    assert result["success"]
    assert app.last_login_achievements == []


def test_views_are_bound_to_principal(client):
    app = _app(client)

    async def scenario():
        await app.start()
        await _sign_up(app)
        await app.session.sign_in(EMAIL, PASSWORD)
        saved = await app.save_preferences(dark_mode=True)
        prefs = await app.preferences()
        progress = await app.progress()
        return saved, prefs, progress

    saved, prefs, progress = asyncio.run(scenario())

    assert saved["success"]
    assert prefs.dark_mode is True
    assert progress.available
    assert app.community_feed().viewer_id == app.session.principal.id


def test_stop_closes_feeds_and_subscriptions(client):
    app = _app(client)

    async def scenario():
        await app.start()
        await _sign_up(app)
        await app.session.sign_in(EMAIL, PASSWORD)
        feed = app.community_feed()
        board = app.challenge_board()
        await app.stop()
        return feed, board

    feed, board = asyncio.run(scenario())

    assert feed.closed
    assert board.closed
    assert client.auth._listeners == []


def test_config_summary_hides_keys(monkeypatch):
    monkeypatch.setenv("SUPABASE_ANON_KEY", "very-secret")
    reload_config()

    summary = get_config_summary()

    assert summary["supabase"]["has_key"] is True
    assert "very-secret" not in str(summary)
