import asyncio

from tymelyne.models import SessionStatus
from tymelyne.session import SessionProvider


EMAIL = "ada@example.com"
PASSWORD = "s3cret-pass"

FORM = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "username": "ada",
    "email": EMAIL,
    "password": PASSWORD,
    "confirm_password": PASSWORD,
    "accept_terms": True,
}


def _register(provider):
    return asyncio.run(provider.sign_up(FORM))


def test_restore_without_session_is_anonymous(client):
    provider = SessionProvider(client)

    state = asyncio.run(provider.start())

    assert state.status == SessionStatus.ANONYMOUS
    assert not state.is_loading


def test_restore_failure_is_anonymous(client):
    client.inject_failure("auth", "get_session")

    state = asyncio.run(SessionProvider(client).start())

    assert state.status == SessionStatus.ANONYMOUS


def test_sign_up_validation_messages(client):
    provider = SessionProvider(client)

    missing = asyncio.run(provider.sign_up({**FORM, "accept_terms": False}))
    mismatch = asyncio.run(provider.sign_up({**FORM, "confirm_password": "other"}))

    assert missing["error"] == "Please fill in all fields and accept the terms"
    assert mismatch["error"] == "Passwords do not match"
    assert client.rows("profiles") == []


def test_sign_up_creates_profile_without_signing_in(client):
    provider = SessionProvider(client)

    result = _register(provider)

    assert result == {"success": True, "message": "Sign up successful! Please verify your email."}
    profile = client.rows("profiles")[0]
    assert profile["username"] == "ada"
    assert profile["email"] == EMAIL
    assert provider.state.status == SessionStatus.UNRESOLVED


def test_duplicate_sign_up_is_reported(client):
    provider = SessionProvider(client)
    _register(provider)

    assert asyncio.run(provider.sign_up(FORM))["error"] == "User already registered"


def test_sign_in_validation_and_bad_credentials(client):
    provider = SessionProvider(client)
    _register(provider)

    assert asyncio.run(provider.sign_in("", PASSWORD))["error"] == "Please fill in all fields"
    assert asyncio.run(provider.sign_in(EMAIL, "wrong"))["error"] == "Invalid login credentials"


def test_sign_in_event_resolves_profile_for_listeners(client):
    provider = SessionProvider(client)
    seen = []

    async def listener(state):
        seen.append(state.status)

    provider.add_listener(listener)

    async def scenario():
        await provider.start()
        await provider.sign_up(FORM)
        return await provider.sign_in(EMAIL, PASSWORD)

    result = asyncio.run(scenario())

    assert result["success"]
    assert provider.principal.profile.display_name == "Ada Lovelace"
    assert seen == [SessionStatus.ANONYMOUS, SessionStatus.AUTHENTICATED]


def test_restored_session_matches_sign_in_event(client):
    listening = SessionProvider(client)

    async def scenario():
        await listening.start()
        await listening.sign_up(FORM)
        await client.auth.sign_in(EMAIL, PASSWORD)
        restored = SessionProvider(client)
        await restored.start()
        return restored

    restored = asyncio.run(scenario())

    assert restored.state.status == SessionStatus.AUTHENTICATED
    assert restored.state == listening.state
    assert restored.principal.profile.username == "ada"


def test_missing_profile_row_gives_empty_profile(client):
    user = asyncio.run(client.auth.sign_up(EMAIL, PASSWORD))
    provider = SessionProvider(client)

    result = asyncio.run(provider.sign_in(EMAIL, PASSWORD))

    assert result["success"]
    assert provider.principal.id == user.id
    assert provider.principal.profile.experience_points == 0


def test_profile_lookup_failure_is_anonymous(client):
    provider = SessionProvider(client)
    _register(provider)
    client.inject_failure("profiles", "select")

    result = asyncio.run(provider.sign_in(EMAIL, PASSWORD))

    assert not result["success"]
    assert provider.state.status == SessionStatus.ANONYMOUS


def test_sign_out_failure_still_ends_anonymous(client):
    provider = SessionProvider(client)
    _register(provider)
    asyncio.run(provider.sign_in(EMAIL, PASSWORD))
    client.inject_failure("auth", "sign_out")

    result = asyncio.run(provider.sign_out())

    assert not result["success"]
    assert provider.state.status == SessionStatus.ANONYMOUS
    assert provider.principal is None
    assert asyncio.run(client.auth.get_session()) is None


def test_experience_award_reports_level_up(client):
    provider = SessionProvider(client)
    _register(provider)
    asyncio.run(provider.sign_in(EMAIL, PASSWORD))

    first = asyncio.run(provider.update_user_experience(2500))
    second = asyncio.run(provider.update_user_experience(10))

    assert first["level_up"] is True
    assert first["profile"].level == 3
    assert second["level_up"] is False
    stored = client.rows("profiles")[0]
    assert stored["experience_points"] == 2510
    assert stored["level"] == 3


def test_update_profile_rejects_protected_fields(client):
    provider = SessionProvider(client)
    _register(provider)
    asyncio.run(provider.sign_in(EMAIL, PASSWORD))

    rejected = asyncio.run(provider.update_profile(experience_points=99999))
    accepted = asyncio.run(provider.update_profile(timezone="Europe/London"))

    assert not rejected["success"]
    assert accepted["profile"].timezone == "Europe/London"
    assert provider.principal.profile.timezone == "Europe/London"
