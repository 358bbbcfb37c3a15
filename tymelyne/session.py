"""
TymeLyne - Session Provider
Owns the signed-in principal. Startup restore and pushed auth events both
resolve through the same profile lookup, so they always produce the same
state shape.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel

from .database import SIGNED_IN, SIGNED_OUT, USER_UPDATED, AuthSubscription, DataClient
from .errors import TymeLyneError
from .models import (
    AuthSession, AuthUser, Principal, Profile, SessionState, SessionStatus,
)
from .progress import calculate_level

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionState], Awaitable[None]]

PROFILE_FIELDS = ("first_name", "last_name", "username", "timezone", "language", "avatar_url")


class SignUpForm(BaseModel):
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    email: str = ""
    password: str = ""
    confirm_password: str = ""
    accept_terms: bool = False


class SessionProvider:
    """
    Session state machine: UNRESOLVED -> AUTHENTICATED | ANONYMOUS.

    Usage:
        provider = SessionProvider(client)
        await provider.start()      # subscribe + restore
        ...
        provider.close()            # unsubscribe
    """

    def __init__(self, client: DataClient):
        self.client = client
        self.state = SessionState()
        self._listeners: List[SessionListener] = []
        self._subscription: Optional[AuthSubscription] = None

    # ============================================
    # STATE
    # ============================================

    @property
    def principal(self) -> Optional[Principal]:
        return self.state.principal

    @property
    def is_authenticated(self) -> bool:
        return self.state.status == SessionStatus.AUTHENTICATED

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a coroutine called after every state change; returns a remover."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    async def _set_state(self, status: SessionStatus, principal: Optional[Principal] = None):
        self.state = SessionState(status=status, principal=principal)
        logger.debug(f"Session state -> {status.value}")
        for listener in list(self._listeners):
            try:
                await listener(self.state)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    async def _set_anonymous(self):
        await self._set_state(SessionStatus.ANONYMOUS)

    # ============================================
    # LIFECYCLE
    # ============================================

    async def start(self) -> SessionState:
        """Subscribe to auth events, then resolve any existing session."""
        if self._subscription is None:
            self._subscription = self.client.auth.on_auth_state_change(self._on_auth_event)
        await self.restore()
        return self.state

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def restore(self) -> SessionState:
        try:
            session = await self.client.auth.get_session()
        except TymeLyneError as e:
            logger.warning(f"Session lookup failed, continuing signed out: {e}")
            await self._set_anonymous()
            return self.state

        if session is None:
            await self._set_anonymous()
        else:
            await self._resolve(session.user)
        return self.state

    async def _resolve(self, user: AuthUser) -> None:
        """Load the profile row for ``user`` and enter AUTHENTICATED."""
        try:
            row = (await (
                self.client.table("profiles").select("*").eq("id", user.id)
                .maybe_single().execute()
            )).data
        except TymeLyneError as e:
            logger.error(f"Profile lookup failed for user={user.id}: {e}")
            await self._set_anonymous()
            return

        profile = Profile.model_validate(row) if row else Profile(id=user.id, email=user.email)
        await self._set_state(
            SessionStatus.AUTHENTICATED,
            Principal(id=user.id, email=user.email, profile=profile),
        )

    async def _on_auth_event(self, event: str, session: Optional[AuthSession]) -> None:
        if event == SIGNED_OUT or session is None:
            if self.state.status != SessionStatus.ANONYMOUS:
                await self._set_anonymous()
            return
        if event in (SIGNED_IN, USER_UPDATED):
            await self._resolve(session.user)

    # ============================================
    # AUTH ACTIONS
    # ============================================

    async def sign_in(self, email: str, password: str) -> dict:
        if not email or not password:
            return {"success": False, "error": "Please fill in all fields"}
        try:
            session = await self.client.auth.sign_in(email.strip(), password)
        except TymeLyneError as e:
            logger.info(f"Sign in rejected for {email}: {e}")
            return {"success": False, "error": str(e)}

        # Without start() there is no subscription to deliver SIGNED_IN
        if self._subscription is None:
            await self._resolve(session.user)
        principal = self.state.principal
        if not self.is_authenticated or principal.id != session.user.id:
            return {"success": False, "error": "Could not load your profile"}
        return {"success": True, "principal": self.state.principal}

    async def sign_up(self, form: Union[SignUpForm, dict]) -> dict:
        """Register an account and its profile row; sign-in happens separately."""
        if isinstance(form, dict):
            form = SignUpForm.model_validate(form)
        required = (
            form.first_name, form.last_name, form.username, form.email,
            form.password, form.confirm_password,
        )
        if not all(required) or not form.accept_terms:
            return {"success": False, "error": "Please fill in all fields and accept the terms"}
        if form.password != form.confirm_password:
            return {"success": False, "error": "Passwords do not match"}

        metadata = {
            "first_name": form.first_name,
            "last_name": form.last_name,
            "username": form.username,
        }
        try:
            user = await self.client.auth.sign_up(form.email.strip(), form.password, metadata)
            await self.client.table("profiles").insert({
                "id": user.id,
                "email": form.email.strip(),
                **metadata,
            }).execute()
        except TymeLyneError as e:
            return {"success": False, "error": str(e) or "An error occurred during sign up"}

        logger.info(f"Registered user={user.id}")
        return {"success": True, "message": "Sign up successful! Please verify your email."}

    async def sign_out(self) -> dict:
        """Always ends signed out; a remote failure is only reported."""
        error = None
        try:
            await self.client.auth.sign_out()
        except TymeLyneError as e:
            logger.warning(f"Remote sign out failed: {e}")
            error = str(e)
        if self.state.status != SessionStatus.ANONYMOUS:
            await self._set_anonymous()
        if error:
            return {"success": False, "error": error}
        return {"success": True}

    # ============================================
    # PROFILE
    # ============================================

    async def update_user_experience(self, points: int) -> dict:
        """
        Award experience points to the signed-in user.

        The level is recomputed from the new total with the same leveling
        curve the progress view uses.
        """
        principal = self.state.principal
        if principal is None:
            return {"success": False, "error": "Not signed in"}
        if points < 0:
            return {"success": False, "error": "Points must be positive"}

        profile = principal.profile
        new_xp = (profile.experience_points or 0) + int(points)
        new_level = calculate_level(new_xp).level
        old_level = profile.level or 1
        try:
            rows = (await self.client.table("profiles").update({
                "experience_points": new_xp,
                "level": new_level,
            }).eq("id", principal.id).execute()).data
        except TymeLyneError as e:
            logger.error(f"XP update failed for user={principal.id}: {e}")
            return {"success": False, "error": str(e)}

        updated = profile.model_copy(update={"experience_points": new_xp, "level": new_level})
        if rows:
            updated = Profile.model_validate(rows[0])
        await self._set_state(
            SessionStatus.AUTHENTICATED, principal.model_copy(update={"profile": updated})
        )
        return {"success": True, "profile": updated, "level_up": new_level > old_level}

    async def update_profile(self, **fields) -> dict:
        principal = self.state.principal
        if principal is None:
            return {"success": False, "error": "Not signed in"}
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            return {"success": False, "error": f"Cannot edit: {', '.join(sorted(unknown))}"}
        if not fields:
            return {"success": False, "error": "Nothing to update"}
        try:
            rows = (await self.client.table("profiles").update(fields).eq(
                "id", principal.id
            ).execute()).data
        except TymeLyneError as e:
            return {"success": False, "error": str(e)}

        profile = (
            Profile.model_validate(rows[0]) if rows
            else principal.profile.model_copy(update=fields)
        )
        await self._set_state(
            SessionStatus.AUTHENTICATED, principal.model_copy(update={"profile": profile})
        )
        return {"success": True, "profile": profile}
