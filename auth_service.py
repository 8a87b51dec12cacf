"""
Supabase authentication and profile bookkeeping
"""
import asyncio
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel

from database import DatabaseClient


class AuthError(Exception):
    """Sign-up or sign-in failed; the message is meant for the user"""
    pass


class UserSession(BaseModel):
    """The parts of a Supabase session the console relies on"""
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_supabase(cls, session: Any, user: Any = None) -> Optional["UserSession"]:
        if session is None:
            return None
        user = user or getattr(session, "user", None)
        if user is None:
            return None
        metadata = getattr(user, "user_metadata", None) or {}
        return cls(
            user_id=str(user.id),
            email=getattr(user, "email", None),
            full_name=metadata.get("full_name"),
            access_token=getattr(session, "access_token", None),
            refresh_token=getattr(session, "refresh_token", None),
        )


class AuthService:
    """Email/password auth against the Supabase project"""

    def __init__(self, db_client: DatabaseClient):
        self.db_client = db_client

    async def _auth(self):
        client = await self.db_client.get_client()
        return client.auth

    async def _upsert_profile(self, session: UserSession) -> None:
        try:
            await self.db_client.upsert_profile(session.user_id, session.email or "", session.full_name)
        except Exception as e:
            logger.error(f"Failed to upsert profile for {session.user_id}: {e}")

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> Optional[UserSession]:
        """
        Register a new account

        Returns:
            The new session, None when the project requires email confirmation first

        Raises:
            AuthError: If Supabase rejects the registration
        """
        auth = await self._auth()
        credentials = {"email": email, "password": password}
        if full_name:
            credentials["options"] = {"data": {"full_name": full_name}}

        try:
            response = await asyncio.to_thread(auth.sign_up, credentials)
        except Exception as e:
            logger.warning(f"Sign-up failed for {email}: {e}")
            raise AuthError(str(e) or "Sign-up failed") from e

        session = UserSession.from_supabase(response.session, response.user)
        if session is None:
            logger.info(f"Sign-up for {email} awaiting confirmation")
            return None

        if full_name and not session.full_name:
            session.full_name = full_name
        await self._upsert_profile(session)
        logger.info(f"Signed up {email}")
        return session

    async def sign_in(self, email: str, password: str) -> UserSession:
        """
        Sign in with email and password

        Raises:
            AuthError: If the credentials are rejected
        """
        auth = await self._auth()
        try:
            response = await asyncio.to_thread(
                auth.sign_in_with_password, {"email": email, "password": password}
            )
        except Exception as e:
            logger.warning(f"Sign-in failed for {email}: {e}")
            raise AuthError(str(e) or "Invalid login credentials") from e

        session = UserSession.from_supabase(response.session, response.user)
        if session is None:
            raise AuthError("Invalid login credentials")

        await self._upsert_profile(session)
        logger.info(f"Signed in {email}")
        return session

    async def sign_out(self) -> None:
        auth = await self._auth()
        try:
            await asyncio.to_thread(auth.sign_out)
        except Exception as e:
            logger.warning(f"Sign-out failed: {e}")

    async def get_session(self) -> Optional[UserSession]:
        """Current session, None when signed out"""
        auth = await self._auth()
        try:
            session = await asyncio.to_thread(auth.get_session)
        except Exception as e:
            logger.warning(f"Could not read the current session: {e}")
            return None
        return UserSession.from_supabase(session)

    async def refresh_session(self) -> Optional[UserSession]:
        auth = await self._auth()
        try:
            response = await asyncio.to_thread(auth.refresh_session)
        except Exception as e:
            logger.warning(f"Session refresh failed: {e}")
            return None
        return UserSession.from_supabase(response.session, response.user)
