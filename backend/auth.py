"""
Authentication collaborator.

Sign-in takes a Google ID token obtained by the browser, checks that the
request comes from an authorized domain, verifies the token with google-auth
and hands back an opaque session token. Sessions live in Redis under
`sessions:{token}` and expire after `session_ttl` seconds. Sign-in/sign-out
events are pushed to every `changes()` subscriber.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import asdict, dataclass
from typing import AsyncIterator, Callable, Optional
from urllib.parse import urlparse

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
import redis.asyncio as redis

from errors import SignInError, UnauthorizedDomainError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class AuthEvent:
    user: User
    signed_in: bool


def verify_google_token(token: str, client_id: str) -> dict:
    """Blocking: may fetch Google's public certificates."""
    return id_token.verify_oauth2_token(token, google_requests.Request(), client_id)


class AuthService:
    def __init__(
        self,
        client_id: str,
        authorized_domains: list[str],
        client: redis.Redis,
        verifier: Callable[[str, str], dict] = verify_google_token,
        session_ttl: int = 7 * 24 * 3600,
        prefix: str = "sessions"
    ):
        self.client_id = client_id
        self.authorized_domains = {d.lower() for d in authorized_domains}
        self._client = client
        self._verifier = verifier
        self.session_ttl = session_ttl
        self.prefix = prefix
        self._listeners: set[asyncio.Queue] = set()

    def _session_key(self, session_token: str) -> str:
        return f"{self.prefix}:{session_token}"

    def _check_domain(self, origin: Optional[str]) -> None:
        # Requests without an Origin header do not come from a browser page
        if not origin:
            return
        host = (urlparse(origin).hostname or "").lower()
        if host not in self.authorized_domains:
            logger.warning(f"[Auth] Sign-in from unauthorized domain: {host}")
            raise UnauthorizedDomainError()

    async def sign_in(self, token: str, origin: Optional[str] = None) -> tuple[str, User]:
        self._check_domain(origin)
        try:
            claims = await asyncio.to_thread(self._verifier, token, self.client_id)
        except Exception as e:
            logger.error(f"[Auth] Error signing in: {e}")
            raise SignInError() from e

        user = User(uid=claims["sub"], email=claims.get("email"), display_name=claims.get("name"))
        session_token = secrets.token_urlsafe(32)
        try:
            await self._client.set(
                self._session_key(session_token),
                json.dumps(asdict(user)),
                ex=self.session_ttl
            )
        except redis.RedisError as e:
            logger.error(f"[Auth] Could not store session for {user.uid}: {e}", exc_info=True)
            raise SignInError() from e

        logger.info(f"[Auth] Signed in {user.uid}")
        self._publish(AuthEvent(user=user, signed_in=True))
        return session_token, user

    async def sign_out(self, session_token: str) -> None:
        user = await self.current_user(session_token)
        if user is None:
            return
        await self._client.delete(self._session_key(session_token))
        logger.info(f"[Auth] Signed out {user.uid}")
        self._publish(AuthEvent(user=user, signed_in=False))

    async def current_user(self, session_token: Optional[str]) -> Optional[User]:
        """The signed-in user, or None for a missing, unknown or expired session."""
        if not session_token:
            return None
        raw = await self._client.get(self._session_key(session_token))
        if raw is None:
            return None
        return User(**json.loads(raw))

    def _publish(self, event: AuthEvent) -> None:
        for queue in self._listeners:
            queue.put_nowait(event)

    async def changes(self) -> AsyncIterator[AuthEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._listeners.discard(queue)
