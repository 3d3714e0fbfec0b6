import uuid as _uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from services.errors import AuthError
from services.store import ChatStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: _uuid.UUID
    display_name: str
    email: str | None = None


class JWTIdentityVerifier:
    """Turns a bearer token into an Identity; the sole admission check for sockets and HTTP."""

    def __init__(self, store: ChatStore, secret: str, algorithm: str = "HS256") -> None:
        self._store = store
        self._secret = secret
        self._algorithm = algorithm

    def _decode_token(self, token: str) -> str | None:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
            return payload.get("sub")
        except JWTError:
            return None

    async def verify(self, credential: str | None) -> Identity:
        if not credential:
            raise AuthError("Authentication error: No token provided")

        user_id = self._decode_token(credential)
        if not user_id:
            raise AuthError("Authentication error: Invalid token")

        try:
            user_uuid = _uuid.UUID(user_id)
        except ValueError:
            raise AuthError("Authentication error: Invalid token payload")

        user = await self._store.get_user(user_uuid)
        if not user:
            raise AuthError("Authentication error: User not found")
        return Identity(user_id=user.id, display_name=user.display_name, email=user.email)


def create_access_token(user_id: str, secret: str, algorithm: str = "HS256", expire_minutes: int = 60) -> str:
    """Mint a token the verifier accepts. Used by the seed script and tests."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    payload = {"sub": user_id, "exp": expire}
    return jwt.encode(payload, secret, algorithm=algorithm)


def extract_credential(auth: dict | None, headers: dict, cookies: dict, cookie_name: str) -> str | None:
    """Pick the bearer token from a socket handshake or HTTP request.

    Order: explicit ``auth.token``, then ``Authorization: Bearer``, then the
    httpOnly cookie.
    """
    if auth and auth.get("token"):
        return auth["token"]
    header = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return cookies.get(cookie_name)
