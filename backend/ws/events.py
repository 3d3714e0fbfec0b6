import logging
import socketio
from config import get_settings
from services.errors import AuthError
from services.identity import extract_credential
from services.sessions import CLIENT_EVENTS

logger = logging.getLogger(__name__)
settings = get_settings()

COOKIE_NAME = "chat_token"

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=[settings.FRONTEND_URL, "http://localhost:3000"],
    logger=False,
    engineio_logger=False,
)

# Set by bind_chat() during application startup
_chat = None


def bind_chat(chat) -> None:
    global _chat
    _chat = chat


def _extract_cookie(environ: dict, name: str) -> str | None:
    """Parse a cookie value from the ASGI environ HTTP_COOKIE header."""
    cookie_header = environ.get("HTTP_COOKIE", "")
    for part in cookie_header.split(";"):
        part = part.strip()
        if part.startswith(f"{name}="):
            return part[len(name) + 1:]
    return None


def _handshake_credential(environ: dict, auth) -> str | None:
    headers = {"authorization": environ.get("HTTP_AUTHORIZATION", "")}
    cookies = {}
    cookie = _extract_cookie(environ, COOKIE_NAME)
    if cookie:
        cookies[COOKIE_NAME] = cookie
    return extract_credential(auth if isinstance(auth, dict) else None, headers, cookies, COOKIE_NAME)


@sio.event
async def connect(sid: str, environ, auth=None):
    if _chat is None:
        raise socketio.exceptions.ConnectionRefusedError("Service starting, try again")
    try:
        identity = await _chat.sessions.authenticate(_handshake_credential(environ, auth))
    except AuthError as e:
        logger.warning(f"Socket rejected ({e.message}): {sid}")
        raise socketio.exceptions.ConnectionRefusedError(e.message)
    _chat.sessions.open(sid, identity)
    logger.info(f"Socket connected: {sid} user={identity.user_id}")


@sio.event
async def disconnect(sid: str, reason=None):
    session = _chat.sessions.get(sid) if _chat else None
    if session is None:
        return
    await _chat.sessions.disconnect(session)
    logger.info(f"Socket disconnected: {sid} ({reason})")


def _make_handler(event: str):
    async def handler(sid: str, data=None):
        if _chat is None or not _chat.sessions.submit(sid, event, data):
            await sio.emit("error", {"message": "Not connected"}, to=sid)
    handler.__name__ = f"on_{event}"
    return handler


for _event in CLIENT_EVENTS:
    sio.on(_event, _make_handler(_event))
