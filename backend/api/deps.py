from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from services.chat import ChatService
from services.identity import Identity
from ws.events import COOKIE_NAME

bearer = HTTPBearer(auto_error=False)  # auto_error=False so cookie fallback works


def get_chat(request: Request) -> ChatService:
    return request.app.state.chat


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    chat: ChatService = Depends(get_chat),
) -> Identity:
    # Authorization header first, then the httpOnly cookie
    token = credentials.credentials if credentials else request.cookies.get(COOKIE_NAME)
    return await chat.verifier.verify(token)
