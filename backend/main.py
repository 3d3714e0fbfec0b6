import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import socketio

from config import get_settings
from database import engine, Base, AsyncSessionLocal
from redis_client import get_redis, close_redis
from api.rooms import router as rooms_router
from api.invitations import router as invitations_router, public_router as invite_public_router
from api.admin import router as admin_router
from services.chat import ChatService
from services.errors import ChatError, PersistenceError
from services.notifications import send_invitation_email
from services.scheduler import start_scheduler
from services.transport import SocketIOTransport
from ws.events import sio, bind_chat

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: fail fast on missing secrets
    if not settings.JWT_SECRET_KEY:
        raise RuntimeError("JWT_SECRET_KEY is not set. Set it in your .env file.")
    if not settings.ADMIN_API_KEY:
        raise RuntimeError("ADMIN_API_KEY is not set. Set it in your .env file.")
    logger.info("Starting Realtime Rooms backend...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await get_redis()

    chat = ChatService(
        AsyncSessionLocal,
        SocketIOTransport(sio),
        settings,
        mailer=send_invitation_email,
    )
    await chat.start()
    app.state.chat = chat
    bind_chat(chat)
    start_scheduler(chat)
    logger.info("Realtime Rooms backend ready")
    yield
    # Shutdown
    from services.scheduler import scheduler
    scheduler.shutdown(wait=False)
    bind_chat(None)
    await chat.close()
    await close_redis()
    await engine.dispose()
    logger.info("Realtime Rooms backend shut down")


app = FastAPI(
    title="Realtime Rooms API",
    description="Multi-room chat with live presence and invitations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if isinstance(exc, PersistenceError):
        logger.error(f"{request.method} {request.url.path} failed in the store: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# REST routes
app.include_router(rooms_router)
app.include_router(invitations_router)
app.include_router(invite_public_router)
app.include_router(admin_router)

# Mount Socket.IO
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

# Health check
@app.get("/health")
async def health():
    return {"status": "ok", "service": "realtime-rooms"}


# Export the ASGI app (uvicorn should point to this)
application = socket_app
