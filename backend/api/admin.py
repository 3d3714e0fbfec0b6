"""Admin endpoints: engine overview, live rooms and housekeeping jobs.

All routes require the X-Admin-Key header matching ADMIN_API_KEY in settings.
"""
import uuid
from fastapi import APIRouter, Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from config import get_settings
from services.chat import ChatService
from services.scheduler import (
    expire_invitations_job, reconcile_membership_job,
    set_scheduler_enabled, is_scheduler_enabled, list_jobs,
)
from api.deps import get_chat

router = APIRouter(prefix="/admin", tags=["admin"])
settings = get_settings()

_api_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=True)


async def require_admin_key(key: str = Security(_api_key_header)) -> None:
    if not settings.ADMIN_API_KEY or key != settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid or missing admin key")


# ── Scheduler toggle ──────────────────────────────────────────────────────────

@router.get("/scheduler", dependencies=[Depends(require_admin_key)])
async def get_scheduler_status():
    return {"enabled": is_scheduler_enabled(), "jobs": list_jobs()}


@router.post("/scheduler/enable", dependencies=[Depends(require_admin_key)])
async def enable_scheduler():
    set_scheduler_enabled(True)
    return {"enabled": True}


@router.post("/scheduler/disable", dependencies=[Depends(require_admin_key)])
async def disable_scheduler():
    set_scheduler_enabled(False)
    return {"enabled": False}


# ── Overview ──────────────────────────────────────────────────────────────────

@router.get("/overview", dependencies=[Depends(require_admin_key)])
async def overview(chat: ChatService = Depends(get_chat)):
    counts = await chat.store.counts()
    return {**counts, **chat.stats()}


@router.get("/rooms/live", dependencies=[Depends(require_admin_key)])
async def live_rooms(chat: ChatService = Depends(get_chat)):
    return [
        {"room_id": str(room_id), "online": count}
        for room_id, count in sorted(chat.membership.occupancy().items(), key=lambda kv: -kv[1])
    ]


@router.post("/rooms/{room_id}/reconcile", dependencies=[Depends(require_admin_key)])
async def reconcile_room(room_id: uuid.UUID, chat: ChatService = Depends(get_chat)):
    dropped = await chat.membership.reconcile(room_id)
    return {"room_id": str(room_id), "dropped": [str(u) for u in dropped]}


# ── Manual job triggers ───────────────────────────────────────────────────────

@router.post("/jobs/expire-invitations", dependencies=[Depends(require_admin_key)])
async def trigger_expire_invitations(chat: ChatService = Depends(get_chat)):
    return {"expired": await expire_invitations_job(chat)}


@router.post("/jobs/reconcile", dependencies=[Depends(require_admin_key)])
async def trigger_reconcile(chat: ChatService = Depends(get_chat)):
    return {"dropped": await reconcile_membership_job(chat)}
