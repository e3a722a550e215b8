# chat_digest/routes/admin.py

import os

from fastapi import APIRouter, Depends, HTTPException, Request

from chat_digest.core.errors import (
    ChatNotFound,
    GenerationUnavailable,
    InvalidScheduleError,
    StoreUnavailable,
)
from chat_digest.services.scheduler import ChatScheduleRegistry
from chat_digest.services.store import MessageStore

router = APIRouter(prefix="/admin", tags=["admin"])


# Simple API key auth
def verify_api_key(api_key: str):
    if api_key != os.getenv("ADMIN_API_KEY", "admin_secret_key"):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return True


def get_registry(request: Request) -> ChatScheduleRegistry:
    return request.app.state.registry


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


@router.get("/chats", dependencies=[Depends(verify_api_key)])
def get_all_chats(store: MessageStore = Depends(get_store)):
    """Get all known chats with their digest settings"""
    try:
        return store.list_chats()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/scheduler", dependencies=[Depends(verify_api_key)])
def get_scheduler_status(registry: ChatScheduleRegistry = Depends(get_registry)):
    """Scheduled chats, their next fire times and the last result per chat"""
    return registry.status()


@router.post("/chats/{chat_id}/preview", dependencies=[Depends(verify_api_key)])
async def preview_digest(chat_id: str, registry: ChatScheduleRegistry = Depends(get_registry)):
    """Digest of the chat's current day, generated without delivering it"""
    try:
        digest = await registry.trigger(chat_id)
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GenerationUnavailable as e:
        raise HTTPException(status_code=502, detail=f"Generation failed: {e}")
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"chat_id": chat_id, "digest": digest}


@router.post("/chats/{chat_id}/reschedule", dependencies=[Depends(verify_api_key)])
async def reschedule_chat(chat_id: str, registry: ChatScheduleRegistry = Depends(get_registry)):
    """Re-read the chat's settings and update its timer"""
    try:
        scheduled = await registry.update_chat_schedule(chat_id)
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if scheduled is None:
        return {"status": "unscheduled", "chat_id": chat_id}
    return {
        "status": "scheduled",
        "chat_id": chat_id,
        "report_time": scheduled.schedule.report_time,
        "timezone": scheduled.schedule.timezone,
    }
