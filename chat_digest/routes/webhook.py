# chat_digest/routes/webhook.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from chat_digest.core.errors import StoreUnavailable
from chat_digest.services.webhook_service import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


@router.post("/webhook/telegram")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    webhook_service: WebhookService = Depends(get_webhook_service),
):
    if not webhook_service.verify_secret(x_telegram_bot_api_secret_token):
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        update = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Invalid update")

    logger.debug(f"Received update {update.get('update_id')}")
    try:
        return await webhook_service.handle_update(update)
    except StoreUnavailable as e:
        # Telegram redelivers updates answered with an error
        logger.error(f"Failed to store update {update.get('update_id')}: {e}")
        raise HTTPException(status_code=503, detail="Message store unavailable")
