"""
Webhook router for Gmail push notifications delivered by Google Pub/Sub.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from engine.notifications import NotificationDecodeError, decode_notification, dispatch_notification
from engine.scheduler import get_enqueue

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/gmail")
async def gmail_push(
    request: Request,
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[str, Dict[str, Any]], Awaitable[int]] = Depends(get_enqueue),
) -> Dict[str, str]:
    """
    Receive a Gmail push notification.

    Returns 200 once the notification is decoded, even for unknown
    accounts or failures while queueing, so Pub/Sub does not redeliver.

    Raises:
        HTTPException: 400 if the body cannot be decoded
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")

    try:
        notification = decode_notification(body)
    except NotificationDecodeError as e:
        logger.warning(f"Rejected push notification: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        await dispatch_notification(db, notification, enqueue)
    except Exception as e:
        logger.error(f"Failed to dispatch notification for {notification.emailAddress}: {e}", exc_info=True)

    return {"status": "ok"}
