"""
Messages router: read, delete and bulk-unsubscribe stored messages.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from engine.scheduler import get_enqueue
from gmail_client import GmailClient, get_gmail_client
from schemas import MessageResponse, UnsubscribeRequest, UnsubscribeResponse
from services.messages import delete_message, get_message, request_unsubscribe

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/unsubscribe", response_model=UnsubscribeResponse, status_code=status.HTTP_202_ACCEPTED)
async def unsubscribe_messages(
    request: UnsubscribeRequest,
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[str, Dict[str, Any]], Awaitable[int]] = Depends(get_enqueue),
) -> UnsubscribeResponse:
    """
    Queue one unsubscribe job per message.

    Unknown message ids are reported in `skipped`.
    """
    jobs = await request_unsubscribe(db, request.message_ids, enqueue)
    skipped = [message_id for message_id in request.message_ids if message_id not in jobs]
    return UnsubscribeResponse(jobs=jobs, skipped=skipped)


@router.get("/{message_id}", response_model=MessageResponse)
async def read_message(
    message_id: int,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    message = await get_message(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageResponse.model_validate(message)


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_message(
    message_id: int,
    db: AsyncSession = Depends(get_db),
    gmail: GmailClient = Depends(get_gmail_client),
) -> Response:
    """Trash the message in Gmail (best-effort) and delete it locally."""
    message = await get_message(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    await delete_message(db, gmail, message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
