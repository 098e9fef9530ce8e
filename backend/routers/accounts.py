"""
Accounts router: manual sync and disconnect of connected Gmail accounts.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from engine.scheduler import FULL_SYNC_JOB, get_enqueue
from gmail_client import GmailClient, get_gmail_client
from schemas import SyncResponse
from services.accounts import disconnect_account
from services.messages import get_account

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{account_id}/sync", response_model=SyncResponse, status_code=status.HTTP_202_ACCEPTED)
async def sync_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[str, Dict[str, Any]], Awaitable[int]] = Depends(get_enqueue),
) -> SyncResponse:
    """Queue a full sync of the account's INBOX."""
    account = await get_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    job_id = await enqueue(FULL_SYNC_JOB, {"account_id": account.id})
    logger.info(f"Manual sync requested for {account.email} (job {job_id})")
    return SyncResponse(account_id=account.id, job_id=job_id)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    gmail: GmailClient = Depends(get_gmail_client),
) -> Response:
    """Disconnect the account and delete its stored messages."""
    account = await get_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    await disconnect_account(db, gmail, account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
