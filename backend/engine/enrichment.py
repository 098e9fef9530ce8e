"""
AI enrichment of stored messages: a short summary and a category.
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ai_client import AIClient, AIUnconfiguredError
from config import settings
from engine.notifier import Notifier, broadcaster
from models import Category, Message
from services.messages import list_categories, update_message

logger = logging.getLogger(__name__)


SUMMARY_PROMPT = """Summarize the following email in 2-3 concise sentences. Focus on the main point and any action items.

Subject: {subject}

Body:
{body}
"""

CATEGORY_PROMPT = """Analyze this email and categorize it into ONE of the following categories.
If none fit well, respond with "NONE".

Available Categories:
{categories}

Email Details:
From: {sender}
Subject: {subject}
Body: {body}

Respond with ONLY the category name or "NONE".
"""


def _prompt_body(message: Message) -> str:
    text = message.body or message.snippet or ""
    return text[: settings.SUMMARY_PROMPT_BODY_CHARS]


def match_category(reply: str, categories: List[Category]) -> Optional[Category]:
    """Case-insensitive exact name match; "NONE" or anything unknown gives None."""
    name = (reply or "").strip().lower()
    for category in categories:
        if category.name.lower() == name:
            return category
    return None


async def summarize_message(ai: AIClient, message: Message) -> Optional[str]:
    """
    Ask the model for a 2-3 sentence summary.

    Returns None when no AI key is configured. Other AI errors propagate
    so the job can be retried.
    """
    prompt = SUMMARY_PROMPT.format(
        subject=message.subject or "(No subject)",
        body=_prompt_body(message),
    )
    try:
        summary = await ai.complete(prompt, max_tokens=150, temperature=0.7)
    except AIUnconfiguredError:
        logger.warning("OpenAI API key not configured, skipping summarization")
        return None
    return summary.strip() or None


async def categorize_message(ai: AIClient, message: Message, categories: List[Category]) -> Optional[Category]:
    if not categories:
        logger.info("No categories available for categorization")
        return None

    prompt = CATEGORY_PROMPT.format(
        categories="\n".join(f"- {c.name}: {c.description}" for c in categories),
        sender=message.from_email or "Unknown",
        subject=message.subject or "(No subject)",
        body=_prompt_body(message),
    )
    try:
        reply = await ai.complete(prompt, max_tokens=50, temperature=0.3)
    except AIUnconfiguredError:
        logger.warning("OpenAI API key not configured, skipping categorization")
        return None

    category = match_category(reply, categories)
    if category is None:
        logger.info(f"No matching category for reply {reply.strip()!r}")
    else:
        logger.info(f"Message {message.id} categorized as '{category.name}' (ID: {category.id})")
    return category


async def process_message(
    db: AsyncSession,
    message: Message,
    ai: AIClient,
    notifier: Notifier = broadcaster,
) -> Message:
    """
    Summarize and categorize a stored message.

    Existing values are kept when a step produces nothing.
    """
    summary = await summarize_message(ai, message)
    if summary is not None:
        await update_message(db, message, notifier, summary=summary)

    categories = await list_categories(db, message.user_id)
    category = await categorize_message(ai, message, categories)
    if category is not None:
        await update_message(db, message, notifier, category_id=category.id)

    return message
