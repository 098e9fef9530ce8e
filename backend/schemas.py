"""
Pydantic schemas for API request/response validation.
Also defines the strict shapes accepted from AI model replies.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., examples=["healthy"])
    version: str = Field(..., examples=["1.0.0"])


# ============================================================================
# Push Notification Schemas
# ============================================================================

class PubSubMessage(BaseModel):
    """Pub/Sub push message; data is base64-encoded JSON."""
    data: str
    messageId: Optional[str] = None
    publishTime: Optional[str] = None


class PubSubEnvelope(BaseModel):
    """Body Google Pub/Sub POSTs to the push endpoint."""
    message: PubSubMessage
    subscription: Optional[str] = None


class GmailNotificationData(BaseModel):
    """Decoded Gmail mailbox change notification."""
    emailAddress: str
    historyId: int

    @field_validator("historyId", mode="before")
    @classmethod
    def history_id_is_numeric(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip().isdigit():
            raise ValueError("historyId must be numeric")
        return value


# ============================================================================
# Account Schemas
# ============================================================================

class SyncResponse(BaseModel):
    """Response after requesting a manual sync."""
    account_id: int
    job_id: int


# ============================================================================
# Message Schemas
# ============================================================================

class MessageResponse(BaseModel):
    """Stored message with enrichment and unsubscribe attempt fields."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    gmail_message_id: str
    gmail_thread_id: Optional[str] = None
    subject: Optional[str] = None
    snippet: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    to_emails: List[str] = []
    cc_emails: List[str] = []
    labels: List[str] = []
    category_id: Optional[int] = None
    summary: Optional[str] = None
    received_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    unsubscribe_link: Optional[str] = None
    unsubscribe_method: Optional[str] = None
    unsubscribe_status: Optional[str] = None
    unsubscribe_attempted_at: Optional[datetime] = None
    unsubscribe_completed_at: Optional[datetime] = None
    unsubscribe_error: Optional[str] = None


class UnsubscribeRequest(BaseModel):
    """Request to unsubscribe from the senders of several messages."""
    message_ids: List[int] = Field(..., min_length=1, max_length=100)


class UnsubscribeResponse(BaseModel):
    """Job ids enqueued per message id."""
    jobs: Dict[int, int]
    skipped: List[int] = []


# ============================================================================
# AI Reply Schemas
# ============================================================================

class LinkAnalysis(BaseModel):
    """Reply to the unsubscribe link discovery prompt."""
    found: bool
    method: Optional[str] = None
    url: Optional[str] = None
    instructions: Optional[str] = None


class FormData(BaseModel):
    """Form the model wants submitted."""
    action_url: str = Field(..., min_length=1)
    method: Optional[str] = "POST"
    fields: Optional[Dict[str, Any]] = None


class DirectPlan(BaseModel):
    """The page itself already confirms (or performs) the unsubscribe."""
    type: Literal["direct"]
    success_indicators: Optional[List[str]] = None


class FormPlan(BaseModel):
    """A form has to be submitted to complete the unsubscribe."""
    type: Literal["form"]
    form_data: FormData
    success_indicators: Optional[List[str]] = None
    requires_email: bool = False


class ConfirmationNeededPlan(BaseModel):
    """The user has to finish the unsubscribe by hand."""
    type: Literal["confirmation_needed"]
    success_indicators: Optional[List[str]] = None


ActionPlan = Annotated[
    Union[DirectPlan, FormPlan, ConfirmationNeededPlan],
    Field(discriminator="type"),
]
