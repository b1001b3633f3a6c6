import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class JobState(str, enum.Enum):
    QUEUED = "queued"
    LEASED = "leased"        # a.k.a. "sending"
    SENT = "sent"
    SKIPPED = "skipped"      # permanently failed
    CANCELLED = "cancelled"  # owning campaign stopped or tenant gone

    def __str__(self) -> str:
        return self.value


TERMINAL_STATES = frozenset({JobState.SENT, JobState.SKIPPED, JobState.CANCELLED})
# states covered by the duplicate-enqueue guard
LIVE_STATES = (JobState.QUEUED, JobState.LEASED, JobState.SENT)

ALLOWED_TRANSITIONS = {
    JobState.QUEUED: frozenset({JobState.LEASED, JobState.SKIPPED, JobState.CANCELLED}),
    # leased -> leased is the re-lease of an abandoned attempt
    JobState.LEASED: frozenset({
        JobState.LEASED, JobState.SENT, JobState.QUEUED, JobState.SKIPPED, JobState.CANCELLED,
    }),
}


def can_transition(current: JobState, new: JobState) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


# Lead statuses
LEAD_NEW = "new"
LEAD_QUALIFYING = "qualifying"
LEAD_AWAITING_RESPONSE = "awaiting_response"
LEAD_READY_TO_BOOK = "ready_to_book"
LEAD_BOOKED = "booked"
LEAD_ESCALATED = "escalated"
LEAD_CONTACTED = "contacted"
LEAD_CLOSED = "closed"
LEAD_STATUSES = (
    LEAD_NEW, LEAD_QUALIFYING, LEAD_AWAITING_RESPONSE, LEAD_READY_TO_BOOK,
    LEAD_BOOKED, LEAD_ESCALATED, LEAD_CONTACTED, LEAD_CLOSED,
)
STALE_LEAD_STATUSES = (LEAD_NEW, LEAD_QUALIFYING)

# Campaign statuses
CAMPAIGN_IDLE = "idle"
CAMPAIGN_RUNNING = "running"
CAMPAIGN_PAUSED = "paused"


@dataclass
class SendJob:
    id: str
    tenant_id: str
    message_id: str
    state: JobState = JobState.QUEUED
    attempt_count: int = 0
    scheduled_at: str = ""
    last_attempt_at: Optional[str] = None
    error_detail: Optional[str] = None
    provider_message_id: Optional[str] = None
    lead_id: Optional[str] = None
    campaign_id: Optional[str] = None
    picked_by: Optional[str] = None
    sent_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "SendJob":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            message_id=row["message_id"],
            state=JobState(row["state"]),
            attempt_count=row["attempt_count"],
            scheduled_at=row["scheduled_at"],
            last_attempt_at=row["last_attempt_at"],
            error_detail=row["error_detail"],
            provider_message_id=row["provider_message_id"],
            lead_id=row["lead_id"],
            campaign_id=row["campaign_id"],
            picked_by=row["picked_by"],
            sent_at=row["sent_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Attachment:
    filename: str
    content: str
    content_type: str = "application/octet-stream"

    def to_dict(self) -> Dict[str, str]:
        return {"filename": self.filename, "content": self.content, "contentType": self.content_type}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Attachment":
        return cls(
            filename=d["filename"],
            content=d.get("content", ""),
            content_type=d.get("contentType") or d.get("content_type") or "application/octet-stream",
        )


@dataclass
class OutboundMessage:
    """Resolved payload of a send job, as handed to the transport."""
    recipient: str
    subject: str
    body: str
    in_reply_to: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    lead_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "OutboundMessage":
        raw = row["attachments"]
        attachments = [Attachment.from_dict(a) for a in json.loads(raw)] if raw else []
        return cls(
            recipient=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            in_reply_to=row["in_reply_to"],
            attachments=attachments,
            lead_id=row["lead_id"],
        )


@dataclass(frozen=True)
class TenantCredential:
    tenant_id: str
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None


@dataclass
class Decision:
    """What the qualification engine hands the enqueue path."""
    tenant_id: str
    recipient: str
    subject: str
    body: Optional[str]
    lead_id: Optional[str] = None
    campaign_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    next_action: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class TenantStats:
    queued: int = 0
    leased: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    sent_today: int = 0
    active: bool = False
    daily_limit: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "queued": self.queued,
            "leased": self.leased,
            "sent": self.sent,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "sentToday": self.sent_today,
            "active": self.active,
            "dailyLimit": self.daily_limit,
        }
