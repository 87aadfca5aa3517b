# Records owned by the workflow engine: enums, stored documents, request bodies

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import INITIAL_CREDITS, new_id, now_utc

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class GrievanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"

class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

PRIORITY_RANK = {Priority.NORMAL: 0, Priority.HIGH: 1, Priority.URGENT: 2}

class ModerationStatus(str, Enum):
    ACTIVE = "active"
    WARNED = "warned"
    BLOCKED = "blocked"

class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class NotificationKind(str, Enum):
    STATUS_UPDATE = "status_update"
    ASSIGNED = "grievance_assigned"
    COMMENT = "comment"
    PRIORITY_UPDATE = "priority_update"
    RESUBMITTED = "grievance_resubmitted"
    DELETED = "grievance_deleted"
    CREDIT_REQUEST = "credit_request"
    CREDITS_APPROVED = "credits_approved"
    CREDITS_REJECTED = "credits_rejected"
    CREDITS_GRANTED = "credits_granted"
    WARNING = "warning"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"

class TimelineEvent(str, Enum):
    SUBMITTED = "submitted"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    ASSIGNED = "assigned"
    COMMENT = "comment"
    RESUBMITTED = "resubmitted"
    PRIORITY = "priority"

# ---------------------------------------------------------------------------
# Stored documents
# ---------------------------------------------------------------------------
class Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump()

class Moderation(Record):
    status: ModerationStatus = ModerationStatus.ACTIVE
    warnings: int = Field(0, ge=0)
    warning_reason: Optional[str] = None
    last_warning_date: Optional[datetime] = None
    block_reason: Optional[str] = None
    block_date: Optional[datetime] = None
    unblock_date: Optional[datetime] = None

class User(Record):
    id: str
    name: str = ""
    email: str = ""
    mobile: str = ""
    is_admin: bool = False
    grievance_credits: int = INITIAL_CREDITS
    last_credit_update: datetime = Field(default_factory=now_utc)
    created_at: datetime = Field(default_factory=now_utc)
    moderation: Moderation = Field(default_factory=Moderation)

    @property
    def display_name(self) -> str:
        return self.name or ("Admin" if self.is_admin else "User")

class Comment(Record):
    id: str = Field(default_factory=new_id)
    author_id: str
    author_name: str
    text: str
    date: datetime = Field(default_factory=now_utc)

class TimelineEntry(Record):
    date: datetime = Field(default_factory=now_utc)
    event: TimelineEvent
    description: str

class Grievance(Record):
    id: str
    submitter_id: str
    submitter_name: str = ""
    title: str
    description: str
    created_at: datetime = Field(default_factory=now_utc)
    status: GrievanceStatus = GrievanceStatus.PENDING
    priority: Priority = Priority.NORMAL
    matched_terms: List[str] = Field(default_factory=list)
    attachments: List[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    assigned_name: Optional[str] = None
    comments: List[Comment] = Field(default_factory=list)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=now_utc)

class CreditRequest(Record):
    id: str
    requester_id: str
    requester_name: str = ""
    credits_at_request: int = 0
    reason: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=now_utc)
    resolved_by: Optional[str] = None
    resolved_by_name: Optional[str] = None
    resolved_at: Optional[datetime] = None
    credits_granted: Optional[int] = None

class Notification(Record):
    id: str
    recipient_id: str
    kind: NotificationKind
    message: str
    created_at: datetime = Field(default_factory=now_utc)
    read: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)

# ---------------------------------------------------------------------------
# Identity supplied by the auth collaborator
# ---------------------------------------------------------------------------
class Identity(BaseModel):
    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field("", max_length=200)
    email: str = Field("", max_length=320)
    mobile: str = Field("", max_length=20)
    is_admin: bool = False

# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class GrievanceCreate(BaseModel):
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=5000)
    attachments: List[str] = Field(default_factory=list, max_length=10)

class PriorityDetectRequest(BaseModel):
    title: str = Field("", max_length=200)
    description: str = Field("", max_length=5000)

class PriorityDetectResponse(BaseModel):
    priority: Priority
    matched_terms: List[str]

class StatusChange(BaseModel):
    comment: Optional[str] = Field(None, max_length=5000)

class CommentCreate(BaseModel):
    text: str = Field(..., max_length=5000)

class PriorityChange(BaseModel):
    priority: Priority

class RemovalRequest(BaseModel):
    reason: str = Field(..., max_length=1000)

class CreditRequestCreate(BaseModel):
    reason: str = Field(..., max_length=2000)

class CreditApproval(BaseModel):
    granted_credits: int = Field(1, ge=1, le=100)

class CreditGrant(BaseModel):
    amount: int = Field(..., ge=1, le=100)

class ModerationAction(BaseModel):
    reason: str = Field("", max_length=1000)

class ResubmitResponse(BaseModel):
    resubmitted: bool
    grievance: Grievance
