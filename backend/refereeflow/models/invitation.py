from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from refereeflow.models.conflict import ConflictEvidence
from refereeflow.models.reviewer import as_utc


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InvitationStatus.PENDING


ACTIVE_STATUSES = frozenset({InvitationStatus.PENDING, InvitationStatus.ACCEPTED})
TERMINAL_STATUSES = frozenset(s for s in InvitationStatus if s.is_terminal)

INVITABLE_MANUSCRIPT_STATUSES = frozenset({"submitted", "with_editor", "under_review"})


class Override(BaseModel):
    """
    编辑对 COI 拦截的显式放行凭据。

    中文注释:
    - 必须逐个审稿人显式给出，绝不能由"没有拦截"推断出来。
    - 放行理由与放行人会落到邀请记录（coi_override_reason / coi_approved_by）。
    """

    granted_by: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=2000)
    timestamp: datetime

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("override reason is required")
        return trimmed

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ReviewerInvitation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    manuscript_id: str
    reviewer_id: str
    invited_by: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    custom_message: Optional[str] = None
    review_deadline: datetime
    response_deadline: datetime
    token: str
    invited_at: datetime
    send_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    alternative_reviewer: Optional[Dict[str, Any]] = None
    response_metadata: Dict[str, Any] = Field(default_factory=dict)
    coi_override_reason: Optional[str] = None
    coi_approved_by: Optional[str] = None
    coi_override_at: Optional[datetime] = None

    @field_validator(
        "review_deadline",
        "response_deadline",
        "invited_at",
        "send_at",
        "notified_at",
        "responded_at",
        "coi_override_at",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("response_metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return value or {}

    def is_overdue(self, now: datetime) -> bool:
        return self.status == InvitationStatus.PENDING and now > self.response_deadline


class ReviewAssignment(BaseModel):
    id: str
    manuscript_id: str
    reviewer_id: str
    invitation_id: Optional[str] = None
    status: str = "accepted"
    due_date: datetime
    expertise_rating: Optional[int] = None
    has_conflict: bool = False
    conflict_details: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("due_date", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


InvitationResultStatus = Literal["success", "blocked", "failed"]


class InvitationResult(BaseModel):
    reviewer_id: str
    status: InvitationResultStatus
    reason: Optional[str] = None
    message: Optional[str] = None
    invitation_id: Optional[str] = None
    send_at: Optional[datetime] = None
    conflicts: List[ConflictEvidence] = Field(default_factory=list)
    override_applied: bool = False
    notification_error: Optional[str] = None


class BulkInviteSummary(BaseModel):
    total: int = 0
    successful: int = 0
    blocked: int = 0
    failed: int = 0
    blocked_by_coi: int = 0
    manuscript_status_advanced: bool = False


class BulkInviteOutcome(BaseModel):
    manuscript_id: str
    results: List[InvitationResult] = Field(default_factory=list)
    summary: BulkInviteSummary


class InvitationStats(BaseModel):
    total: int = 0
    pending: int = 0
    accepted: int = 0
    declined: int = 0
    expired: int = 0
    cancelled: int = 0
    response_rate: float = 0.0
    avg_response_hours: float = 0.0


class InvitationView(BaseModel):
    """
    通过 token 公开访问的邀请视图。

    中文注释:
    - 只暴露 token 持有人自己的姓名/邮箱；其他候选人只给数量。
    - 不返回 token 本身以外的任何内部主键关联（inviter id、其他 reviewer id）。
    """

    invitation_id: str
    status: InvitationStatus
    can_respond: bool
    manuscript_title: Optional[str] = None
    manuscript_abstract: Optional[str] = None
    manuscript_field: Optional[str] = None
    manuscript_keywords: List[str] = Field(default_factory=list)
    editor_name: Optional[str] = None
    reviewer_name: Optional[str] = None
    reviewer_email: Optional[str] = None
    custom_message: Optional[str] = None
    review_deadline: datetime
    response_deadline: datetime
    invited_at: datetime
    responded_at: Optional[datetime] = None
    other_invitation_counts: Dict[str, int] = Field(default_factory=dict)


class RespondOutcome(BaseModel):
    invitation: ReviewerInvitation
    assignment: Optional[ReviewAssignment] = None
