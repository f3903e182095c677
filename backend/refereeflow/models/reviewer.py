from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReviewerCandidate(BaseModel):
    """
    审稿人候选快照（单次匹配内不可变）

    中文注释:
    - 每次调用都从 Candidate Store 重新读取，不做缓存。
    - email 只用于通知投递，不会出现在匹配结果或公开视图里。
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    expertise: List[str] = Field(default_factory=list)
    affiliation: Optional[str] = None
    country: Optional[str] = None
    h_index: int = 0
    publication_count: int = 0
    current_load: int = 0
    is_available: bool = True
    recent_references: List[str] = Field(default_factory=list)


class ManuscriptContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: Optional[str] = None
    abstract: Optional[str] = None
    status: Optional[str] = None
    field: Optional[str] = None
    subfield: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    author_ids: List[str] = Field(default_factory=list)
    author_affiliations: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)
    excluded_reviewer_ids: List[str] = Field(default_factory=list)
    editor_id: Optional[str] = None
    editor_name: Optional[str] = None


class AssignmentRecord(BaseModel):
    """某审稿人在窗口期内的一条邀请/任务历史（用于可用性与质量评分）。"""

    reviewer_id: str
    manuscript_id: Optional[str] = None
    status: str
    invited_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("invited_at", "responded_at", "completed_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class CandidateFilter(BaseModel):
    reviewer_ids: Optional[List[str]] = None
    min_h_index: Optional[int] = None
    min_publications: Optional[int] = None
    active_only: bool = True


class CollaborationRecord(BaseModel):
    """
    审稿人与某位作者的历史合作（collaboration_networks 表，已按审稿人视角定向）。

    中文注释:
    - collaborator_id 是对方（作者）的 id。
    - last_collaboration_date 为空的记录不参与检测，无法判断时效。
    """

    reviewer_id: str
    collaborator_id: str
    relationship_type: str = "coauthor"
    collaboration_count: int = Field(default=1, ge=1)
    last_collaboration_date: Optional[date] = None


class AffiliationRecord(BaseModel):
    """institutional_affiliations_history 中的一段任职经历；end_date 为空表示当前在职。"""

    profile_id: str
    institution_name: str
    department: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @property
    def is_current(self) -> bool:
        return self.end_date is None
