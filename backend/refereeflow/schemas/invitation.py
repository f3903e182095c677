from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    # 公开 token 接口沿用前端 camelCase 字段，同时接受 snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConflictDeclaration(_CamelModel):
    has_conflict: bool = False
    conflict_type: Optional[str] = Field(default=None, max_length=100)
    conflict_description: Optional[str] = Field(default=None, max_length=4000)


class AlternativeReviewer(_CamelModel):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    affiliation: Optional[str] = Field(default=None, max_length=300)
    expertise: Optional[str] = Field(default=None, max_length=1000)
    reason: Optional[str] = Field(default=None, max_length=2000)


class InvitationResponse(_CamelModel):
    """
    审稿人对邀请的回复。

    中文注释:
    - 结构校验在这里完成；业务规则（accept 必须确认时间、声明冲突必须写描述、decline 必须给理由）
      在 InvitationService.respond 中校验，保证非 HTTP 调用方也遵守同一规则。
    """

    decision: Literal["accept", "decline"]
    availability_confirmed: bool = False
    conflict_declaration: Optional[ConflictDeclaration] = None
    expertise_rating: Optional[int] = Field(default=None, ge=1, le=5)
    decline_reason: Optional[str] = Field(default=None, max_length=4000)
    alternative_reviewer: Optional[AlternativeReviewer] = None
    additional_comments: Optional[str] = Field(default=None, max_length=4000)


class CreateInvitationRequest(BaseModel):
    manuscript_id: str = Field(min_length=1)
    reviewer_id: str = Field(min_length=1)
    review_deadline: datetime
    response_deadline: Optional[datetime] = None
    custom_message: Optional[str] = Field(default=None, max_length=4000)


class OverrideRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
    granted_by: Optional[str] = None
    timestamp: Optional[datetime] = None


class BulkInviteRequest(BaseModel):
    manuscript_id: str = Field(min_length=1)
    reviewer_ids: List[str] = Field(min_length=1, max_length=50)
    review_deadline: datetime
    response_deadline: Optional[datetime] = None
    custom_message: Optional[str] = Field(default=None, max_length=4000)
    staggered: bool = False
    stagger_hours: Optional[int] = Field(default=None, ge=0, le=24 * 14)
    # reviewer_id -> 放行理由（字符串）或完整的 override 对象
    overrides: Dict[str, Union[OverrideRequest, str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_overrides(self):
        unknown = [rid for rid in self.overrides if rid not in set(self.reviewer_ids)]
        if unknown:
            raise ValueError(f"overrides reference reviewers not in reviewer_ids: {', '.join(sorted(unknown))}")
        for rid, value in self.overrides.items():
            reason = value if isinstance(value, str) else value.reason
            if not reason.strip():
                raise ValueError(f"override reason for {rid} must not be blank")
        return self


class CancelInvitationRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)
