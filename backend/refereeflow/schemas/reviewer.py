from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from refereeflow.models.conflict import ConflictSeverity
from refereeflow.models.matching import MatchingCriteria


class MatchRequest(MatchingCriteria):
    limit: int = Field(default=10, ge=1, le=50)


class ConflictCheckRequest(BaseModel):
    manuscript_id: str = Field(min_length=1)
    reviewer_id: Optional[str] = None
    reviewer_ids: Optional[List[str]] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def validate_input(self):
        # 单个与批量二选一
        if bool(self.reviewer_id) == bool(self.reviewer_ids):
            raise ValueError("Provide exactly one of reviewer_id or reviewer_ids")
        return self


class DeclareConflictRequest(BaseModel):
    reviewer_id: str = Field(min_length=1)
    manuscript_id: str = Field(min_length=1)
    conflict_type: str = Field(default="other", min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=4000)
    severity: ConflictSeverity = ConflictSeverity.MEDIUM
    is_blocking: bool = True
