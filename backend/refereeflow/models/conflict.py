from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ConflictType(str, Enum):
    CO_AUTHORSHIP = "co_authorship"
    SHARED_INSTITUTION = "shared_institution"
    CITATION_OVERLAP = "citation_overlap"
    EXPLICIT_DECLARED = "explicit_declared"
    FINANCIAL_OTHER = "financial_other"
    RECENT_COLLABORATION = "recent_collaboration"
    COLLABORATION_HISTORY = "collaboration_history"
    AFFILIATION_HISTORY = "affiliation_history"


HARD_CONFLICT_TYPES = frozenset(
    {ConflictType.CO_AUTHORSHIP, ConflictType.EXPLICIT_DECLARED, ConflictType.RECENT_COLLABORATION}
)


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BLOCKING = "blocking"


class DeclaredConflict(BaseModel):
    """reviewer_conflicts 表中的一条显式声明"""

    reviewer_id: str
    manuscript_id: str
    conflict_type: str = "other"
    description: Optional[str] = None
    severity: ConflictSeverity = ConflictSeverity.MEDIUM
    is_blocking: bool = True
    declared_by: Optional[str] = None

    @property
    def blocks(self) -> bool:
        return self.is_blocking or self.severity == ConflictSeverity.BLOCKING


class ConflictEvidence(BaseModel):
    type: ConflictType
    description: str
    contribution: float = Field(ge=0.0, le=1.0)

    @property
    def is_hard(self) -> bool:
        return self.type in HARD_CONFLICT_TYPES


class COIResult(BaseModel):
    """
    单个 (reviewer, manuscript) 的冲突检查结果。

    中文注释:
    - 不含检查时间戳：相同输入必须得到完全相同的结果（批量/单个等价可直接比较）。
    - error 非空表示该审稿人的检查失败，结果按 fail-closed 处理（不可邀请）。
    """

    reviewer_id: str
    manuscript_id: str
    is_eligible: bool
    conflicts: List[ConflictEvidence] = Field(default_factory=list)
    risk_score: float = Field(ge=0.0, le=1.0)
    error: Optional[str] = None

    @property
    def has_hard_conflict(self) -> bool:
        return any(c.is_hard for c in self.conflicts)

    def conflict_types(self) -> List[ConflictType]:
        return [c.type for c in self.conflicts]
