from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from refereeflow.models.conflict import COIResult


class DiversityPreferences(BaseModel):
    # 软约束：只影响排序，不做硬过滤
    prefer_distinct_institutions: bool = False
    prefer_distinct_countries: bool = False


class MatchingCriteria(BaseModel):
    manuscript_id: str
    field: Optional[str] = None
    subfield: Optional[str] = None
    keywords: Optional[List[str]] = None
    author_ids: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)
    exclude_reviewer_ids: List[str] = Field(default_factory=list)
    min_h_index: Optional[int] = Field(default=None, ge=0)
    min_publications: Optional[int] = Field(default=None, ge=0)
    max_current_load: Optional[int] = Field(default=None, ge=0)
    diversity: DiversityPreferences = Field(default_factory=DiversityPreferences)
    include_conflicted: bool = False


class CandidateSummary(BaseModel):
    """匹配结果中暴露的候选信息（不含 email）。"""

    id: str
    name: Optional[str] = None
    affiliation: Optional[str] = None
    country: Optional[str] = None
    expertise: List[str] = Field(default_factory=list)
    h_index: int = 0
    publication_count: int = 0
    current_load: int = 0


class MatchResult(BaseModel):
    candidate: CandidateSummary
    relevance_score: float
    quality_score: float
    availability_score: float
    overall_score: float
    match_reasons: List[str] = Field(default_factory=list)
    coi: COIResult


class MatchingMetadata(BaseModel):
    field: str
    subfield: Optional[str] = None
    excluded_explicit: int = 0
    filtered_availability: int = 0
    filtered_coi: int = 0
    errored: int = 0
    ranked_below_limit: int = 0
    include_conflicted: bool = False


class MatchingOutcome(BaseModel):
    matches: List[MatchResult] = Field(default_factory=list)
    total_candidates: int = 0
    metadata: MatchingMetadata
