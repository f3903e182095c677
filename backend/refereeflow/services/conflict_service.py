from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.errors import NotFoundError, ReviewerAssignmentError, ValidationError
from refereeflow.core.references import extract_reference_keys, normalize_text, reference_keys
from refereeflow.lib.blocking import run_blocking
from refereeflow.models.conflict import (
    COIResult,
    ConflictEvidence,
    ConflictSeverity,
    ConflictType,
    DeclaredConflict,
)
from refereeflow.models.reviewer import AffiliationRecord, CollaborationRecord, ManuscriptContext, ReviewerCandidate
from refereeflow.services.candidate_store import CandidateStore
from refereeflow.services.invitation_store import InvitationStore
from refereeflow.services.stores import get_candidate_store, get_invitation_store

logger = logging.getLogger("refereeflow.conflicts")

_SEVERITY_FACTOR = {
    ConflictSeverity.LOW: 0.25,
    ConflictSeverity.MEDIUM: 0.5,
    ConflictSeverity.HIGH: 1.0,
}

# 合作历史：2 年内直接判硬冲突；5 年内或合作 >= 5 次按满权重计软冲突；更早的按半权重；10 年以前不看
RECENT_COLLABORATION_YEARS = 2
CLOSE_COLLABORATION_YEARS = 5
FREQUENT_COLLABORATION_COUNT = 5
COLLABORATION_LOOKBACK_YEARS = 10
# 任职经历：当前在职或近 3 年内离职的才参与比较
AFFILIATION_LOOKBACK_YEARS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 2 月 29 日
        return day.replace(year=day.year - years, day=28)


class ConflictDetector:
    """
    利益冲突（COI）检测

    中文注释:
    1) 硬冲突：合著（reviewer 属于作者集合）、显式声明的冲突、2 年内与作者合作过，一律不可邀请。
    2) 软冲突：同机构（当前任职）、近 3 年任职经历重叠、较早的合作历史、引用重叠、
       标记为 is_blocking=false 的披露（财务/其他），只累加风险分，超过阈值才不可邀请。
    3) 只读：不落库检测结果；批量检测逐个复用单个检测路径，保证结果完全一致。
    4) 单个审稿人的查询失败按 fail-closed 返回（不可邀请 + error），不影响同批其他审稿人。
    """

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        candidate_store: Optional[CandidateStore] = None,
        invitation_store: Optional[InvitationStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._candidates = candidate_store or get_candidate_store()
        self._invitation_store = invitation_store
        self._now = clock or _utc_now

    def today(self) -> date:
        return self._now().date()

    @property
    def _writes(self) -> InvitationStore:
        if self._invitation_store is None:
            self._invitation_store = get_invitation_store()
        return self._invitation_store

    async def load_manuscript(self, manuscript_id: str) -> ManuscriptContext:
        manuscript = await run_blocking(
            self._candidates.get_manuscript_context,
            manuscript_id,
            timeout=self.config.external_timeout_seconds,
            label="get_manuscript_context",
        )
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found")
        return manuscript

    async def check_conflicts(self, reviewer_id: str, manuscript_id: str) -> COIResult:
        manuscript = await self.load_manuscript(manuscript_id)
        return await self.check_candidate(reviewer_id, manuscript)

    async def check_multiple(self, reviewer_ids: Iterable[str], manuscript_id: str) -> List[COIResult]:
        manuscript = await self.load_manuscript(manuscript_id)
        return [await self.check_candidate(rid, manuscript) for rid in reviewer_ids]

    async def check_candidate(
        self,
        reviewer_id: str,
        manuscript: ManuscriptContext,
        reviewer: Optional[ReviewerCandidate] = None,
    ) -> COIResult:
        timeout = self.config.external_timeout_seconds
        today = self.today()
        try:
            if reviewer is None:
                reviewer = await run_blocking(
                    self._candidates.get_reviewer, reviewer_id, timeout=timeout, label="get_reviewer"
                )
            if reviewer is None:
                return self._failed(reviewer_id, manuscript.id, "reviewer_not_found")
            declared = await run_blocking(
                self._candidates.get_declared_conflicts,
                reviewer_id,
                manuscript.id,
                timeout=timeout,
                label="get_declared_conflicts",
            )
            collaborations, affiliations = await self._history_for(reviewer_id, manuscript, today)
        except ReviewerAssignmentError as e:
            logger.warning("COI check failed reviewer=%s manuscript=%s: %s", reviewer_id, manuscript.id, e.message)
            return self._failed(reviewer_id, manuscript.id, e.code)
        except Exception as e:
            logger.warning("COI check failed reviewer=%s manuscript=%s: %s", reviewer_id, manuscript.id, e)
            return self._failed(reviewer_id, manuscript.id, "conflict_check_failed")

        return self.evaluate(reviewer, manuscript, declared, collaborations, affiliations, today=today)

    async def _history_for(
        self, reviewer_id: str, manuscript: ManuscriptContext, today: date
    ) -> Tuple[List[CollaborationRecord], List[AffiliationRecord]]:
        others = [aid for aid in manuscript.author_ids if aid != reviewer_id]
        if not others:
            return [], []
        timeout = self.config.external_timeout_seconds
        collaborations = await run_blocking(
            self._candidates.get_collaborations,
            reviewer_id,
            others,
            _years_before(today, COLLABORATION_LOOKBACK_YEARS),
            timeout=timeout,
            label="get_collaborations",
        )
        affiliations = await run_blocking(
            self._candidates.get_affiliation_history,
            [reviewer_id, *others],
            _years_before(today, AFFILIATION_LOOKBACK_YEARS),
            timeout=timeout,
            label="get_affiliation_history",
        )
        return collaborations, affiliations

    def evaluate(
        self,
        reviewer: ReviewerCandidate,
        manuscript: ManuscriptContext,
        declared: Iterable[DeclaredConflict],
        collaborations: Iterable[CollaborationRecord] = (),
        affiliations: Iterable[AffiliationRecord] = (),
        *,
        today: Optional[date] = None,
    ) -> COIResult:
        today = today or self.today()
        conflicts: List[ConflictEvidence] = []

        if reviewer.id in set(manuscript.author_ids):
            conflicts.append(
                ConflictEvidence(
                    type=ConflictType.CO_AUTHORSHIP,
                    description="Reviewer is an author or co-author of this manuscript",
                    contribution=1.0,
                )
            )

        for row in sorted(declared, key=lambda c: (c.conflict_type, c.description or "")):
            detail = f"Declared conflict ({row.conflict_type})"
            if row.description:
                detail = f"{detail}: {row.description}"
            if row.blocks:
                conflicts.append(ConflictEvidence(type=ConflictType.EXPLICIT_DECLARED, description=detail, contribution=1.0))
            else:
                weight = self.config.financial_weight * _SEVERITY_FACTOR.get(row.severity, 0.5)
                conflicts.append(
                    ConflictEvidence(
                        type=ConflictType.FINANCIAL_OTHER,
                        description=detail,
                        contribution=round(min(1.0, weight), 4),
                    )
                )

        conflicts.extend(self._collaboration_evidence(reviewer.id, manuscript, collaborations, today))

        current_overlap, past_overlap = self._affiliation_overlap(reviewer.id, manuscript, affiliations, today)
        shared = self._shared_institution(reviewer, manuscript) or (current_overlap[0] if current_overlap else None)
        if shared:
            conflicts.append(
                ConflictEvidence(
                    type=ConflictType.SHARED_INSTITUTION,
                    description=f"Shares institution with an author: {shared}",
                    contribution=round(min(1.0, self.config.shared_institution_weight), 4),
                )
            )
        past = [name for name in past_overlap if normalize_text(name) != normalize_text(shared)]
        if past:
            conflicts.append(
                ConflictEvidence(
                    type=ConflictType.AFFILIATION_HISTORY,
                    description=(
                        f"Shared an institution with an author within the last {AFFILIATION_LOOKBACK_YEARS} years: "
                        + ", ".join(past)
                    ),
                    contribution=round(min(1.0, self.config.affiliation_history_weight), 4),
                )
            )

        overlap = self._citation_overlap(reviewer, manuscript)
        if overlap:
            contribution = min(self.config.citation_overlap_cap, self.config.citation_overlap_weight * overlap)
            conflicts.append(
                ConflictEvidence(
                    type=ConflictType.CITATION_OVERLAP,
                    description=f"{overlap} overlapping reference(s) with the reviewer's recent publications",
                    contribution=round(min(1.0, contribution), 4),
                )
            )

        risk = round(min(1.0, sum(c.contribution for c in conflicts)), 4)
        has_hard = any(c.is_hard for c in conflicts)
        return COIResult(
            reviewer_id=reviewer.id,
            manuscript_id=manuscript.id,
            is_eligible=(not has_hard) and risk < self.config.coi_risk_threshold,
            conflicts=conflicts,
            risk_score=risk,
        )

    def _collaboration_evidence(
        self,
        reviewer_id: str,
        manuscript: ManuscriptContext,
        collaborations: Iterable[CollaborationRecord],
        today: date,
    ) -> List[ConflictEvidence]:
        authors = set(manuscript.author_ids) - {reviewer_id}
        lookback = _years_before(today, COLLABORATION_LOOKBACK_YEARS)
        recent = _years_before(today, RECENT_COLLABORATION_YEARS)
        close = _years_before(today, CLOSE_COLLABORATION_YEARS)
        rows = [
            c
            for c in collaborations
            if c.reviewer_id == reviewer_id
            and c.collaborator_id in authors
            and c.last_collaboration_date is not None
            and c.last_collaboration_date >= lookback
        ]

        out: List[ConflictEvidence] = []
        for c in sorted(rows, key=lambda c: (c.collaborator_id, c.last_collaboration_date, c.collaboration_count)):
            detail = (
                f"Co-authorship history with author {c.collaborator_id}: "
                f"{c.collaboration_count} publication(s), last in {c.last_collaboration_date.year}"
            )
            if c.last_collaboration_date >= recent:
                out.append(ConflictEvidence(type=ConflictType.RECENT_COLLABORATION, description=detail, contribution=1.0))
                continue
            close_or_frequent = c.last_collaboration_date >= close or c.collaboration_count >= FREQUENT_COLLABORATION_COUNT
            weight = self.config.collaboration_weight * (1.0 if close_or_frequent else 0.5)
            out.append(
                ConflictEvidence(
                    type=ConflictType.COLLABORATION_HISTORY,
                    description=detail,
                    contribution=round(min(1.0, weight), 4),
                )
            )
        return out

    @staticmethod
    def _affiliation_overlap(
        reviewer_id: str,
        manuscript: ManuscriptContext,
        affiliations: Iterable[AffiliationRecord],
        today: date,
    ) -> Tuple[List[str], List[str]]:
        """
        任职经历重叠：返回 (双方都仍在职的机构, 其余近 3 年内重叠过的机构)，按规范化名称去重排序。
        """
        since = _years_before(today, AFFILIATION_LOOKBACK_YEARS)
        authors = set(manuscript.author_ids) - {reviewer_id}
        rows = [a for a in affiliations if a.end_date is None or a.end_date >= since]
        mine = [a for a in rows if a.profile_id == reviewer_id]
        theirs = [a for a in rows if a.profile_id in authors]

        current: Dict[str, str] = {}
        past: Dict[str, str] = {}
        for r in mine:
            key = normalize_text(r.institution_name)
            if not key:
                continue
            for a in theirs:
                if normalize_text(a.institution_name) != key:
                    continue
                if r.is_current and a.is_current:
                    current.setdefault(key, r.institution_name.strip())
                else:
                    past.setdefault(key, r.institution_name.strip())
        return (
            [current[k] for k in sorted(current)],
            [past[k] for k in sorted(past) if k not in current],
        )

    @staticmethod
    def _shared_institution(reviewer: ReviewerCandidate, manuscript: ManuscriptContext) -> Optional[str]:
        mine = normalize_text(reviewer.affiliation)
        if not mine:
            return None
        for affiliation in manuscript.author_affiliations:
            if normalize_text(affiliation) == mine:
                return affiliation
        return None

    @staticmethod
    def _citation_overlap(reviewer: ReviewerCandidate, manuscript: ManuscriptContext) -> int:
        if not reviewer.recent_references:
            return 0
        manuscript_keys = extract_reference_keys(" ".join(filter(None, [manuscript.title, manuscript.abstract])))
        manuscript_keys |= reference_keys(manuscript.references)
        if not manuscript_keys:
            return 0
        return len(manuscript_keys & reference_keys(reviewer.recent_references))

    @staticmethod
    def _failed(reviewer_id: str, manuscript_id: str, error: str) -> COIResult:
        return COIResult(
            reviewer_id=reviewer_id,
            manuscript_id=manuscript_id,
            is_eligible=False,
            conflicts=[],
            risk_score=1.0,
            error=error,
        )

    async def declare_conflict(
        self,
        *,
        reviewer_id: str,
        manuscript_id: str,
        description: str,
        conflict_type: str = "other",
        severity: ConflictSeverity = ConflictSeverity.MEDIUM,
        blocking: bool = True,
        declared_by: Optional[str] = None,
    ) -> DeclaredConflict:
        """
        记录一条显式冲突声明（编辑录入，或审稿人接受邀请时自报）。

        默认 blocking=True（显式声明即硬冲突）；blocking=False 只作为财务/其他披露计入风险分。
        """
        if not (description or "").strip():
            raise ValidationError("Conflict description is required")
        await self.load_manuscript(manuscript_id)
        conflict = DeclaredConflict(
            reviewer_id=reviewer_id,
            manuscript_id=manuscript_id,
            conflict_type=(conflict_type or "other").strip() or "other",
            description=description.strip(),
            severity=severity,
            is_blocking=blocking or ConflictSeverity(severity) == ConflictSeverity.BLOCKING,
            declared_by=declared_by,
        )
        saved = await run_blocking(
            self._writes.record_declared_conflict,
            conflict,
            timeout=self.config.external_timeout_seconds,
            label="record_declared_conflict",
        )
        logger.info(
            "Declared conflict recorded reviewer=%s manuscript=%s severity=%s",
            reviewer_id,
            manuscript_id,
            conflict.severity.value,
        )
        return saved


_conflict_detector: Optional[ConflictDetector] = None


def get_conflict_detector() -> ConflictDetector:
    """
    获取 ConflictDetector 单例
    中文注释: 用于 FastAPI 依赖注入
    """
    global _conflict_detector
    if _conflict_detector is None:
        _conflict_detector = ConflictDetector()
    return _conflict_detector
