from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.errors import FieldUndeterminedError
from refereeflow.core.references import normalize_text
from refereeflow.lib.blocking import run_blocking
from refereeflow.models.conflict import COIResult
from refereeflow.models.matching import (
    CandidateSummary,
    MatchingCriteria,
    MatchingMetadata,
    MatchingOutcome,
    MatchResult,
)
from refereeflow.models.reviewer import AssignmentRecord, CandidateFilter, ManuscriptContext, ReviewerCandidate
from refereeflow.services.candidate_store import CandidateStore
from refereeflow.services.conflict_service import ConflictDetector
from refereeflow.services.stores import get_candidate_store

logger = logging.getLogger("refereeflow.matching")

FIELD_WEIGHT = 40
SUBFIELD_WEIGHT = 30
KEYWORD_WEIGHT = 5

RELEVANCE_SHARE = 0.5
QUALITY_SHARE = 0.3
AVAILABILITY_SHARE = 0.2

SLOW_TURNAROUND_DAYS = 45


def _term_matches(term: str, tags: Iterable[str]) -> bool:
    needle = (term or "").strip().lower()
    if not needle:
        return False
    for tag in tags:
        hay = (tag or "").strip().lower()
        if hay and (needle in hay or hay in needle):
            return True
    return False


def availability_score(records: List[AssignmentRecord]) -> float:
    """
    过去窗口期内的可用性评分：
    100 - 拒绝率 × 50 - 每个待回复邀请 10 分 - (总邀请数 > 5 时再扣 20)，截断到 [0, 100]。
    """
    total = len(records)
    if total == 0:
        return 100.0
    declines = sum(1 for r in records if r.status == "declined")
    pending = sum(1 for r in records if r.status == "pending")
    score = 100.0 - (declines / total) * 50 - pending * 10 - (20 if total > 5 else 0)
    return max(0.0, min(100.0, score))


class _TrackRecord:
    def __init__(self, records: List[AssignmentRecord]):
        self.total = len(records)
        self.completed = [r for r in records if r.status == "completed"]

        turnarounds: List[float] = []
        for r in self.completed:
            start = r.responded_at or r.invited_at
            if start and r.completed_at and r.completed_at >= start:
                turnarounds.append((r.completed_at - start).total_seconds() / 86400)
        self.avg_turnaround_days = (sum(turnarounds) / len(turnarounds)) if turnarounds else None


def quality_score(candidate: ReviewerCandidate, track: _TrackRecord) -> float:
    """50 + h-index (上限 30) + 发文量 (上限 15) + 近期完成数 (上限 15) - 慢审稿扣分 (平均超过 45 天，上限 20)"""
    score = 50.0
    score += min(candidate.h_index * 2, 30)
    score += min(candidate.publication_count / 5, 15)
    score += min(len(track.completed) * 3, 15)
    if track.avg_turnaround_days is not None and track.avg_turnaround_days > SLOW_TURNAROUND_DAYS:
        score -= min((track.avg_turnaround_days - SLOW_TURNAROUND_DAYS) / 3, 20)
    return max(0.0, min(100.0, score))


class ReviewerMatcher:
    """
    审稿人匹配与排序

    中文注释:
    1) 候选池：先按 h-index / 发文量下限过滤，再排除作者、调用方排除名单、稿件排除名单。
    2) 可用性：不可用 / 当前负载超限 / 可用性评分低于下限，直接过滤。
    3) COI：逐个候选调用 ConflictDetector；不可邀请者默认过滤，include_conflicted 仅用于编辑查看。
    4) 综合分 = 0.5·相关度 + 0.3·质量 + 0.2·可用性 - 风险惩罚；同分按当前负载、id 排序，保证确定性。
    """

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        candidate_store: Optional[CandidateStore] = None,
        conflict_detector: Optional[ConflictDetector] = None,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._candidates = candidate_store or get_candidate_store()
        self._conflicts = conflict_detector or ConflictDetector(self.config, candidate_store=self._candidates)

    async def find_reviewers(self, criteria: MatchingCriteria, limit: int = 10) -> MatchingOutcome:
        manuscript = await self._conflicts.load_manuscript(criteria.manuscript_id)
        field = (criteria.field or manuscript.field or "").strip()
        if not field:
            # 不允许用默认学科兜底：调用方必须先补全稿件学科
            raise FieldUndeterminedError(details={"manuscript_id": manuscript.id})
        subfield = (criteria.subfield if criteria.subfield is not None else manuscript.subfield) or None
        keywords = self._dedupe(criteria.keywords if criteria.keywords is not None else manuscript.keywords)
        manuscript = self._merge_criteria(manuscript, criteria)

        timeout = self.config.external_timeout_seconds
        pool = await run_blocking(
            self._candidates.get_reviewer_candidates,
            CandidateFilter(
                min_h_index=criteria.min_h_index,
                min_publications=criteria.min_publications,
                # 暂停接收邀请的审稿人也进入候选池，由可用性过滤计入 filtered_availability
                active_only=False,
            ),
            timeout=timeout,
            label="get_reviewer_candidates",
        )
        pool = sorted(pool, key=lambda c: c.id)
        meta = MatchingMetadata(field=field, subfield=subfield, include_conflicted=criteria.include_conflicted)

        excluded = set(manuscript.author_ids) | set(criteria.exclude_reviewer_ids) | set(manuscript.excluded_reviewer_ids)
        survivors = [c for c in pool if c.id not in excluded]
        meta.excluded_explicit = len(pool) - len(survivors)

        history = await run_blocking(
            self._candidates.get_recent_assignments,
            [c.id for c in survivors],
            self.config.history_window_days,
            timeout=timeout,
            label="get_recent_assignments",
        )
        by_reviewer: Dict[str, List[AssignmentRecord]] = {}
        for record in history:
            by_reviewer.setdefault(record.reviewer_id, []).append(record)

        max_load = criteria.max_current_load if criteria.max_current_load is not None else self.config.max_current_load

        scored: List[MatchResult] = []
        for candidate in survivors:
            records = by_reviewer.get(candidate.id, [])
            availability = availability_score(records)
            if (
                not candidate.is_available
                or candidate.current_load >= max_load
                or availability < self.config.min_availability
            ):
                meta.filtered_availability += 1
                continue

            coi = await self._conflicts.check_candidate(candidate.id, manuscript, reviewer=candidate)
            if coi.error:
                meta.errored += 1
                continue
            if not coi.is_eligible and not criteria.include_conflicted:
                meta.filtered_coi += 1
                continue

            scored.append(self._score(candidate, records, availability, coi, field, subfield, keywords))

        ranked = self._rank(scored, criteria, {c.id: c for c in survivors})
        matches = ranked[:limit]
        meta.ranked_below_limit = len(ranked) - len(matches)

        logger.info(
            "find_reviewers manuscript=%s pool=%d matches=%d explicit=%d availability=%d coi=%d errored=%d below_limit=%d",
            manuscript.id,
            len(pool),
            len(matches),
            meta.excluded_explicit,
            meta.filtered_availability,
            meta.filtered_coi,
            meta.errored,
            meta.ranked_below_limit,
        )
        return MatchingOutcome(matches=matches, total_candidates=len(pool), metadata=meta)

    @staticmethod
    def _dedupe(values: Optional[Iterable[str]]) -> List[str]:
        out: List[str] = []
        seen = set()
        for v in values or []:
            key = (v or "").strip().lower()
            if key and key not in seen:
                seen.add(key)
                out.append(v.strip())
        return out

    @staticmethod
    def _merge_criteria(manuscript: ManuscriptContext, criteria: MatchingCriteria) -> ManuscriptContext:
        if not criteria.author_ids and not criteria.references:
            return manuscript
        author_ids = list(dict.fromkeys([*manuscript.author_ids, *criteria.author_ids]))
        references = list(dict.fromkeys([*manuscript.references, *criteria.references]))
        return manuscript.model_copy(update={"author_ids": author_ids, "references": references})

    def _score(
        self,
        candidate: ReviewerCandidate,
        records: List[AssignmentRecord],
        availability: float,
        coi: COIResult,
        field: str,
        subfield: Optional[str],
        keywords: List[str],
    ) -> MatchResult:
        reasons: List[str] = []
        relevance = 0.0
        if _term_matches(field, candidate.expertise):
            relevance += FIELD_WEIGHT
            reasons.append(f"Expertise matches field: {field}")
        if subfield and _term_matches(subfield, candidate.expertise):
            relevance += SUBFIELD_WEIGHT
            reasons.append(f"Expertise matches subfield: {subfield}")
        keyword_hits = [kw for kw in keywords if _term_matches(kw, candidate.expertise)]
        if keyword_hits:
            relevance += KEYWORD_WEIGHT * len(keyword_hits)
            reasons.append(f"Keyword matches: {', '.join(keyword_hits)}")

        track = _TrackRecord(records)
        quality = quality_score(candidate, track)

        if candidate.h_index >= 20:
            reasons.append(f"High h-index ({candidate.h_index})")
        if availability >= 80:
            reasons.append("High availability")
        if len(track.completed) >= 3:
            reasons.append("Active reviewer")
        if track.avg_turnaround_days is not None and track.avg_turnaround_days <= 30:
            reasons.append("Fast review turnaround")
        if not coi.is_eligible:
            reasons.append("Not eligible: conflict of interest")
        elif coi.conflicts:
            reasons.append(f"Soft conflicts noted (risk {coi.risk_score:.2f})")

        overall = (
            RELEVANCE_SHARE * relevance
            + QUALITY_SHARE * quality
            + AVAILABILITY_SHARE * availability
            - self.config.risk_penalty * coi.risk_score
        )
        return MatchResult(
            candidate=CandidateSummary(
                id=candidate.id,
                name=candidate.name,
                affiliation=candidate.affiliation,
                country=candidate.country,
                expertise=list(candidate.expertise),
                h_index=candidate.h_index,
                publication_count=candidate.publication_count,
                current_load=candidate.current_load,
            ),
            relevance_score=round(relevance, 2),
            quality_score=round(quality, 2),
            availability_score=round(availability, 2),
            overall_score=round(overall, 2),
            match_reasons=reasons,
            coi=coi,
        )

    def _rank(
        self,
        scored: List[MatchResult],
        criteria: MatchingCriteria,
        candidates: Dict[str, ReviewerCandidate],
    ) -> List[MatchResult]:
        def sort_key(m: MatchResult) -> Tuple[float, int, str]:
            return (-m.overall_score, m.candidate.current_load, m.candidate.id)

        ranked = sorted(scored, key=sort_key)
        prefs = criteria.diversity
        if not (prefs.prefer_distinct_institutions or prefs.prefer_distinct_countries) or not self.config.diversity_penalty:
            return ranked

        # 多样性是软约束：排在前面的同机构/同国家候选越多，扣分越多，然后重新排序
        seen_institutions: Dict[str, int] = {}
        seen_countries: Dict[str, int] = {}
        adjusted: List[MatchResult] = []
        for m in ranked:
            penalty = 0.0
            source = candidates.get(m.candidate.id)
            institution = normalize_text(source.affiliation if source else None)
            country = normalize_text(source.country if source else None)
            if prefs.prefer_distinct_institutions and institution:
                penalty += self.config.diversity_penalty * seen_institutions.get(institution, 0)
                seen_institutions[institution] = seen_institutions.get(institution, 0) + 1
            if prefs.prefer_distinct_countries and country:
                penalty += self.config.diversity_penalty * seen_countries.get(country, 0)
                seen_countries[country] = seen_countries.get(country, 0) + 1
            if penalty:
                m = m.model_copy(
                    update={
                        "overall_score": round(m.overall_score - penalty, 2),
                        "match_reasons": [*m.match_reasons, "Diversity adjustment applied"],
                    }
                )
            adjusted.append(m)
        return sorted(adjusted, key=sort_key)


_reviewer_matcher: Optional[ReviewerMatcher] = None


def get_reviewer_matcher() -> ReviewerMatcher:
    global _reviewer_matcher
    if _reviewer_matcher is None:
        _reviewer_matcher = ReviewerMatcher()
    return _reviewer_matcher
