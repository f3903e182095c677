from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client

from refereeflow.lib.api_client import supabase_admin
from refereeflow.models.conflict import DeclaredConflict
from refereeflow.models.reviewer import (
    AffiliationRecord,
    AssignmentRecord,
    CandidateFilter,
    CollaborationRecord,
    ManuscriptContext,
    ReviewerCandidate,
)

ACTIVE_ASSIGNMENT_STATUSES = ("accepted", "in_progress")

_PROFILE_COLUMNS = (
    "id, email, full_name, affiliation, country, research_interests, h_index, "
    "publication_count, is_reviewer_active, recent_references"
)


class CandidateStore(ABC):
    """
    审稿人候选与稿件元数据的只读查询接口。

    COI 检测与匹配只通过这些查询访问外部数据，不关心底层存储实现。
    """

    @abstractmethod
    def get_reviewer_candidates(self, filter: CandidateFilter) -> List[ReviewerCandidate]:
        raise NotImplementedError

    @abstractmethod
    def get_manuscript_context(self, manuscript_id: str) -> Optional[ManuscriptContext]:
        raise NotImplementedError

    @abstractmethod
    def get_recent_assignments(self, reviewer_ids: Iterable[str], window_days: int) -> List[AssignmentRecord]:
        raise NotImplementedError

    @abstractmethod
    def get_declared_conflicts(self, reviewer_id: str, manuscript_id: str) -> List[DeclaredConflict]:
        raise NotImplementedError

    @abstractmethod
    def get_collaborations(self, reviewer_id: str, person_ids: Iterable[str], since: date) -> List[CollaborationRecord]:
        """审稿人与 person_ids 中任一人、最后合作日期不早于 since 的合作记录（按审稿人视角定向）。"""
        raise NotImplementedError

    @abstractmethod
    def get_affiliation_history(self, profile_ids: Iterable[str], since: date) -> List[AffiliationRecord]:
        """当前在职或离职日期不早于 since 的任职经历。"""
        raise NotImplementedError

    def get_reviewer(self, reviewer_id: str) -> Optional[ReviewerCandidate]:
        rows = self.get_reviewer_candidates(CandidateFilter(reviewer_ids=[reviewer_id], active_only=False))
        for row in rows:
            if row.id == reviewer_id:
                return row
        return None


def _rows(resp: Any) -> List[Dict[str, Any]]:
    return getattr(resp, "data", None) or []


def _str_list(value: Any, *, split: bool = True) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        if not split:
            return [value.strip()] if value.strip() else []
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v).strip() for v in value if str(v or "").strip()]


class SupabaseCandidateStore(CandidateStore):
    """
    基于 Supabase(PostgREST) 的候选查询实现。

    中文注释:
    - 审稿人画像来自 user_profiles（roles 包含 reviewer）。
    - current_load 实时统计 review_assignments 中 accepted/in_progress 的条数，不读缓存字段。
    - 作者集合 = manuscripts.author_id ∪ manuscript_authors.author_id。
    """

    def __init__(self, db_client: Client | None = None):
        self._db = db_client or supabase_admin

    def get_reviewer_candidates(self, filter: CandidateFilter) -> List[ReviewerCandidate]:
        query = self._db.table("user_profiles").select(_PROFILE_COLUMNS).contains("roles", ["reviewer"])
        if filter.reviewer_ids is not None:
            if not filter.reviewer_ids:
                return []
            query = query.in_("id", list(filter.reviewer_ids))
        if filter.min_h_index is not None:
            query = query.gte("h_index", filter.min_h_index)
        if filter.min_publications is not None:
            query = query.gte("publication_count", filter.min_publications)
        if filter.active_only:
            query = query.eq("is_reviewer_active", True)

        profiles = _rows(query.execute())
        ids = [str(p.get("id")) for p in profiles if p.get("id")]
        loads = self._current_loads(ids)

        out: List[ReviewerCandidate] = []
        for p in profiles:
            rid = str(p.get("id") or "")
            if not rid:
                continue
            out.append(
                ReviewerCandidate(
                    id=rid,
                    name=p.get("full_name"),
                    email=p.get("email"),
                    expertise=_str_list(p.get("research_interests")),
                    affiliation=p.get("affiliation"),
                    country=p.get("country"),
                    h_index=int(p.get("h_index") or 0),
                    publication_count=int(p.get("publication_count") or 0),
                    current_load=loads.get(rid, 0),
                    is_available=p.get("is_reviewer_active") is not False,
                    recent_references=_str_list(p.get("recent_references"), split=False),
                )
            )
        return out

    def _current_loads(self, reviewer_ids: List[str]) -> Dict[str, int]:
        if not reviewer_ids:
            return {}
        resp = (
            self._db.table("review_assignments")
            .select("reviewer_id")
            .in_("reviewer_id", reviewer_ids)
            .in_("status", list(ACTIVE_ASSIGNMENT_STATUSES))
            .execute()
        )
        loads: Dict[str, int] = {}
        for row in _rows(resp):
            rid = str(row.get("reviewer_id") or "")
            if rid:
                loads[rid] = loads.get(rid, 0) + 1
        return loads

    def get_manuscript_context(self, manuscript_id: str) -> Optional[ManuscriptContext]:
        resp = (
            self._db.table("manuscripts")
            .select(
                "id, title, abstract, status, field, subfield, keywords, reference_list, "
                "excluded_reviewer_ids, author_id, editor_id"
            )
            .eq("id", manuscript_id)
            .limit(1)
            .execute()
        )
        rows = _rows(resp)
        if not rows:
            return None
        ms = rows[0]

        author_rows = _rows(
            self._db.table("manuscript_authors")
            .select("author_id, affiliation")
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        author_ids: List[str] = []
        affiliations: List[str] = []
        if ms.get("author_id"):
            author_ids.append(str(ms["author_id"]))
        for row in author_rows:
            if row.get("author_id") and str(row["author_id"]) not in author_ids:
                author_ids.append(str(row["author_id"]))
            if (row.get("affiliation") or "").strip():
                affiliations.append(row["affiliation"].strip())

        editor_id = str(ms["editor_id"]) if ms.get("editor_id") else None
        lookup_ids = list(author_ids) + ([editor_id] if editor_id else [])
        profiles: Dict[str, Dict[str, Any]] = {}
        if lookup_ids:
            for row in _rows(
                self._db.table("user_profiles").select("id, full_name, affiliation").in_("id", lookup_ids).execute()
            ):
                profiles[str(row.get("id"))] = row
        for aid in author_ids:
            aff = (profiles.get(aid, {}).get("affiliation") or "").strip()
            if aff and aff not in affiliations:
                affiliations.append(aff)

        return ManuscriptContext(
            id=str(ms.get("id") or manuscript_id),
            title=ms.get("title"),
            abstract=ms.get("abstract"),
            status=ms.get("status"),
            field=(ms.get("field") or "").strip() or None,
            subfield=(ms.get("subfield") or "").strip() or None,
            keywords=_str_list(ms.get("keywords")),
            author_ids=author_ids,
            author_affiliations=affiliations,
            references=_str_list(ms.get("reference_list"), split=False),
            excluded_reviewer_ids=_str_list(ms.get("excluded_reviewer_ids")),
            editor_id=editor_id,
            editor_name=(profiles.get(editor_id, {}) or {}).get("full_name") if editor_id else None,
        )

    def get_recent_assignments(self, reviewer_ids: Iterable[str], window_days: int) -> List[AssignmentRecord]:
        ids = [rid for rid in reviewer_ids if rid]
        if not ids:
            return []
        since = (datetime.now(timezone.utc) - timedelta(days=window_days)).isoformat()

        invitations = _rows(
            self._db.table("reviewer_invitations")
            .select("id, reviewer_id, manuscript_id, status, invited_at, responded_at")
            .in_("reviewer_id", ids)
            .gte("invited_at", since)
            .execute()
        )
        completed = _rows(
            self._db.table("review_assignments")
            .select("invitation_id, completed_at")
            .in_("reviewer_id", ids)
            .eq("status", "completed")
            .gte("created_at", since)
            .execute()
        )
        completed_at = {str(r.get("invitation_id")): r.get("completed_at") for r in completed if r.get("invitation_id")}

        records: List[AssignmentRecord] = []
        for row in invitations:
            inv_id = str(row.get("id") or "")
            status = str(row.get("status") or "pending")
            done = completed_at.get(inv_id)
            if done:
                status = "completed"
            records.append(
                AssignmentRecord(
                    reviewer_id=str(row.get("reviewer_id")),
                    manuscript_id=row.get("manuscript_id"),
                    status=status,
                    invited_at=row.get("invited_at"),
                    responded_at=row.get("responded_at"),
                    completed_at=done,
                )
            )
        return records

    def get_declared_conflicts(self, reviewer_id: str, manuscript_id: str) -> List[DeclaredConflict]:
        resp = (
            self._db.table("reviewer_conflicts")
            .select("reviewer_id, manuscript_id, conflict_type, description, severity, is_blocking, declared_by")
            .eq("reviewer_id", reviewer_id)
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        out: List[DeclaredConflict] = []
        for row in _rows(resp):
            out.append(
                DeclaredConflict(
                    reviewer_id=str(row.get("reviewer_id") or reviewer_id),
                    manuscript_id=str(row.get("manuscript_id") or manuscript_id),
                    conflict_type=row.get("conflict_type") or "other",
                    description=row.get("description"),
                    severity=row.get("severity") or "medium",
                    is_blocking=row.get("is_blocking") is not False,
                    declared_by=row.get("declared_by"),
                )
            )
        return out

    def get_collaborations(self, reviewer_id: str, person_ids: Iterable[str], since: date) -> List[CollaborationRecord]:
        ids = sorted({pid for pid in person_ids if pid and pid != reviewer_id})
        if not ids:
            return []
        out: List[CollaborationRecord] = []
        # collaboration_networks 是无向关系，审稿人可能在 person_a 或 person_b 任一侧
        for mine, theirs in (("person_a_id", "person_b_id"), ("person_b_id", "person_a_id")):
            rows = _rows(
                self._db.table("collaboration_networks")
                .select("person_a_id, person_b_id, relationship_type, collaboration_count, last_collaboration_date")
                .eq(mine, reviewer_id)
                .in_(theirs, ids)
                .gte("last_collaboration_date", since.isoformat())
                .execute()
            )
            for row in rows:
                out.append(
                    CollaborationRecord(
                        reviewer_id=reviewer_id,
                        collaborator_id=str(row.get(theirs)),
                        relationship_type=row.get("relationship_type") or "coauthor",
                        collaboration_count=max(1, int(row.get("collaboration_count") or 1)),
                        last_collaboration_date=row.get("last_collaboration_date"),
                    )
                )
        return out

    def get_affiliation_history(self, profile_ids: Iterable[str], since: date) -> List[AffiliationRecord]:
        ids = sorted({pid for pid in profile_ids if pid})
        if not ids:
            return []
        rows = _rows(
            self._db.table("institutional_affiliations_history")
            .select("profile_id, institution_name, department, start_date, end_date")
            .in_("profile_id", ids)
            .or_(f"end_date.is.null,end_date.gte.{since.isoformat()}")
            .execute()
        )
        return [
            AffiliationRecord(
                profile_id=str(row.get("profile_id")),
                institution_name=row["institution_name"],
                department=row.get("department"),
                start_date=row.get("start_date"),
                end_date=row.get("end_date"),
            )
            for row in rows
            if (row.get("institution_name") or "").strip()
        ]
