from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from refereeflow.core.errors import DuplicateInvitationError
from refereeflow.models.conflict import DeclaredConflict
from refereeflow.models.invitation import (
    ACTIVE_STATUSES,
    InvitationStatus,
    ReviewAssignment,
    ReviewerInvitation,
)
from refereeflow.models.reviewer import (
    AffiliationRecord,
    AssignmentRecord,
    CandidateFilter,
    CollaborationRecord,
    ManuscriptContext,
    ReviewerCandidate,
)
from refereeflow.services.candidate_store import ACTIVE_ASSIGNMENT_STATUSES, CandidateStore
from refereeflow.services.invitation_store import InvitationStore


class InMemoryReviewStore(CandidateStore, InvitationStore):
    """
    进程内存储：同时实现 CandidateStore 与 InvitationStore。

    中文注释:
    - 用于本地开发（REVIEW_STORE_BACKEND=memory）与单元测试。
    - 所有读写都持有同一把锁，条件插入 / CAS / 原子接受与数据库实现语义一致。
    - 不持久化；进程重启后数据丢失。
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._reviewers: Dict[str, ReviewerCandidate] = {}
        self._manuscripts: Dict[str, ManuscriptContext] = {}
        self._history: List[AssignmentRecord] = []
        self._conflicts: List[DeclaredConflict] = []
        self._collaborations: List[CollaborationRecord] = []
        self._affiliations: List[AffiliationRecord] = []
        self._invitations: Dict[str, ReviewerInvitation] = {}
        self._assignments: Dict[str, ReviewAssignment] = {}
        self.suggested_reviewers: List[Dict[str, Any]] = []
        self.status_transitions: List[Tuple[str, str, str]] = []

    # === seeding ===
    def add_reviewer(self, reviewer: ReviewerCandidate) -> None:
        with self._lock:
            self._reviewers[reviewer.id] = reviewer

    def add_manuscript(self, manuscript: ManuscriptContext) -> None:
        with self._lock:
            self._manuscripts[manuscript.id] = manuscript

    def add_history(self, record: AssignmentRecord) -> None:
        with self._lock:
            self._history.append(record)

    def add_assignment(self, assignment: ReviewAssignment) -> None:
        with self._lock:
            self._assignments[assignment.id] = assignment

    def add_collaboration(self, record: CollaborationRecord) -> None:
        with self._lock:
            self._collaborations.append(record)

    def add_affiliation(self, record: AffiliationRecord) -> None:
        with self._lock:
            self._affiliations.append(record)

    # === CandidateStore ===
    def get_reviewer_candidates(self, filter: CandidateFilter) -> List[ReviewerCandidate]:
        with self._lock:
            reviewers = list(self._reviewers.values())
            loads = self._loads_locked()
        if filter.reviewer_ids is not None:
            wanted = set(filter.reviewer_ids)
            reviewers = [r for r in reviewers if r.id in wanted]
        if filter.min_h_index is not None:
            reviewers = [r for r in reviewers if r.h_index >= filter.min_h_index]
        if filter.min_publications is not None:
            reviewers = [r for r in reviewers if r.publication_count >= filter.min_publications]
        if filter.active_only:
            reviewers = [r for r in reviewers if r.is_available]
        out = []
        for r in reviewers:
            extra = loads.get(r.id, 0)
            out.append(r.model_copy(update={"current_load": r.current_load + extra}) if extra else r)
        return out

    def _loads_locked(self) -> Dict[str, int]:
        loads: Dict[str, int] = {}
        for a in self._assignments.values():
            if a.status in ACTIVE_ASSIGNMENT_STATUSES:
                loads[a.reviewer_id] = loads.get(a.reviewer_id, 0) + 1
        return loads

    def get_manuscript_context(self, manuscript_id: str) -> Optional[ManuscriptContext]:
        with self._lock:
            return self._manuscripts.get(manuscript_id)

    def get_recent_assignments(self, reviewer_ids: Iterable[str], window_days: int) -> List[AssignmentRecord]:
        wanted = set(reviewer_ids)
        since = datetime.now(timezone.utc) - timedelta(days=window_days)
        with self._lock:
            records = [
                r for r in self._history if r.reviewer_id in wanted and (r.invited_at is None or r.invited_at >= since)
            ]
            for inv in self._invitations.values():
                if inv.reviewer_id in wanted and inv.invited_at >= since:
                    records.append(
                        AssignmentRecord(
                            reviewer_id=inv.reviewer_id,
                            manuscript_id=inv.manuscript_id,
                            status=inv.status.value,
                            invited_at=inv.invited_at,
                            responded_at=inv.responded_at,
                        )
                    )
        return records

    def get_declared_conflicts(self, reviewer_id: str, manuscript_id: str) -> List[DeclaredConflict]:
        with self._lock:
            return [c for c in self._conflicts if c.reviewer_id == reviewer_id and c.manuscript_id == manuscript_id]

    def get_collaborations(self, reviewer_id: str, person_ids: Iterable[str], since: date) -> List[CollaborationRecord]:
        wanted = set(person_ids) - {reviewer_id}
        out: List[CollaborationRecord] = []
        with self._lock:
            records = list(self._collaborations)
        for r in records:
            if r.last_collaboration_date is None or r.last_collaboration_date < since:
                continue
            if r.reviewer_id == reviewer_id and r.collaborator_id in wanted:
                out.append(r)
            elif r.collaborator_id == reviewer_id and r.reviewer_id in wanted:
                out.append(r.model_copy(update={"reviewer_id": reviewer_id, "collaborator_id": r.reviewer_id}))
        return out

    def get_affiliation_history(self, profile_ids: Iterable[str], since: date) -> List[AffiliationRecord]:
        wanted = set(profile_ids)
        with self._lock:
            return [
                a
                for a in self._affiliations
                if a.profile_id in wanted and (a.end_date is None or a.end_date >= since)
            ]

    # === InvitationStore ===
    def insert_invitation(self, invitation: ReviewerInvitation) -> ReviewerInvitation:
        with self._lock:
            for existing in self._invitations.values():
                if (
                    existing.manuscript_id == invitation.manuscript_id
                    and existing.reviewer_id == invitation.reviewer_id
                    and existing.status in ACTIVE_STATUSES
                ):
                    raise DuplicateInvitationError(
                        details={"manuscript_id": invitation.manuscript_id, "reviewer_id": invitation.reviewer_id}
                    )
            self._invitations[invitation.id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str) -> Optional[ReviewerInvitation]:
        with self._lock:
            return self._invitations.get(invitation_id)

    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        with self._lock:
            for inv in self._invitations.values():
                if inv.token == token:
                    return inv
        return None

    def list_invitations(
        self,
        *,
        manuscript_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        statuses: Optional[Iterable[InvitationStatus]] = None,
    ) -> List[ReviewerInvitation]:
        wanted = {InvitationStatus(s) for s in statuses} if statuses is not None else None
        with self._lock:
            rows = list(self._invitations.values())
        rows = [
            inv
            for inv in rows
            if (manuscript_id is None or inv.manuscript_id == manuscript_id)
            and (reviewer_id is None or inv.reviewer_id == reviewer_id)
            and (wanted is None or inv.status in wanted)
        ]
        return sorted(rows, key=lambda inv: inv.invited_at)

    def transition_invitation(
        self,
        invitation_id: str,
        to_status: InvitationStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReviewerInvitation]:
        with self._lock:
            current = self._invitations.get(invitation_id)
            if current is None or current.status != InvitationStatus.PENDING:
                return None
            updated = current.model_copy(update={**(fields or {}), "status": InvitationStatus(to_status)})
            self._invitations[invitation_id] = updated
            return updated

    def accept_invitation(
        self,
        invitation_id: str,
        *,
        responded_at: datetime,
        response_metadata: Dict[str, Any],
        assignment: ReviewAssignment,
    ) -> Optional[Tuple[ReviewerInvitation, ReviewAssignment]]:
        with self._lock:
            current = self._invitations.get(invitation_id)
            if current is None or current.status != InvitationStatus.PENDING:
                return None
            if responded_at > current.response_deadline:
                return None
            if any(a.invitation_id == invitation_id for a in self._assignments.values()):
                return None
            updated = current.model_copy(
                update={
                    "status": InvitationStatus.ACCEPTED,
                    "responded_at": responded_at,
                    "response_metadata": response_metadata,
                }
            )
            # 两步写入在同一把锁内完成，外部观察不到中间态
            self._assignments[assignment.id] = assignment
            self._invitations[invitation_id] = updated
            return updated, assignment

    def list_assignments(self, *, manuscript_id: str, reviewer_id: Optional[str] = None) -> List[ReviewAssignment]:
        with self._lock:
            return [
                a
                for a in self._assignments.values()
                if a.manuscript_id == manuscript_id and (reviewer_id is None or a.reviewer_id == reviewer_id)
            ]

    def save_suggested_reviewer(self, invitation: ReviewerInvitation, suggestion: Dict[str, Any]) -> None:
        with self._lock:
            self.suggested_reviewers.append(
                {"invitation_id": invitation.id, "manuscript_id": invitation.manuscript_id, **suggestion}
            )

    def advance_manuscript_status(self, manuscript_id: str, to_status: str, from_statuses: Iterable[str]) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            current = self._manuscripts.get(manuscript_id)
            if current is None or current.status not in allowed:
                return False
            self._manuscripts[manuscript_id] = current.model_copy(update={"status": to_status})
            self.status_transitions.append((manuscript_id, str(current.status), to_status))
            return True

    def record_declared_conflict(self, conflict: DeclaredConflict) -> DeclaredConflict:
        with self._lock:
            self._conflicts.append(conflict)
        return conflict

    def mark_notified(self, invitation_id: str, notified_at: datetime) -> None:
        with self._lock:
            current = self._invitations.get(invitation_id)
            if current is not None:
                self._invitations[invitation_id] = current.model_copy(update={"notified_at": notified_at})

    def list_due_notifications(self, now: datetime) -> List[ReviewerInvitation]:
        with self._lock:
            rows = [
                inv
                for inv in self._invitations.values()
                if inv.status == InvitationStatus.PENDING
                and inv.notified_at is None
                and inv.send_at is not None
                and inv.send_at <= now
            ]
        return sorted(rows, key=lambda inv: inv.send_at)

    def list_overdue_pending(self, now: datetime) -> List[ReviewerInvitation]:
        with self._lock:
            return [inv for inv in self._invitations.values() if inv.is_overdue(now)]
