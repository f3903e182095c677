from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client

from refereeflow.core.errors import DuplicateInvitationError
from refereeflow.lib.api_client import supabase_admin
from refereeflow.models.conflict import DeclaredConflict
from refereeflow.models.invitation import InvitationStatus, ReviewAssignment, ReviewerInvitation

ACTIVE_INVITATION_INDEX = "uq_reviewer_invitations_active_pair"


class InvitationStore(ABC):
    """
    邀请/任务的读写接口。

    中文注释:
    - 所有状态迁移都必须是 compare-and-swap（仅当当前状态为 pending 才更新），并发读写不会重复迁移。
    - accept_invitation 必须在一个原子单元内完成“邀请迁移 + 创建唯一 assignment”。
    """

    @abstractmethod
    def insert_invitation(self, invitation: ReviewerInvitation) -> ReviewerInvitation:
        """条件插入：同一 (manuscript, reviewer) 已有 pending/accepted 邀请时抛 DuplicateInvitationError。"""
        raise NotImplementedError

    @abstractmethod
    def get_invitation(self, invitation_id: str) -> Optional[ReviewerInvitation]:
        raise NotImplementedError

    @abstractmethod
    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        raise NotImplementedError

    @abstractmethod
    def list_invitations(
        self,
        *,
        manuscript_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        statuses: Optional[Iterable[InvitationStatus]] = None,
    ) -> List[ReviewerInvitation]:
        raise NotImplementedError

    @abstractmethod
    def transition_invitation(
        self,
        invitation_id: str,
        to_status: InvitationStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReviewerInvitation]:
        """pending -> to_status；若当前已不是 pending 返回 None。"""
        raise NotImplementedError

    @abstractmethod
    def accept_invitation(
        self,
        invitation_id: str,
        *,
        responded_at: datetime,
        response_metadata: Dict[str, Any],
        assignment: ReviewAssignment,
    ) -> Optional[Tuple[ReviewerInvitation, ReviewAssignment]]:
        """原子接受；若邀请已不是 pending 或已过回复截止时间返回 None。"""
        raise NotImplementedError

    @abstractmethod
    def list_assignments(self, *, manuscript_id: str, reviewer_id: Optional[str] = None) -> List[ReviewAssignment]:
        raise NotImplementedError

    @abstractmethod
    def save_suggested_reviewer(self, invitation: ReviewerInvitation, suggestion: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def advance_manuscript_status(self, manuscript_id: str, to_status: str, from_statuses: Iterable[str]) -> bool:
        """条件更新稿件状态；只有当前状态在 from_statuses 中才会写入，返回是否真的发生了迁移。"""
        raise NotImplementedError

    @abstractmethod
    def record_declared_conflict(self, conflict: DeclaredConflict) -> DeclaredConflict:
        raise NotImplementedError

    @abstractmethod
    def mark_notified(self, invitation_id: str, notified_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_due_notifications(self, now: datetime) -> List[ReviewerInvitation]:
        """pending、尚未通知且 send_at <= now 的邀请（错峰发送）。"""
        raise NotImplementedError

    @abstractmethod
    def list_overdue_pending(self, now: datetime) -> List[ReviewerInvitation]:
        raise NotImplementedError


def _rows(resp: Any) -> List[Dict[str, Any]]:
    return getattr(resp, "data", None) or []


def _is_unique_violation(exc: APIError) -> bool:
    # supabase/postgrest 的 APIError 在不同版本里字段不完全一致，code 缺失时从字符串兜底解析
    if str(getattr(exc, "code", "") or "") == "23505":
        return True
    text = str(exc).lower()
    return "23505" in text or "duplicate key" in text or ACTIVE_INVITATION_INDEX in text


def _invitation_payload(invitation: ReviewerInvitation) -> Dict[str, Any]:
    payload = invitation.model_dump(mode="json")
    # notified_at 由 mark_notified 单独维护
    payload.pop("notified_at", None)
    return payload


def _iso(value: datetime) -> str:
    return value.isoformat()


class SupabaseInvitationStore(InvitationStore):
    """
    reviewer_invitations / review_assignments 的 Supabase 实现。

    中文注释:
    - 去重依赖部分唯一索引 uq_reviewer_invitations_active_pair（status in pending/accepted），
      插入冲突 (23505) 转换为 DuplicateInvitationError。
    - 接受邀请走 Postgres 函数 accept_reviewer_invitation，在同一事务里完成 CAS 与 assignment 插入。
    """

    def __init__(self, db_client: Client | None = None):
        self._db = db_client or supabase_admin

    def insert_invitation(self, invitation: ReviewerInvitation) -> ReviewerInvitation:
        try:
            resp = self._db.table("reviewer_invitations").insert(_invitation_payload(invitation)).execute()
        except APIError as e:
            if _is_unique_violation(e):
                raise DuplicateInvitationError(
                    details={"manuscript_id": invitation.manuscript_id, "reviewer_id": invitation.reviewer_id}
                ) from e
            raise
        rows = _rows(resp)
        return ReviewerInvitation.model_validate(rows[0]) if rows else invitation

    def get_invitation(self, invitation_id: str) -> Optional[ReviewerInvitation]:
        rows = _rows(self._db.table("reviewer_invitations").select("*").eq("id", invitation_id).limit(1).execute())
        return ReviewerInvitation.model_validate(rows[0]) if rows else None

    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        rows = _rows(self._db.table("reviewer_invitations").select("*").eq("token", token).limit(1).execute())
        return ReviewerInvitation.model_validate(rows[0]) if rows else None

    def list_invitations(
        self,
        *,
        manuscript_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        statuses: Optional[Iterable[InvitationStatus]] = None,
    ) -> List[ReviewerInvitation]:
        query = self._db.table("reviewer_invitations").select("*")
        if manuscript_id:
            query = query.eq("manuscript_id", manuscript_id)
        if reviewer_id:
            query = query.eq("reviewer_id", reviewer_id)
        if statuses is not None:
            query = query.in_("status", [InvitationStatus(s).value for s in statuses])
        rows = _rows(query.order("invited_at").execute())
        return [ReviewerInvitation.model_validate(r) for r in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        to_status: InvitationStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReviewerInvitation]:
        payload: Dict[str, Any] = {"status": InvitationStatus(to_status).value}
        for k, v in (fields or {}).items():
            payload[k] = _iso(v) if isinstance(v, datetime) else v
        resp = (
            self._db.table("reviewer_invitations")
            .update(payload)
            .eq("id", invitation_id)
            .eq("status", InvitationStatus.PENDING.value)
            .execute()
        )
        rows = _rows(resp)
        return ReviewerInvitation.model_validate(rows[0]) if rows else None

    def accept_invitation(
        self,
        invitation_id: str,
        *,
        responded_at: datetime,
        response_metadata: Dict[str, Any],
        assignment: ReviewAssignment,
    ) -> Optional[Tuple[ReviewerInvitation, ReviewAssignment]]:
        resp = self._db.rpc(
            "accept_reviewer_invitation",
            {
                "p_invitation_id": invitation_id,
                "p_assignment_id": assignment.id,
                "p_responded_at": _iso(responded_at),
                "p_response_metadata": response_metadata,
                "p_expertise_rating": assignment.expertise_rating,
                "p_has_conflict": assignment.has_conflict,
                "p_conflict_details": assignment.conflict_details,
            },
        ).execute()
        data = getattr(resp, "data", None)
        if isinstance(data, list):
            data = data[0] if data else None
        if not data or not data.get("invitation"):
            return None
        return (
            ReviewerInvitation.model_validate(data["invitation"]),
            ReviewAssignment.model_validate(data["assignment"]),
        )

    def list_assignments(self, *, manuscript_id: str, reviewer_id: Optional[str] = None) -> List[ReviewAssignment]:
        query = self._db.table("review_assignments").select(
            "id, manuscript_id, reviewer_id, invitation_id, status, due_date, expertise_rating, "
            "has_conflict, conflict_details, created_at"
        ).eq("manuscript_id", manuscript_id)
        if reviewer_id:
            query = query.eq("reviewer_id", reviewer_id)
        return [ReviewAssignment.model_validate(r) for r in _rows(query.execute())]

    def save_suggested_reviewer(self, invitation: ReviewerInvitation, suggestion: Dict[str, Any]) -> None:
        self._db.table("suggested_reviewers").insert(
            {
                "invitation_id": invitation.id,
                "manuscript_id": invitation.manuscript_id,
                "suggested_by": invitation.reviewer_id,
                "name": suggestion.get("name"),
                "email": suggestion.get("email"),
                "affiliation": suggestion.get("affiliation"),
                "expertise": suggestion.get("expertise"),
                "reason": suggestion.get("reason"),
            }
        ).execute()

    def advance_manuscript_status(self, manuscript_id: str, to_status: str, from_statuses: Iterable[str]) -> bool:
        resp = (
            self._db.table("manuscripts")
            .update({"status": to_status})
            .eq("id", manuscript_id)
            .in_("status", list(from_statuses))
            .execute()
        )
        return bool(_rows(resp))

    def record_declared_conflict(self, conflict: DeclaredConflict) -> DeclaredConflict:
        payload = conflict.model_dump(mode="json")
        resp = self._db.table("reviewer_conflicts").insert(payload).execute()
        rows = _rows(resp)
        return DeclaredConflict.model_validate(rows[0]) if rows else conflict

    def mark_notified(self, invitation_id: str, notified_at: datetime) -> None:
        self._db.table("reviewer_invitations").update({"notified_at": _iso(notified_at)}).eq(
            "id", invitation_id
        ).execute()

    def list_due_notifications(self, now: datetime) -> List[ReviewerInvitation]:
        resp = (
            self._db.table("reviewer_invitations")
            .select("*")
            .eq("status", InvitationStatus.PENDING.value)
            .is_("notified_at", "null")
            .lte("send_at", _iso(now))
            .order("send_at")
            .execute()
        )
        return [ReviewerInvitation.model_validate(r) for r in _rows(resp)]

    def list_overdue_pending(self, now: datetime) -> List[ReviewerInvitation]:
        resp = (
            self._db.table("reviewer_invitations")
            .select("*")
            .eq("status", InvitationStatus.PENDING.value)
            .lt("response_deadline", _iso(now))
            .execute()
        )
        return [ReviewerInvitation.model_validate(r) for r in _rows(resp)]
