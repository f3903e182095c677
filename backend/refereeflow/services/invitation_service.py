from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.errors import (
    InternalProcessingError,
    InvitationExpiredError,
    ManuscriptNotInvitableError,
    NotFoundError,
    ValidationError,
    terminal_status_error,
)
from refereeflow.lib.blocking import run_blocking
from refereeflow.models.conflict import ConflictSeverity, DeclaredConflict
from refereeflow.models.invitation import (
    INVITABLE_MANUSCRIPT_STATUSES,
    InvitationStats,
    InvitationStatus,
    InvitationView,
    Override,
    RespondOutcome,
    ReviewAssignment,
    ReviewerInvitation,
)
from refereeflow.models.reviewer import ManuscriptContext, ReviewerCandidate, as_utc
from refereeflow.schemas.invitation import InvitationResponse
from refereeflow.services.candidate_store import CandidateStore
from refereeflow.services.invitation_store import InvitationStore
from refereeflow.services.notification_service import InvitationNotifier, get_invitation_notifier
from refereeflow.services.stores import get_candidate_store, get_invitation_store

logger = logging.getLogger("refereeflow.invitations")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_invitation_token() -> str:
    # 与邀请 id / 稿件 id / 审稿人 id 无任何推导关系
    return secrets.token_urlsafe(32)


class InvitationService:
    """
    审稿邀请生命周期（状态机）

    状态: pending -> {accepted, declined, expired, cancelled}，终态不可再迁移。

    中文注释:
    1) 过期是惰性的：查看/回复/列表时发现超过 response_deadline 才做 pending -> expired 的 CAS。
       background 模式下 InvitationExpiryScheduler 会额外周期性调用 expire_overdue 对账。
    2) 接受邀请 = CAS(pending -> accepted) + 创建唯一 assignment，由存储层在一个原子单元内完成。
    3) 单个邀请的操作失败即抛错（fail fast），不做部分写入。
    """

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        candidate_store: Optional[CandidateStore] = None,
        invitation_store: Optional[InvitationStore] = None,
        notifier: Optional[InvitationNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._candidates = candidate_store or get_candidate_store()
        self._store = invitation_store or get_invitation_store()
        self._notifier = notifier
        self._now = clock or _utc_now

    @property
    def notifier(self) -> InvitationNotifier:
        if self._notifier is None:
            self._notifier = get_invitation_notifier()
        return self._notifier

    def now(self) -> datetime:
        return self._now()

    async def _call(self, fn: Callable[..., Any], *args: Any, label: str, **kwargs: Any) -> Any:
        return await run_blocking(fn, *args, timeout=self.config.external_timeout_seconds, label=label, **kwargs)

    # === lookups ===
    async def load_manuscript(self, manuscript_id: str) -> ManuscriptContext:
        manuscript = await self._call(self._candidates.get_manuscript_context, manuscript_id, label="get_manuscript_context")
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found")
        return manuscript

    async def load_invitable_manuscript(self, manuscript_id: str) -> ManuscriptContext:
        manuscript = await self.load_manuscript(manuscript_id)
        if manuscript.status not in INVITABLE_MANUSCRIPT_STATUSES:
            raise ManuscriptNotInvitableError(
                f"Manuscript status '{manuscript.status}' does not allow reviewer invitations",
                details={"status": manuscript.status, "allowed": sorted(INVITABLE_MANUSCRIPT_STATUSES)},
            )
        return manuscript

    async def load_reviewer(self, reviewer_id: str) -> ReviewerCandidate:
        reviewer = await self._call(self._candidates.get_reviewer, reviewer_id, label="get_reviewer")
        if reviewer is None:
            raise NotFoundError(f"Reviewer {reviewer_id} not found")
        return reviewer

    async def get_invitation(self, invitation_id: str) -> ReviewerInvitation:
        invitation = await self._call(self._store.get_invitation, invitation_id, label="get_invitation")
        if invitation is None:
            raise NotFoundError("Invitation not found")
        return await self._expire_if_overdue(invitation)

    async def _by_token(self, token: str) -> ReviewerInvitation:
        invitation = await self._call(self._store.get_invitation_by_token, token, label="get_invitation_by_token")
        if invitation is None:
            raise NotFoundError("Invitation not found")
        return invitation

    async def _reread(self, invitation_id: str) -> ReviewerInvitation:
        current = await self._call(self._store.get_invitation, invitation_id, label="get_invitation")
        if current is None:
            raise NotFoundError("Invitation not found")
        return current

    async def _expire_if_overdue(self, invitation: ReviewerInvitation, now: Optional[datetime] = None) -> ReviewerInvitation:
        now = now or self.now()
        if not invitation.is_overdue(now):
            return invitation
        updated = await self._call(
            self._store.transition_invitation, invitation.id, InvitationStatus.EXPIRED, {}, label="expire_invitation"
        )
        if updated is not None:
            logger.info("Invitation %s expired lazily (deadline %s)", invitation.id, invitation.response_deadline.isoformat())
            return updated
        # 并发读：另一个请求已经完成迁移，读回当前状态即可
        return await self._reread(invitation.id)

    # === create ===
    def resolve_deadlines(
        self,
        review_deadline: datetime,
        response_deadline: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> tuple[datetime, datetime]:
        """回复截止默认 now + response_days；两个截止时间都必须在未来，且回复截止早于审稿截止。"""
        now = now or self.now()
        review_deadline = as_utc(review_deadline)
        response_deadline = as_utc(response_deadline) or (now + timedelta(days=self.config.response_days))
        if review_deadline <= now:
            raise ValidationError("Review deadline must be in the future")
        if response_deadline <= now:
            raise ValidationError("Response deadline must be in the future")
        if response_deadline >= review_deadline:
            raise ValidationError("Response deadline must be before the review deadline")
        return review_deadline, response_deadline

    async def create_invitation(
        self,
        *,
        manuscript_id: str,
        reviewer_id: str,
        invited_by: Optional[str],
        review_deadline: datetime,
        response_deadline: Optional[datetime] = None,
        custom_message: Optional[str] = None,
        send_at: Optional[datetime] = None,
        override: Optional[Override] = None,
        manuscript: Optional[ManuscriptContext] = None,
        reviewer: Optional[ReviewerCandidate] = None,
    ) -> ReviewerInvitation:
        now = self.now()
        review_deadline, response_deadline = self.resolve_deadlines(review_deadline, response_deadline, now)

        if manuscript is None:
            manuscript = await self.load_invitable_manuscript(manuscript_id)
        if reviewer is None:
            reviewer = await self.load_reviewer(reviewer_id)

        invitation = ReviewerInvitation(
            id=str(uuid4()),
            manuscript_id=manuscript.id,
            reviewer_id=reviewer.id,
            invited_by=invited_by,
            status=InvitationStatus.PENDING,
            custom_message=(custom_message or "").strip() or None,
            review_deadline=review_deadline,
            response_deadline=response_deadline,
            token=generate_invitation_token(),
            invited_at=now,
            send_at=as_utc(send_at) or now,
            coi_override_reason=override.reason if override else None,
            coi_approved_by=override.granted_by if override else None,
            coi_override_at=override.timestamp if override else None,
        )
        saved = await self._call(self._store.insert_invitation, invitation, label="insert_invitation")
        logger.info(
            "Invitation created id=%s manuscript=%s reviewer=%s override=%s",
            saved.id,
            saved.manuscript_id,
            saved.reviewer_id,
            bool(override),
        )
        return saved

    async def send_invitation_notification(
        self,
        invitation: ReviewerInvitation,
        *,
        reviewer: Optional[ReviewerCandidate] = None,
        manuscript: Optional[ManuscriptContext] = None,
    ) -> Optional[str]:
        """发送邀请通知；返回错误描述（None 表示成功）。无论成败都记录 notified_at，避免重复投递。"""
        reviewer = reviewer or await self.load_reviewer(invitation.reviewer_id)
        manuscript = manuscript or await self.load_manuscript(invitation.manuscript_id)
        error = await self.notifier.notify_invitation(invitation, reviewer, manuscript)
        await self._call(self._store.mark_notified, invitation.id, self.now(), label="mark_notified")
        if error:
            logger.warning("Invitation %s notification failed: %s", invitation.id, error)
        return error

    # === public token view ===
    async def get_invitation_by_token(self, token: str) -> InvitationView:
        invitation = await self._expire_if_overdue(await self._by_token(token))
        manuscript = await self._call(
            self._candidates.get_manuscript_context, invitation.manuscript_id, label="get_manuscript_context"
        )
        reviewer = await self._call(self._candidates.get_reviewer, invitation.reviewer_id, label="get_reviewer")
        siblings = await self._call(
            self._store.list_invitations, manuscript_id=invitation.manuscript_id, label="list_invitations"
        )
        counts: Dict[str, int] = {}
        for other in siblings:
            if other.id == invitation.id:
                continue
            counts[other.status.value] = counts.get(other.status.value, 0) + 1

        now = self.now()
        return InvitationView(
            invitation_id=invitation.id,
            status=invitation.status,
            can_respond=invitation.status == InvitationStatus.PENDING and now <= invitation.response_deadline,
            manuscript_title=manuscript.title if manuscript else None,
            manuscript_abstract=manuscript.abstract if manuscript else None,
            manuscript_field=manuscript.field if manuscript else None,
            manuscript_keywords=list(manuscript.keywords) if manuscript else [],
            editor_name=manuscript.editor_name if manuscript else None,
            reviewer_name=reviewer.name if reviewer else None,
            reviewer_email=reviewer.email if reviewer else None,
            custom_message=invitation.custom_message,
            review_deadline=invitation.review_deadline,
            response_deadline=invitation.response_deadline,
            invited_at=invitation.invited_at,
            responded_at=invitation.responded_at,
            other_invitation_counts=counts,
        )

    # === respond ===
    @staticmethod
    def _validate_response(response: InvitationResponse) -> None:
        if response.decision == "accept":
            if not response.availability_confirmed:
                raise ValidationError("Availability must be confirmed to accept the invitation")
            declaration = response.conflict_declaration
            if declaration and declaration.has_conflict and not (declaration.conflict_description or "").strip():
                raise ValidationError("Conflict description is required when declaring a conflict of interest")
        else:
            if not (response.decline_reason or "").strip():
                raise ValidationError("Decline reason is required")

    async def respond(
        self,
        token: str,
        response: InvitationResponse,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RespondOutcome:
        invitation = await self._by_token(token)
        if invitation.status.is_terminal:
            raise terminal_status_error(invitation.status.value)

        now = self.now()
        if now > invitation.response_deadline:
            expired = await self._expire_if_overdue(invitation, now)
            raise terminal_status_error(expired.status.value)

        self._validate_response(response)

        metadata: Dict[str, Any] = {
            "expertise_rating": response.expertise_rating,
            "conflict_declaration": response.conflict_declaration.model_dump() if response.conflict_declaration else None,
            "alternative_reviewer": response.alternative_reviewer.model_dump() if response.alternative_reviewer else None,
            "additional_comments": response.additional_comments,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "timestamp": now.isoformat(),
        }

        if response.decision == "accept":
            outcome = await self._accept(invitation, response, metadata, now)
        else:
            outcome = await self._decline(invitation, response, metadata, now)

        try:
            manuscript = await self._call(
                self._candidates.get_manuscript_context, invitation.manuscript_id, label="get_manuscript_context"
            )
            await self.notifier.notify_response(outcome.invitation, manuscript)
        except Exception as e:
            # 状态已提交，编辑通知失败只记日志
            logger.warning("Response notification failed invitation=%s: %s", invitation.id, e)
        return outcome

    async def _accept(
        self,
        invitation: ReviewerInvitation,
        response: InvitationResponse,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> RespondOutcome:
        declaration = response.conflict_declaration
        has_conflict = bool(declaration and declaration.has_conflict)
        assignment = ReviewAssignment(
            id=str(uuid4()),
            manuscript_id=invitation.manuscript_id,
            reviewer_id=invitation.reviewer_id,
            invitation_id=invitation.id,
            status="accepted",
            due_date=invitation.review_deadline,
            expertise_rating=response.expertise_rating,
            has_conflict=has_conflict,
            conflict_details=declaration.conflict_description.strip() if has_conflict else None,
            created_at=now,
        )
        result = await self._call(
            self._store.accept_invitation,
            invitation.id,
            responded_at=now,
            response_metadata=metadata,
            assignment=assignment,
            label="accept_invitation",
        )
        if result is None:
            current = await self._reread(invitation.id)
            if current.status.is_terminal:
                raise terminal_status_error(current.status.value)
            if current.is_overdue(now):
                await self._expire_if_overdue(current, now)
                raise InvitationExpiredError()
            raise InternalProcessingError("Invitation could not be accepted")

        accepted, created = result
        logger.info("Invitation %s accepted; assignment %s created", accepted.id, created.id)

        if has_conflict:
            try:
                await self._call(
                    self._store.record_declared_conflict,
                    DeclaredConflict(
                        reviewer_id=invitation.reviewer_id,
                        manuscript_id=invitation.manuscript_id,
                        conflict_type=(declaration.conflict_type or "self_declared").strip() or "self_declared",
                        description=declaration.conflict_description.strip(),
                        severity=ConflictSeverity.MEDIUM,
                        is_blocking=False,
                        declared_by=invitation.reviewer_id,
                    ),
                    label="record_declared_conflict",
                )
            except Exception as e:
                # assignment 上已保存 has_conflict/conflict_details，冲突表只是编辑侧的汇总
                logger.warning("Failed to record self-declared conflict invitation=%s: %s", invitation.id, e)
        return RespondOutcome(invitation=accepted, assignment=created)

    async def _decline(
        self,
        invitation: ReviewerInvitation,
        response: InvitationResponse,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> RespondOutcome:
        alternative = response.alternative_reviewer.model_dump() if response.alternative_reviewer else None
        updated = await self._call(
            self._store.transition_invitation,
            invitation.id,
            InvitationStatus.DECLINED,
            {
                "responded_at": now,
                "decline_reason": response.decline_reason,
                "alternative_reviewer": alternative,
                "response_metadata": metadata,
            },
            label="decline_invitation",
        )
        if updated is None:
            current = await self._reread(invitation.id)
            if current.status.is_terminal:
                raise terminal_status_error(current.status.value)
            raise InternalProcessingError("Invitation could not be declined")

        logger.info("Invitation %s declined", updated.id)
        if alternative:
            # 推荐人单独存表，只供编辑参考，永不自动邀请
            try:
                await self._call(self._store.save_suggested_reviewer, updated, alternative, label="save_suggested_reviewer")
            except Exception as e:
                logger.warning("Failed to store suggested reviewer invitation=%s: %s", updated.id, e)
        return RespondOutcome(invitation=updated)

    # === cancel ===
    async def cancel_invitation(
        self,
        invitation_id: str,
        *,
        cancelled_by: Optional[str],
        reason: Optional[str] = None,
    ) -> ReviewerInvitation:
        invitation = await self._call(self._store.get_invitation, invitation_id, label="get_invitation")
        if invitation is None:
            raise NotFoundError("Invitation not found")
        invitation = await self._expire_if_overdue(invitation)
        if invitation.status.is_terminal:
            raise terminal_status_error(invitation.status.value)

        now = self.now()
        metadata = {
            **(invitation.response_metadata or {}),
            "cancelled_by": cancelled_by,
            "cancel_reason": (reason or "").strip() or None,
            "cancelled_at": now.isoformat(),
        }
        updated = await self._call(
            self._store.transition_invitation,
            invitation.id,
            InvitationStatus.CANCELLED,
            {"response_metadata": metadata},
            label="cancel_invitation",
        )
        if updated is None:
            current = await self._reread(invitation.id)
            if current.status.is_terminal:
                raise terminal_status_error(current.status.value)
            raise InternalProcessingError("Invitation could not be cancelled")
        logger.info("Invitation %s cancelled by %s", updated.id, cancelled_by)
        return updated

    # === listing / stats / reconciliation ===
    async def list_invitations(
        self,
        *,
        manuscript_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
    ) -> List[ReviewerInvitation]:
        """列表前先做一次惰性过期，否则“超过截止时间仍 pending”的邀请会被少算为过期。"""
        rows = await self._call(
            self._store.list_invitations, manuscript_id=manuscript_id, reviewer_id=reviewer_id, label="list_invitations"
        )
        now = self.now()
        return [await self._expire_if_overdue(inv, now) for inv in rows]

    async def get_invitation_stats(
        self,
        *,
        manuscript_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
    ) -> InvitationStats:
        rows = await self.list_invitations(manuscript_id=manuscript_id, reviewer_id=reviewer_id)
        stats = InvitationStats(total=len(rows))
        response_hours: List[float] = []
        for inv in rows:
            setattr(stats, inv.status.value, getattr(stats, inv.status.value) + 1)
            if inv.status in (InvitationStatus.ACCEPTED, InvitationStatus.DECLINED) and inv.responded_at:
                response_hours.append((inv.responded_at - inv.invited_at).total_seconds() / 3600)
        if stats.total:
            stats.response_rate = round((stats.accepted + stats.declined) / stats.total * 100, 2)
        if response_hours:
            stats.avg_response_hours = round(sum(response_hours) / len(response_hours), 2)
        return stats

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        overdue = await self._call(self._store.list_overdue_pending, now, label="list_overdue_pending")
        expired = 0
        for inv in overdue:
            updated = await self._call(
                self._store.transition_invitation, inv.id, InvitationStatus.EXPIRED, {}, label="expire_invitation"
            )
            if updated is not None:
                expired += 1
        if expired:
            logger.info("Expired %d overdue invitation(s)", expired)
        return expired


_invitation_service: Optional[InvitationService] = None


def get_invitation_service() -> InvitationService:
    global _invitation_service
    if _invitation_service is None:
        _invitation_service = InvitationService()
    return _invitation_service
