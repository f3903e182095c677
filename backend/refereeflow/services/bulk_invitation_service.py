from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.errors import DuplicateInvitationError, NotFoundError, ReviewerAssignmentError
from refereeflow.models.conflict import ConflictType
from refereeflow.models.invitation import (
    BulkInviteOutcome,
    BulkInviteSummary,
    InvitationResult,
    Override,
    ReviewerInvitation,
)
from refereeflow.models.reviewer import ManuscriptContext
from refereeflow.services.conflict_service import ConflictDetector
from refereeflow.services.invitation_service import InvitationService
from refereeflow.services.invitation_store import InvitationStore
from refereeflow.services.stores import get_candidate_store, get_invitation_store

logger = logging.getLogger("refereeflow.bulk_invite")

UNDER_REVIEW = "under_review"
ADVANCE_FROM_STATUSES = ("submitted", "with_editor")


class BulkInviteOptions(BaseModel):
    staggered: bool = False
    stagger_hours: Optional[int] = Field(default=None, ge=0)
    overrides: Dict[str, Override] = Field(default_factory=dict)
    custom_message: Optional[str] = None
    response_deadline: Optional[datetime] = None


def _failed(reviewer_id: str, reason: str, message: str) -> InvitationResult:
    return InvitationResult(reviewer_id=reviewer_id, status="failed", reason=reason, message=message)


class BulkInvitationService:
    """
    批量邀请编排

    中文注释:
    1) 按输入顺序逐个处理，每个 reviewer_id 恰好对应一条结果（success / blocked / failed）。
    2) 单个审稿人的任何失败都只记录到自己的结果上，不中断同批其他审稿人。
    3) COI 不通过且没有显式 override 时记为 blocked；合著冲突永远不能被 override。
    4) 错峰只影响通知投递时间（send_at），邀请立即落库，回复截止时间照常计算。
    5) 至少一条成功时，稿件状态条件更新为 under_review（已是 under_review 则不重复迁移）。
    """

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        invitation_service: Optional[InvitationService] = None,
        conflict_detector: Optional[ConflictDetector] = None,
        invitation_store: Optional[InvitationStore] = None,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._store = invitation_store or get_invitation_store()
        self._invitations = invitation_service or InvitationService(self.config, invitation_store=self._store)
        self._conflicts = conflict_detector or ConflictDetector(
            self.config, candidate_store=get_candidate_store(), invitation_store=self._store
        )

    async def bulk_invite(
        self,
        *,
        manuscript_id: str,
        reviewer_ids: List[str],
        review_deadline: datetime,
        invited_by: Optional[str],
        options: Optional[BulkInviteOptions] = None,
    ) -> BulkInviteOutcome:
        options = options or BulkInviteOptions()
        manuscript = await self._invitations.load_invitable_manuscript(manuscript_id)
        now = self._invitations.now()
        self._invitations.resolve_deadlines(review_deadline, options.response_deadline, now)

        existing = await self._invitations._call(
            self._store.list_invitations, manuscript_id=manuscript.id, label="list_invitations"
        )
        assignments = await self._invitations._call(
            self._store.list_assignments, manuscript_id=manuscript.id, label="list_assignments"
        )
        taken: Dict[str, str] = {}
        for inv in existing:
            taken.setdefault(inv.reviewer_id, inv.status.value)
        for a in assignments:
            taken.setdefault(a.reviewer_id, a.status)

        stagger = options.stagger_hours if options.stagger_hours is not None else self.config.stagger_hours
        seen: Set[str] = set()
        results: List[InvitationResult] = []
        for index, reviewer_id in enumerate(reviewer_ids):
            send_at = now + timedelta(hours=index * stagger) if options.staggered else now
            try:
                result = await self._invite_one(
                    reviewer_id,
                    manuscript=manuscript,
                    review_deadline=review_deadline,
                    invited_by=invited_by,
                    options=options,
                    send_at=send_at,
                    now=now,
                    seen=seen,
                    taken=taken,
                )
            except ReviewerAssignmentError as e:
                logger.warning("Bulk invite item failed reviewer=%s: %s", reviewer_id, e.message)
                result = _failed(reviewer_id, "internal_processing_error", e.message)
            except Exception as e:
                logger.error("Bulk invite item crashed reviewer=%s: %s", reviewer_id, e, exc_info=True)
                result = _failed(reviewer_id, "internal_processing_error", "Internal processing error")
            results.append(result)

        summary = BulkInviteSummary(
            total=len(results),
            successful=sum(1 for r in results if r.status == "success"),
            blocked=sum(1 for r in results if r.status == "blocked"),
            failed=sum(1 for r in results if r.status == "failed"),
            blocked_by_coi=sum(1 for r in results if r.status == "blocked" and r.reason == "coi"),
        )
        if summary.successful:
            summary.manuscript_status_advanced = await self._advance_manuscript(manuscript.id)

        logger.info(
            "Bulk invite manuscript=%s total=%d success=%d blocked=%d failed=%d advanced=%s",
            manuscript.id,
            summary.total,
            summary.successful,
            summary.blocked,
            summary.failed,
            summary.manuscript_status_advanced,
        )
        return BulkInviteOutcome(manuscript_id=manuscript.id, results=results, summary=summary)

    async def _invite_one(
        self,
        reviewer_id: str,
        *,
        manuscript: ManuscriptContext,
        review_deadline: datetime,
        invited_by: Optional[str],
        options: BulkInviteOptions,
        send_at: datetime,
        now: datetime,
        seen: Set[str],
        taken: Dict[str, str],
    ) -> InvitationResult:
        if reviewer_id in seen:
            return _failed(reviewer_id, "duplicate_in_request", "Reviewer listed more than once in this request")
        seen.add(reviewer_id)

        try:
            reviewer = await self._invitations.load_reviewer(reviewer_id)
        except NotFoundError as e:
            return _failed(reviewer_id, "not_found", e.message)

        if reviewer_id in taken:
            return _failed(reviewer_id, "already_assigned", f"Already assigned (status: {taken[reviewer_id]})")

        if reviewer.current_load >= self.config.max_active_load:
            return InvitationResult(
                reviewer_id=reviewer_id,
                status="blocked",
                reason="workload_cap",
                message=f"Reviewer has {reviewer.current_load} active reviews (cap {self.config.max_active_load})",
            )

        coi = await self._conflicts.check_candidate(reviewer_id, manuscript, reviewer=reviewer)
        if coi.error:
            return _failed(reviewer_id, "internal_processing_error", f"Conflict check failed: {coi.error}")

        override = options.overrides.get(reviewer_id)
        applied: Optional[Override] = None
        if not coi.is_eligible:
            if ConflictType.CO_AUTHORSHIP in coi.conflict_types():
                return InvitationResult(
                    reviewer_id=reviewer_id,
                    status="blocked",
                    reason="coi",
                    message="Reviewer is an author of this manuscript; this conflict cannot be overridden",
                    conflicts=coi.conflicts,
                )
            if override is None:
                return InvitationResult(
                    reviewer_id=reviewer_id,
                    status="blocked",
                    reason="coi",
                    message="Blocked by conflict of interest",
                    conflicts=coi.conflicts,
                )
            applied = override
            logger.info(
                "COI override applied reviewer=%s manuscript=%s granted_by=%s",
                reviewer_id,
                manuscript.id,
                override.granted_by,
            )
        # 冗余 override（审稿人本来就没有冲突）按 no-op 处理，不记录也不报错

        try:
            invitation = await self._invitations.create_invitation(
                manuscript_id=manuscript.id,
                reviewer_id=reviewer_id,
                invited_by=invited_by,
                review_deadline=review_deadline,
                response_deadline=options.response_deadline,
                custom_message=options.custom_message,
                send_at=send_at,
                override=applied,
                manuscript=manuscript,
                reviewer=reviewer,
            )
        except DuplicateInvitationError:
            return _failed(reviewer_id, "already_assigned", "An active invitation already exists for this reviewer")
        taken[reviewer_id] = invitation.status.value

        notification_error: Optional[str] = None
        message = "Invitation sent"
        if send_at <= now:
            try:
                notification_error = await self._invitations.send_invitation_notification(
                    invitation, reviewer=reviewer, manuscript=manuscript
                )
            except Exception as e:
                logger.warning("Invitation %s notification crashed: %s", invitation.id, e)
                notification_error = str(e) or "Notification dispatch failed"
        else:
            message = "Invitation created; notification scheduled"

        return InvitationResult(
            reviewer_id=reviewer_id,
            status="success",
            message=message,
            invitation_id=invitation.id,
            send_at=invitation.send_at,
            conflicts=coi.conflicts,
            override_applied=applied is not None,
            notification_error=notification_error,
        )

    async def _advance_manuscript(self, manuscript_id: str) -> bool:
        try:
            advanced = await self._invitations._call(
                self._store.advance_manuscript_status,
                manuscript_id,
                UNDER_REVIEW,
                ADVANCE_FROM_STATUSES,
                label="advance_manuscript_status",
            )
        except Exception as e:
            # 邀请已经落库；状态推进失败只记日志，下一次成功批次会再次尝试
            logger.error("Failed to advance manuscript %s to %s: %s", manuscript_id, UNDER_REVIEW, e)
            return False
        if advanced:
            logger.info("Manuscript %s advanced to %s", manuscript_id, UNDER_REVIEW)
        return bool(advanced)

    async def dispatch_due_notifications(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """投递错峰邀请中 send_at 已到期的通知（内部 cron 触发）。"""
        now = now or self._invitations.now()
        due: List[ReviewerInvitation] = await self._invitations._call(
            self._store.list_due_notifications, now, label="list_due_notifications"
        )
        sent = 0
        failed = 0
        for invitation in due:
            try:
                error = await self._invitations.send_invitation_notification(invitation)
            except Exception as e:
                logger.warning("Scheduled notification failed invitation=%s: %s", invitation.id, e)
                error = str(e) or "Notification dispatch failed"
            if error:
                failed += 1
            else:
                sent += 1
        return {"processed_count": len(due), "notifications_sent": sent, "notifications_failed": failed}


_bulk_invitation_service: Optional[BulkInvitationService] = None


def get_bulk_invitation_service() -> BulkInvitationService:
    global _bulk_invitation_service
    if _bulk_invitation_service is None:
        _bulk_invitation_service = BulkInvitationService()
    return _bulk_invitation_service
