from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError
from supabase import Client

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.errors import ReviewerAssignmentError
from refereeflow.core.mail import EmailService
from refereeflow.lib.api_client import supabase_admin
from refereeflow.lib.blocking import run_blocking
from refereeflow.models.invitation import ReviewerInvitation
from refereeflow.models.reviewer import ManuscriptContext, ReviewerCandidate

logger = logging.getLogger("refereeflow.notifications")

INVITATION_TEMPLATE = "reviewer_invitation.html"


class InvitationNotifier:
    """
    邀请通知：邮件 + 站内通知

    中文注释:
    1) 通知失败绝不回滚邀请本身；notify_invitation 返回错误描述，由调用方记录到单条结果。
    2) 每次外部调用都带超时（SMTP/Resend/PostgREST）。
    3) 站内通知是尽力而为：写入失败只记日志，不算通知失败。
    """

    _SENTINEL = object()

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        email_service: Optional[EmailService] = None,
        db_client: Client | None | object = _SENTINEL,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._email = email_service or EmailService()
        if db_client is self._SENTINEL:
            db_client = None if self.config.store_backend == "memory" else supabase_admin
        self._db: Client | None = db_client  # type: ignore[assignment]

    def invitation_url(self, invitation: ReviewerInvitation) -> str:
        return f"{self.config.public_app_url}/review/invitation/{invitation.token}"

    async def notify_invitation(
        self,
        invitation: ReviewerInvitation,
        reviewer: ReviewerCandidate,
        manuscript: ManuscriptContext,
    ) -> Optional[str]:
        if not (reviewer.email or "").strip():
            return "Reviewer has no email address"

        context = {
            "reviewer_name": reviewer.name,
            "manuscript_title": manuscript.title,
            "custom_message": invitation.custom_message,
            "response_deadline": invitation.response_deadline.strftime("%Y-%m-%d %H:%M UTC"),
            "review_deadline": invitation.review_deadline.strftime("%Y-%m-%d"),
            "invitation_url": self.invitation_url(invitation),
            "editor_name": manuscript.editor_name,
        }
        subject = f"Invitation to review: {manuscript.title or 'manuscript'}"
        try:
            sent = await run_blocking(
                self._email.send_template_email,
                to_email=reviewer.email,
                subject=subject,
                template_name=INVITATION_TEMPLATE,
                context=context,
                timeout=self.config.external_timeout_seconds,
                label="send_invitation_email",
            )
        except ReviewerAssignmentError as e:
            logger.warning("Invitation email timed out invitation=%s: %s", invitation.id, e.message)
            return e.message

        await self._create_in_app(
            user_id=invitation.reviewer_id,
            manuscript_id=invitation.manuscript_id,
            title="Review Invitation",
            content=f"You have been invited to review \"{manuscript.title or 'a manuscript'}\".",
            action_url=f"/review/invitation/{invitation.token}",
            type="review_invite",
        )
        if not sent:
            return "Email delivery failed"
        return None

    async def notify_response(self, invitation: ReviewerInvitation, manuscript: Optional[ManuscriptContext]) -> None:
        """审稿人回复后通知责任编辑（尽力而为）。"""
        editor_id = manuscript.editor_id if manuscript else None
        target = editor_id or invitation.invited_by
        if not target:
            return
        await self._create_in_app(
            user_id=target,
            manuscript_id=invitation.manuscript_id,
            title=f"Reviewer invitation {invitation.status.value}",
            content=f"A reviewer has {invitation.status.value} the invitation for \"{(manuscript.title if manuscript else None) or 'a manuscript'}\".",
            action_url=f"/editor/manuscript/{invitation.manuscript_id}",
            type="review_response",
        )

    async def _create_in_app(self, **payload: Any) -> Optional[Dict[str, Any]]:
        if self._db is None:
            return None
        try:
            return await run_blocking(
                self._insert_notification,
                payload,
                timeout=self.config.external_timeout_seconds,
                label="create_notification",
            )
        except ReviewerAssignmentError as e:
            logger.warning("[Notifications] 创建超时: %s", e.message)
            return None

    def _insert_notification(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            res = self._db.table("notifications").insert({**payload, "is_read": False}).execute()
            rows = getattr(res, "data", None) or []
            return rows[0] if rows else None
        except APIError as e:
            # notifications.user_id 外键指向 auth.users；对演示用 profile 写通知会触发 23503，忽略即可
            text = str(e).lower()
            if "23503" not in text and "foreign key" not in text:
                logger.warning("[Notifications] 创建失败: %s", e)
            return None


_invitation_notifier: Optional[InvitationNotifier] = None


def get_invitation_notifier() -> InvitationNotifier:
    global _invitation_notifier
    if _invitation_notifier is None:
        _invitation_notifier = InvitationNotifier()
    return _invitation_notifier
