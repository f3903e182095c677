from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from refereeflow.core.auth_utils import client_ip
from refereeflow.core.errors import ReviewerAssignmentError, ValidationError, to_http_exception
from refereeflow.core.roles import EDITOR_ROLES, require_any_role
from refereeflow.models.invitation import Override, ReviewerInvitation
from refereeflow.schemas.invitation import (
    BulkInviteRequest,
    CancelInvitationRequest,
    CreateInvitationRequest,
    InvitationResponse,
    OverrideRequest,
)
from refereeflow.services.bulk_invitation_service import (
    BulkInvitationService,
    BulkInviteOptions,
    get_bulk_invitation_service,
)
from refereeflow.services.invitation_service import InvitationService, get_invitation_service

router = APIRouter(tags=["Invitations"])

# token 本身是审稿人的访问凭据，编辑侧接口一律不回传
_EDITOR_EXCLUDE = {"token"}


def _editor_view(invitation: ReviewerInvitation) -> Dict[str, Any]:
    return invitation.model_dump(mode="json", exclude=_EDITOR_EXCLUDE)


def _build_overrides(raw: Dict[str, Any], granted_by: Optional[str]) -> Dict[str, Override]:
    """
    把请求里的 override 规范化为领域对象。

    中文注释:
    - 放行人优先取当前登录编辑；请求体中的 granted_by 只在拿不到登录身份时使用。
    - 两者都没有时拒绝整个请求，不能替编辑编造放行人。
    - 时间戳缺省为服务器当前时间。
    """
    now = datetime.now(timezone.utc)
    out: Dict[str, Override] = {}
    for reviewer_id, value in raw.items():
        if isinstance(value, OverrideRequest):
            reason, timestamp = value.reason, value.timestamp or now
            grantor = granted_by or value.granted_by
        else:
            reason, timestamp, grantor = str(value), now, granted_by
        if not (grantor or "").strip():
            raise ValidationError("COI override requires an approving editor", details={"reviewer_id": reviewer_id})
        out[reviewer_id] = Override(granted_by=grantor.strip(), reason=reason, timestamp=timestamp)
    return out


# === Editor ===
@router.post("/invitations")
async def create_invitation(
    req: CreateInvitationRequest,
    profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    service: InvitationService = Depends(get_invitation_service),
):
    """
    单个邀请

    中文注释:
    - 同一审稿人对同一稿件存在 pending/accepted 邀请时返回 409。
    - 通知失败不回滚邀请，错误写在 notification_error 中。
    """
    try:
        invitation = await service.create_invitation(
            manuscript_id=req.manuscript_id,
            reviewer_id=req.reviewer_id,
            invited_by=profile.get("id"),
            review_deadline=req.review_deadline,
            response_deadline=req.response_deadline,
            custom_message=req.custom_message,
        )
        notification_error = await service.send_invitation_notification(invitation)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {
        "success": True,
        "data": {"invitation": _editor_view(invitation), "notification_error": notification_error},
    }


@router.post("/invitations/bulk")
async def bulk_invite(
    req: BulkInviteRequest,
    profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    service: BulkInvitationService = Depends(get_bulk_invitation_service),
):
    try:
        options = BulkInviteOptions(
            staggered=req.staggered,
            stagger_hours=req.stagger_hours,
            overrides=_build_overrides(req.overrides, profile.get("id")),
            custom_message=req.custom_message,
            response_deadline=req.response_deadline,
        )
        outcome = await service.bulk_invite(
            manuscript_id=req.manuscript_id,
            reviewer_ids=req.reviewer_ids,
            review_deadline=req.review_deadline,
            invited_by=profile.get("id"),
            options=options,
        )
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": outcome.model_dump(mode="json")}


@router.get("/manuscripts/{manuscript_id}/invitations")
async def list_manuscript_invitations(
    manuscript_id: str,
    _profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    service: InvitationService = Depends(get_invitation_service),
):
    try:
        await service.load_manuscript(manuscript_id)
        invitations = await service.list_invitations(manuscript_id=manuscript_id)
        stats = await service.get_invitation_stats(manuscript_id=manuscript_id)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {
        "success": True,
        "data": {
            "invitations": [_editor_view(inv) for inv in invitations],
            "stats": stats.model_dump(mode="json"),
        },
    }


@router.get("/invitations/stats")
async def invitation_stats(
    manuscript_id: Optional[str] = Query(default=None),
    reviewer_id: Optional[str] = Query(default=None),
    _profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    service: InvitationService = Depends(get_invitation_service),
):
    try:
        stats = await service.get_invitation_stats(manuscript_id=manuscript_id, reviewer_id=reviewer_id)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": stats.model_dump(mode="json")}


@router.post("/invitations/{invitation_id}/cancel")
async def cancel_invitation(
    invitation_id: str,
    req: Optional[CancelInvitationRequest] = None,
    profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    service: InvitationService = Depends(get_invitation_service),
):
    try:
        invitation = await service.cancel_invitation(
            invitation_id,
            cancelled_by=profile.get("id"),
            reason=req.reason if req else None,
        )
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": _editor_view(invitation)}


# === Public (token) ===
@router.get("/invitations/token/{token}")
async def get_invitation_by_token(
    token: str,
    service: InvitationService = Depends(get_invitation_service),
):
    """
    审稿人通过邮件链接查看邀请（无需登录）

    中文注释:
    - token 即凭据；只返回持有人自己的信息，其他候选人只给数量。
    - 已过期/已处理的邀请仍可查看，但 can_respond=false。
    """
    try:
        view = await service.get_invitation_by_token(token)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": view.model_dump(mode="json")}


@router.post("/invitations/token/{token}/respond")
async def respond_to_invitation(
    token: str,
    payload: InvitationResponse,
    request: Request,
    service: InvitationService = Depends(get_invitation_service),
):
    try:
        outcome = await service.respond(
            token,
            payload,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)

    invitation = outcome.invitation
    data: Dict[str, Any] = {
        "invitation_id": invitation.id,
        "status": invitation.status.value,
        "responded_at": invitation.responded_at.isoformat() if invitation.responded_at else None,
    }
    if outcome.assignment is not None:
        data["assignment"] = {
            "id": outcome.assignment.id,
            "status": outcome.assignment.status,
            "due_date": outcome.assignment.due_date.isoformat(),
        }
    return {"success": True, "data": data}
