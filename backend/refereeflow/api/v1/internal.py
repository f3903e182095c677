from fastapi import APIRouter, Depends

from refereeflow.core.errors import ReviewerAssignmentError, to_http_exception
from refereeflow.core.scheduler import InvitationExpiryScheduler
from refereeflow.core.security import require_admin_key

router = APIRouter(prefix="/internal", tags=["Internal"])


def get_expiry_scheduler() -> InvitationExpiryScheduler:
    return InvitationExpiryScheduler()


@router.post("/cron/expire-invitations")
async def expire_invitations(
    _admin: None = Depends(require_admin_key),
    scheduler: InvitationExpiryScheduler = Depends(get_expiry_scheduler),
):
    """
    过期对账（内部接口）

    中文注释: 惰性过期始终生效；该接口用于让“超过截止时间仍 pending”的邀请在无人访问时也落为 expired。
    """
    try:
        result = await scheduler.expire()
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, **result}


@router.post("/cron/dispatch-invitations")
async def dispatch_invitations(
    _admin: None = Depends(require_admin_key),
    scheduler: InvitationExpiryScheduler = Depends(get_expiry_scheduler),
):
    """投递错峰邀请中已到期的通知（内部接口）"""
    try:
        result = await scheduler.dispatch()
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, **result}
