import logging
import os
from typing import Callable, Iterable, Optional, Set

from fastapi import Depends, HTTPException

from refereeflow.core.auth_utils import get_current_user
from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.lib.api_client import supabase

logger = logging.getLogger("refereeflow.roles")

EDITOR_ROLES = ["editor", "managing_editor", "admin"]


def _parse_admin_emails() -> Set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def _is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in _parse_admin_emails()


async def get_current_profile(current_user: dict = Depends(get_current_user)) -> dict:
    """
    获取当前用户的 profile（含 roles）。

    中文注释:
    1) 角色以 user_profiles.roles 为准（应用层 RBAC）；token claims 中的 roles 作为补充。
    2) 若 email 在 ADMIN_EMAILS 中，则自动补齐 admin 权限，便于本地/演示测试。
    3) REVIEW_STORE_BACKEND=memory 时不访问数据库，只使用 token claims。
    """
    user_id = current_user["id"]
    email = current_user.get("email")

    roles = list(current_user.get("claim_roles") or [])
    if _is_admin_email(email):
        roles = list(dict.fromkeys(["admin", *roles]))

    if ReviewerAssignmentConfig.from_env().store_backend == "memory":
        return {"id": user_id, "email": email, "roles": roles}

    try:
        resp = supabase.table("user_profiles").select("id, email, full_name, roles").eq("id", user_id).execute()
        existing = (getattr(resp, "data", None) or [None])[0]
    except Exception as e:
        logger.warning("Failed to fetch user profile %s: %s", user_id, e)
        # 最小化降级：至少把用户身份返回给上层，角色只信任 token
        return {"id": user_id, "email": email, "roles": roles}

    if not existing:
        return {"id": user_id, "email": email, "roles": roles}
    merged = list(dict.fromkeys([*(existing.get("roles") or []), *roles]))
    return {**existing, "roles": merged}


def require_any_role(required: Iterable[str]) -> Callable[[dict], dict]:
    required_set = {r for r in required}

    async def _dep(profile: dict = Depends(get_current_profile)) -> dict:
        roles = set(profile.get("roles") or [])
        if not roles.intersection(required_set):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return profile

    return _dep
