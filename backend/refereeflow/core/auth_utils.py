import logging
import os
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from refereeflow.lib.api_client import supabase

logger = logging.getLogger("refereeflow.auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. 密钥来源于 Supabase Project Settings 中的 JWT Secret。
# 2. 我们使用 HTTPBearer 作为验证头。
ALGORITHM = "HS256"

security = HTTPBearer()


def _jwt_secret() -> str:
    return (os.environ.get("SUPABASE_JWT_SECRET") or "").strip()


def _claim_roles(payload: dict) -> list[str]:
    # Supabase 自定义 claims 一般放在 app_metadata 中
    meta = payload.get("app_metadata") or {}
    roles = meta.get("roles") if isinstance(meta, dict) else None
    if isinstance(roles, list):
        return [str(r) for r in roles if r]
    return []


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    解码并验证 Supabase JWT Token
    返回解析后的 User Payload
    """
    token = credentials.credentials
    secret = _jwt_secret()
    try:
        # 中文注释:
        # 1. Supabase 新版可能使用 JWT Signing Keys（非 HS256），需要走 Auth API 获取用户。
        # 2. 若仍为 HS256，则用本地密钥校验以减少外部请求。
        header = jwt.get_unverified_header(token)
        if header.get("alg") == ALGORITHM and secret:
            payload = jwt.decode(token, secret, algorithms=[ALGORITHM], audience="authenticated")
            user_id = payload.get("sub")
            if user_id is None:
                raise HTTPException(status_code=401, detail="Invalid token payload")
            return {"id": user_id, "email": payload.get("email"), "claim_roles": _claim_roles(payload)}

        # fallback: 通过 Supabase Auth API 校验并获取用户信息
        try:
            response = supabase.auth.get_user(token)
            user = response.user if response else None
        except Exception as e:
            # 中文注释: Supabase 配置缺失/网络异常不应返回 500，统一视为鉴权失败
            logger.warning("JWT fallback verification failed: %s", e)
            raise HTTPException(status_code=401, detail="Token invalid or expired")

        if not user:
            raise HTTPException(status_code=401, detail="Invalid token payload")
        app_metadata = getattr(user, "app_metadata", None) or {}
        return {"id": user.id, "email": user.email, "claim_roles": _claim_roles({"app_metadata": app_metadata})}
    except JWTError as e:
        logger.info("JWT verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Token invalid or expired")


def client_ip(request: Request) -> Optional[str]:
    """公开 token 接口记录审计信息用；优先取反向代理写入的 X-Forwarded-For 首段。"""
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
