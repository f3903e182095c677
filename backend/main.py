import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

logger = logging.getLogger("refereeflow")

_SENTRY_ENABLED = False
try:
    from refereeflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则，Sentry 任何异常不得阻塞启动
    logger.warning("[sentry] init failed (ignored): %s", e)

from refereeflow.api.v1 import internal, invitations, reviewers
from refereeflow.core.middleware import ExceptionHandlerMiddleware
from refereeflow.core.scheduler import InvitationExpiryScheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 中文注释:
    # - INVITATION_EXPIRY_MODE=background 时启动周期性过期对账 + 错峰通知投递。
    # - lazy 模式下 start() 直接返回 None，只依赖访问时的惰性过期与内部 cron 接口。
    scheduler = InvitationExpiryScheduler()
    scheduler.start()
    app.state.invitation_scheduler = scheduler
    try:
        yield
    finally:
        await scheduler.stop()


app = FastAPI(
    title="RefereeFlow API",
    description="Peer-reviewer matching, conflict screening and invitation workflow",
    version="1.0.0",
    lifespan=lifespan,
)


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins。

    中文注释:
    - 本地默认: http://localhost:3000
    - 生产/预发: 通过 FRONTEND_ORIGINS 注入（逗号分隔）
    """
    origins: list[str] = []
    for part in (os.environ.get("FRONTEND_ORIGINS") or os.environ.get("FRONTEND_ORIGIN") or "").split(","):
        o = part.strip().rstrip("/")
        if o and o not in origins:
            origins.append(o)
    return origins or ["http://localhost:3000"]


# === 中间件配置 ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)

# === 路由注册 ===
app.include_router(reviewers.router, prefix="/api/v1")
app.include_router(invitations.router, prefix="/api/v1")
app.include_router(internal.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "RefereeFlow API is running", "docs": "/docs"}
