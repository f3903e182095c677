from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from refereeflow.core.config import ReviewerAssignmentConfig

logger = logging.getLogger("refereeflow.scheduler")


class InvitationExpiryScheduler:
    """
    邀请对账调度器

    中文注释:
    1) 触发方式：内部接口 /api/v1/internal/cron/expire-invitations 手动/定时触发；
       INVITATION_EXPIRY_MODE=background 时应用启动后额外在后台周期性执行。
    2) 幂等性：过期走 pending -> expired 的 CAS，重复执行不会重复迁移；
       错峰通知只投递 notified_at 为空且 send_at 已到期的邀请。
    3) 失败处理：单轮失败只记日志，下一轮继续。
    """

    def __init__(
        self,
        config: Optional[ReviewerAssignmentConfig] = None,
        *,
        invitation_service: Any = None,
        bulk_service: Any = None,
    ):
        self.config = config or ReviewerAssignmentConfig.from_env()
        self._invitations = invitation_service
        self._bulk = bulk_service
        self._task: Optional[asyncio.Task] = None

    def _services(self):
        # 延迟导入：避免 core 在导入期依赖 services（services 导入期会构建存储单例）
        if self._invitations is None:
            from refereeflow.services.invitation_service import get_invitation_service

            self._invitations = get_invitation_service()
        if self._bulk is None:
            from refereeflow.services.bulk_invitation_service import get_bulk_invitation_service

            self._bulk = get_bulk_invitation_service()
        return self._invitations, self._bulk

    async def expire(self, now: Optional[datetime] = None) -> Dict[str, int]:
        invitations, _ = self._services()
        expired = await invitations.expire_overdue(now or datetime.now(timezone.utc))
        return {"expired_count": expired}

    async def dispatch(self, now: Optional[datetime] = None) -> Dict[str, int]:
        _, bulk = self._services()
        return await bulk.dispatch_due_notifications(now or datetime.now(timezone.utc))

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        result: Dict[str, int] = {}
        result.update(await self.expire(now))
        result.update(await self.dispatch(now))
        return result

    async def _loop(self) -> None:
        interval = self.config.sweep_interval_seconds
        logger.info("Invitation sweeper started (interval=%ss)", interval)
        while True:
            try:
                result = await self.run()
                if result.get("expired_count") or result.get("processed_count"):
                    logger.info("Invitation sweep: %s", result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Invitation sweep failed: %s", e, exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.background_expiry:
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Invitation sweeper stopped")
