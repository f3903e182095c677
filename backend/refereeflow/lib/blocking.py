from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from refereeflow.core.errors import StoreTimeoutError

T = TypeVar("T")


async def run_blocking(fn: Callable[..., T], *args: Any, timeout: float, label: str, **kwargs: Any) -> T:
    """
    在线程池里执行同步调用（supabase-py / SMTP），并强制超时。

    中文注释:
    - 超时后线程仍可能在后台跑完，但调用方不会被无限阻塞。
    - 超时统一转换为 StoreTimeoutError，由上层决定是整体失败还是记录到单条结果。
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise StoreTimeoutError(f"{label} timed out after {timeout:.1f}s") from exc
