from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from factories import AUTHOR_ID, FixedClock, RecordingNotifier, make_manuscript, make_reviewer
from main import app
from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.services.bulk_invitation_service import BulkInvitationService
from refereeflow.services.conflict_service import ConflictDetector
from refereeflow.services.invitation_service import InvitationService
from refereeflow.services.matching_service import ReviewerMatcher
from refereeflow.services.memory_store import InMemoryReviewStore

# === 全局测试配置 ===
# 中文注释:
# 1. 显式使用 pytest_asyncio.fixture，STRICT 模式下异步 fixture 才能被正确 await。
# 2. 单元测试全部跑在 InMemoryReviewStore 上，不依赖 Supabase。
# 3. 时间通过 FixedClock 注入，过期相关用例可以精确推进时钟。


@pytest.fixture
def config() -> ReviewerAssignmentConfig:
    return ReviewerAssignmentConfig(store_backend="memory", external_timeout_seconds=5.0)


@pytest.fixture
def store() -> InMemoryReviewStore:
    s = InMemoryReviewStore()
    s.add_manuscript(make_manuscript())
    s.add_reviewer(make_reviewer(AUTHOR_ID, name="The Author"))
    return s


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def services(config, store, clock, notifier) -> SimpleNamespace:
    detector = ConflictDetector(config, candidate_store=store, invitation_store=store, clock=clock)
    invitations = InvitationService(
        config,
        candidate_store=store,
        invitation_store=store,
        notifier=notifier,
        clock=clock,
    )
    bulk = BulkInvitationService(
        config,
        invitation_service=invitations,
        conflict_detector=detector,
        invitation_store=store,
    )
    matcher = ReviewerMatcher(config, candidate_store=store, conflict_detector=detector)
    return SimpleNamespace(
        config=config,
        store=store,
        clock=clock,
        notifier=notifier,
        detector=detector,
        invitations=invitations,
        bulk=bulk,
        matcher=matcher,
    )


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    提供一个模拟的异步测试客户端
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
