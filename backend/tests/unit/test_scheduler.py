import asyncio
from datetime import timedelta

import pytest

from factories import MANUSCRIPT_ID, make_reviewer
from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.core.scheduler import InvitationExpiryScheduler
from refereeflow.models.invitation import InvitationStatus
from refereeflow.services.bulk_invitation_service import BulkInviteOptions


def _scheduler(services, **config_overrides) -> InvitationExpiryScheduler:
    config = ReviewerAssignmentConfig(store_backend="memory", **config_overrides)
    return InvitationExpiryScheduler(config, invitation_service=services.invitations, bulk_service=services.bulk)


@pytest.mark.asyncio
async def test_run_expires_overdue_and_dispatches_due(services):
    for rid in ("r-a", "r-b", "r-c"):
        services.store.add_reviewer(make_reviewer(rid))
    staggered = await services.bulk.bulk_invite(
        manuscript_id=MANUSCRIPT_ID,
        reviewer_ids=["r-a", "r-b"],
        review_deadline=services.clock.now + timedelta(days=30),
        invited_by="editor-1",
        options=BulkInviteOptions(staggered=True, stagger_hours=1),
    )
    overdue = await services.invitations.create_invitation(
        manuscript_id=MANUSCRIPT_ID,
        reviewer_id="r-c",
        invited_by="editor-1",
        review_deadline=services.clock.now + timedelta(days=30),
        response_deadline=services.clock.now + timedelta(minutes=30),
    )
    scheduler = _scheduler(services)

    result = await scheduler.run(services.clock.now + timedelta(hours=2))

    assert result == {
        "expired_count": 1,
        "processed_count": 1,
        "notifications_sent": 1,
        "notifications_failed": 0,
    }
    assert services.store.get_invitation(overdue.id).status == InvitationStatus.EXPIRED
    assert services.notifier.sent == ["r-a", "r-b"]
    assert staggered.summary.successful == 2


@pytest.mark.asyncio
async def test_lazy_mode_does_not_start_background_task(services):
    scheduler = _scheduler(services, expiry_mode="lazy")

    assert scheduler.start() is None
    await scheduler.stop()


@pytest.mark.asyncio
async def test_background_mode_starts_and_stops(services, monkeypatch: pytest.MonkeyPatch):
    scheduler = _scheduler(services, expiry_mode="background", sweep_interval_seconds=3600)
    ran = asyncio.Event()

    async def _fake_run(now=None):
        ran.set()
        return {"expired_count": 0}

    monkeypatch.setattr(scheduler, "run", _fake_run)

    task = scheduler.start()
    assert task is not None
    assert scheduler.start() is task
    await asyncio.wait_for(ran.wait(), timeout=1)
    await scheduler.stop()

    assert task.cancelled()


@pytest.mark.asyncio
async def test_loop_survives_failed_sweep(services, monkeypatch: pytest.MonkeyPatch):
    scheduler = _scheduler(services, expiry_mode="background", sweep_interval_seconds=10)
    calls = []
    sleeps = []

    async def _failing_run(now=None):
        calls.append(now)
        raise RuntimeError("database unavailable")

    async def _fast_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 2:
            raise asyncio.CancelledError()

    monkeypatch.setattr(scheduler, "run", _failing_run)
    monkeypatch.setattr("refereeflow.core.scheduler.asyncio.sleep", _fast_sleep)

    with pytest.raises(asyncio.CancelledError):
        await scheduler._loop()

    assert len(calls) == 2
    assert sleeps == [10, 10]
