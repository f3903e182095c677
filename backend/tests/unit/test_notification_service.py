from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from factories import make_manuscript, make_reviewer
from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.models.invitation import InvitationStatus, ReviewerInvitation
from refereeflow.services.notification_service import InvitationNotifier

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _invitation(**overrides) -> ReviewerInvitation:
    data = {
        "id": "inv-1",
        "manuscript_id": "ms-1",
        "reviewer_id": "r-1",
        "invited_by": "editor-1",
        "review_deadline": NOW + timedelta(days=30),
        "response_deadline": NOW + timedelta(days=7),
        "token": "tok-secret",
        "invited_at": NOW,
    }
    data.update(overrides)
    return ReviewerInvitation(**data)


def _make_admin_client_raising(error: Exception) -> MagicMock:
    client = MagicMock()
    chain = MagicMock()
    client.table.return_value = chain
    chain.insert.return_value = chain
    chain.execute.side_effect = error
    return client


def _notifier(email_ok: bool = True, db=None) -> InvitationNotifier:
    email = MagicMock()
    email.send_template_email.return_value = email_ok
    config = ReviewerAssignmentConfig(store_backend="memory", public_app_url="https://journal.example.org")
    return InvitationNotifier(config, email_service=email, db_client=db)


@pytest.mark.asyncio
async def test_invitation_email_carries_token_link():
    notifier = _notifier()

    error = await notifier.notify_invitation(_invitation(), make_reviewer("r-1"), make_manuscript())

    assert error is None
    kwargs = notifier._email.send_template_email.call_args.kwargs
    assert kwargs["to_email"] == "r-1@example.org"
    assert kwargs["template_name"] == "reviewer_invitation.html"
    assert kwargs["context"]["invitation_url"] == "https://journal.example.org/review/invitation/tok-secret"


@pytest.mark.asyncio
async def test_missing_email_is_reported_not_raised():
    notifier = _notifier()

    error = await notifier.notify_invitation(_invitation(), make_reviewer("r-1", email=None), make_manuscript())

    assert error == "Reviewer has no email address"
    notifier._email.send_template_email.assert_not_called()


@pytest.mark.asyncio
async def test_email_failure_is_reported():
    notifier = _notifier(email_ok=False)

    assert await notifier.notify_invitation(_invitation(), make_reviewer("r-1"), make_manuscript()) == (
        "Email delivery failed"
    )


@pytest.mark.asyncio
async def test_in_app_notification_written_for_reviewer():
    db = MagicMock()
    notifier = _notifier(db=db)

    await notifier.notify_invitation(_invitation(), make_reviewer("r-1"), make_manuscript())

    db.table.assert_called_with("notifications")
    payload = db.table.return_value.insert.call_args[0][0]
    assert payload["user_id"] == "r-1"
    assert payload["type"] == "review_invite"
    assert payload["is_read"] is False


@pytest.mark.asyncio
async def test_in_app_foreign_key_errors_are_ignored():
    api_error = APIError(
        {
            "code": "23503",
            "message": 'insert or update on table "notifications" violates foreign key constraint',
            "details": None,
            "hint": None,
        }
    )
    notifier = _notifier(db=_make_admin_client_raising(api_error))

    assert await notifier.notify_invitation(_invitation(), make_reviewer("r-1"), make_manuscript()) is None


@pytest.mark.asyncio
async def test_response_notifies_handling_editor():
    db = MagicMock()
    notifier = _notifier(db=db)

    await notifier.notify_response(_invitation(status=InvitationStatus.DECLINED), make_manuscript())

    payload = db.table.return_value.insert.call_args[0][0]
    assert payload["user_id"] == "editor-1"
    assert payload["title"] == "Reviewer invitation declined"
