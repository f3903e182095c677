from unittest.mock import MagicMock, patch

import pytest
from tenacity import wait_none

from refereeflow.core.config import ResendConfig, SMTPConfig
from refereeflow.core.mail import EmailService


def _smtp_config(**overrides) -> SMTPConfig:
    data = dict(
        host="smtp.example.com",
        port=587,
        user="user@example.com",
        password="secret",
        from_email="no-reply@example.com",
        use_starttls=True,
    )
    data.update(overrides)
    return SMTPConfig(**data)


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    # 重试次数保持不变，只去掉指数退避的等待
    monkeypatch.setattr(EmailService._send_smtp.retry, "wait", wait_none())
    monkeypatch.setattr(EmailService._send_resend.retry, "wait", wait_none())


def test_send_email_success():
    service = EmailService(smtp_config=_smtp_config(), resend_config=None)
    with patch("refereeflow.core.mail.smtplib.SMTP") as smtp:
        server = MagicMock()
        smtp.return_value.__enter__.return_value = server

        ok = service.send_email(
            to_email="to@example.com",
            subject="Invitation to review",
            html_body="<p>Hello</p>",
            text_body="Hello",
        )
        assert ok is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user@example.com", "secret")
        server.sendmail.assert_called_once()


def test_send_email_retries_then_returns_false():
    service = EmailService(smtp_config=_smtp_config(), resend_config=None)
    with patch("refereeflow.core.mail.smtplib.SMTP") as smtp:
        server = MagicMock()
        server.sendmail.side_effect = RuntimeError("smtp down")
        smtp.return_value.__enter__.return_value = server

        ok = service.send_email(to_email="to@example.com", subject="s", html_body="<p>x</p>")

        assert ok is False
        assert server.sendmail.call_count == 3


def test_send_email_recovers_on_retry():
    service = EmailService(smtp_config=_smtp_config(), resend_config=None)
    with patch("refereeflow.core.mail.smtplib.SMTP") as smtp:
        server = MagicMock()
        server.sendmail.side_effect = [RuntimeError("temporary"), None]
        smtp.return_value.__enter__.return_value = server

        assert service.send_email(to_email="to@example.com", subject="s", html_body="<p>x</p>") is True
        assert server.sendmail.call_count == 2


def test_send_email_skips_login_when_no_credentials():
    service = EmailService(
        smtp_config=_smtp_config(user=None, password=None, use_starttls=False), resend_config=None
    )
    with patch("refereeflow.core.mail.smtplib.SMTP") as smtp:
        server = MagicMock()
        smtp.return_value.__enter__.return_value = server

        assert service.send_email(to_email="to@example.com", subject="s", html_body="<p>x</p>") is True
        server.starttls.assert_not_called()
        server.login.assert_not_called()


def test_resend_used_when_smtp_missing():
    service = EmailService(smtp_config=None, resend_config=ResendConfig(api_key="re_test", sender="RefereeFlow <x@y.z>"))
    with patch("refereeflow.core.mail.resend.Emails.send") as send:
        ok = service.send_email(to_email="to@example.com", subject="s", html_body="<p>x</p>")

    assert ok is True
    payload = send.call_args[0][0]
    assert payload["to"] == ["to@example.com"]
    assert payload["from"] == "RefereeFlow <x@y.z>"


def test_send_template_email_returns_false_when_not_configured():
    service = EmailService(smtp_config=None, resend_config=None)
    assert (
        service.send_template_email(
            to_email="to@example.com",
            subject="s",
            template_name="reviewer_invitation.html",
            context={},
        )
        is False
    )


def test_send_template_email_handles_render_failure():
    service = EmailService(smtp_config=_smtp_config(), resend_config=None)
    with patch.object(service, "render_template", side_effect=RuntimeError("bad template")):
        ok = service.send_template_email(
            to_email="to@example.com",
            subject="s",
            template_name="reviewer_invitation.html",
            context={},
        )
        assert ok is False


def test_invitation_template_renders_and_escapes():
    service = EmailService(smtp_config=None, resend_config=None)

    html = service.render_template(
        "reviewer_invitation.html",
        {
            "reviewer_name": "Dr. Ada",
            "manuscript_title": "Attention <b>everywhere</b>",
            "custom_message": "Hope you can help",
            "response_deadline": "2026-03-08 09:00 UTC",
            "review_deadline": "2026-03-31",
            "invitation_url": "http://localhost:3000/review/invitation/tok",
            "editor_name": "Dr. Editor",
        },
    )

    assert "Dr. Ada" in html
    assert "http://localhost:3000/review/invitation/tok" in html
    assert "<b>everywhere</b>" not in html
