import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Optional

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import retry, stop_after_attempt, wait_exponential

from refereeflow.core.config import ResendConfig, SMTPConfig

logger = logging.getLogger("refereeflow.mail")


class EmailService:
    _SENTINEL = object()

    def __init__(
        self,
        *,
        smtp_config: SMTPConfig | None | object = _SENTINEL,
        resend_config: ResendConfig | None | object = _SENTINEL,
    ):
        # 中文注释:
        # - smtp_config / resend_config 支持依赖注入，方便单测与不同环境切换。
        # - 若调用方显式传 None，则视为禁用该 provider。
        if smtp_config is self._SENTINEL:
            smtp_config = SMTPConfig.from_env()
        if resend_config is self._SENTINEL:
            resend_config = ResendConfig.from_env()

        self.smtp_config: SMTPConfig | None = smtp_config  # type: ignore[assignment]
        self.resend_config: ResendConfig | None = resend_config  # type: ignore[assignment]

        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        templates_dir = Path(__file__).resolve().parent / "templates"
        self._jinja = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def is_configured(self) -> bool:
        return bool(self.smtp_config or self.resend_config)

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._jinja.get_template(template_name).render(**context)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    def _send_smtp(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> None:
        cfg = self.smtp_config
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = cfg.from_email
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(cfg.host, cfg.port) as server:
            if cfg.use_starttls:
                server.starttls()
            if cfg.user and cfg.password:
                server.login(cfg.user, cfg.password)
            server.sendmail(cfg.from_email, [to_email], msg.as_string())

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    def _send_resend(self, to_email: str, subject: str, html_body: str) -> None:
        resend.Emails.send(
            {
                "from": self.resend_config.sender,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
            }
        )

    def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
    ) -> bool:
        """
        发送邮件（同步，带重试）。

        中文注释:
        - 优先 SMTP；SMTP 未配置但 Resend 已配置时走 Resend。
        - 重试耗尽后返回 False，由调用方把失败记录到对应结果上。
        """
        if self.smtp_config:
            try:
                self._send_smtp(to_email, subject, html_body, text_body)
                return True
            except Exception as e:
                logger.warning("[SMTP] send failed to=%s: %s", to_email, e)
                return False

        if self.resend_config:
            try:
                self._send_resend(to_email, subject, html_body)
                return True
            except Exception as e:
                logger.warning("[Resend] send failed to=%s: %s", to_email, e)
                return False

        return False

    def send_template_email(
        self,
        *,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
    ) -> bool:
        if not self.is_configured():
            logger.info("[Email] provider not configured, skip to=%s template=%s", to_email, template_name)
            return False
        try:
            html = self.render_template(template_name, context)
        except Exception as e:
            logger.error("[Email] template render failed template=%s: %s", template_name, e)
            return False
        return self.send_email(to_email=to_email, subject=subject, html_body=html)
