"""
Email Notifications.

Renders the four identity lifecycle emails and sends them over SMTP.
:meth:`EmailService.deliver` is the delivery callable handed to the
:class:`~opinions_identity.services.notification_dispatcher.NotificationDispatcher`;
it never raises for transport problems and reports them in a
``ServiceResult`` instead.
"""

from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

from opinions_identity.config import AppConfig
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import NotificationJob, ServiceResult
from opinions_identity.models.enums import NotificationKind
from opinions_identity.services.base_service import BaseService
from opinions_identity.utils.audit import log_audit_event


@dataclass(frozen=True)
class _Template:
    subject: str
    body: str
    # Frontend route the token is appended to; ``None`` for tokenless mail.
    link_path: Optional[str] = None


_TEMPLATES: dict[NotificationKind, _Template] = {
    NotificationKind.VERIFICATION: _Template(
        subject="Verify your email address",
        body=(
            "Hi {name},\n\n"
            "Thanks for signing up. Confirm your email address by opening the "
            "link below within {verification_hours} hours:\n\n{link}\n\n"
            "If you did not create this account you can ignore this message."
        ),
        link_path="/verify-email",
    ),
    NotificationKind.WELCOME: _Template(
        subject="Welcome to Opinions",
        body=(
            "Hi {name},\n\n"
            "Your email address is verified and your account is ready. "
            "Sign in at {frontend}/login to get started."
        ),
    ),
    NotificationKind.PASSWORD_RESET: _Template(
        subject="Reset your password",
        body=(
            "Hi {name},\n\n"
            "We received a request to reset your password. Open the link below "
            "within {reset_hours} hour(s) to choose a new one:\n\n{link}\n\n"
            "If you did not request a reset, no action is needed."
        ),
        link_path="/reset-password",
    ),
    NotificationKind.PASSWORD_CHANGED: _Template(
        subject="Your password was changed",
        body=(
            "Hi {name},\n\n"
            "The password for your account was just changed. If this was not "
            "you, reset your password immediately and contact support."
        ),
    ),
}


class EmailService(BaseService):
    """SMTP sender for identity notifications.

    SMTP settings are checked on the first send rather than at
    construction, so a deployment without mail still starts.
    """

    def __init__(self, config: AppConfig, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._config = config
        self._config_checked = False

    def deliver(self, job: NotificationJob) -> ServiceResult:
        """Render *job* and send it."""
        template = _TEMPLATES.get(job.kind)
        if template is None:
            return ServiceResult(
                success=False, error=f"Unknown notification kind: {job.kind}", status_code=400,
            )
        if template.link_path and not job.token:
            self._logger.error("Refusing to send %s email to %s without a token", job.kind, job.recipient)
            return ServiceResult(
                success=False, error=f"Missing token for {job.kind} email", status_code=400,
            )

        frontend = self._config.FRONTEND_URL.rstrip("/")
        body = template.body.format(
            name=job.display_name,
            frontend=frontend,
            link=f"{frontend}{template.link_path}?token={job.token}" if template.link_path else "",
            verification_hours=self._config.VERIFICATION_TOKEN_TTL_HOURS,
            reset_hours=self._config.PASSWORD_RESET_TOKEN_TTL_HOURS,
        )
        return self.send_email(job.recipient, template.subject, body)

    def send_email(self, recipient: str, subject: str, body: str) -> ServiceResult:
        """Send one plain-text message to *recipient*."""
        if not self._config_checked:
            try:
                self._config.validate_email_config()
            except ValueError as exc:
                self._logger.error("Email configuration error: %s", exc)
                return ServiceResult(
                    success=False, error=f"Email configuration error: {exc}", status_code=500,
                )
            self._config_checked = True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._config.MAIL_FROM or self._config.MAIL_USERNAME
        message["To"] = recipient
        message.set_content(body)

        error = self._transmit(message)
        if error is not None:
            return ServiceResult(success=False, error=error, status_code=500)

        log_audit_event(
            logger=self._logger,
            action="EMAIL_SENT",
            entity_type="Email",
            entity_id=subject,
            user_id="system",
            details={"to": recipient},
        )
        return ServiceResult(success=True)

    def _transmit(self, message: EmailMessage) -> Optional[str]:
        """Send over STARTTLS; return an error description or ``None``."""
        cfg = self._config
        try:
            smtp = smtplib.SMTP(cfg.MAIL_SERVER, cfg.MAIL_PORT)
        except OSError as exc:
            self._logger.error("Cannot reach %s:%d: %s", cfg.MAIL_SERVER, cfg.MAIL_PORT, exc)
            return f"Network error: {exc}"

        try:
            smtp.starttls()
            smtp.login(cfg.MAIL_USERNAME, cfg.MAIL_PASSWORD.get_secret_value())
            smtp.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            self._logger.error("SMTP authentication failed for %s: %s", cfg.MAIL_USERNAME, exc)
            return f"SMTP authentication failed: {exc}"
        except (smtplib.SMTPException, OSError) as exc:
            self._logger.error("SMTP error sending to %s: %s", message["To"], exc)
            return f"SMTP error: {exc}"
        finally:
            try:
                smtp.quit()
            except (smtplib.SMTPException, OSError) as exc:
                self._logger.debug("SMTP quit failed: %s", exc)

        self._logger.info("Email sent to %s", message["To"])
        return None
