# research_backend/delivery.py
"""
Report delivery by email.

Env vars (SmtpSettings.from_env):
- SMTP_HOST, SMTP_PORT (default: 587)
- SMTP_USER, SMTP_PASSWORD
- SMTP_FROM_EMAIL, SMTP_FROM_NAME (default: Deep Research Assistant)
- SMTP_USE_TLS (default: true), SMTP_STARTTLS (default: true)
"""
import os
import ssl
import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Dict, Any

from research_backend.report import ReportArtifact

logger = logging.getLogger("research-backend.delivery")

REPORT_SUBJECT = "Your Deep Research Report: {title}"

REPORT_TEXT = """Hello,

Please find attached your deep research report: {title}

The report includes research findings from both OpenAI and Google Gemini.

-- Deep Research Assistant
"""

REPORT_HTML = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2 style="color: #0ea5e9;">Your Deep Research Report is Ready</h2>
    <p>Your research report <strong>"{title}"</strong> is attached to this email.</p>
    <p>The report includes research findings from both OpenAI and Google Gemini.</p>
    <hr style="border: none; border-top: 1px solid #e2e8f0; margin: 20px 0;">
    <p style="color: #64748b; font-size: 12px;">Session {session_id}</p>
</body>
</html>
"""


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class DeliveryError(Exception):
    pass


@dataclass(frozen=True)
class SmtpSettings:
    host: str = ""
    port: int = 587
    user: str = ""
    password: str = ""
    from_email: str = ""
    from_name: str = "Deep Research Assistant"
    use_tls: bool = True
    starttls: bool = True

    @classmethod
    def from_env(cls) -> "SmtpSettings":
        return cls(
            host=os.getenv("SMTP_HOST", ""),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=os.getenv("SMTP_USER", ""),
            password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("SMTP_FROM_EMAIL", os.getenv("SMTP_USER", "")),
            from_name=os.getenv("SMTP_FROM_NAME", "Deep Research Assistant"),
            use_tls=_flag("SMTP_USE_TLS", "true"),
            starttls=_flag("SMTP_STARTTLS", "true"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)


class DeliveryService:
    def deliver(self, address: str, artifact: ReportArtifact, title: str, session_id: str) -> None:
        raise NotImplementedError


class SmtpDeliveryService(DeliveryService):
    def __init__(self, settings: SmtpSettings):
        self._settings = settings
        if not settings.configured:
            logger.warning("SMTP not configured; report emails will fail until SMTP_HOST and SMTP_FROM_EMAIL are set")

    def _create_message(self, to_email: str, artifact: ReportArtifact, title: str, session_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = REPORT_SUBJECT.format(title=title)
        msg["From"] = f"{self._settings.from_name} <{self._settings.from_email}>"
        msg["To"] = to_email

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(REPORT_TEXT.format(title=title), "plain"))
        body.attach(MIMEText(REPORT_HTML.format(title=title, session_id=session_id), "html"))
        msg.attach(body)

        subtype = artifact.content_type.split(";")[0].rpartition("/")[2]
        attachment = MIMEApplication(artifact.content, _subtype=subtype or "octet-stream")
        attachment.replace_header("Content-Type", artifact.content_type)
        attachment.add_header("Content-Disposition", "attachment", filename=artifact.filename)
        msg.attach(attachment)
        return msg

    def deliver(self, address: str, artifact: ReportArtifact, title: str, session_id: str) -> None:
        if not self._settings.configured:
            raise DeliveryError("Email service not configured. Please set SMTP settings.")

        message = self._create_message(address, artifact, title, session_id)
        s = self._settings
        try:
            if s.use_tls and not s.starttls:
                # Implicit TLS (port 465)
                with smtplib.SMTP_SSL(s.host, s.port, context=ssl.create_default_context()) as server:
                    if s.user:
                        server.login(s.user, s.password)
                    server.send_message(message)
            else:
                # STARTTLS (port 587) or plain
                with smtplib.SMTP(s.host, s.port) as server:
                    if s.starttls:
                        server.starttls(context=ssl.create_default_context())
                    if s.user:
                        server.login(s.user, s.password)
                    server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Failed to send email: {e}") from e

        logger.info("Report email sent", extra={"session_id": session_id})


@dataclass
class MockDeliveryService(DeliveryService):
    """Logs instead of sending; keeps what it would have sent (handy in tests)."""

    sent: List[Dict[str, Any]] = field(default_factory=list)
    fail_with: Optional[Exception] = None

    def deliver(self, address: str, artifact: ReportArtifact, title: str, session_id: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "address": address,
            "filename": artifact.filename,
            "size": len(artifact.content),
            "title": title,
            "session_id": session_id,
        })
        logger.info(
            "[MOCK] report email would be sent",
            extra={"session_id": session_id, "report_filename": artifact.filename, "bytes": len(artifact.content)},
        )
