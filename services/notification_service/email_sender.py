"""
email_sender.py - Receipt delivery over SMTP

Receipts are sent as multipart/alternative: the fixed-width text receipt as
the plain part and the same text inside <pre> as the HTML part, so columns
stay aligned in mail clients that prefer HTML.

SECURITY:
    none      plain SMTP, no login (Mailpit in development)
    starttls  SMTP upgraded with STARTTLS, then login
    ssl       implicit TLS (SMTP_SSL), then login
"""

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Optional

logger = logging.getLogger(__name__)

SECURITY_MODES = ("none", "starttls", "ssl")


class ReceiptEmailSender:
    """Sends receipt emails through the configured SMTP relay."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        sender: str = "receipts@spa-pos.local",
        security: str = "none",
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: int = 30,
    ):
        if security not in SECURITY_MODES:
            raise ValueError(f"Unknown SMTP security mode {security!r}, expected one of {SECURITY_MODES}")
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.security = security
        self.username = username
        self.password = password
        self.timeout = timeout

    def build_message(self, to_email: str, subject: str, receipt_text: str, receipt_number: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(idstring=receipt_number, domain=self.sender.rpartition("@")[2] or None)
        msg["X-Receipt-Number"] = receipt_number

        msg.attach(MIMEText(receipt_text, "plain", "utf-8"))
        msg.attach(MIMEText(f"<pre style=\"font-family: monospace\">{html.escape(receipt_text)}</pre>", "html", "utf-8"))
        return msg

    def send_receipt(self, to_email: str, subject: str, receipt_text: str, receipt_number: str) -> bool:
        """Returns False when delivery failed; the failure is logged."""
        msg = self.build_message(to_email, subject, receipt_text, receipt_number)
        try:
            with self._connect() as server:
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Could not email receipt {receipt_number} to {to_email}: {e}")
            return False

        logger.info(f"Receipt {receipt_number} emailed to {to_email}")
        return True

    def _connect(self) -> smtplib.SMTP:
        if self.security == "ssl":
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=ssl.create_default_context(), timeout=self.timeout
            )

        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        if self.security == "starttls":
            try:
                server.starttls(context=ssl.create_default_context())
            except (smtplib.SMTPException, OSError):
                server.close()
                raise
        return server
