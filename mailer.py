"""
Outgoing mail: OTP codes and inspection reports.

Every message is written to the `emaillog` collection; it is also sent over
SMTP when SMTP_HOST is configured.
"""
import logging
import os
import secrets
import smtplib
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Tuple

from database import create_document, now_utc

logger = logging.getLogger(__name__)

OTP_EXPIRY_MINUTES = int(os.getenv("OTP_EXPIRY_MINUTES", "10"))

OTP_SUBJECTS = {
    "verification": ("Email Verification OTP", "Your verification OTP is: {otp}."),
    "reset": ("Password Reset OTP", "Your password reset OTP is: {otp}."),
}

REPORT_LINES = (
    ("Condition", "condition"),
    ("Estimated value", "estimated_value"),
    ("Physical damage (%)", "physical_damage"),
    ("Working components", "working_components"),
    ("Reusable semiconductors", "reusable_semiconductors"),
    ("Notes", "notes"),
)


class MailDeliveryError(Exception):
    pass


def generate_otp() -> Tuple[str, object]:
    otp = str(100000 + secrets.randbelow(900000))
    return otp, now_utc() + timedelta(minutes=OTP_EXPIRY_MINUTES)


def send_email(to: List[str], subject: str, body: str) -> None:
    create_document("emaillog", {"to": to, "subject": subject, "body": body, "sent_at": now_utc()})

    host = os.getenv("SMTP_HOST")
    if not host:
        logger.info("SMTP not configured; logged mail %r to %s", subject, ", ".join(to))
        return

    port = int(os.getenv("SMTP_PORT", "587"))
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASS")
    sender = os.getenv("SMTP_FROM", user or "noreply@recycleit.com")

    msg = MIMEMultipart()
    msg["From"] = sender
    msg["To"] = ", ".join(to)
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(host, port) as server:
            server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(sender, to, msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email sending failed for %s: %s", ", ".join(to), exc)
        raise MailDeliveryError(f"Failed to send email: {exc}") from exc


def send_otp_email(email: str, otp: str, kind: str = "verification") -> None:
    subject, template = OTP_SUBJECTS.get(kind, ("OTP Notification", "Your OTP is: {otp}."))
    body = template.format(otp=otp) + f" This OTP will expire in {OTP_EXPIRY_MINUTES} minutes."
    send_email([email], subject, body)
    logger.info("Sent %s OTP to %s", kind, email)


def send_report_email(email: str, name: Optional[str], report: dict) -> None:
    lines = [f"Hello {name or 'there'},", "", f"The inspection of your {report['device']} is complete.", ""]
    for label, key in REPORT_LINES:
        value = report.get(key)
        if value in (None, "", []):
            continue
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        lines.append(f"{label}: {value}")
    send_email([email], "Your Device Inspection Report", "\n".join(lines))
    logger.info("Sent inspection report %s to %s", report.get("inspection_id"), email)
