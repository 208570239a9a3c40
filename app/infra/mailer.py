from __future__ import annotations

import os
import smtplib
from email.message import EmailMessage
from typing import Protocol

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
EMAIL_SERVICE_EMAIL = os.getenv("EMAIL_SERVICE_EMAIL", "")
EMAIL_SERVICE_PASSWORD = os.getenv("EMAIL_SERVICE_PASSWORD", "")


class Mailer(Protocol):
    @property
    def sender(self) -> str: ...

    def send(self, recipients: list[str], message: str) -> None: ...


class SmtpMailer:
    def __init__(
        self,
        *,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        sender: str = EMAIL_SERVICE_EMAIL,
        password: str = EMAIL_SERVICE_PASSWORD,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._password = password
        self._timeout = timeout

    @property
    def sender(self) -> str:
        return self._sender

    def send(self, recipients: list[str], message: str) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as client:
            client.starttls()
            if self._password:
                client.login(self._sender, self._password)
            client.sendmail(self._sender, recipients, message.encode())


def _render(sender: str, to: str, subject: str, body: str) -> str:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    return message.as_string()


def render_invitation(
    sender: str,
    to: str,
    *,
    group_name: str,
    join_link: str,
    reject_link: str,
    invitee_name: str | None = None,
) -> str:
    greeting = f"Hi {invitee_name}," if invitee_name else "Hi,"
    body = (
        f"{greeting}\n\n"
        f"You have been invited to join {group_name}.\n\n"
        f"Accept the invitation: {join_link}\n"
        f"Decline the invitation: {reject_link}\n"
    )
    return _render(sender, to, f"Invitation to {group_name}", body)


def render_signup_verification(sender: str, to: str, *, link: str) -> str:
    body = f"Welcome!\n\nConfirm your email address to activate your account: {link}\n"
    return _render(sender, to, "Verify your account", body)


def render_password_reset(sender: str, to: str, *, link: str) -> str:
    body = (
        "A password reset was requested for your account.\n\n"
        f"Choose a new password here: {link}\n\n"
        "If you did not request this, you can ignore this email.\n"
    )
    return _render(sender, to, "Reset your password", body)


def render_removed_from_group(sender: str, to: str, *, group_name: str) -> str:
    body = f"You are no longer a member of {group_name}.\n"
    return _render(sender, to, f"Removed from {group_name}", body)
