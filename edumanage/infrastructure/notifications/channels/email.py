# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Email notification channel using async SMTP.

Sends multipart (plain text + HTML) messages with aiosmtplib.

Configuration (via SMTPSettings / environment variables):
- SMTP_HOST: SMTP server hostname
- SMTP_PORT: SMTP server port (default: 587)
- SMTP_USERNAME: SMTP authentication username
- SMTP_PASSWORD: SMTP authentication password
- SMTP_USE_TLS: Use STARTTLS (default: true)
- SMTP_FROM_EMAIL: Sender email address
- SMTP_FROM_NAME: Sender display name
"""

import html
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import aiosmtplib

from edumanage.core.config.settings import SMTPSettings
from edumanage.infrastructure.notifications.channels.base import (
    BaseChannel,
    ChannelResult,
    ChannelType,
    DeliveryStatus,
    NotificationPayload,
)


class EmailChannel(BaseChannel):
    """Email notification channel.

    Delivery is skipped (not failed) while SMTP is not configured, so a
    development setup without mail credentials still completes builds.
    """

    def __init__(self, settings: SMTPSettings) -> None:
        super().__init__()
        self._settings = settings
        if not settings.is_configured:
            self.logger.warning(
                "Email notifications disabled: SMTP_HOST, SMTP_USERNAME, "
                "SMTP_PASSWORD, or SMTP_FROM_EMAIL not set"
            )

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.EMAIL

    async def send(self, payload: NotificationPayload) -> ChannelResult:
        """Send email notification via SMTP.

        Args:
            payload: The notification payload.

        Returns:
            ChannelResult with delivery status.
        """
        if not self._settings.is_configured:
            return self.result(DeliveryStatus.SKIPPED, error="Email channel not configured")

        if not payload.recipient_email:
            return self.result(DeliveryStatus.SKIPPED, error="No recipient email address")

        message = self.build_message(payload)
        password = self._settings.password.get_secret_value() if self._settings.password else None

        try:
            await aiosmtplib.send(
                message,
                hostname=self._settings.host,
                port=self._settings.port,
                username=self._settings.username,
                password=password,
                start_tls=self._settings.use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            self.logger.error(
                "Failed to send email to %s: %s",
                payload.recipient_email,
                str(e),
                exc_info=True,
            )
            return self.result(
                DeliveryStatus.FAILED,
                error=f"SMTP error: {e}",
                recipient=payload.recipient_email,
            )

        self.logger.info("Email sent to %s: %s", payload.recipient_email, payload.title)
        return self.result(
            DeliveryStatus.SENT,
            message_id=message["Message-ID"],
            recipient=payload.recipient_email,
        )

    def build_message(self, payload: NotificationPayload) -> MIMEMultipart:
        """Build the MIME message for a payload."""
        message = MIMEMultipart("alternative")
        message["From"] = f"{self._settings.from_name} <{self._settings.from_email}>"
        message["To"] = payload.recipient_email
        message["Subject"] = payload.title
        message["Message-ID"] = make_msgid(domain="edumanage.pro")

        message.attach(MIMEText(payload.message, "plain", "utf-8"))
        message.attach(MIMEText(payload.html or self._fallback_html(payload), "html", "utf-8"))
        return message

    def _fallback_html(self, payload: NotificationPayload) -> str:
        body = html.escape(payload.message).replace("\n", "<br>")
        action = ""
        if payload.action_url:
            label = html.escape(payload.action_label or "View Details")
            action = f'<p><a href="{html.escape(payload.action_url)}">{label}</a></p>'
        return (
            "<!DOCTYPE html><html><body>"
            f"<h1>{html.escape(payload.title)}</h1><p>{body}</p>{action}"
            "</body></html>"
        )
