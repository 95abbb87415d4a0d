# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification templates.

Each notification kind renders to a subject, a plain text body and an
HTML body. Template variables are HTML-escaped before interpolation.
"""

import html
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable


class NotificationKind(str, Enum):
    """Notification kinds the pipeline can send."""

    BUILD_COMPLETE = "build-complete"


@dataclass(frozen=True)
class RenderedNotification:
    """A template rendered for one recipient."""

    subject: str
    text: str
    html: str
    action_url: str | None = None
    action_label: str | None = None


SUPPORT_CONTACT = "support@edumanagepro.com or call +254114963959"


def _render_build_complete(data: dict[str, Any]) -> RenderedNotification:
    school_name = str(data.get("school_name") or "Your school")
    build_id = str(data.get("build_id") or "")
    download_url = str(data.get("download_url") or "")
    guide = str(data.get("installation_guide") or "")

    text = "\n".join(
        [
            "Your System is Ready!",
            f"{school_name}'s management system",
            "",
            "Dear Administrator,",
            "Great news! Your customized school management system has been built "
            "successfully and is ready for download.",
            "",
            f"Download Your System: {download_url}",
            "(Link expires in 24 hours)",
            "",
            "Installation Instructions:",
            guide,
            "",
            f"Build ID: {build_id}",
            "",
            f"Need help with installation? Contact our support team at {SUPPORT_CONTACT}.",
            "",
            "Best regards,",
            "The EduManage Pro Team",
        ]
    )

    e = html.escape
    body = f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: linear-gradient(135deg, #4CAF50, #2E7D32); color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }}
    .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
    .button {{ display: inline-block; background: #4CAF50; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; margin: 10px 0; }}
    .steps {{ background: white; padding: 20px; border-radius: 5px; margin: 20px 0; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>Your System is Ready!</h1>
      <p>{e(school_name)}'s management system</p>
    </div>
    <div class="content">
      <p>Dear Administrator,</p>
      <p>Great news! Your customized school management system has been built successfully and is ready for download.</p>
      <div style="text-align: center; margin: 30px 0;">
        <a href="{e(download_url)}" class="button">Download Your System</a>
        <p style="font-size: 12px; color: #666;">(Link expires in 24 hours)</p>
      </div>
      <div class="steps">
        <h3>Installation Instructions:</h3>
        <pre style="background: #f5f5f5; padding: 15px; border-radius: 5px; white-space: pre-wrap;">{e(guide)}</pre>
      </div>
      <p><strong>Build ID:</strong> {e(build_id)}</p>
      <p>Need help with installation? Contact our support team at {e(SUPPORT_CONTACT)}.</p>
      <p>Best regards,<br>The EduManage Pro Team</p>
    </div>
  </div>
</body>
</html>"""

    return RenderedNotification(
        subject="Your School Management System is Ready!",
        text=text,
        html=body,
        action_url=download_url or None,
        action_label="Download Your System",
    )


_RENDERERS: dict[NotificationKind, Callable[[dict[str, Any]], RenderedNotification]] = {
    NotificationKind.BUILD_COMPLETE: _render_build_complete,
}


def render(kind: NotificationKind | str, data: dict[str, Any]) -> RenderedNotification:
    """Render a notification.

    Raises:
        ValueError: If the kind is unknown.
    """
    return _RENDERERS[NotificationKind(kind)](data)
