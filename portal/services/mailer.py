# portal/services/mailer.py
"""
Account emails: verification, password reset and the welcome documents.

Firebase Admin generates the action link; Resend delivers it. Without a
Resend key (local dev) the link is handed back to the caller instead so the
page can show it.
"""
from __future__ import annotations

import logging
from urllib.parse import quote

import resend

from portal.core.config import settings

log = logging.getLogger(__name__)

_BRAND = "El Paso Verse"


def _from_addr() -> str:
    return f"{_BRAND} <noreply@{settings.resend_domain}>"


def continue_url(path: str = "/login") -> str:
    path = path if (isinstance(path, str) and path.startswith("/")) else "/login"
    return f"{settings.ui_origin.rstrip('/')}{quote(path, safe='/?=&')}"


def _render(title: str, intro: str, button: str, link: str) -> tuple[str, str]:
    html = f"""\
<!doctype html>
<html>
  <body style="margin:0;padding:24px 12px;background:#0d0b08;">
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width:560px;">
      <tr>
        <td style="font-family:Georgia,serif;color:#f4e4c1;">
          <h1 style="margin:0 0 8px 0;font-size:22px;">{title}</h1>
          <p style="margin:0 0 16px 0;font-size:14px;line-height:22px;">{intro}</p>
          <a href="{link}" target="_blank"
             style="display:inline-block;padding:10px 16px;border-radius:4px;background:#d4a84b;color:#000;
                    font-size:14px;text-decoration:none;">{button}</a>
          <p style="margin:16px 0 0 0;font-size:12px;color:#a89880;">
            If the button doesn't work, <a href="{link}" style="color:#d4a84b;">use this link</a>.
            Didn't request this? You can safely ignore this email.
          </p>
        </td>
      </tr>
    </table>
  </body>
</html>
"""
    text = "\n".join([title, "", intro, link, "", "Didn't request this? You can ignore this email."])
    return html, text


class Mailer:
    def __init__(self, api_key: str | None = None, sender=None):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self._send = sender or resend.Emails.send

    def _deliver(self, to: str, subject: str, html: str, text: str, link: str) -> dict:
        if not self.api_key:
            return {"ok": True, "link": link, "warn": "RESEND_API_KEY missing; email not sent"}
        try:
            resend.api_key = self.api_key
            self._send({
                "from": _from_addr(),
                "to": [to],
                "subject": subject,
                "html": html,
                "text": text,
            })
            return {"ok": True}
        except Exception as e:
            # the account exists either way; give the link back so the flow can proceed
            log.error("[mailer] Resend failed for %s: %s", subject, e)
            return {"ok": True, "link": link, "warn": f"Email not sent: {e}"}

    def send_verification(self, email: str, link: str) -> dict:
        html, text = _render(
            "Confirm your email",
            "Welcome, Pioneer. Confirm your email to unlock your PASO welcome bonus.",
            "Verify email", link,
        )
        return self._deliver(email, f"Verify your {_BRAND} account", html, text, link)

    def send_password_reset(self, email: str, link: str) -> dict:
        html, text = _render(
            "Reset your password",
            "Use the link below to choose a new password for your account.",
            "Reset password", link,
        )
        return self._deliver(email, f"Reset your {_BRAND} password", html, text, link)

    def send_welcome(self, to: str, subject: str, html: str, text: str,
                     attachments: list[tuple[str, bytes]]) -> None:
        """Send the onboarding email with its PDF documents. Raises when it cannot be sent."""
        if not self.api_key:
            raise RuntimeError("RESEND_API_KEY missing; welcome email not sent")
        resend.api_key = self.api_key
        self._send({
            "from": _from_addr(),
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
            "attachments": [{"filename": name, "content": list(data)} for name, data in attachments],
        })
