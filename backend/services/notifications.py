import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

BREVO_HOST = "smtp-relay.brevo.com"
BREVO_PORT = 587


def invite_url(code: str) -> str:
    return f"{settings.FRONTEND_URL}/invite/{code}"


def _build_message(inviter_name: str, room_name: str, code: str, note: str, expires_at: datetime) -> str:
    lines = [
        "Realtime Rooms: you're invited\n",
        f"{inviter_name} invited you to join #{room_name}.",
    ]
    if note:
        lines.append(f'\n"{note}"')
    lines.append(f"\nJoin here: {invite_url(code)}")
    lines.append(f"Invitation code: {code}")
    lines.append(f"This invitation expires {expires_at:%Y-%m-%d %H:%M} UTC.")
    return "\n".join(lines)


def _build_html_email(inviter_name: str, room_name: str, code: str, note: str, expires_at: datetime) -> tuple[str, str]:
    plain = _build_message(inviter_name, room_name, code, note, expires_at)
    quote = (
        f'<p style="color:#374151;font-style:italic;border-left:3px solid #6366f1;padding-left:12px;">{note}</p>'
        if note else ""
    )
    html = f"""<!DOCTYPE html>
<html><head><meta charset="utf-8"></head>
<body style="margin:0;padding:0;background:#f3f4f6;font-family:Helvetica,Arial,sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" style="padding:40px 20px;">
    <tr><td align="center">
      <table width="520" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:12px;">
        <tr><td style="padding:32px;">
          <p style="color:#111827;font-size:16px;margin:0 0 16px;">
            <strong>{inviter_name}</strong> invited you to join <strong>#{room_name}</strong>.
          </p>
          {quote}
          <div style="text-align:center;margin:28px 0;">
            <a href="{invite_url(code)}"
              style="display:inline-block;background:#6366f1;color:#ffffff;font-weight:bold;padding:12px 32px;border-radius:8px;text-decoration:none;">
              Join the room
            </a>
          </div>
          <p style="color:#6b7280;font-size:12px;text-align:center;margin:0;">
            Code {code} · expires {expires_at:%Y-%m-%d %H:%M} UTC
          </p>
        </td></tr>
      </table>
    </td></tr>
  </table>
</body></html>"""
    return plain, html


async def send_invitation_email(
    to_email: str,
    inviter_name: str,
    room_name: str,
    code: str,
    note: str,
    expires_at: datetime,
) -> bool:
    """Send an invitation email via Brevo SMTP. Returns False instead of raising."""
    if not (settings.BREVO_SMTP_USER and settings.BREVO_SMTP_KEY):
        logger.warning("Brevo SMTP not configured, skipping invitation email")
        return False

    subject = f"{inviter_name} invited you to #{room_name}"
    plain, html = _build_html_email(inviter_name, room_name, code, note, expires_at)

    def _send():
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"Realtime Rooms <{settings.BREVO_SMTP_USER}>"
        msg["To"] = to_email
        msg.attach(MIMEText(plain, "plain"))
        msg.attach(MIMEText(html, "html"))
        with smtplib.SMTP(BREVO_HOST, BREVO_PORT, timeout=15) as s:
            s.ehlo(); s.starttls()
            s.login(settings.BREVO_SMTP_USER, settings.BREVO_SMTP_KEY)
            s.sendmail(settings.BREVO_SMTP_USER, [to_email], msg.as_string())

    try:
        await asyncio.to_thread(_send)
        logger.info(f"Invitation email for #{room_name} sent to {to_email}")
        return True
    except Exception as e:
        logger.error(f"Brevo SMTP failed for invitation to {to_email}: {e}")
        return False
