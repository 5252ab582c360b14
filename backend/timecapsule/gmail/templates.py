"""Email bodies (HTML + plain text) for capsule creation and unlock."""

from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Optional, Tuple
from urllib.parse import quote

_WRAPPER = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); padding: 30px; text-align: center; border-radius: 10px 10px 0 0;">
    <h1 style="color: white; margin: 0; font-size: 28px;">{heading}</h1>
  </div>
  <div style="background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px;">
{body}
  </div>
</body>
</html>"""

_BUTTON = (
    '<div style="text-align: center; margin: 30px 0;">'
    '<a href="{href}" style="background: {color}; color: white; padding: 15px 30px; '
    'text-decoration: none; border-radius: 5px; font-size: 16px; display: inline-block;">'
    "{label}</a></div>"
)

_FOOTER = (
    '<p style="font-size: 14px; color: #666; margin-top: 30px;">This is an automated message '
    "from Memory Time Capsule. The capsule was created by {sender} ({sender_email}).</p>"
)


def format_unlock_date(unlock_at: int) -> str:
    """Human date for an epoch-seconds unlock time, e.g. 'March 05, 2027' (UTC)."""
    return datetime.fromtimestamp(unlock_at, tz=timezone.utc).strftime("%B %d, %Y")


def whatsapp_share_link(message: str) -> str:
    """wa.me link that opens WhatsApp with message prefilled."""
    return f"https://wa.me/?text={quote(message, safe='')}"


@dataclass
class CapsuleEmailData:
    """Values interpolated into capsule emails."""

    recipient_email: str
    sender_name: str
    sender_email: str
    capsule_title: str
    unlock_date: str
    magic_link: str
    recipient_name: Optional[str] = None
    pin: Optional[str] = None
    whatsapp_link: Optional[str] = None
    preview_message: Optional[str] = None

    @property
    def greeting_name(self) -> str:
        return self.recipient_name or self.recipient_email


def _button(href: str, label: str, color: str = "#667eea") -> str:
    return _BUTTON.format(href=escape(href, quote=True), label=label, color=color)


def _footer(data: CapsuleEmailData) -> str:
    return _FOOTER.format(sender=escape(data.sender_name), sender_email=escape(data.sender_email))


def creation_email(data: CapsuleEmailData) -> Tuple[str, str]:
    """Sent to the recipient when the capsule is sealed."""
    preview = ""
    if data.preview_message:
        preview = f'    <p style="font-size: 16px; font-style: italic;">&ldquo;{escape(data.preview_message)}&rdquo;</p>\n'
    body = (
        f'    <p style="font-size: 16px;">Hi {escape(data.greeting_name)},</p>\n'
        f'    <p style="font-size: 16px;"><strong>{escape(data.sender_name)}</strong> has sent you a '
        "special time capsule that will unlock on:</p>\n"
        '    <div style="background: white; padding: 20px; border-radius: 8px; border-left: 4px solid #667eea; margin: 20px 0;">\n'
        f'      <h2 style="margin: 0 0 10px 0; color: #667eea; font-size: 20px;">{escape(data.capsule_title)}</h2>\n'
        f'      <p style="margin: 0; font-size: 18px; color: #666;">Unlocks: <strong>{escape(data.unlock_date)}</strong></p>\n'
        "    </div>\n"
        f"{preview}"
        '    <p style="font-size: 16px;">This capsule is currently sealed and waiting for the special moment. '
        "You'll receive another email with access details when it unlocks.</p>\n"
        f"    {_button(data.magic_link, 'View Countdown')}\n"
        f"    {_footer(data)}"
    )
    html = _WRAPPER.format(
        title=f"Time Capsule from {escape(data.sender_name)}",
        heading="&#127873; Time Capsule Sealed",
        body=body,
    )
    lines = [
        f"Time Capsule from {data.sender_name}",
        "",
        f"Hi {data.greeting_name},",
        "",
        f'{data.sender_name} has sent you a special time capsule: "{data.capsule_title}"',
        "",
        f"Unlocks: {data.unlock_date}",
    ]
    if data.preview_message:
        lines += ["", f'"{data.preview_message}"']
    lines += [
        "",
        "This capsule is currently sealed. You'll receive another email with access details when it unlocks.",
        "",
        f"View countdown: {data.magic_link}",
        "",
        "---",
        "This is an automated message from Memory Time Capsule.",
        f"The capsule was created by {data.sender_name} ({data.sender_email}).",
    ]
    return html, "\n".join(lines)


def unlock_email(data: CapsuleEmailData) -> Tuple[str, str]:
    """Sent to the recipient when the capsule unlocks; carries the PIN."""
    pin = data.pin or ""
    whatsapp = ""
    if data.whatsapp_link:
        whatsapp = (
            '    <div style="background: #e8f5e9; padding: 15px; border-radius: 8px; margin: 20px 0;">\n'
            '      <p style="margin: 0; font-size: 14px; color: #2e7d32;"><strong>Quick Access:</strong> open in WhatsApp</p>\n'
            f"      {_button(data.whatsapp_link, 'Open in WhatsApp', '#25d366')}\n"
            "    </div>\n"
        )
    body = (
        f'    <p style="font-size: 16px;">Hi {escape(data.greeting_name)},</p>\n'
        f'    <p style="font-size: 16px;">The time capsule "<strong>{escape(data.capsule_title)}</strong>" '
        f"from <strong>{escape(data.sender_name)}</strong> is now unlocked!</p>\n"
        '    <div style="background: white; padding: 20px; border-radius: 8px; border-left: 4px solid #667eea; margin: 20px 0;">\n'
        '      <h2 style="margin: 0 0 10px 0; color: #667eea; font-size: 20px;">Access Your Capsule</h2>\n'
        f'      <p style="margin: 10px 0; font-size: 16px;">PIN Code: <strong style="font-size: 24px; color: #667eea;">{escape(pin)}</strong></p>\n'
        "    </div>\n"
        f"    {_button(data.magic_link, 'Open Time Capsule')}\n"
        f"{whatsapp}"
        f"    {_footer(data)}"
    )
    html = _WRAPPER.format(
        title="Your Time Capsule is Unlocked!",
        heading="&#127881; Time Capsule Unlocked!",
        body=body,
    )
    lines = [
        "Your Time Capsule is Unlocked!",
        "",
        f"Hi {data.greeting_name},",
        "",
        f'The time capsule "{data.capsule_title}" from {data.sender_name} is now unlocked!',
        "",
        "Access Your Capsule:",
        f"PIN Code: {pin}",
        "",
        f"Open your capsule: {data.magic_link}",
    ]
    if data.whatsapp_link:
        lines += ["", f"Quick Access via WhatsApp: {data.whatsapp_link}"]
    lines += [
        "",
        "---",
        "This is an automated message from Memory Time Capsule.",
        f"The capsule was created by {data.sender_name} ({data.sender_email}).",
    ]
    return html, "\n".join(lines)


def sender_notification_email(data: CapsuleEmailData) -> Tuple[str, str]:
    """Sent to the sender once the capsule has been delivered."""
    share = _button(data.whatsapp_link, "Send WhatsApp Reminder", "#25d366") if data.whatsapp_link else ""
    body = (
        f'    <p style="font-size: 16px;">Hi {escape(data.sender_name)},</p>\n'
        "    <p style=\"font-size: 16px;\">Your time capsule has been unlocked and delivered to "
        f"<strong>{escape(data.recipient_email)}</strong>.</p>\n"
        f'    <h2 style="color: #667eea; font-size: 20px;">{escape(data.capsule_title)}</h2>\n'
        f"    {share}"
    )
    html = _WRAPPER.format(
        title="Capsule Unlocked",
        heading="&#9989; Capsule Unlocked",
        body=body,
    )
    lines = [
        "Your Time Capsule Has Unlocked",
        "",
        f'Your time capsule "{data.capsule_title}" has been unlocked and delivered to {data.recipient_email}.',
    ]
    if data.whatsapp_link:
        lines += ["", f"Send WhatsApp reminder: {data.whatsapp_link}"]
    return html, "\n".join(lines)
