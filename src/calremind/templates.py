from __future__ import annotations

import html
from datetime import datetime

from .models import CalendarEvent, Notification, Recipient, Reminder

_EMAIL_STYLE = """
body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
.container { max-width: 600px; margin: 0 auto; padding: 20px; }
.header { color: #3b82f6; border-bottom: 2px solid #3b82f6; padding-bottom: 10px; margin-bottom: 20px; }
.content { background: #f8fafc; padding: 20px; border-radius: 8px; margin: 20px 0; }
.footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #6b7280; }
""".strip()


def _fmt_date(value: str) -> str:
    try:
        d = datetime.strptime(value, "%Y-%m-%d")
        return f"{d:%B} {d.day}, {d:%Y}"
    except ValueError:
        return value


def reminder_body(event: CalendarEvent, reminder: Reminder) -> str:
    time_range = event.start_time
    if event.end_time:
        time_range = f"{event.start_time} - {event.end_time}"
    lines = [
        "This is a reminder for your upcoming event:",
        "",
        f"Event: {event.title}",
        f"Description: {event.description or 'No description'}",
        f"Date: {_fmt_date(event.start_date)}",
        f"Time: {time_range}",
        f"Type: {event.type or 'other'}",
        "",
        f"Reminder set for: {reminder.descriptor} before the event",
        "",
        "Best regards,",
        "CRM Reminders",
    ]
    return "\n".join(lines)


def build_notification(event: CalendarEvent, reminder: Reminder, recipient: Recipient) -> Notification:
    return Notification(
        recipient=recipient,
        subject=f"Reminder: {event.title}",
        body=reminder_body(event, reminder),
        event_title=event.title,
        event_date=event.start_date,
        event_time=event.start_time,
    )


def render_email_html(body: str, footer: str) -> str:
    """Wrap a plain-text body in the fixed reminder email template."""
    content = html.escape(body).replace("\n", "<br>")
    return (
        "<html>"
        f"<head><style>{_EMAIL_STYLE}</style></head>"
        "<body>"
        '<div class="container">'
        '<h2 class="header">Calendar Reminder</h2>'
        f'<div class="content">{content}</div>'
        f'<div class="footer"><p>{html.escape(footer)}</p></div>'
        "</div>"
        "</body>"
        "</html>"
    )
