"""Transactional e-mail for the reschedule workflow.

Called only from the outbox dispatcher; request handlers never talk to the
provider directly.
"""
from datetime import datetime
from html import escape

import httpx
import structlog

from .config import settings

log = structlog.get_logger("bookflow.notifications")

DEFAULT_REJECTION_MESSAGE = (
    "We're sorry but we could not change the date. If you can't arrive, please cancel."
)


def _format_when(raw) -> str:
    if not raw:
        return ""
    try:
        value = datetime.fromisoformat(str(raw))
    except ValueError:
        return str(raw)
    return value.strftime("%A, %B %d, %Y %H:%M")


def send_email(to_email: str, to_name: str | None, subject: str, html_content: str) -> bool:
    """Send one message through the Brevo API.

    Returns False when no API key is configured (delivery skipped). Provider
    errors raise, so the outbox can retry the event.
    """
    if not settings.BREVO_API_KEY:
        log.warning("email_skipped_no_api_key", subject=subject)
        return False

    recipient = {"email": to_email}
    if to_name:
        recipient["name"] = to_name
    body = {
        "sender": {"name": settings.EMAIL_SENDER_NAME, "email": settings.EMAIL_SENDER_ADDRESS},
        "to": [recipient],
        "subject": subject,
        "htmlContent": html_content,
    }
    with httpx.Client(timeout=float(settings.EMAIL_TIMEOUT_SECONDS)) as client:
        resp = client.post(
            settings.BREVO_API_URL,
            json=body,
            headers={"api-key": settings.BREVO_API_KEY, "Accept": "application/json"},
        )
        resp.raise_for_status()
    log.info("email_sent", subject=subject)
    return True


def _details_block(rows: list[tuple[str, str]]) -> str:
    lines = "".join(
        f"<p><strong>{escape(label)}:</strong> {escape(value)}</p>" for label, value in rows if value
    )
    return f'<div style="background-color:#f5f5f5;padding:15px;border-radius:5px;">{lines}</div>'


def send_reschedule_approval_email(payload: dict) -> bool:
    name = payload.get("customer_name") or ""
    html = (
        "<html><body>"
        "<h2>Appointment Reschedule Approved</h2>"
        f"<p>Dear {escape(name)},</p>"
        "<p>Your request to reschedule your appointment has been approved.</p>"
        + _details_block(
            [
                ("Service", payload.get("service_name") or ""),
                ("Worker", payload.get("worker_name") or ""),
                ("Original Date", _format_when(payload.get("original_start"))),
                ("New Date", _format_when(payload.get("new_start"))),
            ]
        )
        + "<p>We look forward to seeing you at your new appointment time!</p>"
        "</body></html>"
    )
    return send_email(
        payload["customer_email"],
        name,
        "Your Appointment Reschedule Request Has Been Approved",
        html,
    )


def send_reschedule_rejection_email(payload: dict) -> bool:
    name = payload.get("customer_name") or ""
    message = payload.get("rejection_message") or DEFAULT_REJECTION_MESSAGE
    html = (
        "<html><body>"
        "<h2>Appointment Reschedule Request</h2>"
        f"<p>Dear {escape(name)},</p>"
        f"<p>{escape(message)}</p>"
        + _details_block(
            [
                ("Service", payload.get("service_name") or ""),
                ("Worker", payload.get("worker_name") or ""),
                ("Appointment Date", _format_when(payload.get("appointment_start"))),
            ]
        )
        + "<p>If you cannot make it to your appointment, please cancel it so we can "
        "offer the time slot to another customer.</p>"
        "</body></html>"
    )
    return send_email(payload["customer_email"], name, "Your Appointment Reschedule Request", html)


EMAIL_HANDLERS = {
    "email.reschedule_approved": send_reschedule_approval_email,
    "email.reschedule_rejected": send_reschedule_rejection_email,
}


def deliver_outbox_event(topic: str, payload: dict) -> None:
    # Non-email topics are only mirrored to the event bus by the dispatcher.
    handler = EMAIL_HANDLERS.get(topic)
    if handler is None:
        return
    if not payload.get("customer_email"):
        log.warning("email_skipped_no_recipient", topic=topic)
        return
    handler(payload)
