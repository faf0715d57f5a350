import html
import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config import APP_NAME, APP_BASE_URL, INVITATION_TTL_DAYS, SMTP_PORT, support_email
from roles import ROLE_DESCRIPTIONS

logger = logging.getLogger(__name__)

PACKAGE_DURATIONS = {"basic": "1 hour", "standard": "2 hours", "premium": "4 hours"}


class EmailNotConfigured(RuntimeError):
    pass


def send_email(to_email: str, subject: str, html_body: str, text_body: Optional[str] = None,
               reply_to: Optional[str] = None):
    host = os.getenv("SMTP_HOST")
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASS")
    sender = os.getenv("SMTP_FROM", user or f"no-reply@{APP_NAME.lower().replace(' ', '')}.com")
    if not host:
        raise EmailNotConfigured("SMTP not configured")

    msg = MIMEMultipart("alternative")
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    if text_body:
        msg.attach(MIMEText(text_body, "plain"))
    msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP(host, SMTP_PORT) as server:
        server.starttls()
        if user and password:
            server.login(user, password)
        server.sendmail(sender, [to_email], msg.as_string())


def dispatch_email(to_email: str, subject: str, html_body: str, text_body: Optional[str] = None,
                   reply_to: Optional[str] = None) -> bool:
    """Fire-and-forget delivery: failures are logged and reported as False."""
    try:
        send_email(to_email, subject, html_body, text_body, reply_to=reply_to)
    except EmailNotConfigured:
        logger.warning(f"SMTP not configured, skipping email '{subject}' to {to_email}")
        return False
    except Exception:
        logger.exception(f"Failed to send email '{subject}' to {to_email}")
        return False
    logger.info(f"Email '{subject}' sent to {to_email}")
    return True


def _layout(title: str, body: str) -> str:
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #1f2937;">
        <h2 style="color: #2563eb;">{html.escape(title)}</h2>
        {body}
        <hr style="margin: 20px 0; border: none; border-top: 1px solid #e5e7eb;">
        <p style="font-size: 12px; color: #6b7280;">
            {html.escape(APP_NAME)} &middot; Questions? Contact {html.escape(support_email())}
        </p>
    </body>
    </html>
    """


def _button(href: str, label: str) -> str:
    return (
        f'<p><a href="{html.escape(href)}" style="background: #2563eb; color: #fff; padding: 10px 18px; '
        f'border-radius: 6px; text-decoration: none;">{html.escape(label)}</a></p>'
    )


def service_label(service: str) -> str:
    return (service or "").replace("-", " ").title()


# ────────────────────────────────────────────────────────────
# EMAIL TEMPLATES
# ────────────────────────────────────────────────────────────


def send_booking_confirmation(booking: dict, has_account: bool) -> bool:
    service = service_label(booking.get("service"))
    subject = f"Booking Confirmation - {service} Service"
    package = booking.get("package")
    duration = booking.get("duration") or PACKAGE_DURATIONS.get(package, "To be determined")
    price = booking.get("estimated_price")
    date = booking["date"].strftime("%A, %B %d, %Y") if booking.get("date") else ""
    if has_account:
        link = _button(f"{APP_BASE_URL}/dashboard", "View your booking")
    else:
        link = "<p>Create an account to track your booking:</p>" + _button(
            f"{APP_BASE_URL}/login", "Create account"
        )
    rows = [
        ("Booking ID", str(booking.get("_id", booking.get("id", "")))),
        ("Service", service),
        ("Package", package.title() if package else "Custom"),
        ("Date", date),
        ("Duration", duration),
        ("Location", booking.get("location", "")),
        ("Estimated price", f"${price:,.0f}" if price is not None else "Quote on request"),
    ]
    table = "".join(
        f'<tr><td style="padding: 6px; font-weight: bold;">{html.escape(k)}:</td>'
        f'<td style="padding: 6px;">{html.escape(str(v))}</td></tr>'
        for k, v in rows
    )
    body = (
        f"<p>Hi {html.escape(booking.get('name', ''))},</p>"
        "<p>Thanks for your booking request. We will contact you soon to confirm the details.</p>"
        f'<table style="border-collapse: collapse; margin: 16px 0;">{table}</table>{link}'
    )
    text = "\n".join(f"{k}: {v}" for k, v in rows)
    return dispatch_email(booking["email"], subject, _layout("Booking received", body), text)


def send_invitation(invitation: dict) -> bool:
    link = f"{APP_BASE_URL}/invite?token={invitation['token']}"
    role = invitation.get("role", "user")
    subject = f"You're invited to join {APP_NAME}"
    body = (
        f"<p>Hi {html.escape(invitation.get('name', ''))},</p>"
        f"<p>You have been invited to {html.escape(APP_NAME)} as <strong>{html.escape(role)}</strong>: "
        f"{html.escape(ROLE_DESCRIPTIONS.get(role, ''))}.</p>"
        + _button(link, "Accept invitation")
        + f"<p>This invitation expires in {INVITATION_TTL_DAYS} days.</p>"
    )
    text = f"You have been invited to {APP_NAME} as {role}. Accept: {link} (expires in {INVITATION_TTL_DAYS} days)"
    return dispatch_email(invitation["email"], subject, _layout("You're invited", body), text)


def send_verification(email: str, name: Optional[str], token: str) -> bool:
    link = f"{APP_BASE_URL}/verify-email?token={token}"
    body = (
        f"<p>Hi {html.escape(name or '')},</p><p>Please confirm your email address.</p>"
        + _button(link, "Verify email")
        + "<p>This link expires in 24 hours.</p>"
    )
    return dispatch_email(email, f"Verify your {APP_NAME} email", _layout("Verify your email", body),
                          f"Verify your email: {link}")


def send_password_reset(email: str, name: Optional[str], token: str) -> bool:
    link = f"{APP_BASE_URL}/reset-password?token={token}"
    body = (
        f"<p>Hi {html.escape(name or '')},</p><p>We received a request to reset your password.</p>"
        + _button(link, "Reset password")
        + "<p>This link expires in 1 hour. If you did not ask for it, ignore this email.</p>"
    )
    return dispatch_email(email, f"Reset your {APP_NAME} password", _layout("Password reset", body),
                          f"Reset your password: {link}")


def send_email_change(new_email: str, name: Optional[str], token: str) -> bool:
    link = f"{APP_BASE_URL}/verify-email-change?token={token}"
    body = (
        f"<p>Hi {html.escape(name or '')},</p><p>Confirm this address as your new sign-in email.</p>"
        + _button(link, "Confirm new email")
        + "<p>This link expires in 24 hours.</p>"
    )
    return dispatch_email(new_email, f"Confirm your new {APP_NAME} email", _layout("Confirm email change", body),
                          f"Confirm your new email: {link}")


def send_contact_message(name: str, email: str, subject: str, message: str):
    """Forward a contact form message to support. Raises on delivery failure."""
    body = (
        f"<p><strong>From:</strong> {html.escape(name)} &lt;{html.escape(email)}&gt;</p>"
        f"<p><strong>Subject:</strong> {html.escape(subject)}</p>"
        f"<p>{html.escape(message).replace(chr(10), '<br>')}</p>"
    )
    send_email(
        support_email(),
        f"[Contact] {subject}",
        _layout("New contact form message", body),
        f"From: {name} <{email}>\n\n{message}",
        reply_to=email,
    )
