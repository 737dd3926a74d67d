"""Transactional email: templates (English/Arabic) and delivery.

Delivery goes through a local SMTP relay (maildev) in development or when
USE_MAILDEV is set, and through the Resend API otherwise. ``send`` raises on
failure; request handlers reach it through the mail dispatcher, which logs
failures instead of propagating them. Only the OTP login path calls ``send``
directly.
"""

from __future__ import annotations

import asyncio
import html
import logging
from email.message import EmailMessage
from typing import Callable, Optional

import aiosmtplib
import resend
from resend.exceptions import ResendError

from helpdesk.config import Settings, settings as default_settings

logger = logging.getLogger("helpdesk.mailer")


class MailError(Exception):
    pass


class MailConfigurationError(MailError):
    """No usable transport is configured."""


class MailDeliveryError(MailError):
    """The transport refused or failed to deliver the message."""


STATUS_LABELS = {
    "Open": {"en": "Open", "ar": "مفتوحة"},
    "In Progress": {"en": "In Progress", "ar": "قيد التنفيذ"},
    "Resolved": {"en": "Resolved", "ar": "تم الحل"},
    "Closed": {"en": "Closed", "ar": "مغلقة"},
}

_BUTTON = (
    "background-color: #000057; color: white; padding: 10px 20px; "
    "text-decoration: none; border-radius: 5px; display: inline-block; margin: 10px 0;"
)


def _lang(lang: Optional[str]) -> str:
    return "ar" if (lang or "").lower().startswith("ar") else "en"


def tracking_link(
    ticket_id: str,
    public_token: Optional[str],
    organization_slug: Optional[str],
    cfg: Settings = default_settings,
) -> tuple[str, str]:
    """(url, reference) for a ticket: public tracking page or the signed-in view."""
    base = cfg.frontend_url.rstrip("/")
    if public_token and organization_slug:
        return f"{base}/org/{organization_slug}/track?token={public_token}", public_token
    return f"{base}/tickets/{ticket_id}", ticket_id


def status_label(name: str, lang: str) -> str:
    return STATUS_LABELS.get(name, {}).get(lang, name)


def _wrap(body: str, lang: str) -> str:
    direction = "rtl" if lang == "ar" else "ltr"
    return (
        f'<div dir="{direction}" style="font-family: -apple-system, sans-serif; '
        f'max-width: 600px; margin: 0 auto;">{body}</div>'
    )


# ── Templates ─────────────────────────────────────────────────
# Each returns (subject, html). Variables arrive escaped.

def _password_reset(v: dict, lang: str) -> tuple[str, str]:
    url = v["reset_url"]
    if lang == "ar":
        return "طلب إعادة تعيين كلمة المرور", f"""
        <h2>طلب إعادة تعيين كلمة المرور</h2>
        <p>لقد طلبت إعادة تعيين كلمة المرور. انقر على الرابط أدناه لإعادة تعيينها:</p>
        <a href="{url}" style="{_BUTTON}">إعادة تعيين كلمة المرور</a>
        <p>سينتهي صلاحية هذا الرابط خلال ساعة واحدة.</p>
        """
    return "Password Reset Request", f"""
        <h2>Password Reset Request</h2>
        <p>You requested to reset your password. Click the link below to reset it:</p>
        <a href="{url}" style="{_BUTTON}">Reset Password</a>
        <p>This link will expire in 1 hour.</p>
        <p>If you didn't request this, please ignore this email.</p>
        """


def _login_otp(v: dict, lang: str) -> tuple[str, str]:
    code = f'<p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{v["otp"]}</p>'
    if lang == "ar":
        return "رمز التحقق لتسجيل الدخول", f"""
        <h2>رمز التحقق</h2>
        <p>رمز المرور لمرة واحدة (OTP) لتسجيل الدخول هو:</p>
        {code}
        <p>سينتهي صلاحية هذا الرمز خلال 10 دقائق.</p>
        """
    return "Your Login OTP Code", f"""
        <h2>Login Verification</h2>
        <p>Your one-time password (OTP) for login is:</p>
        {code}
        <p>This code will expire in 10 minutes.</p>
        <p>If you didn't try to sign in, please ignore this email.</p>
        """


def _ticket_submitted(v: dict, lang: str) -> tuple[str, str]:
    if lang == "ar":
        return f"تم إرسال التذكرة بنجاح: {v['ticket_title']}", f"""
        <h2>تم استلام تذكرتك</h2>
        <p>شكرًا لتقديم تذكرتك. لقد استلمنا طلبك وسنعود إليك قريبًا.</p>
        <p>رقم التتبع: <strong>{v['reference']}</strong></p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">تتبع التذكرة</a>
        """
    return f"Ticket Submitted Successfully: {v['ticket_title']}", f"""
        <h2>Ticket Received</h2>
        <p>Thank you for submitting your ticket. We have received your request and will get back to you soon.</p>
        <p>Tracking number: <strong>{v['reference']}</strong></p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">Track Ticket</a>
        """


def _ticket_status_changed(v: dict, lang: str) -> tuple[str, str]:
    if lang == "ar":
        return f"تم تحديث حالة التذكرة: {v['ticket_title']}", f"""
        <h2>تحديث حالة التذكرة</h2>
        <p>تم تحديث حالة تذكرتك "<strong>{v['ticket_title']}</strong>".</p>
        <p>{v['old_status']} ← {v['new_status']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">عرض التذكرة</a>
        """
    return f"Ticket Status Updated: {v['ticket_title']}", f"""
        <h2>Ticket Status Update</h2>
        <p>Your ticket "<strong>{v['ticket_title']}</strong>" status has been updated.</p>
        <p>{v['old_status']} → {v['new_status']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">View Ticket</a>
        """


def _ticket_comment(v: dict, lang: str) -> tuple[str, str]:
    if lang == "ar":
        return f"تعليق جديد على التذكرة: {v['ticket_title']}", f"""
        <h2>تعليق جديد</h2>
        <p>تم إضافة تعليق جديد على تذكرتك "<strong>{v['ticket_title']}</strong>".</p>
        <blockquote>{v['comment']}</blockquote>
        <p>{v['author']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">عرض التذكرة</a>
        """
    return f"New Comment on Ticket: {v['ticket_title']}", f"""
        <h2>New Comment</h2>
        <p>A new comment has been added to your ticket "<strong>{v['ticket_title']}</strong>".</p>
        <blockquote>{v['comment']}</blockquote>
        <p>From: {v['author']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">View Ticket</a>
        """


def _ticket_assigned(v: dict, lang: str) -> tuple[str, str]:
    if lang == "ar":
        return f"تذكرة جديدة مخصصة: {v['ticket_title']}", f"""
        <h2>تذكرة جديدة</h2>
        <p>تم تخصيص تذكرة جديدة لك بناءً على تعيين الفئة الخاص بك.</p>
        <p>الفئة: {v['category']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">عرض التذكرة</a>
        """
    return f"New Ticket Assigned: {v['ticket_title']}", f"""
        <h2>New Ticket Assigned</h2>
        <p>A new ticket has been assigned to you based on your category assignment.</p>
        <p>Category: {v['category']}</p>
        <a href="{v['tracking_url']}" style="{_BUTTON}">View Ticket</a>
        """


TEMPLATES: dict[str, Callable[[dict, str], tuple[str, str]]] = {
    "password_reset": _password_reset,
    "login_otp": _login_otp,
    "ticket_submitted": _ticket_submitted,
    "ticket_status_changed": _ticket_status_changed,
    "ticket_comment": _ticket_comment,
    "ticket_assigned": _ticket_assigned,
}


def render(kind: str, variables: dict, lang: str = "en") -> tuple[str, str]:
    """Return (subject, html) for a template kind; unknown kinds raise KeyError."""
    template = TEMPLATES[kind]
    escaped = {key: html.escape(str(value), quote=True) for key, value in variables.items()}
    lang = _lang(lang)
    subject, body = template(escaped, lang)
    return html.unescape(subject), _wrap(body, lang)


# ── Transports ────────────────────────────────────────────────

async def _send_smtp(cfg: Settings, recipient: str, subject: str, body: str) -> None:
    message = EmailMessage()
    message["From"] = cfg.mail_from_email
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content("This message requires an HTML-capable mail client.")
    message.add_alternative(body, subtype="html")
    # maildev speaks plain SMTP only.
    await aiosmtplib.send(
        message,
        hostname=cfg.maildev_host,
        port=cfg.maildev_smtp_port,
        use_tls=False,
        start_tls=False,
        timeout=10,
    )


def _send_resend(cfg: Settings, recipient: str, subject: str, body: str) -> dict:
    resend.api_key = cfg.resend_api_key
    return resend.Emails.send({
        "from": cfg.mail_from_email,
        "to": [recipient],
        "subject": subject,
        "html": body,
    })


def check_configuration(cfg: Settings = default_settings) -> str:
    """Name the transport that will be used, or raise MailConfigurationError."""
    if cfg.uses_smtp_relay:
        if not cfg.maildev_host or not cfg.maildev_smtp_port:
            raise MailConfigurationError("SMTP relay host/port are not configured")
        return "smtp"
    if not cfg.resend_api_key:
        raise MailConfigurationError(
            "RESEND_API_KEY is not configured; set it or USE_MAILDEV=true for local development"
        )
    return "resend"


async def send(
    kind: str,
    recipient: str,
    variables: dict,
    lang: str = "en",
    cfg: Settings = default_settings,
) -> None:
    transport = check_configuration(cfg)
    subject, body = render(kind, variables, lang)

    try:
        if transport == "smtp":
            await _send_smtp(cfg, recipient, subject, body)
        else:
            await asyncio.to_thread(_send_resend, cfg, recipient, subject, body)
    except (OSError, aiosmtplib.SMTPException) as exc:
        raise MailDeliveryError(f"{transport} delivery failed: {exc}") from exc
    except ResendError as exc:
        raise MailDeliveryError(f"resend rejected the message: {exc}") from exc

    logger.info("email sent via %s to %s", transport, recipient, extra={"mail_kind": kind})
