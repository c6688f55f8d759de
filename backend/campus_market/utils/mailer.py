from __future__ import annotations

import html
import os
import smtplib
from email.message import EmailMessage

from flask import current_app

ORDER_EMAIL_TITLES = {
    "confirmation": "Order Confirmed!",
    "shipped": "Order Shipped!",
    "delivered": "Order Delivered!",
    "completed": "Transaction Complete!",
}

# Statuses without their own template fall back to "confirmation".
STATUS_EMAIL_TEMPLATES = {
    "shipped": "shipped",
    "delivered": "delivered",
    "completed": "completed",
}


def email_template_for_status(status: str) -> str:
    return STATUS_EMAIL_TEMPLATES.get((status or "").strip().lower(), "confirmation")


def _app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:5000").rstrip("/")


def send_email(to: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
    """Send through SMTP when configured, otherwise log the message.

    Raises on SMTP failure; callers decide whether that is fatal.
    """
    if not to:
        return False
    smtp_host = (os.getenv("SMTP_HOST") or "").strip()
    if not smtp_host:
        current_app.logger.info("email_not_configured to=%s subject=%s", to, subject)
        return True

    smtp_port = int((os.getenv("SMTP_PORT") or "587").strip() or 587)
    smtp_user = (os.getenv("SMTP_USER") or "").strip()
    smtp_pass = (os.getenv("SMTP_PASS") or "").strip()
    smtp_from = (os.getenv("SMTP_FROM") or smtp_user or "no-reply@campusmarket.ng").strip()

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = smtp_from
    msg["To"] = to
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(smtp_host, smtp_port, timeout=10) as server:
        server.ehlo()
        if (os.getenv("SMTP_STARTTLS") or "true").strip().lower() in ("1", "true", "yes", "on"):
            server.starttls()
        if smtp_user and smtp_pass:
            server.login(smtp_user, smtp_pass)
        server.send_message(msg)
    current_app.logger.info("email_sent to=%s subject=%s", to, subject)
    return True


def send_order_email(
    to: str,
    *,
    order_number: str,
    product_name: str,
    total_amount: str,
    counterparty_name: str,
    template: str,
) -> bool:
    title = ORDER_EMAIL_TITLES.get(template, ORDER_EMAIL_TITLES["confirmation"])
    link = f"{_app_url()}/orders"
    text_body = (
        f"{title}\n\n"
        f"Order #{order_number}\n"
        f"Product: {product_name}\n"
        f"Amount: NGN {total_amount}\n"
        f"Counterparty: {counterparty_name}\n\n"
        f"View order: {link}\n"
    )
    safe_product = html.escape(product_name or "")
    safe_party = html.escape(counterparty_name or "")
    html_body = (
        f"<h2>{title}</h2>"
        f"<p>Order #{order_number}</p>"
        f"<p><strong>Product:</strong> {safe_product}<br>"
        f"<strong>Amount:</strong> NGN {total_amount}<br>"
        f"<strong>Counterparty:</strong> {safe_party}</p>"
        f'<p><a href="{link}">View Order</a></p>'
    )
    return send_email(to, title, text_body, html_body)
